"""
Configuration classes for the repricing worker.
Defines the tunables of the engine, the dispatch loop and the scheduler in a
type-safe way, with environment overrides for deployment.
"""

import os
from dataclasses import dataclass, field

from utils.env import load_project_dotenv

DEFAULT_KASPI_API_BASE_URL = "https://kaspi.kz/merchantcabinet/api/v1"


@dataclass
class RepricingConfig:
    margin: float = 1.0  # undercut below the cheapest competitor, in currency units
    request_timeout_seconds: float = 30.0
    max_concurrent_users: int = 1
    max_concurrent_products: int = 4

    def __post_init__(self):
        if self.margin < 0:
            raise ValueError(f"margin must be >= 0, got {self.margin}")
        if self.request_timeout_seconds <= 0:
            raise ValueError(
                f"request_timeout_seconds must be > 0, got {self.request_timeout_seconds}"
            )
        if self.max_concurrent_users < 1 or self.max_concurrent_products < 1:
            raise ValueError("concurrency limits must be >= 1")


@dataclass
class SchedulerConfig:
    cycle_interval_minutes: float = 5.0
    run_on_start: bool = True

    def __post_init__(self):
        if self.cycle_interval_minutes <= 0:
            raise ValueError(
                f"cycle_interval_minutes must be > 0, got {self.cycle_interval_minutes}"
            )


@dataclass
class KaspiClientConfig:
    base_url: str = DEFAULT_KASPI_API_BASE_URL
    timeout_seconds: float = 30.0


@dataclass
class WorkerConfig:
    repricing: RepricingConfig = field(default_factory=RepricingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    kaspi: KaspiClientConfig = field(default_factory=KaspiClientConfig)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env() -> WorkerConfig:
    """Build a WorkerConfig from environment variables (and the project .env)."""
    load_project_dotenv()
    timeout = _env_float("REPRICING_REQUEST_TIMEOUT", 30.0)
    return WorkerConfig(
        repricing=RepricingConfig(
            margin=_env_float("REPRICING_MARGIN", 1.0),
            request_timeout_seconds=timeout,
            max_concurrent_users=_env_int("REPRICING_MAX_USERS", 1),
            max_concurrent_products=_env_int("REPRICING_MAX_PRODUCTS", 4),
        ),
        scheduler=SchedulerConfig(
            cycle_interval_minutes=_env_float("REPRICING_INTERVAL_MINUTES", 5.0),
            run_on_start=_env_bool("REPRICING_RUN_ON_START", True),
        ),
        kaspi=KaspiClientConfig(
            base_url=os.getenv("KASPI_API_BASE_URL", DEFAULT_KASPI_API_BASE_URL),
            timeout_seconds=timeout,
        ),
    )


# Example usage:
# config = load_config_from_env()
# agent = PriceDumpingAgent(credentials, store, client_factory, config.repricing)
