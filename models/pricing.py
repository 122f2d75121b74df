"""
Pricing-related data models for the seller-assistant repricing worker.
Includes the Product record, competitor observations, the engine Decision
and the per-user / per-cycle reports produced by the dispatch loop.
"""

from dataclasses import dataclass, field
from datetime import datetime

import pandas as pd

from .enums import DecisionAction, RepricingOutcome


@dataclass
class Product:
    """
    A marketplace product owned by a user.

    ``min_price`` is the seller's floor; 0 means no floor.
    """

    product_id: str
    user_id: str
    external_id: str
    sku: str = ""
    name: str = ""
    price: float = 0.0
    min_price: float = 0.0
    competitor_min_price: float = 0.0
    repricing_enabled: bool = False
    current_stock: int = 0
    currency: str = "KZT"
    last_price_check_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_repricing_eligible(self) -> bool:
        return self.repricing_enabled and self.current_stock > 0


@dataclass(frozen=True)
class CompetitorPrice:
    """One competitor offer observed for a product."""

    seller_name: str
    price: float


@dataclass(frozen=True)
class Credential:
    """Decrypted marketplace credential of a single user."""

    user_id: str
    api_key: str = field(repr=False)
    merchant_id: str


@dataclass(frozen=True)
class Decision:
    """Result of the repricing engine for one product."""

    action: DecisionAction
    outcome: RepricingOutcome
    new_price: float | None = None
    min_competitor_price: float | None = None
    candidate_price: float | None = None

    @property
    def is_update(self) -> bool:
        return self.action == DecisionAction.UPDATE

    @property
    def should_record_check(self) -> bool:
        """Skips that still refresh the stored competitor minimum."""
        return self.outcome in (
            RepricingOutcome.SKIPPED_FLOOR_GUARD,
            RepricingOutcome.SKIPPED_ALREADY_OPTIMAL,
        )


@dataclass
class ProductResult:
    """What happened to one product during one pass."""

    product_id: str
    user_id: str
    outcome: RepricingOutcome
    old_price: float
    new_price: float | None = None
    min_competitor_price: float | None = None
    error: str | None = None


def _empty_counts() -> dict[RepricingOutcome, int]:
    return {outcome: 0 for outcome in RepricingOutcome}


@dataclass
class UserReport:
    """Aggregated outcome counts for one user's pass."""

    user_id: str
    counts: dict[RepricingOutcome, int] = field(default_factory=_empty_counts)
    results: list[ProductResult] = field(default_factory=list)
    error: str | None = None
    cancelled: bool = False

    def record(self, result: ProductResult) -> None:
        self.results.append(result)
        self.counts[result.outcome] += 1

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def updated(self) -> int:
        return self.counts[RepricingOutcome.UPDATED]

    @property
    def skipped(self) -> int:
        return sum(n for outcome, n in self.counts.items() if outcome.is_skip)

    @property
    def failed_products(self) -> int:
        return self.counts[RepricingOutcome.FAILED]


@dataclass
class CycleReport:
    """Aggregated result of one full repricing cycle."""

    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    users: list[UserReport] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False
    skipped_overlap: bool = False
    error: str | None = None

    @property
    def counts(self) -> dict[RepricingOutcome, int]:
        totals = _empty_counts()
        for user in self.users:
            for outcome, n in user.counts.items():
                totals[outcome] += n
        return totals

    @property
    def processed(self) -> int:
        return sum(self.counts.values())

    @property
    def updated(self) -> int:
        return self.counts[RepricingOutcome.UPDATED]

    @property
    def skipped(self) -> int:
        return sum(n for outcome, n in self.counts.items() if outcome.is_skip)

    @property
    def failed(self) -> int:
        return self.counts[RepricingOutcome.FAILED]

    @property
    def failed_users(self) -> int:
        return sum(1 for user in self.users if user.failed)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_frame(self) -> pd.DataFrame:
        """Per-product results as a DataFrame (one row per product)."""
        columns = [
            "user_id",
            "product_id",
            "outcome",
            "old_price",
            "new_price",
            "min_competitor_price",
            "error",
        ]
        rows = [
            {
                "user_id": r.user_id,
                "product_id": r.product_id,
                "outcome": r.outcome.value,
                "old_price": r.old_price,
                "new_price": r.new_price,
                "min_competitor_price": r.min_competitor_price,
                "error": r.error,
            }
            for user in self.users
            for r in user.results
        ]
        return pd.DataFrame(rows, columns=columns)
