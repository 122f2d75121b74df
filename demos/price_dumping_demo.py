"""
Demo worker for the price dumping agent.

Wires the agent to the in-memory product store, an in-memory credential
source and a deterministic competitor price source, then either runs a
single cycle (``--once``) or keeps cycling on the configured interval until
interrupted.

Run with: python -m demos.price_dumping_demo --once
"""

import argparse
import asyncio
import logging
import signal

from agents.price_dumping import PriceDumpingAgent
from config.config import SchedulerConfig, load_config_from_env
from connectors.in_memory_store import InMemoryCredentialSource, InMemoryProductStore
from connectors.static_price_source import StaticCompetitorPriceSource
from models.events import PRICE_UPDATED, RepricingEvent
from models.pricing import CompetitorPrice, Credential, Product
from utils.event_bus import EventBus
from utils.logger import get_logger
from utils.monitoring import RepricingMonitor
from utils.scheduler import RepricingScheduler

logger = logging.getLogger("price-dumping-demo")


def build_demo_data() -> tuple[list[Credential], list[Product], StaticCompetitorPriceSource]:
    credentials = [
        Credential(user_id="U1", api_key="demo-key-1", merchant_id="M1"),
        Credential(user_id="U2", api_key="demo-key-2", merchant_id="M2"),
    ]
    products = [
        Product("P1", "U1", "K-1001", sku="PH-15", name="Smartphone X", price=15500,
                repricing_enabled=True, current_stock=12),
        Product("P2", "U1", "K-1002", sku="HP-02", name="Headphones", price=10500,
                min_price=10000, repricing_enabled=True, current_stock=4),
        Product("P3", "U1", "K-1003", sku="TB-07", name="Tablet", price=17999,
                repricing_enabled=True, current_stock=2),
        Product("P4", "U2", "K-2001", sku="WT-01", name="Smart Watch", price=8000,
                min_price=5000, repricing_enabled=True, current_stock=9),
        Product("P5", "U2", "K-2002", sku="CB-01", name="Cable", price=1200,
                repricing_enabled=True, current_stock=0),
    ]
    source = StaticCompetitorPriceSource(
        observations={
            "K-1001": [CompetitorPrice("TechnoShop KZ", 15000)],
            "K-1002": [CompetitorPrice("Mega Store", 10000)],
            "K-1003": [CompetitorPrice("Digital World", 20000), CompetitorPrice("Tech Master", 18000)],
        },
        fetch_errors={"K-2001": ConnectionError("marketplace unreachable")},
    )
    return credentials, products, source


async def log_price_update(event: RepricingEvent) -> None:
    payload = event.payload
    logger.info(
        f"[event] {payload['product_id']}: {payload['old_price']:.2f} -> {payload['new_price']:.2f}"
    )


async def main(once: bool, interval_minutes: float | None) -> None:
    config = load_config_from_env()
    credentials, products, source = build_demo_data()

    event_bus = EventBus()
    event_bus.subscribe(PRICE_UPDATED, log_price_update)
    agent = PriceDumpingAgent(
        InMemoryCredentialSource(credentials),
        InMemoryProductStore(products),
        lambda credential: source,
        config.repricing,
        event_bus=event_bus,
        monitor=RepricingMonitor(),
    )

    if once:
        report = await agent.run_cycle()
        print(report.to_frame().to_string(index=False))
        return

    scheduler_config = config.scheduler
    if interval_minutes is not None:
        scheduler_config = SchedulerConfig(
            cycle_interval_minutes=interval_minutes, run_on_start=scheduler_config.run_on_start
        )
    scheduler = RepricingScheduler(agent, scheduler_config)
    scheduler.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass
    try:
        await stop.wait()
    finally:
        await scheduler.shutdown()
        logger.info("Worker stopped gracefully")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Price dumping demo worker")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--interval", type=float, default=None, help="cycle interval in minutes")
    args = parser.parse_args()
    get_logger()  # root logger: project format, LOG_LEVEL
    try:
        asyncio.run(main(args.once, args.interval))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
