"""
Module: connectors.static_price_source

Deterministic competitor price source. Observations are fixed per external
product id; failures and delays can be injected per product so cycle
behaviour is reproducible.
"""

import asyncio
from collections.abc import Iterable

from models.pricing import CompetitorPrice


class StaticCompetitorPriceSource:
    """
    Serves fixed competitor offers and records every published price.
    """

    def __init__(
        self,
        observations: dict[str, Iterable[CompetitorPrice]] | None = None,
        fetch_errors: dict[str, Exception] | None = None,
        publish_errors: dict[str, Exception] | None = None,
        delay_seconds: float = 0.0,
    ):
        self.observations: dict[str, list[CompetitorPrice]] = {
            external_id: list(prices) for external_id, prices in (observations or {}).items()
        }
        self.fetch_errors = dict(fetch_errors or {})
        self.publish_errors = dict(publish_errors or {})
        self.delay_seconds = delay_seconds
        self.published: list[tuple[str, float]] = []
        self.fetch_calls: list[str] = []

    async def get_competitor_prices(self, external_id: str) -> list[CompetitorPrice]:
        self.fetch_calls.append(external_id)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if external_id in self.fetch_errors:
            raise self.fetch_errors[external_id]
        return list(self.observations.get(external_id, []))

    async def publish_price(self, external_id: str, new_price: float) -> None:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if external_id in self.publish_errors:
            raise self.publish_errors[external_id]
        self.published.append((external_id, new_price))

    def set_offers(self, external_id: str, prices: dict[str, float]) -> None:
        """Replace the offers of one product from a seller -> price mapping."""
        self.observations[external_id] = [
            CompetitorPrice(seller_name=seller, price=price) for seller, price in prices.items()
        ]
