"""
Module: connectors.base

Contracts of the collaborators consumed by the repricing worker.
"""

from collections.abc import Callable
from typing import Protocol

from models.pricing import CompetitorPrice, Credential, Product


class CredentialSource(Protocol):
    async def list_active_credentials(self) -> list[Credential]:
        """All users with an active, decrypted marketplace credential."""
        ...

    async def get_credential(self, user_id: str) -> Credential | None:
        ...


class CompetitorPriceSource(Protocol):
    async def get_competitor_prices(self, external_id: str) -> list[CompetitorPrice]:
        """Current competitor offers for a product; may be empty."""
        ...

    async def publish_price(self, external_id: str, new_price: float) -> None:
        """Push a new price to the marketplace. Raises on failure."""
        ...


class ProductStore(Protocol):
    async def list_repricing_eligible(self, user_id: str) -> list[Product]:
        """Products of a user with repricing enabled and stock > 0."""
        ...

    async def update_price(
        self, product_id: str, new_price: float, competitor_min_price: float
    ) -> None:
        """Atomically set price and competitor minimum, bumping the last-checked time."""
        ...

    async def get_by_id(self, product_id: str) -> Product | None:
        ...

    async def update(self, product: Product) -> None:
        ...


ClientFactory = Callable[[Credential], CompetitorPriceSource]
