"""
Module: connectors.in_memory_store

In-memory product store and credential source used by the demo worker and
the tests. Records are copied on the way in and out so callers never share
mutable state with the store.
"""

import asyncio
from dataclasses import replace
from datetime import datetime

from models.pricing import Credential, Product


class InMemoryProductStore:
    """
    Dict-backed product store. Every write holds a lock, so each record
    update is atomic with respect to other coroutines.
    """

    def __init__(self, products: list[Product] | None = None):
        self._products: dict[str, Product] = {}
        self._lock = asyncio.Lock()
        for product in products or []:
            self._products[product.product_id] = replace(product)

    async def list_repricing_eligible(self, user_id: str) -> list[Product]:
        async with self._lock:
            return [
                replace(p)
                for p in self._products.values()
                if p.user_id == user_id and p.is_repricing_eligible
            ]

    async def list_by_user(self, user_id: str) -> list[Product]:
        async with self._lock:
            return [replace(p) for p in self._products.values() if p.user_id == user_id]

    async def update_price(
        self, product_id: str, new_price: float, competitor_min_price: float
    ) -> None:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                raise LookupError(f"product {product_id} not found")
            now = datetime.now()
            product.price = new_price
            product.competitor_min_price = competitor_min_price
            product.last_price_check_at = now
            product.updated_at = now

    async def get_by_id(self, product_id: str) -> Product | None:
        async with self._lock:
            product = self._products.get(product_id)
            return replace(product) if product else None

    async def update(self, product: Product) -> None:
        async with self._lock:
            if product.product_id not in self._products:
                raise LookupError(f"product {product.product_id} not found")
            self._products[product.product_id] = replace(product, updated_at=datetime.now())

    async def upsert(self, product: Product) -> None:
        async with self._lock:
            self._products[product.product_id] = replace(product)


class InMemoryCredentialSource:
    """Holds already-decrypted credentials keyed by user id."""

    def __init__(self, credentials: list[Credential] | None = None):
        self._credentials: dict[str, Credential] = {
            c.user_id: c for c in credentials or []
        }
        self._inactive: set[str] = set()

    async def list_active_credentials(self) -> list[Credential]:
        return [
            c for user_id, c in self._credentials.items() if user_id not in self._inactive
        ]

    async def get_credential(self, user_id: str) -> Credential | None:
        if user_id in self._inactive:
            return None
        return self._credentials.get(user_id)

    def add(self, credential: Credential) -> None:
        self._credentials[credential.user_id] = credential
        self._inactive.discard(credential.user_id)

    def deactivate(self, user_id: str) -> None:
        self._inactive.add(user_id)
