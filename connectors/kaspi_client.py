"""
Module: connectors.kaspi_client

Async client for the Kaspi merchant cabinet API, bound to one user's
credential. Implements the competitor price source contract.
"""

import logging
from typing import Any

import httpx

from config.config import KaspiClientConfig
from models.pricing import CompetitorPrice, Credential

logger = logging.getLogger(__name__)


class KaspiAPIError(Exception):
    """Kaspi API returned an error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        prefix = f"Kaspi API error {status_code}" if status_code else "Kaspi API error"
        super().__init__(f"{prefix}: {message}")


def round_to_tenge(price: float) -> float:
    """Kaspi prices are whole tenge; fractional parts are dropped."""
    return float(int(price))


class KaspiClient:
    """
    Usage:
        async with KaspiClient(credential) as client:
            offers = await client.get_competitor_prices("12345")
            await client.publish_price("12345", min(o.price for o in offers) - 1)
    """

    def __init__(
        self,
        credential: Credential,
        config: KaspiClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credential = credential
        self.config = config or KaspiClientConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "KaspiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=self.config.timeout_seconds,
                headers={
                    "Authorization": f"Bearer {self.credential.api_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _product_path(self, external_id: str, suffix: str) -> str:
        return f"/merchants/{self.credential.merchant_id}/products/{external_id}/{suffix}"

    async def _request(self, method: str, path: str, payload: dict | None = None) -> Any:
        client = self._get_client()
        try:
            response = await client.request(method, path, json=payload)
        except httpx.TimeoutException as e:
            raise KaspiAPIError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise KaspiAPIError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise KaspiAPIError(
                f"{method} {path} returned {response.text[:200]!r}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise KaspiAPIError(f"{method} {path} returned invalid JSON") from e

    async def get_competitor_prices(self, external_id: str) -> list[CompetitorPrice]:
        body = await self._request("GET", self._product_path(external_id, "offers"))
        offers = (body or {}).get("data", [])
        prices = []
        for offer in offers:
            if offer.get("merchantId") == self.credential.merchant_id:
                continue  # our own offer
            try:
                price = float(offer["price"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed offer for {external_id}: {offer}")
                continue
            if price < 0:
                logger.warning(f"Skipping negative offer price for {external_id}: {price}")
                continue
            prices.append(
                CompetitorPrice(
                    seller_name=offer.get("merchantName", "unknown"),
                    price=round_to_tenge(price),
                )
            )
        return prices

    async def publish_price(self, external_id: str, new_price: float) -> None:
        await self._request(
            "PUT",
            self._product_path(external_id, "price"),
            {"price": new_price},
        )
        logger.debug(f"Published price {new_price:.2f} for {external_id}")


def kaspi_client_factory(config: KaspiClientConfig | None = None):
    """Client factory for PriceDumpingAgent: one KaspiClient per credential."""

    def factory(credential: Credential) -> KaspiClient:
        return KaspiClient(credential, config)

    return factory
