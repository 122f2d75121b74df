"""
Price dumping agent: the recurring repricing loop.

For every user with an active marketplace credential, fetches the products
opted into automatic repricing, asks the repricing engine for a new price
and applies it (publish to the marketplace first, then write locally).
Failures are contained to the product or user they happen on; a cycle only
aborts when the credential list itself cannot be read.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any

from agents.repricing import RepricingEngine
from config.config import RepricingConfig
from connectors.base import ClientFactory, CompetitorPriceSource, CredentialSource, ProductStore
from models.enums import RepricingOutcome
from models.events import CYCLE_COMPLETED, PRICE_CHECK_FAILED, PRICE_UPDATED, RepricingEvent
from models.pricing import CycleReport, Credential, Decision, Product, ProductResult, UserReport
from utils.event_bus import EventBus
from utils.monitoring import RepricingMonitor

logger = logging.getLogger(__name__)


class PriceDumpingAgent:
    """Runs repricing passes over all users (scheduled) or a single user (on demand)."""

    def __init__(
        self,
        credential_source: CredentialSource,
        product_store: ProductStore,
        client_factory: ClientFactory,
        config: RepricingConfig | None = None,
        event_bus: EventBus | None = None,
        monitor: RepricingMonitor | None = None,
    ):
        self.credential_source = credential_source
        self.product_store = product_store
        self.client_factory = client_factory
        self.config = config or RepricingConfig()
        self.engine = RepricingEngine(self.config.margin)
        self.event_bus = event_bus
        self.monitor = monitor
        self.last_report: CycleReport | None = None

        self._cycle_lock = asyncio.Lock()
        # Scheduled and on-demand passes for the same user never interleave.
        # A lock lives only while some pass holds or awaits it.
        self._user_locks: dict[str, asyncio.Lock] = {}
        self._user_lock_holders: dict[str, int] = defaultdict(int)
        self._shutdown = asyncio.Event()

        logger.info(
            f"Price dumping agent init (margin={self.config.margin}, "
            f"timeout={self.config.request_timeout_seconds}s, "
            f"users={self.config.max_concurrent_users}, "
            f"products={self.config.max_concurrent_products})"
        )

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        """Stop starting new products; in-flight ones finish normally."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested for price dumping agent")
        self._shutdown.set()

    # --- Entry points --- #

    async def run_cycle(self) -> CycleReport:
        """One full pass over every user with an active credential."""
        if self._cycle_lock.locked():
            logger.warning("Previous price dumping cycle still running, skipping this one")
            return CycleReport(skipped_overlap=True, finished_at=datetime.now())

        async with self._cycle_lock:
            report = CycleReport()
            try:
                credentials = await self.credential_source.list_active_credentials()
            except Exception as e:
                logger.error(f"Failed to get active credentials, aborting cycle: {e}", exc_info=True)
                report.aborted = True
                report.error = str(e) or type(e).__name__
                report.finished_at = datetime.now()
                await self._finish_cycle(report)
                return report

            credentials = self._unique_credentials(credentials)
            logger.info(f"Starting price dumping cycle for {len(credentials)} users")

            user_slots = asyncio.Semaphore(self.config.max_concurrent_users)

            async def run_user(credential: Credential) -> UserReport:
                async with user_slots:
                    if self._shutdown.is_set():
                        return UserReport(user_id=credential.user_id, cancelled=True)
                    return await self.run_for_credential(credential)

            report.users = list(await asyncio.gather(*(run_user(c) for c in credentials)))
            report.cancelled = any(u.cancelled for u in report.users)
            report.finished_at = datetime.now()

            logger.info(
                f"Price dumping cycle completed in {report.duration_seconds:.1f}s: "
                f"updated={report.updated} skipped={report.skipped} failed={report.failed} "
                f"failed_users={report.failed_users}"
                + (" (cancelled)" if report.cancelled else "")
            )
            await self._finish_cycle(report)
            return report

    async def run_for_user(self, user_id: str) -> UserReport:
        """On-demand pass for one user, looked up through the credential source."""
        credential = await self.credential_source.get_credential(user_id)
        if credential is None:
            raise LookupError(f"no active marketplace credential for user {user_id}")
        return await self.run_for_credential(credential)

    async def run_for_credential(self, credential: Credential) -> UserReport:
        """Pass over one user's eligible products. Never raises for item failures."""
        user_id = credential.user_id
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._user_lock_holders[user_id] += 1
        try:
            async with lock:
                return await self._process_user(credential)
        finally:
            self._user_lock_holders[user_id] -= 1
            if not self._user_lock_holders[user_id]:
                del self._user_lock_holders[user_id]
                del self._user_locks[user_id]

    # --- Product settings (invoked by user-facing handlers) --- #

    async def enable_product_repricing(self, product_id: str, min_price: float = 0.0) -> Product:
        if min_price < 0:
            raise ValueError(f"min_price must be >= 0, got {min_price}")
        product = await self._get_product(product_id)
        product.repricing_enabled = True
        product.min_price = min_price
        await self.product_store.update(product)
        logger.info(
            f"Auto repricing enabled for product {product_id} ({product.name}), min_price={min_price}"
        )
        return product

    async def disable_product_repricing(self, product_id: str) -> Product:
        product = await self._get_product(product_id)
        product.repricing_enabled = False
        await self.product_store.update(product)
        logger.info(f"Auto repricing disabled for product {product_id} ({product.name})")
        return product

    async def enable_and_reprice(self, product_id: str, min_price: float = 0.0) -> UserReport:
        """Enable repricing for a product and immediately run its owner's pass."""
        product = await self.enable_product_repricing(product_id, min_price)
        return await self.run_for_user(product.user_id)

    # --- Per user / per product --- #

    async def _process_user(self, credential: Credential) -> UserReport:
        user_id = credential.user_id
        report = UserReport(user_id=user_id)

        try:
            client = self.client_factory(credential)
        except Exception as e:
            logger.error(f"Failed to create marketplace client for user {user_id}: {e}")
            report.error = f"client: {e}"
            return report

        try:
            try:
                products = await self.product_store.list_repricing_eligible(user_id)
            except Exception as e:
                logger.error(f"Failed to get products for repricing for user {user_id}: {e}")
                report.error = f"products: {e}"
                return report

            products = self._unique_eligible(products)
            if not products:
                logger.debug(f"No products for repricing for user {user_id}")
                return report

            logger.info(f"Processing {len(products)} products for repricing for user {user_id}")
            product_slots = asyncio.Semaphore(self.config.max_concurrent_products)

            async def run_product(product: Product) -> ProductResult | None:
                async with product_slots:
                    if self._shutdown.is_set():
                        return None
                    return await self.process_product(product, client)

            for result in await asyncio.gather(*(run_product(p) for p in products)):
                if result is None:
                    report.cancelled = True
                else:
                    report.record(result)
        finally:
            await self._close_client(client)

        logger.info(
            f"User {user_id} products processed: updated={report.updated} "
            f"skipped={report.skipped} failed={report.failed_products}"
        )
        return report

    async def process_product(
        self, product: Product, client: CompetitorPriceSource
    ) -> ProductResult:
        """Fetch, decide, apply. Every failure becomes a FAILED result."""
        try:
            return await self._process_product(product, client)
        except Exception as e:
            logger.exception(f"Unexpected error while repricing product {product.product_id}")
            return await self._failed(product, f"unexpected error: {str(e) or type(e).__name__}")

    async def _process_product(
        self, product: Product, client: CompetitorPriceSource
    ) -> ProductResult:
        timeout = self.config.request_timeout_seconds

        try:
            observations = await asyncio.wait_for(
                client.get_competitor_prices(product.external_id), timeout
            )
        except asyncio.TimeoutError:
            return await self._failed(product, f"competitor price fetch timed out after {timeout}s")
        except Exception as e:
            return await self._failed(product, f"failed to get competitor prices: {e}")

        try:
            decision = self.engine.decide(product.price, product.min_price, observations)
        except ValueError as e:
            return await self._failed(product, f"invalid pricing input: {e}")

        if decision.outcome == RepricingOutcome.SKIPPED_NO_COMPETITORS:
            logger.debug(f"No competitors found for product {product.product_id}")
            return self._result(product, decision)

        if decision.should_record_check:
            if decision.outcome == RepricingOutcome.SKIPPED_FLOOR_GUARD:
                logger.info(
                    f"Price below minimum threshold for product {product.product_id} "
                    f"({product.name}), skipping: candidate={decision.candidate_price:.2f} "
                    f"min_price={(product.min_price or 0.0):.2f} "
                    f"competitor={decision.min_competitor_price:.2f}"
                )
            else:
                logger.debug(
                    f"Price already optimal for product {product.product_id}: {product.price:.2f}"
                )
            try:
                await self.product_store.update_price(
                    product.product_id, product.price, decision.min_competitor_price
                )
            except Exception as e:
                return await self._failed(
                    product, f"failed to record price check: {e}", decision.min_competitor_price
                )
            return self._result(product, decision)

        return await self._apply_update(product, decision, client)

    async def _apply_update(
        self, product: Product, decision: Decision, client: CompetitorPriceSource
    ) -> ProductResult:
        new_price = decision.new_price
        min_competitor = decision.min_competitor_price

        # Publish first: the local record must never claim a price the marketplace lacks.
        try:
            await asyncio.wait_for(
                client.publish_price(product.external_id, new_price),
                self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self._failed(
                product,
                f"price publish timed out after {self.config.request_timeout_seconds}s",
                min_competitor,
            )
        except Exception as e:
            return await self._failed(product, f"failed to publish price: {e}", min_competitor)

        try:
            await self.product_store.update_price(product.product_id, new_price, min_competitor)
        except Exception as e:
            return await self._failed(
                product,
                f"price {new_price:.2f} published but local update failed: {e}",
                min_competitor,
            )

        logger.info(
            f"Price updated for product {product.product_id} ({product.name}): "
            f"{product.price:.2f} -> {new_price:.2f} "
            f"(competitor={min_competitor:.2f}, min_price={(product.min_price or 0.0):.2f})"
        )
        await self._emit(
            PRICE_UPDATED,
            {
                "user_id": product.user_id,
                "product_id": product.product_id,
                "external_id": product.external_id,
                "old_price": product.price,
                "new_price": new_price,
                "min_competitor_price": min_competitor,
            },
        )
        return self._result(product, decision)

    # --- Helpers --- #

    def _result(self, product: Product, decision: Decision) -> ProductResult:
        return ProductResult(
            product_id=product.product_id,
            user_id=product.user_id,
            outcome=decision.outcome,
            old_price=product.price,
            new_price=decision.new_price,
            min_competitor_price=decision.min_competitor_price,
        )

    async def _failed(
        self, product: Product, error: str, min_competitor_price: float | None = None
    ) -> ProductResult:
        logger.error(
            f"Failed to process product {product.product_id} "
            f"(external_id={product.external_id}, user={product.user_id}): {error}"
        )
        await self._emit(
            PRICE_CHECK_FAILED,
            {
                "user_id": product.user_id,
                "product_id": product.product_id,
                "external_id": product.external_id,
                "error": error,
            },
        )
        return ProductResult(
            product_id=product.product_id,
            user_id=product.user_id,
            outcome=RepricingOutcome.FAILED,
            old_price=product.price,
            min_competitor_price=min_competitor_price,
            error=error,
        )

    async def _get_product(self, product_id: str) -> Product:
        product = await self.product_store.get_by_id(product_id)
        if product is None:
            raise LookupError(f"product {product_id} not found")
        return product

    async def _finish_cycle(self, report: CycleReport) -> None:
        self.last_report = report
        if self.monitor is not None:
            self.monitor.record_cycle(report)
        await self._emit(
            CYCLE_COMPLETED,
            {
                "aborted": report.aborted,
                "cancelled": report.cancelled,
                "error": report.error,
                "users": len(report.users),
                "failed_users": report.failed_users,
                "counts": {outcome.value: n for outcome, n in report.counts.items()},
                "duration_seconds": report.duration_seconds,
            },
        )

    async def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(RepricingEvent(event_type=event_type, payload=payload))

    @staticmethod
    async def _close_client(client: Any) -> None:
        close = getattr(client, "close", None)
        if close is None:
            return
        try:
            result = close()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Failed to close marketplace client: {e}")

    @staticmethod
    def _unique_credentials(credentials: list[Credential]) -> list[Credential]:
        seen: dict[str, Credential] = {}
        for credential in credentials:
            if credential.user_id in seen:
                logger.warning(f"Duplicate credential for user {credential.user_id}, using the first")
                continue
            seen[credential.user_id] = credential
        return list(seen.values())

    @staticmethod
    def _unique_eligible(products: list[Product]) -> list[Product]:
        """Each product is handled by exactly one task per pass."""
        seen: dict[str, Product] = {}
        for product in products:
            if product.product_id in seen or not product.is_repricing_eligible:
                continue
            seen[product.product_id] = product
        return list(seen.values())
