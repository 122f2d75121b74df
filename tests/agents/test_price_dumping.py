import asyncio
import logging

import pytest

from agents.price_dumping import PriceDumpingAgent
from config.config import RepricingConfig
from connectors.in_memory_store import InMemoryCredentialSource
from connectors.static_price_source import StaticCompetitorPriceSource
from models.enums import RepricingOutcome
from models.events import CYCLE_COMPLETED, PRICE_CHECK_FAILED, PRICE_UPDATED
from models.pricing import CompetitorPrice
from tests.mocks import BrokenCredentialSource, FlakyProductStore, GatedPriceSource
from utils.event_bus import EventBus
from utils.monitoring import RepricingMonitor

# --- Test Fixtures --- #


@pytest.fixture
def store(products) -> FlakyProductStore:
    return FlakyProductStore(products)


@pytest.fixture
def source(observations) -> StaticCompetitorPriceSource:
    return StaticCompetitorPriceSource(observations)


@pytest.fixture
def credential_source(credentials) -> InMemoryCredentialSource:
    return InMemoryCredentialSource(credentials)


@pytest.fixture
def agent(credential_source, store, source) -> PriceDumpingAgent:
    return PriceDumpingAgent(
        credential_source,
        store,
        lambda credential: source,
        RepricingConfig(margin=1.0, request_timeout_seconds=1.0, max_concurrent_products=2),
    )


def outcomes_by_product(report) -> dict[str, RepricingOutcome]:
    return {r.product_id: r.outcome for user in report.users for r in user.results}


# --- Full cycle --- #


@pytest.mark.asyncio
async def test_cycle_applies_every_decision_branch(agent, store, source):
    report = await agent.run_cycle()

    assert not report.aborted
    assert outcomes_by_product(report) == {
        "A": RepricingOutcome.UPDATED,
        "B": RepricingOutcome.UPDATED,
        "C": RepricingOutcome.SKIPPED_FLOOR_GUARD,
        "D": RepricingOutcome.SKIPPED_ALREADY_OPTIMAL,
        "E": RepricingOutcome.SKIPPED_NO_COMPETITORS,
    }
    assert report.updated == 2
    assert report.skipped == 3
    assert report.failed == 0
    assert report.finished_at is not None
    assert set(source.published) == {("EXT-A", 14999), ("EXT-B", 2799)}


@pytest.mark.asyncio
async def test_cycle_persists_prices_and_checks(agent, store):
    await agent.run_cycle()

    a = await store.get_by_id("A")
    assert a.price == 14999
    assert a.competitor_min_price == 15000
    assert a.last_price_check_at is not None

    # Floor guard: price kept, competitor minimum refreshed
    c = await store.get_by_id("C")
    assert c.price == 10500
    assert c.competitor_min_price == 10000
    assert c.last_price_check_at is not None

    # Already optimal: price kept, check refreshed
    d = await store.get_by_id("D")
    assert d.price == 17999
    assert d.competitor_min_price == 18000
    assert d.last_price_check_at is not None

    # No competitors: nothing written
    e = await store.get_by_id("E")
    assert e.last_price_check_at is None
    assert e.competitor_min_price == 0.0


@pytest.mark.asyncio
async def test_ineligible_products_are_never_touched(agent, store, source):
    await agent.run_cycle()

    assert "EXT-F" not in source.fetch_calls  # out of stock
    assert "EXT-G" not in source.fetch_calls  # repricing disabled
    assert (await store.get_by_id("F")).price == 1200
    assert (await store.get_by_id("G")).price == 2500


@pytest.mark.asyncio
async def test_second_cycle_is_idempotent(agent, source):
    await agent.run_cycle()
    report = await agent.run_cycle()

    assert report.updated == 0
    assert report.counts[RepricingOutcome.SKIPPED_ALREADY_OPTIMAL] == 3
    assert len(source.published) == 2


# --- Failure isolation --- #


@pytest.mark.asyncio
async def test_fetch_failure_does_not_stop_siblings(agent, store, source, caplog):
    source.fetch_errors["EXT-A"] = ConnectionError("network blip")

    with caplog.at_level(logging.ERROR):
        report = await agent.run_cycle()

    outcomes = outcomes_by_product(report)
    assert outcomes["A"] == RepricingOutcome.FAILED
    assert outcomes["B"] == RepricingOutcome.UPDATED
    assert outcomes["D"] == RepricingOutcome.SKIPPED_ALREADY_OPTIMAL
    assert (await store.get_by_id("A")).price == 15500
    assert (await store.get_by_id("B")).price == 2799
    assert "network blip" in caplog.text
    assert "EXT-A" in caplog.text


@pytest.mark.asyncio
async def test_publish_failure_leaves_store_untouched(agent, store, source):
    source.publish_errors["EXT-A"] = RuntimeError("marketplace rejected price")

    report = await agent.run_cycle()

    assert outcomes_by_product(report)["A"] == RepricingOutcome.FAILED
    assert all(write[0] != "A" for write in store.price_writes)
    a = await store.get_by_id("A")
    assert a.price == 15500
    assert a.last_price_check_at is None


@pytest.mark.asyncio
async def test_store_write_failure_after_publish_is_failed(agent, store, source, caplog):
    store.failing_writes.add("A")

    with caplog.at_level(logging.ERROR):
        report = await agent.run_cycle()

    result = next(r for u in report.users for r in u.results if r.product_id == "A")
    assert result.outcome == RepricingOutcome.FAILED
    assert "published but local update failed" in result.error
    assert ("EXT-A", 14999) in source.published
    assert outcomes_by_product(report)["B"] == RepricingOutcome.UPDATED


@pytest.mark.asyncio
async def test_record_check_write_failure_is_failed(agent, store):
    store.failing_writes.add("C")

    report = await agent.run_cycle()

    assert outcomes_by_product(report)["C"] == RepricingOutcome.FAILED
    assert report.updated == 2


@pytest.mark.asyncio
async def test_product_without_floor_is_updated(credential_source, products, source):
    products[0].min_price = None
    store = FlakyProductStore(products)
    agent = PriceDumpingAgent(credential_source, store, lambda c: source)

    report = await agent.run_cycle()

    assert outcomes_by_product(report)["A"] == RepricingOutcome.UPDATED
    assert (await store.get_by_id("A")).price == 14999
    assert report.updated == 2


@pytest.mark.asyncio
async def test_unexpected_error_fails_only_that_product(credential_source, store, observations):
    class BrokenForA(StaticCompetitorPriceSource):
        async def get_competitor_prices(self, external_id):
            if external_id == "EXT-A":
                return None  # not iterable
            return await super().get_competitor_prices(external_id)

    source = BrokenForA(observations)
    source.observations["EXT-D"] = [CompetitorPrice("X", 17000)]
    monitor = RepricingMonitor()
    agent = PriceDumpingAgent(credential_source, store, lambda c: source, monitor=monitor)

    report = await agent.run_cycle()

    u1 = next(u for u in report.users if u.user_id == "U1")
    failed_a = next(r for r in u1.results if r.product_id == "A")
    assert failed_a.outcome == RepricingOutcome.FAILED
    assert "unexpected error" in failed_a.error
    assert outcomes_by_product(report)["D"] == RepricingOutcome.UPDATED
    assert (await store.get_by_id("D")).price == 16999
    assert agent.last_report is report
    assert monitor.metrics_history["failed"][-1][1] == 1


@pytest.mark.asyncio
async def test_non_numeric_competitor_price_is_failed(agent, store, source):
    source.observations["EXT-E"] = [CompetitorPrice("X", None)]

    report = await agent.run_cycle()

    assert outcomes_by_product(report)["E"] == RepricingOutcome.FAILED
    assert report.counts[RepricingOutcome.SKIPPED_NO_COMPETITORS] == 0
    assert (await store.get_by_id("E")).price == 8000


@pytest.mark.asyncio
async def test_hung_fetch_times_out_for_that_product_only(credential_source, store, observations):
    class SlowForA(StaticCompetitorPriceSource):
        async def get_competitor_prices(self, external_id):
            if external_id == "EXT-A":
                await asyncio.sleep(5)
            return await super().get_competitor_prices(external_id)

    source = SlowForA(observations)
    agent = PriceDumpingAgent(
        credential_source,
        store,
        lambda credential: source,
        RepricingConfig(request_timeout_seconds=0.05),
    )

    report = await agent.run_cycle()

    result = next(r for u in report.users for r in u.results if r.product_id == "A")
    assert result.outcome == RepricingOutcome.FAILED
    assert "timed out" in result.error
    assert outcomes_by_product(report)["B"] == RepricingOutcome.UPDATED


@pytest.mark.asyncio
async def test_hung_publish_times_out(credential_source, store, observations):
    class SlowPublish(StaticCompetitorPriceSource):
        async def publish_price(self, external_id, new_price):
            await asyncio.sleep(5)

    agent = PriceDumpingAgent(
        credential_source,
        store,
        lambda credential: SlowPublish(observations),
        RepricingConfig(request_timeout_seconds=0.05),
    )

    report = await agent.run_cycle()

    assert report.updated == 0
    assert report.failed == 2
    assert {write[0] for write in store.price_writes} == {"C", "D"}


@pytest.mark.asyncio
async def test_credential_failure_aborts_cycle(store, source, caplog):
    agent = PriceDumpingAgent(BrokenCredentialSource(), store, lambda credential: source)

    with caplog.at_level(logging.ERROR):
        report = await agent.run_cycle()

    assert report.aborted
    assert "credential store unavailable" in report.error
    assert report.users == []
    assert source.fetch_calls == []
    assert "aborting cycle" in caplog.text
    assert agent.last_report is report


@pytest.mark.asyncio
async def test_product_listing_failure_skips_only_that_user(credential_source, products, source):
    store = FlakyProductStore(products, failing_users={"U1"})
    agent = PriceDumpingAgent(credential_source, store, lambda credential: source)

    report = await agent.run_cycle()

    assert report.failed_users == 1
    u1 = next(u for u in report.users if u.user_id == "U1")
    assert u1.failed and "database timeout" in u1.error
    assert outcomes_by_product(report) == {
        "D": RepricingOutcome.SKIPPED_ALREADY_OPTIMAL,
        "E": RepricingOutcome.SKIPPED_NO_COMPETITORS,
    }


@pytest.mark.asyncio
async def test_client_factory_failure_skips_only_that_user(credential_source, store, source):
    def factory(credential):
        if credential.user_id == "U2":
            raise ValueError("cannot decrypt api key")
        return source

    agent = PriceDumpingAgent(credential_source, store, factory)
    report = await agent.run_cycle()

    assert report.failed_users == 1
    assert report.updated == 2


@pytest.mark.asyncio
async def test_invalid_stored_price_is_failed(credential_source, products, source):
    products[0].price = -5
    store = FlakyProductStore(products)
    agent = PriceDumpingAgent(credential_source, store, lambda credential: source)

    report = await agent.run_cycle()

    assert outcomes_by_product(report)["A"] == RepricingOutcome.FAILED
    assert outcomes_by_product(report)["B"] == RepricingOutcome.UPDATED


# --- Concurrency --- #


@pytest.mark.asyncio
async def test_cycles_never_overlap(credential_source, store):
    source = GatedPriceSource()
    agent = PriceDumpingAgent(credential_source, store, lambda credential: source)

    first = asyncio.create_task(agent.run_cycle())
    await asyncio.wait_for(source.started.wait(), 1)
    assert agent.is_running

    second = await agent.run_cycle()
    assert second.skipped_overlap
    assert second.processed == 0

    source.release.set()
    report = await asyncio.wait_for(first, 1)
    assert not report.skipped_overlap
    assert report.counts[RepricingOutcome.SKIPPED_NO_COMPETITORS] == 5
    assert not agent.is_running


@pytest.mark.asyncio
async def test_concurrent_passes_for_same_user_publish_once(agent, credentials, source):
    u1 = credentials[0]

    first, second = await asyncio.gather(
        agent.run_for_credential(u1), agent.run_for_credential(u1)
    )

    assert [p for p in source.published if p[0] == "EXT-A"] == [("EXT-A", 14999)]
    assert first.updated + second.updated == 2


@pytest.mark.asyncio
async def test_user_locks_are_released_after_passes(agent, credentials):
    await asyncio.gather(*(agent.run_for_credential(c) for c in credentials + credentials))
    await agent.run_cycle()

    assert agent._user_locks == {}
    assert agent._user_lock_holders == {}


@pytest.mark.asyncio
async def test_duplicate_products_processed_once(credential_source, products, source):
    class DuplicatingStore(FlakyProductStore):
        async def list_repricing_eligible(self, user_id):
            listed = await super().list_repricing_eligible(user_id)
            return listed + listed

    agent = PriceDumpingAgent(credential_source, DuplicatingStore(products), lambda c: source)
    report = await agent.run_cycle()

    assert report.processed == 5
    assert sorted(source.published) == [("EXT-A", 14999), ("EXT-B", 2799)]


@pytest.mark.asyncio
async def test_shutdown_abandons_pending_work(agent, source):
    agent.request_shutdown()

    report = await agent.run_cycle()

    assert report.cancelled
    assert report.processed == 0
    assert source.fetch_calls == []


@pytest.mark.asyncio
async def test_client_is_closed_after_user_pass(credential_source, store, observations):
    class ClosingSource(StaticCompetitorPriceSource):
        closed = 0

        async def close(self):
            self.closed += 1

    clients = []

    def factory(credential):
        client = ClosingSource(observations)
        clients.append(client)
        return client

    agent = PriceDumpingAgent(credential_source, store, factory)
    await agent.run_cycle()

    assert len(clients) == 2
    for client in clients:
        assert client.closed == 1


# --- On-demand entry points --- #


@pytest.mark.asyncio
async def test_run_for_user_only_touches_that_user(agent, source):
    report = await agent.run_for_user("U1")

    assert report.user_id == "U1"
    assert report.updated == 2
    assert {r.product_id for r in report.results} == {"A", "B", "C"}
    assert "EXT-D" not in source.fetch_calls


@pytest.mark.asyncio
async def test_run_for_unknown_user_raises(agent):
    with pytest.raises(LookupError):
        await agent.run_for_user("nobody")


@pytest.mark.asyncio
async def test_enable_and_reprice(agent, store, source):
    report = await agent.enable_and_reprice("G", min_price=1500)

    g = await store.get_by_id("G")
    assert g.repricing_enabled
    assert g.min_price == 1500
    assert g.price == 1999
    assert ("EXT-G", 1999) in source.published
    assert report.user_id == "U2"


@pytest.mark.asyncio
async def test_enable_with_floor_above_candidate(agent, store):
    await agent.enable_and_reprice("G", min_price=2100)

    g = await store.get_by_id("G")
    assert g.price == 2500
    assert g.competitor_min_price == 2000


@pytest.mark.asyncio
async def test_disable_product_repricing(agent, store, source):
    await agent.disable_product_repricing("A")
    await agent.run_cycle()

    assert "EXT-A" not in source.fetch_calls
    assert (await store.get_by_id("A")).repricing_enabled is False


@pytest.mark.asyncio
async def test_enable_rejects_bad_input(agent):
    with pytest.raises(ValueError):
        await agent.enable_product_repricing("A", min_price=-1)
    with pytest.raises(LookupError):
        await agent.enable_product_repricing("missing")
    with pytest.raises(LookupError):
        await agent.disable_product_repricing("missing")


# --- Events and monitoring --- #


@pytest.mark.asyncio
async def test_events_are_published(credential_source, store, source):
    bus = EventBus()
    received = {PRICE_UPDATED: [], PRICE_CHECK_FAILED: [], CYCLE_COMPLETED: []}
    for event_type, sink in received.items():

        async def collect(event, sink=sink):
            sink.append(event)

        bus.subscribe(event_type, collect)
    source.fetch_errors["EXT-D"] = TimeoutError("slow")

    agent = PriceDumpingAgent(credential_source, store, lambda c: source, event_bus=bus)
    await agent.run_cycle()

    assert {e.payload["product_id"] for e in received[PRICE_UPDATED]} == {"A", "B"}
    assert [e.payload["product_id"] for e in received[PRICE_CHECK_FAILED]] == ["D"]
    assert len(received[CYCLE_COMPLETED]) == 1
    assert received[CYCLE_COMPLETED][0].payload["counts"]["updated"] == 2


@pytest.mark.asyncio
async def test_monitor_records_cycle(credential_source, store, source):
    monitor = RepricingMonitor()
    agent = PriceDumpingAgent(credential_source, store, lambda c: source, monitor=monitor)

    await agent.run_cycle()

    assert monitor.metrics_history["updated"][-1][1] == 2
    assert monitor.metrics_history["failure_rate_percent"][-1][1] == 0.0


@pytest.mark.asyncio
async def test_report_frame(agent):
    report = await agent.run_cycle()
    frame = report.to_frame()

    assert len(frame) == 5
    assert set(frame["outcome"]) == {
        "updated",
        "skipped_floor_guard",
        "skipped_already_optimal",
        "skipped_no_competitors",
    }
    assert frame.loc[frame["product_id"] == "A", "new_price"].iloc[0] == 14999


@pytest.mark.asyncio
async def test_competitor_offers_can_change_between_cycles(agent, store, source):
    await agent.run_cycle()
    source.observations["EXT-A"] = [CompetitorPrice("X", 14000), CompetitorPrice("Y", 14500)]

    await agent.run_cycle()

    assert (await store.get_by_id("A")).price == 13999
