"""
Integration tests for SyncCoordinator.

Tests cover:
- Bootstrap from the remote store and degraded fallback
- Sale completion flowing to the remote store
- Crash safety of queued writes
- Debounced settings push and shared cooldown
- Teardown and tenant switching
- Reconnect after a broken feed
- Sales history, sample cleanup, inactivity lock and failure alerts
"""

import asyncio
import dataclasses
from contextlib import asynccontextmanager

import pytest

from possync.config import SessionConfig
from possync.coordinator import SyncCoordinator, SyncState
from possync.errors import PosSyncError, RemoteUnavailableError
from possync.local.kv import MemoryKeyValueStore
from possync.local.store import LocalStore, default_snapshot
from possync.models import CATEGORIES, MEMBERS, PRODUCTS, SALES, Record, Tenant
from possync.remote.base import SETTINGS_COLLECTION, SETTINGS_DOC_ID
from possync.remote.memory import InMemoryRemoteStore

STORE = Tenant("store-1", name="Cafe")


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@asynccontextmanager
async def running(coordinator, tenant=STORE):
    await coordinator.start(tenant)
    try:
        yield coordinator
    finally:
        await coordinator.stop()


def seed_latte(remote, stock=10):
    remote.seed("store-1", PRODUCTS, "42", {"name": "Latte", "price": 60, "stock": stock})


class TestBootstrap:
    """Tests for start() and the initial pull."""

    @pytest.fixture
    def coordinator(self, remote, local_store, fast_config):
        return SyncCoordinator(remote, local_store, fast_config)

    @pytest.mark.asyncio
    async def test_empty_tenant_gets_default_categories(self, coordinator, remote):
        async with running(coordinator):
            status = coordinator.status()

            assert status.state is SyncState.LIVE
            assert status.degraded is False
            assert status.counts[CATEGORIES] == 4
            assert set(remote.documents("store-1", CATEGORIES)) == {"1", "2", "3", "4"}

    @pytest.mark.asyncio
    async def test_pulls_existing_remote_state(self, coordinator, remote):
        seed_latte(remote)
        remote.seed("store-1", PRODUCTS, "43", {"name": "Sample Latte", "price": 1})
        remote.seed("store-1", CATEGORIES, "1", {"name": "All", "protected": True})
        remote.seed("store-1", MEMBERS, "7", {"name": "Somchai", "phone": "081"})
        remote.seed("store-1", SETTINGS_COLLECTION, SETTINGS_DOC_ID, {"storeName": "Remote Cafe"})
        for ts in range(1, 6):
            remote.seed("store-1", SALES, str(ts), {"timestamp": ts, "items": []})

        async with running(coordinator):
            session = coordinator.session

            assert session.products.get(42).get("stock") == 10
            assert session.products.get(43) is None
            assert session.members.get(7) is not None
            assert session.settings["storeName"] == "Remote Cafe"
            assert sorted(r.id for r in session.sales.all()) == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, coordinator):
        async with running(coordinator):
            with pytest.raises(PosSyncError) as exc_info:
                await coordinator.start(Tenant("store-2"))

            assert exc_info.value.code == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_offline_start_runs_from_local_snapshot(self, coordinator, remote, local_store):
        snapshot = default_snapshot(STORE)
        snapshot.set_records(
            PRODUCTS, [Record(id=42, fields={"name": "Latte", "price": 60, "stock": 8}, last_updated=1)]
        )
        local_store.persist("store-1", snapshot)
        seed_latte(remote, stock=8)
        remote.offline = True

        async with running(coordinator):
            status = coordinator.status()
            assert status.degraded is True
            assert status.state is SyncState.RECONNECTING
            assert coordinator.session.products.get(42).get("stock") == 8

            remote.offline = False
            await wait_until(lambda: coordinator.state is SyncState.LIVE)

            assert coordinator.status().degraded is False
            assert remote.listener_count("store-1") == 5
            assert coordinator.session.products.get(42) is not None

    @pytest.mark.asyncio
    async def test_remote_edit_made_while_offline_applies_on_reconnect(
        self, coordinator, remote
    ):
        seed_latte(remote)
        async with running(coordinator):
            assert coordinator.session.products.get(42).get("price") == 60
        remote.seed("store-1", PRODUCTS, "42", {"name": "Latte", "price": 65, "stock": 10})
        remote.offline = True

        async with running(coordinator):
            assert coordinator.state is SyncState.RECONNECTING
            assert coordinator.session.products.get(42).get("price") == 60

            remote.offline = False
            await wait_until(lambda: coordinator.state is SyncState.LIVE)
            await wait_until(lambda: coordinator.session.products.get(42).get("price") == 65)

    @pytest.mark.asyncio
    async def test_failed_bootstrap_read_keeps_local_records(self, coordinator, remote, local_store):
        snapshot = default_snapshot(STORE)
        snapshot.set_records(
            PRODUCTS, [Record(id=42, fields={"name": "Latte", "price": 60}, last_updated=1)]
        )
        local_store.persist("store-1", snapshot)
        seed_latte(remote)
        remote.fail_next_reads(RemoteUnavailableError("flaky"), 1)

        async with running(coordinator):
            assert coordinator.status().degraded is True
            assert coordinator.state is SyncState.LIVE
            assert coordinator.session.products.get(42) is not None


class TestOutboundFlow:
    """Tests for local writes reaching the remote store."""

    @pytest.fixture
    def coordinator(self, remote, local_store, fast_config):
        return SyncCoordinator(remote, local_store, fast_config)

    @pytest.mark.asyncio
    async def test_latte_sale_reaches_remote(self, coordinator, remote, local_store):
        seed_latte(remote)

        async with running(coordinator):
            session = coordinator.session
            sale = session.record_sale(
                {"items": [{"productId": 42, "quantity": 2, "price": 60}]}
            )

            assert session.products.get(42).get("stock") == 8
            assert len(local_store.load("store-1").outbox) == 2

            await coordinator.queue.flush()

            assert remote.documents("store-1", PRODUCTS)["42"]["stock"] == 8
            assert str(sale.id) in remote.documents("store-1", SALES)
            assert local_store.load("store-1").outbox == []
            assert coordinator.status().last_synced_at is not None

    @pytest.mark.asyncio
    async def test_queued_writes_survive_a_crash(self, coordinator, remote, kv, fast_config):
        seed_latte(remote)

        async with running(coordinator):
            coordinator.session.record_sale(
                {"items": [{"productId": 42, "quantity": 2, "price": 60}]}
            )
            crashed_kv = MemoryKeyValueStore()
            crashed_kv.set("posData_store-1", kv.get("posData_store-1"))

        fresh_remote = InMemoryRemoteStore()
        seed_latte(fresh_remote)
        restarted = SyncCoordinator(fresh_remote, LocalStore(crashed_kv), fast_config)

        async with running(restarted):
            assert restarted.session.products.get(42).get("stock") == 8
            assert restarted.queue.stats["enqueued"] == 2

            await restarted.queue.flush()

            assert fresh_remote.documents("store-1", PRODUCTS)["42"]["stock"] == 8
            assert len(fresh_remote.documents("store-1", SALES)) == 1

    @pytest.mark.asyncio
    async def test_settings_burst_pushes_once_with_latest_value(self, coordinator, remote):
        async with running(coordinator):
            for i in range(5):
                coordinator.update_settings({"storeName": f"Cafe {i}"})

            await wait_until(lambda: remote.writes_for(SETTINGS_COLLECTION))
            await asyncio.sleep(0.1)

            writes = remote.writes_for(SETTINGS_COLLECTION)
            assert len(writes) == 1
            assert writes[0].fields["storeName"] == "Cafe 4"
            assert coordinator.session.settings_dirty is False

    @pytest.mark.asyncio
    async def test_rate_limit_pauses_settings_push_too(self, coordinator, remote, fast_config):
        async with running(coordinator):
            remote.rate_limit_next_writes(1)
            loop = asyncio.get_running_loop()
            started = loop.time()

            coordinator.session.products.add({"name": "Mocha", "price": 55})
            coordinator.update_settings({"storeName": "Throttled"})

            await wait_until(lambda: remote.writes_for(SETTINGS_COLLECTION))
            await coordinator.queue.flush()

            settings_at = next(t for t, op in remote.write_log if op.collection == SETTINGS_COLLECTION)
            assert settings_at - started >= fast_config.outbound.cooldown_seconds * 0.9
            assert coordinator.cooldown.trips == 1
            assert len(remote.writes_for(PRODUCTS)) == 1

    @pytest.mark.asyncio
    async def test_unpushed_settings_are_pushed_after_restart(self, coordinator, remote):
        async with running(coordinator):
            coordinator.update_settings({"storeName": "Before restart"})

        assert remote.writes_for(SETTINGS_COLLECTION) == []

        async with running(coordinator):
            await wait_until(lambda: remote.writes_for(SETTINGS_COLLECTION))

            doc = remote.documents("store-1", SETTINGS_COLLECTION)[SETTINGS_DOC_ID]
            assert doc["storeName"] == "Before restart"

    @pytest.mark.asyncio
    async def test_sustained_failures_notify_once(self, remote, local_store, fast_config):
        messages = []
        coordinator = SyncCoordinator(remote, local_store, fast_config, notify=messages.append)

        async with running(coordinator):
            remote.offline = True
            for i in range(3):
                coordinator.session.products.add({"name": f"P{i}", "price": i})
            await coordinator.queue.flush()

            assert len(messages) == 1
            assert coordinator.status().consecutive_failures == 3
            assert coordinator.status().deferred_writes == 3

            remote.offline = False
            await coordinator.queue.flush()

            assert coordinator.status().consecutive_failures == 0
            assert coordinator.status().queued_writes == 0
            assert len(messages) == 1


class TestTeardown:
    """Tests for stop() and tenant switching."""

    @pytest.fixture
    def coordinator(self, remote, local_store, fast_config):
        return SyncCoordinator(remote, local_store, fast_config)

    @pytest.mark.asyncio
    async def test_nothing_fires_after_stop(self, coordinator, remote):
        await coordinator.start(STORE)
        coordinator.update_settings({"storeName": "Never pushed"})
        coordinator.session.products.add({"name": "Mocha", "price": 55})
        await coordinator.stop()
        writes_after_stop = len(remote.write_log)
        await remote.set("store-1", PRODUCTS, "99", {"name": "Remote"})
        await asyncio.sleep(0.3)

        assert remote.listener_count() == 0
        assert coordinator.state is SyncState.STOPPED
        assert coordinator.session is None
        assert len(remote.write_log) == writes_after_stop + 1
        assert remote.writes_for(SETTINGS_COLLECTION) == []

    @pytest.mark.asyncio
    async def test_stop_keeps_unsent_writes_in_outbox(self, coordinator, remote, local_store):
        await coordinator.start(STORE)
        coordinator.session.products.add({"name": "Mocha", "price": 55})

        await coordinator.stop()

        pending = local_store.load("store-1").ops()
        assert len(pending) + len(remote.writes_for(PRODUCTS)) == 1

    @pytest.mark.asyncio
    async def test_stop_during_bootstrap_leaves_nothing_running(self, local_store, fast_config):
        snapshot = default_snapshot(STORE)
        snapshot.settings_dirty = True
        local_store.persist("store-1", snapshot)
        remote = InMemoryRemoteStore(latency=0.1)
        coordinator = SyncCoordinator(remote, local_store, fast_config)

        starting = asyncio.create_task(coordinator.start(STORE))
        await asyncio.sleep(0.05)
        await coordinator.stop()
        status = await starting

        assert status.state is SyncState.STOPPED
        assert coordinator.state is SyncState.STOPPED
        assert coordinator.session is None
        assert remote.listener_count() == 0

        async with running(coordinator):
            assert coordinator.state is SyncState.LIVE

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, coordinator):
        await coordinator.stop()
        await coordinator.start(STORE)
        await coordinator.stop()
        await coordinator.stop()

        assert coordinator.state is SyncState.STOPPED

    @pytest.mark.asyncio
    async def test_switch_tenant_isolates_state(self, coordinator, remote):
        other = Tenant("store-2", name="Bakery")
        await coordinator.start(STORE)
        try:
            mocha = coordinator.session.products.add({"name": "Mocha", "price": 55})
            await coordinator.queue.flush()

            await coordinator.switch_tenant(other)

            assert coordinator.session.tenant.id == "store-2"
            assert coordinator.session.products.get(mocha.id) is None
            assert remote.listener_count("store-1") == 0
            assert remote.listener_count("store-2") == 5

            await coordinator.switch_tenant(STORE)

            assert coordinator.session.products.get(mocha.id) is not None
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_create_tenant_provisions_remote(self, coordinator, remote):
        await coordinator.create_tenant(Tenant("store-3", name="Noodles", phone="02"))
        try:
            settings = remote.documents("store-3", SETTINGS_COLLECTION)[SETTINGS_DOC_ID]
            assert settings["storeName"] == "Noodles"
            assert settings["storePhone"] == "02"
            assert len(remote.documents("store-3", CATEGORIES)) == 4
            assert coordinator.status().tenant_id == "store-3"
            assert coordinator.session.settings["storeName"] == "Noodles"
        finally:
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_create_tenant_without_activation(self, coordinator, remote):
        await coordinator.create_tenant(Tenant("store-4"), activate=False)

        assert coordinator.state is SyncState.IDLE
        assert len(remote.documents("store-4", CATEGORIES)) == 4


class TestFeedsAndOperations:
    """Tests for live feeds and explicit operations."""

    @pytest.fixture
    def coordinator(self, remote, local_store, fast_config):
        return SyncCoordinator(remote, local_store, fast_config)

    @pytest.mark.asyncio
    async def test_remote_change_is_applied(self, coordinator, remote):
        seed_latte(remote)

        async with running(coordinator):
            await remote.set("store-1", PRODUCTS, "42", {"stock": 3}, merge=True)

            await wait_until(lambda: coordinator.session.products.get(42).get("stock") == 3)

    @pytest.mark.asyncio
    async def test_reconnects_after_broken_feed(self, coordinator, remote):
        async with running(coordinator):
            remote.break_subscriptions("store-1")
            await wait_until(lambda: coordinator.state is SyncState.RECONNECTING)
            await wait_until(lambda: coordinator.state is SyncState.LIVE)

            assert remote.listener_count("store-1") == 5
            await remote.set("store-1", PRODUCTS, "50", {"name": "After reconnect"})
            await wait_until(lambda: coordinator.session.products.get(50) is not None)

    @pytest.mark.asyncio
    async def test_force_sync_sales_loads_history_page(self, coordinator, remote):
        for ts in range(1, 9):
            remote.seed("store-1", SALES, str(ts), {"timestamp": ts, "items": []})

        async with running(coordinator):
            assert len(coordinator.session.sales) == 3

            count = await coordinator.force_sync_sales()

            assert count == 8
            assert len(coordinator.session.sales) == 8

    @pytest.mark.asyncio
    async def test_load_sales_history_pages_backwards(self, coordinator, remote):
        for ts in range(1, 9):
            remote.seed("store-1", SALES, str(ts), {"timestamp": ts, "items": []})

        async with running(coordinator):
            page = await coordinator.load_sales_history(before=5, limit=3)

            assert [r.get("timestamp") for r in page] == [4, 3, 2]
            assert len(coordinator.session.sales) == 3

    @pytest.mark.asyncio
    async def test_remove_sample_products(self, coordinator, remote):
        remote.seed("store-1", PRODUCTS, "43", {"name": "Sample Latte", "price": 1})
        seed_latte(remote)

        async with running(coordinator):
            removed = await coordinator.remove_sample_products()

            assert removed == 1
            assert set(remote.documents("store-1", PRODUCTS)) == {"42"}

    @pytest.mark.asyncio
    async def test_clear_local_data_pulls_the_tenant_again(self, coordinator, remote, kv):
        seed_latte(remote)

        async with running(coordinator):
            assert await coordinator.clear_local_data() is True

            session = coordinator.session
            assert session.products.get(42).get("stock") == 10
            assert session.counts()[CATEGORIES] == 4
            assert "Latte" in kv.get("posData_store-1")

    @pytest.mark.asyncio
    async def test_clear_local_data_offline_keeps_defaults(self, coordinator, remote):
        seed_latte(remote)

        async with running(coordinator):
            remote.fail_next_reads(RemoteUnavailableError("flaky"), 1)

            assert await coordinator.clear_local_data() is False
            assert coordinator.session.products.get(42) is None
            assert coordinator.session.counts()[CATEGORIES] == 4

    @pytest.mark.asyncio
    async def test_operations_require_a_tenant(self, coordinator):
        with pytest.raises(PosSyncError) as exc_info:
            await coordinator.force_sync_sales()

        assert exc_info.value.code == "NO_TENANT"


class TestInactivityLock:
    """Tests for the auto-lock timer."""

    @pytest.fixture
    def lock_config(self, fast_config):
        return dataclasses.replace(
            fast_config,
            session=SessionConfig(auto_lock_minutes=0.001, autosave_interval_seconds=60.0),
        )

    @pytest.mark.asyncio
    async def test_lock_engages_after_inactivity(self, remote, local_store, lock_config):
        locks = []
        coordinator = SyncCoordinator(
            remote, local_store, lock_config, on_lock=lambda: locks.append(True)
        )

        async with running(coordinator):
            await wait_until(lambda: coordinator.locked)

            assert locks == [True]
            assert coordinator.status().locked is True

            coordinator.unlock()
            assert coordinator.locked is False

    @pytest.mark.asyncio
    async def test_touch_postpones_lock(self, remote, local_store, lock_config):
        coordinator = SyncCoordinator(remote, local_store, lock_config)

        async with running(coordinator):
            for _ in range(5):
                await asyncio.sleep(0.02)
                coordinator.touch()

            assert coordinator.locked is False

    @pytest.mark.asyncio
    async def test_async_lock_callback(self, remote, local_store, lock_config):
        called = asyncio.Event()

        async def on_lock():
            called.set()

        coordinator = SyncCoordinator(remote, local_store, lock_config, on_lock=on_lock)

        async with running(coordinator):
            await asyncio.wait_for(called.wait(), timeout=2.0)
