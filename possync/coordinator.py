"""
Sync coordinator: lifecycle of one tenant's synchronization.

States:
    Idle -> Bootstrapping -> Live -> (Reconnecting <-> Live) -> Stopped

Bootstrapping loads the local snapshot, pulls settings, categories,
products, members and recent sales once, and falls back to the local
snapshot (still going Live, flagged degraded) when the pull fails. Live
runs the change feeds, the outbound queue, the debounced settings push, the
autosave loop and the inactivity lock timer. A broken feed moves the
coordinator to Reconnecting until every feed is open again.

Invariants:
    - At most one tenant session exists per coordinator
    - Local state is persisted before any remote step for the same change
    - After stop() returns nothing fires: no feed, timer, drain or push
    - Bootstrap never drops a local record that still has a pending write

How to change safely:
    - Every task or timer started here must be cancelled in stop()
    - Keep status() cheap; the UI polls it
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable

from .apply.reconciler import ChangeFeedReconciler
from .config import SyncConfig
from .errors import PosSyncError, RateLimitedError
from .local.store import LocalStore
from .models import (
    CATEGORIES,
    MEMBERS,
    PRODUCTS,
    SALES,
    Record,
    Tenant,
    default_categories,
    default_settings,
    now_ms,
)
from .outbound.cooldown import CooldownGate
from .outbound.debounce import Debouncer
from .outbound.queue import OutboundWriteQueue
from .remote.base import (
    SETTINGS_COLLECTION,
    SETTINGS_DOC_ID,
    ChangeType,
    OrderBy,
    QueryFilter,
    RemoteStore,
    WriteOp,
    WriteOpKind,
)
from .session import TenantSession

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """Coordinator lifecycle states."""

    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SyncStatus:
    """Point-in-time view of the sync engine, polled by the UI.

    Attributes:
        state: Lifecycle state
        tenant_id: Active tenant (None when idle or stopped)
        degraded: Running from the local snapshot after a failed bootstrap
        queued_writes: Outbound writes not yet acknowledged
        deferred_writes: Writes parked after a non-throttling failure
        cooling_down: Outbound dispatch paused by a rate limit
        cooldown_remaining: Seconds left in the cooldown
        consecutive_failures: Remote failures since the last success
        last_synced_at: Last successful remote write (Unix ms)
        last_error: Message of the most recent remote failure
        locked: Inactivity lock engaged
        counts: Records per collection
    """

    state: SyncState
    tenant_id: str | None = None
    degraded: bool = False
    queued_writes: int = 0
    deferred_writes: int = 0
    cooling_down: bool = False
    cooldown_remaining: float = 0.0
    consecutive_failures: int = 0
    last_synced_at: int | None = None
    last_error: str | None = None
    locked: bool = False
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class SyncCoordinator:
    """Owns the tenant session and every background activity around it.

    Example:
        >>> coordinator = SyncCoordinator(remote, local_store, config)
        >>> await coordinator.start(Tenant("store-1", name="Cafe"))
        >>> coordinator.session.record_sale({"items": [...]})
        >>> coordinator.status().state
        <SyncState.LIVE: 'live'>
        >>> await coordinator.stop()
    """

    def __init__(
        self,
        remote: RemoteStore,
        local_store: LocalStore,
        config: SyncConfig | None = None,
        on_lock: Callable[[], Any] | None = None,
        notify: Callable[[str], Any] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            remote: Remote document store
            local_store: Local snapshot persistence
            config: Engine configuration (defaults if omitted)
            on_lock: Called when the inactivity lock engages
            notify: Called once when remote failures become sustained
        """
        self.remote = remote
        self.local_store = local_store
        self.config = config or SyncConfig()
        self.on_lock = on_lock
        self.notify = notify

        self.cooldown = CooldownGate(self.config.outbound.cooldown_seconds)
        self.session: TenantSession | None = None
        self.queue: OutboundWriteQueue | None = None
        self.reconciler: ChangeFeedReconciler | None = None
        self.settings_debouncer: Debouncer | None = None

        self._state = SyncState.IDLE
        self._degraded = False
        self._locked = False
        self._consecutive_failures = 0
        self._alerted = False
        self._last_error: str | None = None
        self._last_synced_at: int | None = None

        self._autosave_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._lock_handle: asyncio.TimerHandle | None = None
        self._background: set[asyncio.Task] = set()
        self._feed_failed = False

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def locked(self) -> bool:
        return self._locked

    def require_session(self) -> TenantSession:
        if self.session is None:
            raise PosSyncError("No active tenant", code="NO_TENANT")
        return self.session

    # Lifecycle

    async def start(self, tenant: Tenant) -> SyncStatus:
        """Bootstrap a tenant and go Live.

        Raises:
            PosSyncError: If a tenant is already active
        """
        if self._state not in (SyncState.IDLE, SyncState.STOPPED):
            raise PosSyncError(
                f"Coordinator is {self._state.value}; stop it before starting a tenant",
                code="INVALID_STATE",
            )

        self._state = SyncState.BOOTSTRAPPING
        self._degraded = False
        self._locked = False
        logger.info("Bootstrapping tenant", extra={"tenant_id": tenant.id})

        self.queue = OutboundWriteQueue(
            self.remote,
            tenant.id,
            self.config.outbound,
            self.cooldown,
            on_ack=self._on_ack,
            on_failure=self._record_failure,
            on_success=self._record_success,
        )
        session = TenantSession(tenant, self.local_store, self.queue)
        self.session = session
        self.settings_debouncer = Debouncer(
            self.config.outbound.debounce_seconds, self._push_settings, name="settings"
        )
        session.on_settings_changed = self.settings_debouncer.trigger

        outbox = session.load()
        self.queue.extend(outbox)

        try:
            await self._bootstrap(session)
        except Exception as e:
            self._degraded = True
            self._record_failure(e)
            logger.warning(
                f"Bootstrap failed, continuing from local snapshot: {e}",
                extra={"tenant_id": tenant.id},
            )

        if self.session is not session or self._state is not SyncState.BOOTSTRAPPING:
            logger.info("Tenant stopped during bootstrap", extra={"tenant_id": tenant.id})
            return self.status()

        session.categories.ensure_protected()
        session.persist()
        if session.settings_dirty:
            self.settings_debouncer.trigger()

        self._state = SyncState.LIVE
        self.reconciler = ChangeFeedReconciler(
            self.remote, session, self.config.feed, on_error=self._on_feed_error
        )
        self.reconciler.start()
        self._autosave_task = asyncio.create_task(self._autosave_loop(), name="autosave")
        self.touch()

        logger.info(
            "Tenant live",
            extra={"tenant_id": tenant.id, "degraded": self._degraded, **session.counts()},
        )
        return self.status()

    async def stop(self) -> None:
        """Tear down the tenant: feeds, timers, queue, then a final persist."""
        if self._state in (SyncState.IDLE, SyncState.STOPPED):
            return
        tenant_id = self.session.tenant.id if self.session else None
        logger.info("Stopping tenant", extra={"tenant_id": tenant_id})
        self._state = SyncState.STOPPED

        await _cancel(self._reconnect_task)
        self._reconnect_task = None
        if self.reconciler is not None:
            await self.reconciler.stop()
        if self.settings_debouncer is not None:
            await self.settings_debouncer.close()
        await _cancel(self._autosave_task)
        self._autosave_task = None
        if self._lock_handle is not None:
            self._lock_handle.cancel()
            self._lock_handle = None
        for task in list(self._background):
            await _cancel(task)
        self._background.clear()
        if self.queue is not None:
            await self.queue.close()
        if self.session is not None:
            self.session.close()

        self.session = None
        self.queue = None
        self.reconciler = None
        self.settings_debouncer = None
        logger.info("Tenant stopped", extra={"tenant_id": tenant_id})

    async def switch_tenant(self, tenant: Tenant) -> SyncStatus:
        """Discard the active tenant's in-memory state and start another."""
        await self.stop()
        return await self.start(tenant)

    async def create_tenant(self, tenant: Tenant, activate: bool = True) -> Tenant:
        """Provision a new store remotely (settings and default categories).

        Raises:
            RemoteError: If provisioning fails
        """
        settings = default_settings()
        settings.update(
            {"storeName": tenant.name, "storeAddress": tenant.address, "storePhone": tenant.phone}
        )
        ops = [WriteOp(WriteOpKind.SET, SETTINGS_COLLECTION, SETTINGS_DOC_ID, settings)]
        ops.extend(
            WriteOp(WriteOpKind.SET, CATEGORIES, str(record.id), record.to_document())
            for record in default_categories()
        )
        await self.remote.batch_commit(tenant.id, ops)
        logger.info("Tenant created", extra={"tenant_id": tenant.id, "store_name": tenant.name})
        if activate:
            await self.switch_tenant(tenant)
        return tenant

    async def _bootstrap(self, session: TenantSession) -> None:
        """Pull the tenant once. Nothing is applied unless every read succeeds."""
        tenant_id = session.tenant.id
        settings = await self.remote.get(tenant_id, SETTINGS_COLLECTION, SETTINGS_DOC_ID)
        categories = await self.remote.query(tenant_id, CATEGORIES)
        products = await self.remote.query(tenant_id, PRODUCTS)
        members = await self.remote.query(tenant_id, MEMBERS)
        sales = await self.remote.query(
            tenant_id,
            SALES,
            order_by=OrderBy("timestamp", descending=True),
            limit=self.config.feed.sales_window,
        )

        if not categories:
            seeded = default_categories()
            await self.remote.batch_commit(
                tenant_id,
                [
                    WriteOp(WriteOpKind.SET, CATEGORIES, str(r.id), r.to_document())
                    for r in seeded
                ],
            )
            categories = [(str(r.id), r.to_document()) for r in seeded]
            logger.info("Seeded default categories", extra={"tenant_id": tenant_id})

        if settings is not None:
            session.merge_remote_settings(settings)
        samples = self.config.feed.sample_product_names
        session.categories.replace_all(_records(categories))
        session.products.replace_all(
            r for r in _records(products) if r.get("name") not in samples
        )
        session.members.replace_all(_records(members))
        session.sales.replace_all(_records(sales))
        self._record_success()

    # Operations

    async def force_sync_sales(self) -> int:
        """Replace the recent-sales view with the latest history page.

        Returns:
            Number of sales now in the view
        """
        session = self.require_session()
        documents = await self.remote.query(
            session.tenant.id,
            SALES,
            order_by=OrderBy("timestamp", descending=True),
            limit=self.config.feed.sales_history_limit,
        )
        if session.sales.replace_all(_records(documents)):
            session.persist()
        logger.info(
            "Sales view refreshed",
            extra={"tenant_id": session.tenant.id, "sales": len(session.sales)},
        )
        return len(session.sales)

    async def load_sales_history(
        self, before: int | None = None, limit: int | None = None
    ) -> list[Record]:
        """Page through older sales without touching the live view.

        Args:
            before: Only sales with timestamp < before (Unix ms)
            limit: Page size (defaults to the history limit)
        """
        session = self.require_session()
        filters = [QueryFilter("timestamp", "<", before)] if before is not None else None
        documents = await self.remote.query(
            session.tenant.id,
            SALES,
            filters=filters,
            order_by=OrderBy("timestamp", descending=True),
            limit=limit or self.config.feed.sales_history_limit,
        )
        return list(_records(documents))

    async def remove_sample_products(self) -> int:
        """Delete denylisted sample products remotely and locally.

        Returns:
            Number of remote documents deleted
        """
        session = self.require_session()
        samples = self.config.feed.sample_product_names
        documents = await self.remote.query(session.tenant.id, PRODUCTS)
        doomed = [doc_id for doc_id, fields in documents if fields.get("name") in samples]
        if doomed:
            await self.remote.batch_commit(
                session.tenant.id,
                [WriteOp(WriteOpKind.DELETE, PRODUCTS, doc_id) for doc_id in doomed],
            )

        changed = False
        for record in list(session.products.all()):
            if record.get("name") in samples:
                changed = session.products.apply_remote_change(ChangeType.REMOVED, record) or changed
        if changed:
            session.persist()
        logger.info(
            "Removed sample products",
            extra={"tenant_id": session.tenant.id, "count": len(doomed)},
        )
        return len(doomed)

    async def clear_local_data(self) -> bool:
        """Drop the local copy of the tenant and pull it again.

        Returns:
            True if the remote pull succeeded; otherwise the device keeps
            running from defaults until the next successful pull
        """
        session = self.require_session()
        session.clear_data()
        try:
            await self._bootstrap(session)
        except Exception as e:
            self._record_failure(e)
            logger.warning(
                f"Pull after clearing local data failed: {e}",
                extra={"tenant_id": session.tenant.id},
            )
            return False
        if self.session is not session:
            return False
        session.categories.ensure_protected()
        session.persist()
        logger.info(
            "Local data cleared and pulled again",
            extra={"tenant_id": session.tenant.id, **session.counts()},
        )
        return True

    def update_settings(self, patch: dict[str, Any]) -> None:
        self.require_session().update_settings(patch)

    # Settings push

    async def _push_settings(self) -> None:
        session = self.session
        if session is None or self._state is SyncState.STOPPED:
            return
        if self.cooldown.active:
            self.settings_debouncer.trigger(delay=self.cooldown.remaining())
            return

        payload = dict(session.settings)
        try:
            await self.remote.set(
                session.tenant.id, SETTINGS_COLLECTION, SETTINGS_DOC_ID, payload, merge=True
            )
        except RateLimitedError as e:
            self.cooldown.trip()
            self._record_failure(e)
            self.settings_debouncer.trigger(delay=self.cooldown.remaining())
            return
        except Exception as e:
            self._record_failure(e)
            logger.error(
                f"Settings push failed: {e}",
                extra={"tenant_id": session.tenant.id},
                exc_info=True,
            )
            return
        session.settings_pushed(payload)
        self._record_success()

    # Feed failures

    def _on_feed_error(self, collection: str, error: Exception) -> None:
        self._record_failure(error)
        if self._state is SyncState.RECONNECTING:
            self._feed_failed = True
            return
        if self._state is not SyncState.LIVE:
            return
        self._state = SyncState.RECONNECTING
        logger.warning(
            "Change feed lost, reconnecting",
            extra={
                "collection": collection,
                "delay_seconds": self.config.feed.reconnect_delay_seconds,
            },
        )
        self._reconnect_task = asyncio.create_task(self._reconnect(), name="reconnect")

    async def _reconnect(self) -> None:
        try:
            while self._state is SyncState.RECONNECTING and self.reconciler is not None:
                await asyncio.sleep(self.config.feed.reconnect_delay_seconds)
                await self.reconciler.stop()
                self._feed_failed = False
                self.reconciler.start()
                if not self._feed_failed:
                    self._state = SyncState.LIVE
                    self._degraded = False
                    logger.info("Change feeds reconnected")
        finally:
            self._reconnect_task = None

    # Failure accounting

    def _on_ack(self, op: WriteOp) -> None:
        logger.debug("Write acknowledged", extra={"op": str(op)})
        if self.session is not None:
            self.session.persist()

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        self._alerted = False
        self._degraded = False
        self._last_synced_at = now_ms()

    def _record_failure(self, error: Exception) -> None:
        self._consecutive_failures += 1
        self._last_error = str(error)
        threshold = self.config.session.failure_alert_threshold
        if self._consecutive_failures < threshold or self._alerted:
            return
        self._alerted = True
        message = f"Sync has failed {self._consecutive_failures} times in a row: {error}"
        logger.error(message, extra={"consecutive_failures": self._consecutive_failures})
        if self.notify is not None:
            self._fire_callback(self.notify, message)

    def _fire_callback(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception as e:
            logger.error(f"Callback failed: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    # Timers

    async def _autosave_loop(self) -> None:
        interval = self.config.session.autosave_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if self.session is not None:
                self.session.persist()

    def touch(self) -> None:
        """Record user activity; restarts the inactivity lock timer."""
        if self._lock_handle is not None:
            self._lock_handle.cancel()
            self._lock_handle = None
        minutes = self.config.session.auto_lock_minutes
        if minutes <= 0 or self._state not in (SyncState.LIVE, SyncState.RECONNECTING):
            return
        loop = asyncio.get_running_loop()
        self._lock_handle = loop.call_later(minutes * 60, self._engage_lock)

    def unlock(self) -> None:
        self._locked = False
        self.touch()

    def _engage_lock(self) -> None:
        self._lock_handle = None
        if self.session is not None:
            self.session.persist()
        self._locked = True
        logger.info("Inactivity lock engaged")
        if self.on_lock is not None:
            self._fire_callback(self.on_lock)

    # Status

    def status(self) -> SyncStatus:
        stats = self.queue.stats if self.queue is not None else {}
        session = self.session
        return SyncStatus(
            state=self._state,
            tenant_id=session.tenant.id if session else None,
            degraded=self._degraded,
            queued_writes=len(self.queue.pending()) if self.queue is not None else 0,
            deferred_writes=stats.get("deferred", 0),
            cooling_down=self.cooldown.active,
            cooldown_remaining=round(self.cooldown.remaining(), 3),
            consecutive_failures=self._consecutive_failures,
            last_synced_at=self._last_synced_at,
            last_error=self._last_error,
            locked=self._locked,
            counts=session.counts() if session else {},
        )


def _records(documents: list[tuple[str, dict[str, Any]]]) -> list[Record]:
    records = []
    for doc_id, fields in documents:
        try:
            records.append(Record.from_document(doc_id, fields))
        except (TypeError, ValueError):
            logger.warning("Skipping document with a non-numeric id", extra={"doc_id": doc_id})
    return records


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
