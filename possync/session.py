"""
Tenant session: all in-memory state of the active store.

A TenantSession is built per tenant by the coordinator and disposed on
teardown or tenant switch. It owns the four repositories, the store settings
and the outbound queue the repositories write through, and it is the only
thing that serializes state to the local store.

Invariants:
    - Exactly one tenant per session; nothing is shared between sessions
    - persist() writes the whole tenant, outbox included
    - After close() nothing is persisted or enqueued

How to change safely:
    - New state that must survive restart goes into TenantSnapshot and into
      snapshot()/load() together
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from .apply.repository import (
    CategoryRepository,
    EntityRepository,
    MemberRepository,
    ProductRepository,
    SaleRepository,
)
from .errors import ValidationError
from .local.store import LocalStore, StoredOp, TenantSnapshot, default_snapshot, snapshot_counts
from .models import (
    CATEGORIES,
    COLLECTIONS,
    MEMBERS,
    PRODUCTS,
    SALES,
    IdGenerator,
    Record,
    Tenant,
    default_settings,
)
from .outbound.queue import OutboundWriteQueue
from .remote.base import WriteOp, WriteOpKind

logger = logging.getLogger(__name__)


class TenantSession:
    """In-memory state of one tenant.

    Example:
        >>> session = TenantSession(Tenant("store-1"), local_store, queue)
        >>> outbox = session.load()
        >>> session.record_sale({"items": [{"productId": 42, "quantity": 2, "price": 60}]})
    """

    def __init__(
        self,
        tenant: Tenant,
        local_store: LocalStore,
        queue: OutboundWriteQueue | None = None,
        ids: IdGenerator | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            tenant: The active store
            local_store: Snapshot persistence
            queue: Outbound queue (None for a purely local session)
            ids: Record id generator
        """
        self.tenant = tenant
        self.local_store = local_store
        self.queue = queue
        self.ids = ids or IdGenerator()
        self.settings: dict[str, Any] = default_settings()
        self.settings_dirty = False
        self.on_settings_changed: Callable[[], None] | None = None
        self._closed = False

        hooks: dict[str, Any] = {
            "persist": self.persist,
            "enqueue": self._enqueue,
            "is_pending": self._is_pending,
        }
        self.categories = CategoryRepository(self.ids, **hooks)
        self.products = ProductRepository(self.ids, **hooks)
        self.members = MemberRepository(self.ids, **hooks)
        self.sales = SaleRepository(self.ids, self.products, self.members, **hooks)
        self._repositories: dict[str, EntityRepository] = {
            CATEGORIES: self.categories,
            PRODUCTS: self.products,
            MEMBERS: self.members,
            SALES: self.sales,
        }

    @property
    def closed(self) -> bool:
        return self._closed

    def repository(self, collection: str) -> EntityRepository:
        try:
            return self._repositories[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    # Persistence

    def load(self) -> list[WriteOp]:
        """Populate memory from the local store.

        Returns:
            The persisted outbox, for the caller to re-enqueue
        """
        snapshot = self.local_store.load(self.tenant.id, self.tenant)
        self._apply_snapshot(snapshot)
        logger.info(
            "Loaded local snapshot",
            extra={"tenant_id": self.tenant.id, **snapshot_counts(snapshot)},
        )
        return snapshot.ops()

    def snapshot(self) -> TenantSnapshot:
        snapshot = TenantSnapshot(
            tenant=self.tenant.to_dict(),
            settings=dict(self.settings),
            settings_dirty=self.settings_dirty,
            outbox=[StoredOp.from_op(op) for op in self.queue.pending()] if self.queue else [],
        )
        for collection in COLLECTIONS:
            snapshot.set_records(collection, self._repositories[collection].all())
        return snapshot

    def persist(self) -> bool:
        """Write the whole tenant to the local store. Never raises."""
        if self._closed:
            return False
        return self.local_store.persist(self.tenant.id, self.snapshot())

    def close(self) -> None:
        """Persist one last time and refuse further writes."""
        if self._closed:
            return
        self.persist()
        self._closed = True
        logger.info("Tenant session closed", extra={"tenant_id": self.tenant.id})

    def _apply_snapshot(self, snapshot: TenantSnapshot) -> None:
        for collection in COLLECTIONS:
            self._repositories[collection].load(snapshot.records(collection))
        self.settings = {**default_settings(), **snapshot.settings}
        self.settings_dirty = snapshot.settings_dirty

    # Outbound hooks

    def _enqueue(self, op: WriteOp) -> None:
        if self._closed or self.queue is None:
            return
        self.queue.enqueue(op)

    def _is_pending(self, collection: str, doc_id: str) -> bool:
        return self.queue is not None and self.queue.is_pending(collection, doc_id)

    # Settings

    def update_settings(self, patch: dict[str, Any]) -> None:
        """Apply a local settings change and schedule the debounced push."""
        self.settings = {**self.settings, **patch}
        self.settings_dirty = True
        self.persist()
        if self.on_settings_changed is not None:
            self.on_settings_changed()

    def merge_remote_settings(self, fields: dict[str, Any]) -> bool:
        """Merge the remote settings document over local settings.

        An unpushed local change wins; the pending push will overwrite the
        remote copy.

        Returns:
            True if local settings changed
        """
        if self.settings_dirty:
            return False
        merged = {**self.settings, **fields}
        if merged == self.settings:
            return False
        self.settings = merged
        return True

    def settings_pushed(self, pushed: dict[str, Any]) -> None:
        """Clear the dirty flag if nothing changed since the push."""
        if pushed == self.settings:
            self.settings_dirty = False
            self.persist()

    # Operations

    def record_sale(self, fields: dict[str, Any]) -> Record:
        """Record a completed sale (stock decremented in the same step)."""
        return self.sales.add(fields)

    def export_data(self) -> str:
        """Whole-tenant JSON backup."""
        return self.snapshot().model_dump_json(indent=2)

    def import_data(self, raw: str) -> dict[str, int]:
        """Replace local state with a backup and push every record.

        Raises:
            ValidationError: If the backup cannot be parsed

        Returns:
            Imported record counts per collection
        """
        try:
            snapshot = TenantSnapshot.model_validate_json(raw)
        except PydanticValidationError as e:
            raise ValidationError(
                "Backup file is not a valid snapshot",
                errors=[str(err["msg"]) for err in e.errors()],
            ) from e

        self._apply_snapshot(snapshot)
        self.categories.ensure_protected()
        self.settings_dirty = True
        for collection in COLLECTIONS:
            for record in self._repositories[collection].all():
                self._enqueue(
                    WriteOp(WriteOpKind.SET, collection, str(record.id), record.to_document())
                )
        self.persist()
        if self.on_settings_changed is not None:
            self.on_settings_changed()

        counts = {collection: len(self._repositories[collection]) for collection in COLLECTIONS}
        logger.info("Imported backup", extra={"tenant_id": self.tenant.id, **counts})
        return counts

    def clear_data(self) -> None:
        """Drop the local copy of this tenant.

        Remote data is untouched. A live change feed only carries later
        edits, so bringing the rest back takes a fresh pull (see
        SyncCoordinator.clear_local_data). Unsent writes stay in the outbox.
        """
        self.local_store.clear(self.tenant.id)
        self._apply_snapshot(default_snapshot(self.tenant))
        if self.queue is not None and self.queue.pending():
            self.persist()
        logger.warning("Local data cleared", extra={"tenant_id": self.tenant.id})

    def counts(self) -> dict[str, int]:
        return {collection: len(repo) for collection, repo in self._repositories.items()}
