"""
Per-tenant local snapshot store.

The whole tenant (records, settings, unacknowledged outbound writes) is
serialized as one JSON document under a tenant-namespaced key. The snapshot
is rewritten on every mutation, which keeps the on-disk state trivially
consistent at the cost of rewriting everything each time.

Invariants:
    - persist() never raises; failures are logged and the caller keeps its
      in-memory state
    - load() never raises; a missing or unreadable snapshot yields the
      default snapshot (default categories, nothing else)
    - No network access

How to change safely:
    - Bump SNAPSHOT_VERSION when the layout changes and keep reading the
      previous version
    - New snapshot fields need defaults so older files still validate
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from ..errors import PersistenceError
from ..models import (
    CATEGORIES,
    COLLECTIONS,
    Record,
    Tenant,
    default_categories,
    default_settings,
    now_ms,
)
from ..remote.base import WriteOp, WriteOpKind
from .kv import KeyValueStore

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class StoredRecord(BaseModel):
    """One record as persisted."""

    id: int
    fields: dict[str, Any] = Field(default_factory=dict)
    last_updated: int = 0

    @classmethod
    def from_record(cls, record: Record) -> StoredRecord:
        return cls(id=record.id, fields=dict(record.fields), last_updated=record.last_updated)

    def to_record(self) -> Record:
        return Record(id=self.id, fields=dict(self.fields), last_updated=self.last_updated)


class StoredOp(BaseModel):
    """One unacknowledged outbound write."""

    kind: str = Field(..., description="set, update or delete")
    collection: str
    doc_id: str
    fields: dict[str, Any] | None = None
    merge: bool = False

    @classmethod
    def from_op(cls, op: WriteOp) -> StoredOp:
        return cls(
            kind=op.kind.value,
            collection=op.collection,
            doc_id=op.doc_id,
            fields=op.fields,
            merge=op.merge,
        )

    def to_op(self) -> WriteOp:
        return WriteOp(
            kind=WriteOpKind(self.kind),
            collection=self.collection,
            doc_id=self.doc_id,
            fields=self.fields,
            merge=self.merge,
        )


class TenantSnapshot(BaseModel):
    """Everything persisted for one tenant."""

    version: int = SNAPSHOT_VERSION
    tenant: dict[str, Any] | None = None
    categories: list[StoredRecord] = Field(default_factory=list)
    products: list[StoredRecord] = Field(default_factory=list)
    members: list[StoredRecord] = Field(default_factory=list)
    sales: list[StoredRecord] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=default_settings)
    settings_dirty: bool = False
    outbox: list[StoredOp] = Field(default_factory=list)
    saved_at: int = 0

    def records(self, collection: str) -> list[Record]:
        return [stored.to_record() for stored in getattr(self, collection)]

    def set_records(self, collection: str, records: list[Record]) -> None:
        setattr(self, collection, [StoredRecord.from_record(r) for r in records])

    def ops(self) -> list[WriteOp]:
        return [stored.to_op() for stored in self.outbox]

    def get_tenant(self) -> Tenant | None:
        return Tenant.from_dict(self.tenant) if self.tenant else None


def default_snapshot(tenant: Tenant | None = None) -> TenantSnapshot:
    """Snapshot of a tenant that has never been persisted."""
    snapshot = TenantSnapshot(tenant=tenant.to_dict() if tenant else None)
    snapshot.set_records(CATEGORIES, default_categories())
    return snapshot


class LocalStore:
    """Tenant snapshot persistence over a KeyValueStore.

    Example:
        >>> store = LocalStore(SqliteKeyValueStore("./data/possync.db"))
        >>> snapshot = store.load("store-1")
        >>> store.persist("store-1", snapshot)
        True
    """

    def __init__(self, kv: KeyValueStore, key_prefix: str = "posData_") -> None:
        self.kv = kv
        self.key_prefix = key_prefix
        self._persist_failures = 0

    @property
    def persist_failures(self) -> int:
        return self._persist_failures

    def key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}{tenant_id}"

    def persist(self, tenant_id: str, snapshot: TenantSnapshot) -> bool:
        """Overwrite the tenant's snapshot.

        Returns:
            True if written, False if the write failed (already logged)
        """
        snapshot.saved_at = now_ms()
        key = self.key(tenant_id)
        try:
            raw = snapshot.model_dump_json()
        except PydanticSerializationError as e:
            self._persist_failures += 1
            logger.error(
                f"Failed to serialize snapshot: {e}",
                extra={"tenant_id": tenant_id, "key": key},
            )
            return False
        try:
            self.kv.set(key, raw)
        except PersistenceError as e:
            self._persist_failures += 1
            logger.error(
                f"Failed to persist snapshot: {e.message}",
                extra={"tenant_id": tenant_id, "key": key},
            )
            return False
        return True

    def load(self, tenant_id: str, tenant: Tenant | None = None) -> TenantSnapshot:
        """Read the tenant's snapshot, falling back to the default one."""
        key = self.key(tenant_id)
        try:
            raw = self.kv.get(key)
        except PersistenceError as e:
            logger.error(
                f"Failed to read snapshot: {e.message}",
                extra={"tenant_id": tenant_id, "key": key},
            )
            raw = None

        if raw is None:
            return default_snapshot(tenant)

        try:
            snapshot = TenantSnapshot.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.warning(
                "Discarding unreadable snapshot",
                extra={"tenant_id": tenant_id, "key": key, "errors": e.error_count()},
            )
            return default_snapshot(tenant)

        if snapshot.tenant is None and tenant is not None:
            snapshot.tenant = tenant.to_dict()
        return snapshot

    def clear(self, tenant_id: str) -> None:
        """Remove the tenant's snapshot."""
        key = self.key(tenant_id)
        try:
            self.kv.delete(key)
        except PersistenceError as e:
            logger.error(
                f"Failed to clear snapshot: {e.message}",
                extra={"tenant_id": tenant_id, "key": key},
            )


def snapshot_counts(snapshot: TenantSnapshot) -> dict[str, int]:
    """Record counts per collection, used in log lines."""
    counts = {collection: len(getattr(snapshot, collection)) for collection in COLLECTIONS}
    counts["outbox"] = len(snapshot.outbox)
    return counts
