"""
Base protocol and types for the remote document store.

This module defines the RemoteStore protocol that every backend implements,
along with the change-feed and write-operation types exchanged with it.

Invariants:
    - Every operation is scoped by an externally supplied tenant id
    - Throttling is reported as RateLimitedError, every other failure as
      RemoteUnavailableError
    - A subscription delivers snapshots for one collection in remote order
    - A new subscription starts from the current remote state

How to change safely:
    - Protocol changes require updating all implementations
    - Add new operations as optional with default implementations
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    TYPE_CHECKING,
    runtime_checkable,
)
import logging

if TYPE_CHECKING:
    from ..config import SyncConfig

logger = logging.getLogger(__name__)

SETTINGS_COLLECTION = "settings"
SETTINGS_DOC_ID = "store"


class ChangeType(Enum):
    """Kind of change reported by a feed."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    """One document change in a feed snapshot.

    Attributes:
        type: added, modified or removed
        id: Document id
        fields: Document fields (last known fields for removals)
    """

    type: ChangeType
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FeedSnapshot:
    """One notification batch from a subscription.

    Attributes:
        collection: Collection the subscription watches
        changes: Ordered changes since the previous snapshot
        documents: Full document set matching the subscription query
        initial: Whether this is the first snapshot of the subscription
    """

    collection: str
    changes: List[ChangeEvent] = field(default_factory=list)
    documents: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    initial: bool = False


class WriteOpKind(Enum):
    """Write operation types accepted by batch_commit."""

    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class WriteOp:
    """A single outbound write.

    Attributes:
        kind: set, update or delete
        collection: Target collection
        doc_id: Target document id
        fields: Document fields (None for deletes)
        merge: For set, merge into the existing document instead of replacing
    """

    kind: WriteOpKind
    collection: str
    doc_id: str
    fields: Optional[Dict[str, Any]] = None
    merge: bool = False

    @property
    def key(self) -> Tuple[str, str]:
        """Identity of the target record, used for per-record ordering."""
        return (self.collection, self.doc_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.collection}/{self.doc_id}"


@dataclass(frozen=True)
class QueryFilter:
    """Field comparison used by query(). op is one of ==, <, <=, >, >=."""

    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class OrderBy:
    """Sort order used by query() and windowed subscriptions."""

    field: str
    descending: bool = False


@runtime_checkable
class Subscription(Protocol):
    """A live change feed for one collection.

    Iterating yields FeedSnapshot objects until unsubscribe() is called or
    the stream breaks (RemoteUnavailableError).
    """

    collection: str

    def __aiter__(self) -> AsyncIterator[FeedSnapshot]:
        ...

    def unsubscribe(self) -> None:
        """Stop delivery. Safe to call more than once."""
        ...

    @property
    def active(self) -> bool:
        ...


@runtime_checkable
class RemoteStore(Protocol):
    """Protocol for tenant-scoped remote document stores.

    Example:
        >>> remote = InMemoryRemoteStore()
        >>> await remote.set("t1", "products", "42", {"name": "Latte"})
        >>> sub = remote.subscribe("t1", "products")
        >>> async for snapshot in sub:
        ...     handle(snapshot)
    """

    @abstractmethod
    async def get(self, tenant_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one document, None if absent."""
        ...

    @abstractmethod
    async def set(
        self,
        tenant_id: str,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        merge: bool = False,
    ) -> None:
        """Create or replace (or merge into) a document."""
        ...

    @abstractmethod
    async def delete(self, tenant_id: str, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting an absent document is not an error."""
        ...

    @abstractmethod
    async def batch_commit(self, tenant_id: str, ops: List[WriteOp]) -> None:
        """Apply several writes atomically."""
        ...

    @abstractmethod
    async def query(
        self,
        tenant_id: str,
        collection: str,
        filters: Optional[List[QueryFilter]] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Return matching documents as (doc_id, fields) pairs."""
        ...

    @abstractmethod
    def subscribe(
        self,
        tenant_id: str,
        collection: str,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> Subscription:
        """Open a live change feed for a collection."""
        ...


async def apply_write(remote: RemoteStore, tenant_id: str, op: WriteOp) -> None:
    """Dispatch one WriteOp through the matching RemoteStore call."""
    if op.kind is WriteOpKind.DELETE:
        await remote.delete(tenant_id, op.collection, op.doc_id)
    elif op.kind is WriteOpKind.UPDATE:
        await remote.set(tenant_id, op.collection, op.doc_id, op.fields or {}, merge=True)
    else:
        await remote.set(tenant_id, op.collection, op.doc_id, op.fields or {}, merge=op.merge)


def create_remote_store(config: "SyncConfig") -> RemoteStore:
    """Factory function to create a remote store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import RemoteBackend
    from .memory import InMemoryRemoteStore

    if config.remote_backend == RemoteBackend.MEMORY:
        return InMemoryRemoteStore()
    raise ValueError(f"Unsupported remote backend: {config.remote_backend}")
