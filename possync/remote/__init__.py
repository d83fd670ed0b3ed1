"""
Remote document store abstraction for possync.

This module provides a pluggable remote backend interface supporting:
- In-memory (for testing, development and offline demos)

The remote store is the authority for every tenant's data. The local
snapshot is a cache that converges with it through the change feed.

Invariants:
    - Every call is scoped by tenant id
    - Feeds deliver changes in order within a collection
    - Throttling is distinguishable from every other failure

How to change safely:
    - New backends must implement the RemoteStore protocol
    - Map the backend's throttling signal to RateLimitedError
"""

from .base import (
    SETTINGS_COLLECTION,
    SETTINGS_DOC_ID,
    ChangeEvent,
    ChangeType,
    FeedSnapshot,
    OrderBy,
    QueryFilter,
    RemoteStore,
    Subscription,
    WriteOp,
    WriteOpKind,
    apply_write,
    create_remote_store,
)
from .memory import InMemoryRemoteStore, InMemorySubscription

__all__ = [
    # Protocol and types
    "RemoteStore",
    "Subscription",
    "ChangeEvent",
    "ChangeType",
    "FeedSnapshot",
    "OrderBy",
    "QueryFilter",
    "WriteOp",
    "WriteOpKind",
    "SETTINGS_COLLECTION",
    "SETTINGS_DOC_ID",
    # Helpers
    "apply_write",
    "create_remote_store",
    # Implementations
    "InMemoryRemoteStore",
    "InMemorySubscription",
]
