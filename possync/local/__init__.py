"""
Local persistence for possync.

This module handles:
- Synchronous key-value backends (SQLite file, in-memory)
- Whole-tenant snapshot serialization with pydantic models

The local snapshot is a cache of the remote store plus the writes that have
not reached it yet. It is what the device runs from while offline.

Invariants:
    - One key per tenant; tenants never share state
    - Writes complete before the mutating call returns
"""

from .kv import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from .store import LocalStore, StoredOp, StoredRecord, TenantSnapshot, default_snapshot

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "LocalStore",
    "TenantSnapshot",
    "StoredRecord",
    "StoredOp",
    "default_snapshot",
]
