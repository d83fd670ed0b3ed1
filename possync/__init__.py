"""
possync - local-first synchronization engine for a multi-tenant POS.

This package keeps a per-tenant local cache of the point-of-sale data
(catalog, inventory, members, sales, store settings) consistent with a
shared remote document store:
- Every user mutation lands in memory and in the durable Local Store first
- Outbound writes are debounced, batched and rate limited
- Remote change feeds are merged back idempotently

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────┐
    │ User action │────▶│  Repository  │────▶│   Local Store   │
    └─────────────┘     └──────┬───────┘     │ (SQLite KV blob)│
                               │             └─────────────────┘
                               ▼
                     ┌───────────────────┐
                     │ Outbound Write    │  debounce + batch + cooldown
                     │ Queue             │
                     └─────────┬─────────┘
                               ▼
                     ┌───────────────────┐
                     │   Remote Store    │  tenant-scoped collections
                     └─────────┬─────────┘
                               │ change feed
                               ▼
                     ┌───────────────────┐
                     │   Reconciler      │────▶ Repository / Local Store
                     └───────────────────┘

Invariants:
    - Local mutations never roll back because of remote failures
    - One TenantSession per active tenant; teardown cancels every listener
    - Only one outbound drain cycle is in flight at a time
    - Category id=1 always exists and can never be deleted

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
