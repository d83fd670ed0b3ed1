"""
API layer for possync.

This module provides the polled status surface:
- aiohttp application with /v1/status and /v1/health

Invariants:
    - Read-only; all mutations go through the tenant session
"""

from .http_server import StatusServer, create_status_app

__all__ = [
    "StatusServer",
    "create_status_app",
]
