"""
Error types for possync.

This module defines every exception raised by the engine:
- PosSyncError: Base exception
- ValidationError: Record rejected before any mutation
- ProtectedRecordError: Attempt to delete a sentinel record
- RemoteError: Base for remote store failures
- RemoteUnavailableError: Remote failure other than throttling
- RateLimitedError: Remote signalled resource exhaustion
- PersistenceError: Local store read/write failure

Invariants:
    - All errors inherit from PosSyncError
    - Errors carry a stable code for programmatic handling
    - RateLimitedError is the only error that pauses outbound dispatch
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

RATE_LIMIT_CODE = "resource-exhausted"


class PosSyncError(Exception):
    """Base exception for all possync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "POSSYNC_ERROR"
        self.details = details or {}


class ValidationError(PosSyncError):
    """Record validation failed.

    Raised when:
    - A required field is missing
    - A field has the wrong type or range
    - A sale has no items
    """

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"collection": collection, "errors": errors or []},
        )
        self.collection = collection
        self.errors = errors or []


class ProtectedRecordError(PosSyncError):
    """Attempt to delete a protected record (the "all items" category)."""

    def __init__(self, collection: str, record_id: int) -> None:
        super().__init__(
            f"{collection} record {record_id} is protected",
            code="PROTECTED_RECORD",
            details={"collection": collection, "record_id": record_id},
        )
        self.collection = collection
        self.record_id = record_id


class RemoteError(PosSyncError):
    """Base class for remote store failures."""

    pass


class RemoteUnavailableError(RemoteError):
    """Remote operation failed for a reason other than throttling.

    Raised when:
    - The device is offline
    - The remote store rejected or dropped the request
    - A subscription stream broke
    """

    def __init__(self, message: str, operation: Optional[str] = None) -> None:
        PosSyncError.__init__(
            self,
            message,
            code="REMOTE_UNAVAILABLE",
            details={"operation": operation},
        )
        self.operation = operation


class RateLimitedError(RemoteError):
    """Remote store rejected a request for exceeding its throughput allowance."""

    def __init__(self, message: str = "Remote store rate limit exceeded") -> None:
        PosSyncError.__init__(self, message, code=RATE_LIMIT_CODE)


class PersistenceError(PosSyncError):
    """Local store read or write failed."""

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message, code="PERSISTENCE_ERROR", details={"key": key})
        self.key = key
