"""
Outbound path for possync: everything that writes to the remote store.

This module handles:
- Batched, spaced dispatch of per-record writes
- Debouncing of the store settings write
- The shared rate-limit cooldown

Invariants:
    - Local state is already persisted before anything is enqueued here
    - Throttling pauses every outbound path, not just the one that hit it
"""

from .cooldown import CooldownGate
from .debounce import Debouncer
from .queue import OutboundWriteQueue

__all__ = [
    "CooldownGate",
    "Debouncer",
    "OutboundWriteQueue",
]
