"""
possync Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Integration tests (coordinator, feeds, in-memory remote)
"""
