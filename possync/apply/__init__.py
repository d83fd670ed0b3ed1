"""
Apply module for possync: where records change.

This module handles:
- Entity repositories (local mutations, idempotent remote merges)
- The change-feed reconciler (remote snapshots into the session)

Invariants:
    - Local edits validate before they mutate
    - Remote changes are applied in delivery order and are idempotent
    - The protected "all items" category survives every path
"""

from .reconciler import ChangeFeedReconciler
from .repository import (
    CategoryRepository,
    EntityRepository,
    MemberRepository,
    ProductRepository,
    SaleRepository,
)

__all__ = [
    "ChangeFeedReconciler",
    "EntityRepository",
    "CategoryRepository",
    "ProductRepository",
    "MemberRepository",
    "SaleRepository",
]
