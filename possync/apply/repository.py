"""
Entity repositories: the in-memory authority for one tenant's records.

Each repository owns one collection. Local mutations validate first, then
mutate memory, stage the outbound write and persist the tenant snapshot, all
before control returns to the event loop. Remote changes arrive through
apply_remote_change(), which neither persists nor enqueues; the reconciler
persists once per feed batch.

Invariants:
    - Validation happens before any mutation; a rejected call changes nothing
    - update() only touches whitelisted mutable fields
    - The protected category can never be removed, locally or remotely
    - apply_remote_change() is idempotent for added/modified/removed
    - Local mutations never roll back because the outbound write failed

How to change safely:
    - New kinds go in models.KINDS; subclass only for cross-record behavior
    - Keep sale completion a single persist so a crash cannot split the sale
      from its stock decrement
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Iterable

from ..errors import ProtectedRecordError, ValidationError
from ..models import (
    ALL_ITEMS_CATEGORY_ID,
    CATEGORY_KIND,
    MEMBER_KIND,
    PRODUCT_KIND,
    SALE_KIND,
    IdGenerator,
    Origin,
    Record,
    RecordKind,
    SyncEnvelope,
    all_items_category,
    now_ms,
)
from ..remote.base import ChangeType, WriteOp, WriteOpKind

logger = logging.getLogger(__name__)

PersistFn = Callable[[], Any]
EnqueueFn = Callable[[WriteOp], None]
PendingFn = Callable[[str, str], bool]


class EntityRepository:
    """Records of one collection plus their sync bookkeeping.

    Example:
        >>> products = ProductRepository(ids, persist=session.persist, enqueue=queue.enqueue)
        >>> latte = products.add({"name": "Latte", "price": 60, "stock": 10})
        >>> products.update(latte.id, {"price": 65})
        True
    """

    def __init__(
        self,
        kind: RecordKind,
        ids: IdGenerator,
        persist: PersistFn | None = None,
        enqueue: EnqueueFn | None = None,
        is_pending: PendingFn | None = None,
    ) -> None:
        self.kind = kind
        self.ids = ids
        self._persist = persist
        self._enqueue = enqueue
        self._is_pending = is_pending
        self._records: dict[int, Record] = {}
        self._origins: dict[int, Origin] = {}

    @property
    def collection(self) -> str:
        return self.kind.collection

    # Reads

    def get(self, record_id: int | str) -> Record | None:
        try:
            return self._records.get(int(record_id))
        except (TypeError, ValueError):
            return None

    def all(self) -> list[Record]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def envelope(self, record_id: int) -> SyncEnvelope | None:
        record = self.get(record_id)
        if record is None:
            return None
        return SyncEnvelope(
            record=record.copy(),
            origin=self._origins.get(record.id, Origin.REMOTE),
            pending_write=self.is_pending(record.id),
        )

    def is_pending(self, record_id: int) -> bool:
        if self._is_pending is None:
            return False
        return self._is_pending(self.collection, str(record_id))

    def pending_ids(self) -> set[int]:
        return {record_id for record_id in self._records if self.is_pending(record_id)}

    # Local mutations

    def add(self, fields: dict[str, Any]) -> Record:
        """Create a record with a fresh id.

        Raises:
            ValidationError: If required fields are missing or invalid
        """
        fields = {k: v for k, v in fields.items() if k not in ("id", "lastUpdated")}
        self._validate(self.kind.with_defaults(fields))
        record = Record(
            id=self.ids.next_id(),
            fields=self.kind.with_defaults(fields),
            last_updated=now_ms(),
        )
        self._records[record.id] = record
        self._origins[record.id] = Origin.LOCAL
        self._commit([self._set_op(record)])
        return record

    def update(self, record_id: int, patch: dict[str, Any]) -> bool:
        """Merge whitelisted fields into a record.

        Returns:
            False if the record does not exist

        Raises:
            ValidationError: If the merged record is invalid
        """
        record = self.get(record_id)
        if record is None:
            return False
        merged = self.kind.merge(record.fields, patch)
        self._validate(merged)
        record.fields = merged
        record.last_updated = now_ms()
        self._commit([self._update_op(record)])
        return True

    def remove(self, record_id: int) -> bool:
        """Delete a record.

        Returns:
            False if the record does not exist

        Raises:
            ProtectedRecordError: If the record is protected
        """
        record_id = int(record_id)
        if self.kind.is_protected(record_id):
            raise ProtectedRecordError(self.collection, record_id)
        if record_id not in self._records:
            return False
        del self._records[record_id]
        self._origins.pop(record_id, None)
        self._commit([self._delete_op(record_id)])
        return True

    # Remote changes

    def apply_remote_change(self, change: ChangeType, record: Record) -> bool:
        """Merge one remote change into memory.

        Returns:
            True if local state changed
        """
        current = self._records.get(record.id)

        if change is ChangeType.ADDED:
            if current is not None:
                return False
            self._records[record.id] = record
            self._origins[record.id] = Origin.REMOTE
            return True

        if change is ChangeType.MODIFIED:
            if current is None:
                self._records[record.id] = record
                self._origins[record.id] = Origin.REMOTE
                return True
            if current.fields == record.fields and current.last_updated == record.last_updated:
                return False
            current.fields = dict(record.fields)
            current.last_updated = record.last_updated
            return True

        if current is None or self.kind.is_protected(record.id):
            return False
        del self._records[record.id]
        self._origins.pop(record.id, None)
        return True

    def replace_all(self, records: Iterable[Record], keep_pending: bool = True) -> bool:
        """Replace the whole collection with a remote result set.

        Records with pending local writes keep their local version.

        Returns:
            True if local state changed
        """
        previous = self._records
        replacement: dict[int, Record] = {}
        for record in records:
            replacement[record.id] = record
        if keep_pending:
            for record_id, record in previous.items():
                if self.is_pending(record_id):
                    replacement[record_id] = record

        changed = _differs(previous, replacement)
        self._records = replacement
        self._origins = {
            record_id: self._origins.get(record_id, Origin.REMOTE) for record_id in replacement
        }
        return changed

    def prune_missing(self, remote_ids: set[int]) -> list[int]:
        """Drop local records the remote no longer has.

        Protected records and records with pending writes are kept.

        Returns:
            Ids that were removed
        """
        removed = [
            record_id
            for record_id in self._records
            if record_id not in remote_ids
            and not self.kind.is_protected(record_id)
            and not self.is_pending(record_id)
        ]
        for record_id in removed:
            del self._records[record_id]
            self._origins.pop(record_id, None)
        return removed

    def load(self, records: Iterable[Record]) -> None:
        """Populate from a local snapshot (no persist, no enqueue)."""
        self._records = {record.id: record for record in records}
        self._origins = {record_id: Origin.REMOTE for record_id in self._records}

    def clear(self) -> None:
        self._records = {}
        self._origins = {}

    # Internals

    def _validate(self, fields: dict[str, Any]) -> None:
        valid, errors = self.kind.validate_fields(fields)
        if not valid:
            raise ValidationError(
                f"Invalid {self.collection} record: {'; '.join(errors)}",
                collection=self.collection,
                errors=errors,
            )

    def _set_op(self, record: Record) -> WriteOp:
        return WriteOp(WriteOpKind.SET, self.collection, str(record.id), record.to_document())

    def _update_op(self, record: Record) -> WriteOp:
        return WriteOp(WriteOpKind.UPDATE, self.collection, str(record.id), record.to_document())

    def _delete_op(self, record_id: int) -> WriteOp:
        return WriteOp(WriteOpKind.DELETE, self.collection, str(record_id))

    def _commit(self, ops: list[WriteOp]) -> None:
        """Stage outbound writes, then persist the snapshot.

        Both happen synchronously, so the snapshot (outbox included) is on
        disk before the drain task gets a chance to run.
        """
        if self._enqueue is not None:
            for op in ops:
                try:
                    self._enqueue(op)
                except Exception as e:
                    logger.error(
                        f"Failed to enqueue outbound write: {e}",
                        extra={"collection": self.collection, "op": str(op)},
                        exc_info=True,
                    )
        if self._persist is not None:
            self._persist()


def _differs(before: dict[int, Record], after: dict[int, Record]) -> bool:
    if before.keys() != after.keys():
        return True
    return any(
        before[record_id].fields != after[record_id].fields
        or before[record_id].last_updated != after[record_id].last_updated
        for record_id in after
    )


class CategoryRepository(EntityRepository):
    """Categories; id=1 ("all items") always exists and is never deleted."""

    def __init__(self, ids: IdGenerator, **kwargs: Any) -> None:
        super().__init__(CATEGORY_KIND, ids, **kwargs)

    def ensure_protected(self) -> bool:
        """Synthesize the "all items" category if missing.

        Returns:
            True if it had to be created
        """
        if ALL_ITEMS_CATEGORY_ID in self._records:
            return False
        self._records[ALL_ITEMS_CATEGORY_ID] = all_items_category()
        self._origins[ALL_ITEMS_CATEGORY_ID] = Origin.LOCAL
        return True

    def apply_remote_change(self, change: ChangeType, record: Record) -> bool:
        if record.id == ALL_ITEMS_CATEGORY_ID:
            record.fields["protected"] = True
        return super().apply_remote_change(change, record)

    def replace_all(self, records: Iterable[Record], keep_pending: bool = True) -> bool:
        changed = super().replace_all(records, keep_pending)
        return self.ensure_protected() or changed

    def load(self, records: Iterable[Record]) -> None:
        super().load(records)
        self.ensure_protected()


class ProductRepository(EntityRepository):
    """Products with stock bookkeeping."""

    def __init__(self, ids: IdGenerator, **kwargs: Any) -> None:
        super().__init__(PRODUCT_KIND, ids, **kwargs)

    def stock_after(self, record: Record, quantity: int) -> int:
        """Stock left once quantity is sold, clamped at zero.

        A stock value that cannot be read as an integer (e.g. written by
        another client) counts as zero.
        """
        raw = record.get("stock", 0)
        try:
            stock = int(raw or 0)
        except (TypeError, ValueError):
            logger.warning(
                "Product has a non-numeric stock, counting it as zero",
                extra={"product_id": record.id, "stock": raw},
            )
            stock = 0
        remaining = stock - quantity
        if remaining < 0:
            logger.warning(
                "Sold more than the recorded stock, clamping at zero",
                extra={"product_id": record.id, "stock": stock, "quantity": quantity},
            )
            remaining = 0
        return remaining

    def set_stock(self, record: Record, stock: int) -> None:
        """Set stock in memory only; the caller persists and enqueues."""
        record.fields["stock"] = stock
        record.last_updated = now_ms()


class MemberRepository(EntityRepository):
    """Loyalty members."""

    def __init__(self, ids: IdGenerator, **kwargs: Any) -> None:
        super().__init__(MEMBER_KIND, ids, **kwargs)


class SaleRepository(EntityRepository):
    """Sales; recording one also decrements the stock it sold."""

    def __init__(
        self,
        ids: IdGenerator,
        products: ProductRepository,
        members: MemberRepository,
        **kwargs: Any,
    ) -> None:
        super().__init__(SALE_KIND, ids, **kwargs)
        self.products = products
        self.members = members

    def add(self, fields: dict[str, Any]) -> Record:
        """Record a completed sale and decrement stock in one operation.

        Lines whose product cannot be found still appear on the sale; only
        their stock decrement is skipped.

        Raises:
            ValidationError: If the sale has no items or a malformed line
        """
        fields = {k: v for k, v in fields.items() if k not in ("id", "lastUpdated")}
        self._validate(fields)

        fields.setdefault("timestamp", now_ms())
        member_id = fields.get("memberId")
        if member_id is not None and not fields.get("memberName"):
            member = self.members.get(member_id)
            if member is not None:
                fields["memberName"] = member.get("name")
        if "total" not in fields:
            fields["total"] = sum(
                (item.get("price") or 0) * item["quantity"] for item in fields["items"]
            )

        record = Record(id=self.ids.next_id(), fields=fields, last_updated=now_ms())

        sold: dict[int, int] = {}
        products: dict[int, Record] = {}
        for item in fields["items"]:
            product = self.products.get(item["productId"])
            if product is None:
                logger.warning(
                    "Sale references an unknown product, stock not decremented",
                    extra={
                        "sale_id": record.id,
                        "product_id": item["productId"],
                        "quantity": item["quantity"],
                    },
                )
                continue
            products[product.id] = product
            sold[product.id] = sold.get(product.id, 0) + item["quantity"]
        new_stock = {
            product_id: self.products.stock_after(products[product_id], quantity)
            for product_id, quantity in sold.items()
        }

        ops = [self._set_op(record)]
        for product_id, stock in new_stock.items():
            product = products[product_id]
            self.products.set_stock(product, stock)
            ops.append(self.products._update_op(product))

        self._records[record.id] = record
        self._origins[record.id] = Origin.LOCAL
        self._commit(ops)
        logger.info(
            "Sale recorded",
            extra={"sale_id": record.id, "lines": len(fields["items"]), "total": fields["total"]},
        )
        return record

    def recent(self, limit: int | None = None) -> list[Record]:
        """Sales newest first."""
        ordered = sorted(
            self._records.values(), key=lambda r: r.get("timestamp", 0) or 0, reverse=True
        )
        return ordered[:limit] if limit is not None else ordered

    def sales_between(self, start_ms: int, end_ms: int) -> list[Record]:
        """Sales with start_ms <= timestamp < end_ms, newest first."""
        return [
            record
            for record in self.recent()
            if start_ms <= (record.get("timestamp", 0) or 0) < end_ms
        ]

    def today(self, now: dt.datetime | None = None) -> list[Record]:
        """Sales since local midnight."""
        now = now or dt.datetime.now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        start = int(midnight.timestamp() * 1000)
        end = int((midnight + dt.timedelta(days=1)).timestamp() * 1000)
        return self.sales_between(start, end)
