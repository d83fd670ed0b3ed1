"""
In-memory remote store implementation.

This module provides a fully functional remote document store that keeps
everything in memory. It is used for:
- Unit and integration tests
- Local development without a cloud project
- Offline demos

Invariants:
    - All data is lost on process exit
    - Provides the same feed semantics as a production backend: a new
      subscription starts with the current documents as "added" changes
    - Windowed subscriptions (order_by + limit) report membership shifts

How to change safely:
    - Keep interface compatible with the RemoteStore protocol
    - Add features that help with testing scenarios (failure injection)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import operator
from collections import defaultdict, deque
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from ..errors import RateLimitedError, RemoteUnavailableError
from .base import (
    ChangeEvent,
    ChangeType,
    FeedSnapshot,
    OrderBy,
    QueryFilter,
    WriteOp,
    WriteOpKind,
)

logger = logging.getLogger(__name__)

Document = Tuple[str, Dict[str, Any]]

_FILTER_OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _sort_key(order_by: OrderBy) -> Callable[[Document], Any]:
    def key(doc: Document) -> Any:
        value = doc[1].get(order_by.field)
        return (value is not None, value if value is not None else 0)

    return key


def select_documents(
    docs: Dict[str, Dict[str, Any]],
    filters: Optional[List[QueryFilter]] = None,
    order_by: Optional[OrderBy] = None,
    limit: Optional[int] = None,
) -> List[Document]:
    """Evaluate a query against a collection's documents."""
    selected: List[Document] = []
    for doc_id, fields in docs.items():
        matches = True
        for flt in filters or []:
            value = fields.get(flt.field)
            if value is None or not _FILTER_OPS[flt.op](value, flt.value):
                matches = False
                break
        if matches:
            selected.append((doc_id, copy.deepcopy(fields)))

    if order_by is not None:
        selected.sort(key=_sort_key(order_by), reverse=order_by.descending)
    if limit is not None:
        selected = selected[:limit]
    return selected


class InMemorySubscription:
    """Live feed over one collection of an InMemoryRemoteStore.

    Each notification diffs the current query result against the previously
    delivered one, so windowed subscriptions see documents enter and leave
    the window as added/removed changes.
    """

    def __init__(
        self,
        store: InMemoryRemoteStore,
        tenant_id: str,
        collection: str,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> None:
        self.store = store
        self.tenant_id = tenant_id
        self.collection = collection
        self.order_by = order_by
        self.limit = limit
        self._queue: asyncio.Queue = asyncio.Queue()
        self._active = True
        self._delivered: Dict[str, Dict[str, Any]] = {}
        self._initial = True

    @property
    def active(self) -> bool:
        return self._active

    def _current(self) -> List[Document]:
        docs = self.store._collection(self.tenant_id, self.collection)
        return select_documents(docs, order_by=self.order_by, limit=self.limit)

    def notify(self) -> None:
        """Compute the change set since the last delivery and enqueue it."""
        if not self._active:
            return

        documents = self._current()
        current = dict(documents)
        changes: List[ChangeEvent] = []

        for doc_id, fields in self._delivered.items():
            if doc_id not in current:
                changes.append(ChangeEvent(ChangeType.REMOVED, doc_id, fields))
        for doc_id, fields in documents:
            previous = self._delivered.get(doc_id)
            if previous is None:
                changes.append(ChangeEvent(ChangeType.ADDED, doc_id, fields))
            elif previous != fields:
                changes.append(ChangeEvent(ChangeType.MODIFIED, doc_id, fields))

        if not changes and not self._initial:
            return

        self._delivered = current
        self._queue.put_nowait(
            FeedSnapshot(
                collection=self.collection,
                changes=changes,
                documents=documents,
                initial=self._initial,
            )
        )
        self._initial = False

    def fail(self, error: Exception) -> None:
        """Break the stream; the iterator raises error."""
        if self._active:
            self._queue.put_nowait(error)

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._queue.put_nowait(None)
        self.store._detach(self)

    async def _iterate(self) -> AsyncIterator[FeedSnapshot]:
        while self._active:
            item = await self._queue.get()
            if item is None:
                break
            if isinstance(item, Exception):
                self._active = False
                self.store._detach(self)
                raise item
            yield item

    def __aiter__(self) -> AsyncIterator[FeedSnapshot]:
        return self._iterate()


class InMemoryRemoteStore:
    """In-memory implementation of RemoteStore.

    Attributes:
        latency: Seconds every operation suspends for
        offline: When True every operation raises RemoteUnavailableError
        write_log: (loop time, op) for every successful write, in order

    Example:
        >>> remote = InMemoryRemoteStore()
        >>> remote.seed("t1", "products", "1", {"name": "Latte", "stock": 3})
        >>> await remote.get("t1", "products", "1")
        {'name': 'Latte', 'stock': 3}
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.offline = False
        self.write_log: List[Tuple[float, WriteOp]] = []
        self._data: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = defaultdict(
            lambda: defaultdict(dict)
        )
        self._subscriptions: List[InMemorySubscription] = []
        self._write_failures: Deque[Exception] = deque()
        self._read_failures: Deque[Exception] = deque()

    # RemoteStore protocol

    async def get(self, tenant_id: str, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        await self._before_read("get")
        doc = self._collection(tenant_id, collection).get(str(doc_id))
        return copy.deepcopy(doc) if doc is not None else None

    async def set(
        self,
        tenant_id: str,
        collection: str,
        doc_id: str,
        fields: Dict[str, Any],
        merge: bool = False,
    ) -> None:
        op = WriteOp(WriteOpKind.SET, collection, str(doc_id), dict(fields), merge=merge)
        await self._before_write(op)
        self._apply(tenant_id, op)
        self._log(op)
        self._notify(tenant_id, {collection})

    async def delete(self, tenant_id: str, collection: str, doc_id: str) -> None:
        op = WriteOp(WriteOpKind.DELETE, collection, str(doc_id))
        await self._before_write(op)
        self._apply(tenant_id, op)
        self._log(op)
        self._notify(tenant_id, {collection})

    async def batch_commit(self, tenant_id: str, ops: List[WriteOp]) -> None:
        if not ops:
            return
        await self._before_write(ops[0])
        for op in ops:
            self._apply(tenant_id, op)
            self._log(op)
        self._notify(tenant_id, {op.collection for op in ops})

    async def query(
        self,
        tenant_id: str,
        collection: str,
        filters: Optional[List[QueryFilter]] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        await self._before_read("query")
        return select_documents(self._collection(tenant_id, collection), filters, order_by, limit)

    def subscribe(
        self,
        tenant_id: str,
        collection: str,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> InMemorySubscription:
        if self.offline:
            raise RemoteUnavailableError("Remote store is offline", operation="subscribe")
        subscription = InMemorySubscription(self, tenant_id, collection, order_by, limit)
        self._subscriptions.append(subscription)
        subscription.notify()
        logger.debug(
            "Subscription opened",
            extra={"tenant_id": tenant_id, "collection": collection, "limit": limit},
        )
        return subscription

    # Internals

    def _collection(self, tenant_id: str, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._data[tenant_id][collection]

    def _apply(self, tenant_id: str, op: WriteOp) -> None:
        docs = self._collection(tenant_id, op.collection)
        if op.kind is WriteOpKind.DELETE:
            docs.pop(op.doc_id, None)
        elif op.kind is WriteOpKind.UPDATE or op.merge:
            merged = dict(docs.get(op.doc_id, {}))
            merged.update(copy.deepcopy(op.fields or {}))
            docs[op.doc_id] = merged
        else:
            docs[op.doc_id] = copy.deepcopy(op.fields or {})

    def _log(self, op: WriteOp) -> None:
        self.write_log.append((asyncio.get_running_loop().time(), op))

    def _notify(self, tenant_id: str, collections: set) -> None:
        for subscription in list(self._subscriptions):
            if subscription.tenant_id == tenant_id and subscription.collection in collections:
                subscription.notify()

    def _detach(self, subscription: InMemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def _suspend(self) -> None:
        await asyncio.sleep(self.latency)

    async def _before_read(self, operation: str) -> None:
        await self._suspend()
        if self.offline:
            raise RemoteUnavailableError("Remote store is offline", operation=operation)
        if self._read_failures:
            raise self._read_failures.popleft()

    async def _before_write(self, op: WriteOp) -> None:
        await self._suspend()
        if self.offline:
            raise RemoteUnavailableError("Remote store is offline", operation=str(op))
        if self._write_failures:
            raise self._write_failures.popleft()

    # Testing helpers

    def seed(self, tenant_id: str, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Write a document directly, bypassing failure injection."""
        op = WriteOp(WriteOpKind.SET, collection, str(doc_id), dict(fields))
        self._apply(tenant_id, op)
        self._notify(tenant_id, {collection})

    def remove(self, tenant_id: str, collection: str, doc_id: str) -> None:
        """Delete a document directly, bypassing failure injection."""
        self._apply(tenant_id, WriteOp(WriteOpKind.DELETE, collection, str(doc_id)))
        self._notify(tenant_id, {collection})

    def documents(self, tenant_id: str, collection: str) -> Dict[str, Dict[str, Any]]:
        """Snapshot of a collection's documents."""
        return copy.deepcopy(dict(self._collection(tenant_id, collection)))

    def fail_next_writes(self, error: Exception, count: int = 1) -> None:
        """The next count write calls raise error."""
        for _ in range(count):
            self._write_failures.append(error)

    def rate_limit_next_writes(self, count: int = 1) -> None:
        self.fail_next_writes(RateLimitedError(), count)

    def fail_next_reads(self, error: Exception, count: int = 1) -> None:
        """The next count get/query calls raise error."""
        for _ in range(count):
            self._read_failures.append(error)

    def break_subscriptions(self, tenant_id: Optional[str] = None) -> None:
        """Break every active feed (optionally of one tenant)."""
        for subscription in list(self._subscriptions):
            if tenant_id is None or subscription.tenant_id == tenant_id:
                subscription.fail(RemoteUnavailableError("Feed disconnected", operation="subscribe"))

    def listener_count(self, tenant_id: Optional[str] = None) -> int:
        """Number of active subscriptions (optionally of one tenant)."""
        return sum(
            1
            for subscription in self._subscriptions
            if subscription.active and (tenant_id is None or subscription.tenant_id == tenant_id)
        )

    def writes_for(self, collection: str) -> List[WriteOp]:
        return [op for _, op in self.write_log if op.collection == collection]
