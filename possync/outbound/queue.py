"""
Outbound write queue.

Per-record writes accumulate in a FIFO and are drained to the remote store in
small, spaced batches so a burst of local edits never exceeds the remote
store's write allowance.

Invariants:
    - At most one drain task runs at a time; enqueues during a drain join the
      queue and are picked up by the running drain
    - At most batch_size ops per batch, batch starts at least batch_spacing
      seconds apart
    - Ops for the same record are dispatched in enqueue order
    - A rate-limit rejection returns the failed op and the rest of its batch
      to the head of the queue and pauses dispatch for the shared cooldown
    - Any other failure parks the op (and later ops for the same record) until
      the next enqueue() or flush(); nothing retries in a tight loop
    - Parked ops rejoin the queue only between batches, never while a batch
      is being dispatched

How to change safely:
    - Never await between taking a batch and recording it as in flight;
      pending() must see every unacknowledged op
    - Keep callbacks synchronous and cheap; they run inside the drain task
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Iterable

from ..config import OutboundConfig
from ..errors import RateLimitedError
from ..remote.base import RemoteStore, WriteOp, apply_write
from .cooldown import CooldownGate

logger = logging.getLogger(__name__)

Key = tuple[str, str]


class OutboundWriteQueue:
    """Spaced, batched dispatcher of WriteOps for one tenant.

    Example:
        >>> queue = OutboundWriteQueue(remote, "store-1", OutboundConfig(), CooldownGate(60))
        >>> queue.enqueue(WriteOp(WriteOpKind.SET, "products", "42", {"name": "Latte"}))
        >>> await queue.flush()
    """

    def __init__(
        self,
        remote: RemoteStore,
        tenant_id: str,
        config: OutboundConfig,
        cooldown: CooldownGate,
        on_ack: Callable[[WriteOp], None] | None = None,
        on_failure: Callable[[Exception], None] | None = None,
        on_success: Callable[[], None] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            remote: Remote store to write to
            tenant_id: Tenant every op is scoped to
            config: Batch size, spacing and cooldown settings
            cooldown: Gate shared with the debounced settings write
            on_ack: Called with each op the remote accepted
            on_failure: Called with each dispatch error (rate limits included)
            on_success: Called after each accepted op
            clock: Monotonic clock (seconds)
        """
        self.remote = remote
        self.tenant_id = tenant_id
        self.config = config
        self.cooldown = cooldown
        self.on_ack = on_ack
        self.on_failure = on_failure
        self.on_success = on_success
        self._clock = clock or time.monotonic

        self._queue: deque[WriteOp] = deque()
        self._inflight: list[WriteOp] = []
        self._deferred: list[WriteOp] = []
        self._restore_requested = False
        self._drain_task: asyncio.Task | None = None
        self._last_batch_start: float | None = None
        self._closed = False

        self._enqueued = 0
        self._dispatched = 0
        self._failed = 0
        self._rate_limited = 0
        self.batch_log: list[tuple[float, int]] = []

    # Public API

    def enqueue(self, op: WriteOp) -> None:
        """Add an op and make sure a drain is scheduled.

        Parked ops are re-queued ahead of the new op first.
        """
        if self._closed:
            logger.warning(
                "Dropping write enqueued after close",
                extra={"tenant_id": self.tenant_id, "op": str(op)},
            )
            return
        self._restore_deferred()
        self._queue.append(op)
        self._enqueued += 1
        self._schedule_drain()

    def extend(self, ops: Iterable[WriteOp]) -> None:
        """Enqueue several ops (e.g. a persisted outbox) in order."""
        for op in ops:
            self.enqueue(op)

    async def flush(self) -> None:
        """Re-queue parked ops and wait for the queue to drain.

        Waits out cooldown and spacing; returns once the drain finishes,
        with failed ops parked again.
        """
        if self._closed:
            return
        self._restore_deferred()
        self._schedule_drain()
        while self._drain_task is not None:
            await asyncio.wait({self._drain_task})

    async def close(self) -> None:
        """Stop dispatching. In-flight ops return to the queue for pending()."""
        self._closed = True
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_task = None

    def pending(self) -> list[WriteOp]:
        """Every unacknowledged op, oldest first."""
        return list(self._deferred) + list(self._inflight) + list(self._queue)

    def is_pending(self, collection: str, doc_id: str | int) -> bool:
        key = (collection, str(doc_id))
        return any(op.key == key for op in self._all_ops())

    def pending_ids(self, collection: str) -> set[str]:
        return {op.doc_id for op in self._all_ops() if op.collection == collection}

    @property
    def draining(self) -> bool:
        return self._drain_task is not None

    @property
    def stats(self) -> dict[str, Any]:
        """Get queue statistics."""
        return {
            "enqueued": self._enqueued,
            "dispatched": self._dispatched,
            "failed": self._failed,
            "rate_limited": self._rate_limited,
            "batches": len(self.batch_log),
            "queued": len(self._queue),
            "in_flight": len(self._inflight),
            "deferred": len(self._deferred),
            "draining": self.draining,
            "cooling_down": self.cooldown.active,
            "cooldown_remaining": round(self.cooldown.remaining(), 3),
        }

    # Drain loop

    def _all_ops(self) -> list[WriteOp]:
        return [*self._deferred, *self._inflight, *self._queue]

    def _restore_deferred(self) -> None:
        if self._drain_task is not None:
            # The running drain picks them up at its next batch boundary
            self._restore_requested = True
            return
        self._requeue_deferred()

    def _requeue_deferred(self) -> None:
        self._restore_requested = False
        if self._deferred:
            logger.info(
                "Re-queueing deferred writes",
                extra={"tenant_id": self.tenant_id, "count": len(self._deferred)},
            )
            self._queue.extendleft(reversed(self._deferred))
            self._deferred = []

    def _schedule_drain(self) -> None:
        if self._drain_task is not None or self._closed or not self._queue:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next flush() starts the drain
            return
        self._drain_task = loop.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while not self._closed:
                if self._restore_requested:
                    self._requeue_deferred()
                if not self._queue:
                    break
                await self._wait_turn()
                batch = self._take_batch()
                if not batch:
                    continue
                self._last_batch_start = self._clock()
                self.batch_log.append((self._last_batch_start, len(batch)))
                logger.debug(
                    "Dispatching batch",
                    extra={
                        "tenant_id": self.tenant_id,
                        "size": len(batch),
                        "queued": len(self._queue),
                    },
                )
                await self._dispatch(batch)
        except asyncio.CancelledError:
            logger.info("Outbound drain cancelled", extra={"tenant_id": self.tenant_id})
            raise
        finally:
            self._drain_task = None

    async def _wait_turn(self) -> None:
        while True:
            if self.cooldown.active:
                await self.cooldown.wait()
                continue
            if self._last_batch_start is not None:
                remaining = self.config.batch_spacing_seconds - (
                    self._clock() - self._last_batch_start
                )
                if remaining > 0:
                    await asyncio.sleep(remaining)
                    continue
            return

    def _take_batch(self) -> list[WriteOp]:
        parked = {op.key for op in self._deferred}
        batch: list[WriteOp] = []
        while self._queue and len(batch) < self.config.batch_size:
            op = self._queue.popleft()
            if op.key in parked:
                self._deferred.append(op)
                continue
            batch.append(op)
        self._inflight = list(batch)
        return batch

    async def _dispatch(self, batch: list[WriteOp]) -> None:
        for op in batch:
            if op.key in {parked.key for parked in self._deferred}:
                self._inflight.remove(op)
                self._deferred.append(op)
                continue
            try:
                await apply_write(self.remote, self.tenant_id, op)
            except asyncio.CancelledError:
                self._queue.extendleft(reversed(self._inflight))
                self._inflight = []
                raise
            except RateLimitedError as e:
                self._rate_limited += 1
                self.cooldown.trip()
                self._queue.extendleft(reversed(self._inflight))
                self._inflight = []
                self._notify_failure(e)
                return
            except Exception as e:
                self._failed += 1
                logger.error(
                    f"Outbound write failed: {e}",
                    extra={"tenant_id": self.tenant_id, "op": str(op)},
                    exc_info=True,
                )
                self._inflight.remove(op)
                self._deferred.append(op)
                self._notify_failure(e)
            else:
                self._dispatched += 1
                self._inflight.remove(op)
                if self.on_ack is not None:
                    self.on_ack(op)
                if self.on_success is not None:
                    self.on_success()
        self._inflight = []

    def _notify_failure(self, error: Exception) -> None:
        if self.on_failure is not None:
            self.on_failure(error)
