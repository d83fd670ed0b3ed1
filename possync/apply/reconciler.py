"""
Change-feed reconciler.

The reconciler keeps one subscription per collection (plus the settings
document) and folds every feed snapshot into the tenant session. It is the
only path by which remote state reaches memory while the coordinator is Live.

Rules per change:
    added     insert if absent, otherwise keep the local copy; on the initial
              snapshot of a subscription, treated as modified unless the
              record has a pending local write
    modified  overwrite local fields with remote fields (insert if absent)
    removed   delete if present, never the protected category

Sales are special: the subscription covers only the most recent window, and
every snapshot replaces the local recent-sales view wholesale (records with
pending local writes survive).

Invariants:
    - Changes are applied in delivery order within a collection
    - Applying the same snapshot twice leaves state unchanged
    - Sample products (name denylist) are never materialized
    - The session is persisted once per snapshot that changed state
    - A broken feed is reported through on_error; it is never retried here

How to change safely:
    - Keep apply_snapshot() synchronous; it must not interleave with local
      mutations halfway through a snapshot
    - Test idempotency by delivering the same snapshot twice
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable

from ..config import FeedConfig
from ..models import COLLECTIONS, PRODUCTS, SALES, Record
from ..remote.base import (
    SETTINGS_COLLECTION,
    SETTINGS_DOC_ID,
    ChangeType,
    FeedSnapshot,
    OrderBy,
    RemoteStore,
    Subscription,
)

if TYPE_CHECKING:
    from ..session import TenantSession

logger = logging.getLogger(__name__)

FEED_COLLECTIONS = (SETTINGS_COLLECTION, *COLLECTIONS)


class ChangeFeedReconciler:
    """Applies remote change feeds to a tenant session.

    Thread safety:
        Runs entirely on the event loop; one consumer task per collection.

    Example:
        >>> reconciler = ChangeFeedReconciler(remote, session, FeedConfig(), on_error)
        >>> reconciler.start()
        >>> ...
        >>> await reconciler.stop()
    """

    def __init__(
        self,
        remote: RemoteStore,
        session: TenantSession,
        config: FeedConfig,
        on_error: Callable[[str, Exception], None] | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            remote: Remote store to subscribe to
            session: Tenant session the changes are applied to
            config: Sales window and sample-product denylist
            on_error: Called with (collection, error) when a feed breaks
        """
        self.remote = remote
        self.session = session
        self.config = config
        self.on_error = on_error

        self._subscriptions: dict[str, Subscription] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False
        self._snapshots = 0
        self._changes = 0
        self._errors = 0
        self._filtered = 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Open every subscription and start the consumer tasks.

        A subscription that cannot be opened is reported through on_error;
        the others keep running.
        """
        if self._running:
            logger.warning("Reconciler already running")
            return
        self._running = True
        tenant_id = self.session.tenant.id
        logger.info("Starting change feeds", extra={"tenant_id": tenant_id})

        for collection in FEED_COLLECTIONS:
            try:
                if collection == SALES:
                    subscription = self.remote.subscribe(
                        tenant_id,
                        collection,
                        order_by=OrderBy("timestamp", descending=True),
                        limit=self.config.sales_window,
                    )
                else:
                    subscription = self.remote.subscribe(tenant_id, collection)
            except Exception as e:
                self._report(collection, e)
                continue
            self._subscriptions[collection] = subscription
            self._tasks[collection] = asyncio.create_task(
                self._consume(collection, subscription), name=f"feed:{collection}"
            )

    async def stop(self) -> None:
        """Unsubscribe every feed and wait for the consumers to finish."""
        self._running = False
        for subscription in self._subscriptions.values():
            subscription.unsubscribe()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._subscriptions = {}
        self._tasks = {}
        logger.info("Change feeds stopped", extra={"tenant_id": self.session.tenant.id})

    async def _consume(self, collection: str, subscription: Subscription) -> None:
        try:
            async for snapshot in subscription:
                if not self._running:
                    break
                self.apply_snapshot(snapshot)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report(collection, e)

    def _report(self, collection: str, error: Exception) -> None:
        self._errors += 1
        logger.error(
            f"Change feed failed: {error}",
            extra={"tenant_id": self.session.tenant.id, "collection": collection},
        )
        if self.on_error is not None:
            self.on_error(collection, error)

    # Snapshot application

    def apply_snapshot(self, snapshot: FeedSnapshot) -> bool:
        """Fold one feed snapshot into the session.

        Returns:
            True if local state changed (and was persisted)
        """
        self._snapshots += 1
        if snapshot.collection == SETTINGS_COLLECTION:
            changed = self._apply_settings(snapshot)
        elif snapshot.collection == SALES:
            changed = self._apply_sales(snapshot)
        else:
            changed = self._apply_changes(snapshot)

        if changed:
            self.session.persist()
        logger.debug(
            "Applied feed snapshot",
            extra={
                "tenant_id": self.session.tenant.id,
                "collection": snapshot.collection,
                "changes": len(snapshot.changes),
                "initial": snapshot.initial,
                "changed": changed,
            },
        )
        return changed

    def _apply_settings(self, snapshot: FeedSnapshot) -> bool:
        changed = False
        for change in snapshot.changes:
            if change.id != SETTINGS_DOC_ID or change.type is ChangeType.REMOVED:
                continue
            self._changes += 1
            changed = self.session.merge_remote_settings(change.fields) or changed
        return changed

    def _apply_sales(self, snapshot: FeedSnapshot) -> bool:
        records = []
        for doc_id, fields in snapshot.documents:
            record = self._to_record(SALES, doc_id, fields)
            if record is not None:
                records.append(record)
        self._changes += len(snapshot.changes)
        return self.session.sales.replace_all(records)

    def _apply_changes(self, snapshot: FeedSnapshot) -> bool:
        repository = self.session.repository(snapshot.collection)
        changed = False

        for change in snapshot.changes:
            record = self._to_record(snapshot.collection, change.id, change.fields)
            if record is None:
                continue
            if change.type is not ChangeType.REMOVED and self._is_sample(snapshot.collection, record):
                self._filtered += 1
                continue
            change_type = change.type
            if (
                snapshot.initial
                and change_type is ChangeType.ADDED
                and not repository.is_pending(record.id)
            ):
                # A fresh subscription reports everything as added, including
                # documents edited remotely while this device was offline
                change_type = ChangeType.MODIFIED
            self._changes += 1
            changed = repository.apply_remote_change(change_type, record) or changed

        if snapshot.initial:
            remote_ids = set()
            for doc_id, fields in snapshot.documents:
                record = self._to_record(snapshot.collection, doc_id, fields)
                if record is not None:
                    remote_ids.add(record.id)
            pruned = repository.prune_missing(remote_ids)
            if pruned:
                logger.info(
                    "Pruned records deleted remotely while offline",
                    extra={
                        "tenant_id": self.session.tenant.id,
                        "collection": snapshot.collection,
                        "count": len(pruned),
                    },
                )
                changed = True
        return changed

    def _is_sample(self, collection: str, record: Record) -> bool:
        return collection == PRODUCTS and record.get("name") in self.config.sample_product_names

    def _to_record(self, collection: str, doc_id: str, fields: dict[str, Any]) -> Record | None:
        try:
            return Record.from_document(doc_id, fields)
        except (TypeError, ValueError):
            logger.warning(
                "Skipping document with a non-numeric id",
                extra={"collection": collection, "doc_id": doc_id},
            )
            return None

    @property
    def stats(self) -> dict[str, Any]:
        """Get reconciler statistics."""
        return {
            "running": self._running,
            "subscriptions": sorted(self._subscriptions),
            "snapshots": self._snapshots,
            "changes": self._changes,
            "filtered": self._filtered,
            "errors": self._errors,
        }
