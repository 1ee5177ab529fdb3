"""Apply change-feed events to the page cache and the loader's live list.

Events are applied synchronously, one at a time, in delivery order. Each
item is version-gated on its own; there is no reordering across items. One
bad event is logged and dropped, and the subscription keeps running.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Callable, Dict, Optional

from . import metrics
from .errors import MalformedEventError, StaleEventError
from .loader import IncrementalLoader
from .ordering import sort_key
from .schemas import DeleteEvent, InsertEvent, Item, UpdateEvent, parse_change_event
from .source import ListingSource

log = logging.getLogger(__name__)


class RealtimeReconciler:
    def __init__(self, loader: IncrementalLoader) -> None:
        self.loader = loader
        self.cache = loader.cache
        self.stats: Counter = Counter()
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def attach(self, source: ListingSource) -> None:
        """Subscribe to ``source``'s change feed (idempotent)."""
        if self._unsubscribe is None:
            self._unsubscribe = source.subscribe_to_changes(self.handle)
            log.info("reconciler.attached")

    def close(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is None:
            return
        try:
            unsubscribe()
        except Exception as exc:
            log.warning("reconciler.unsubscribe_failed error=%r", exc)
        log.info("reconciler.closed stats=%s", dict(self.stats))

    @property
    def attached(self) -> bool:
        return self._unsubscribe is not None

    # ------------------------------------------------------------------
    # Event entry point
    # ------------------------------------------------------------------

    def handle(self, raw: Any) -> None:
        """Apply one raw payload. Never raises."""
        if not self.loader.mounted:
            log.debug("reconciler.dropped: session disposed")
            return
        try:
            event = parse_change_event(raw)
        except MalformedEventError as exc:
            self._count("unknown", "malformed")
            log.warning("reconciler.malformed_event error=%s payload=%r", exc, raw)
            return

        try:
            if isinstance(event, InsertEvent):
                outcome = self._insert(event.item)
            elif isinstance(event, UpdateEvent):
                outcome = self._update(event.item)
            else:
                outcome = self._delete(event)
        except StaleEventError as exc:
            self._count(event.type, "stale")
            log.debug("reconciler.%s", exc)
            return
        except Exception:
            # isolate: the next event must still be delivered
            self._count(event.type, "error")
            log.exception("reconciler.apply_failed type=%s", event.type)
            return
        self._count(event.type, outcome)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _current(self, item_id: str) -> Optional[Item]:
        """Newest known copy of an item across the live list and the cache."""
        listed = self.loader.get_item(item_id)
        cached = self.cache.lookup(item_id)
        if listed is None:
            return cached
        if cached is None or listed.version >= cached.version:
            return listed
        return cached

    def _insert(self, item: Item) -> str:
        if self._current(item.id) is not None:
            # duplicate / out-of-order delivery
            return self._update(item)

        changes = self.loader.changes
        if changes.blocks(item):
            raise StaleEventError(item.id, item.version, changes.tombstones[item.id] or 0)
        changes.forget_delete(item.id)

        st = self.loader.state
        idx = self.loader.insert_sorted(item)
        page = self.cache.insert_item(
            item, self.loader.page_order, tail_open=not st.has_more
        )
        self.loader.adjust_total(+1)
        changes.note_update(item)
        log.debug(
            "reconciler.insert id=%s index=%s page=%s total=%d",
            item.id,
            idx,
            page,
            st.total_count,
        )
        return "applied" if idx is not None else "deferred"

    def _update(self, item: Item) -> str:
        current = self._current(item.id)
        if current is None:
            # lives on a page we have not loaded; remember it for when we do
            self.loader.changes.note_update(item)
            return "deferred"
        if item.version <= current.version:
            raise StaleEventError(item.id, item.version, current.version)

        merged = current.merged(item)
        self.loader.changes.note_update(merged)

        if self.cache.lookup(item.id) is not None:
            page_order = self.loader.page_order
            if sort_key(merged, page_order) != sort_key(current, page_order):
                self.cache.remove_item(item.id)
                self.cache.insert_item(
                    merged, page_order, tail_open=not self.loader.state.has_more
                )
            else:
                self.cache.patch_item(item.id, merged)

        mode = self.loader.sort_mode
        if self.loader.contains(item.id):
            if sort_key(merged, mode) != sort_key(current, mode):
                self.loader.remove_item(item.id)
                self.loader.insert_sorted(merged)
                log.debug("reconciler.update id=%s moved", item.id)
            else:
                self.loader.replace_item(merged)
        log.debug("reconciler.update id=%s version=%d", item.id, merged.version)
        return "applied"

    def _delete(self, event: DeleteEvent) -> str:
        changes = self.loader.changes
        current = self._current(event.id)
        if current is None and changes.is_deleted(event.id):
            return "duplicate"

        version: Optional[int] = event.version or None
        if current is not None:
            version = max(version or 0, current.version)
        changes.note_delete(event.id, version)

        listed = self.loader.remove_item(event.id)
        cached = self.cache.remove_item(event.id)
        # Items on unloaded pages still count toward the server total
        self.loader.adjust_total(-1)
        log.debug(
            "reconciler.delete id=%s listed=%s cached=%s total=%d",
            event.id,
            listed is not None,
            cached is not None,
            self.loader.state.total_count,
        )
        return "applied"

    def _count(self, kind: str, outcome: str) -> None:
        self.stats[outcome] += 1
        metrics.record_event(kind, outcome)

    def snapshot(self) -> Dict[str, int]:
        return dict(self.stats)
