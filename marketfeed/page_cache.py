from __future__ import annotations

import time
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .ordering import SortMode, sort_key
from .schemas import Item
from .settings import settings

log = logging.getLogger(__name__)


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of one cached page (1-indexed)."""

    page: int
    items: List[Item]
    fetched_at: float


@dataclass
class TotalCountState:
    count: int
    fetched_at: float


@dataclass
class _PageSlot:
    ids: List[str] = field(default_factory=list)
    fetched_at: float = 0.0


class PageCache:
    """Per-session page cache with fresh/stale/expired tiers.

    Items live once in an id-keyed arena; pages are ordered lists of ids, so
    ``patch_item``/``remove_item`` are O(1) lookups instead of page scans.
    Pages need not be contiguous. The total count is tracked on its own
    timestamp so "is there more?" does not depend on every page being fresh.
    """

    def __init__(
        self,
        fresh_ttl: float | None = None,
        expire_ttl: float | None = None,
        capacity: int | None = None,
    ) -> None:
        """Initialize the cache.

        Args:
            fresh_ttl: Age in seconds below which a page is fresh (T1).
            expire_ttl: Age in seconds at or above which a page is expired (T2).
            capacity: Maximum number of pages kept; oldest writes are evicted.
        """
        self._fresh_ttl = settings.CACHE_FRESH_SECONDS if fresh_ttl is None else fresh_ttl
        self._expire_ttl = (
            settings.CACHE_EXPIRE_SECONDS if expire_ttl is None else expire_ttl
        )
        if self._expire_ttl < self._fresh_ttl:
            raise ValueError("expire_ttl must be >= fresh_ttl")
        self._cap = settings.PAGE_CACHE_MAX_PAGES if capacity is None else capacity
        self._pages: "OrderedDict[int, _PageSlot]" = OrderedDict()
        self._items: Dict[str, Item] = {}
        self._page_of: Dict[str, int] = {}
        self._total: Optional[TotalCountState] = None
        self._locks: Dict[int, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    def get(self, page: int) -> Optional[CacheEntry]:
        """Return the cached page, whatever its age. No side effects."""
        slot = self._pages.get(page)
        if slot is None:
            return None
        return CacheEntry(page, [self._items[i] for i in slot.ids], slot.fetched_at)

    def put(self, page: int, items: Iterable[Item]) -> None:
        """Store or overwrite a page and stamp it with the current time.

        An id already cached on another page moves to this one, so an item
        never appears on two pages after the server shifts page boundaries.
        """
        self._drop_page(page)
        slot = _PageSlot(fetched_at=time.time())
        for item in items:
            if item.id in slot.ids:
                continue
            owner = self._page_of.get(item.id)
            if owner is not None and owner != page:
                self._pages[owner].ids.remove(item.id)
            slot.ids.append(item.id)
            self._items[item.id] = item
            self._page_of[item.id] = page
        self._pages[page] = slot
        self._pages.move_to_end(page)
        while len(self._pages) > self._cap:
            evicted, _ = self._pages.popitem(last=False)
            self._forget_ids(self._ids_without_page())
            log.debug("page_cache.evict page=%d", evicted)

    def invalidate(self, page: int) -> None:
        """Drop one page, forcing a refetch on next access."""
        self._drop_page(page)

    def invalidate_all(self) -> None:
        """Clear every page and the total count."""
        self._pages.clear()
        self._items.clear()
        self._page_of.clear()
        self._total = None

    def pages(self) -> List[int]:
        return sorted(self._pages)

    def contiguous_pages(self) -> List[int]:
        """Cached pages forming an unbroken run from page 1."""
        run: List[int] = []
        while len(run) + 1 in self._pages:
            run.append(len(run) + 1)
        return run

    def get_all_cached_items(self) -> List[Item]:
        """Concatenate every cached page in page order."""
        return [self._items[i] for p in sorted(self._pages) for i in self._pages[p].ids]

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def lookup(self, item_id: str) -> Optional[Item]:
        return self._items.get(item_id)

    def page_of(self, item_id: str) -> Optional[int]:
        return self._page_of.get(item_id)

    def patch_item(self, item_id: str, item: Item) -> bool:
        """Replace a cached item in place if ``item`` carries a newer version.

        Returns:
            True if the stored item changed; False if unknown or stale.
        """
        existing = self._items.get(item_id)
        if existing is None or item.version <= existing.version:
            return False
        self._items[item_id] = existing.merged(item)
        return True

    def remove_item(self, item_id: str) -> Optional[Item]:
        """Remove an item from its page. The page shrinks; others are untouched."""
        page = self._page_of.pop(item_id, None)
        if page is None:
            return None
        self._pages[page].ids.remove(item_id)
        return self._items.pop(item_id)

    def insert_item(
        self, item: Item, mode: SortMode, tail_open: bool = False
    ) -> Optional[int]:
        """Splice a new item into the cached page that owns its sort position.

        Only the contiguous run from page 1 is considered. If the item sorts
        past that run it belongs to the tail page when ``tail_open`` (the
        catalog has no further pages); otherwise its page is unknown, any
        detached later pages are invalidated and nothing is stored.

        Returns:
            The page the item was stored on, or None.
        """
        run = self.contiguous_pages()
        if not run:
            return None
        key = sort_key(item, mode)
        owner = None
        for page in run:
            ids = self._pages[page].ids
            if ids and key < sort_key(self._items[ids[-1]], mode):
                owner = page
                break
        if owner is None:
            if not tail_open:
                for page in self.pages():
                    if page > run[-1]:
                        self._drop_page(page)
                return None
            owner = run[-1]

        ids = self._pages[owner].ids
        pos = 0
        while pos < len(ids) and sort_key(self._items[ids[pos]], mode) <= key:
            pos += 1
        ids.insert(pos, item.id)
        self._items[item.id] = item
        self._page_of[item.id] = owner
        return owner

    # ------------------------------------------------------------------
    # Total count
    # ------------------------------------------------------------------

    @property
    def total(self) -> Optional[TotalCountState]:
        return self._total

    def put_total(self, count: int) -> None:
        self._total = TotalCountState(count=count, fetched_at=time.time())

    def adjust_total(self, delta: int) -> None:
        """Shift the total without restamping it (reconciler bookkeeping)."""
        if self._total is not None:
            self._total.count = max(0, self._total.count + delta)

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def freshness(self, page: int | None = None) -> Freshness:
        """Classify one page, or the warm-start run from page 1 by its oldest page.

        An uncached page (or an empty run) is expired.
        """
        if page is not None:
            slot = self._pages.get(page)
            stamps = [] if slot is None else [slot.fetched_at]
        else:
            stamps = [self._pages[p].fetched_at for p in self.contiguous_pages()]
        if not stamps:
            return Freshness.EXPIRED
        age = time.time() - min(stamps)
        if age < self._fresh_ttl:
            return Freshness.FRESH
        if age < self._expire_ttl:
            return Freshness.STALE
        return Freshness.EXPIRED

    def is_fresh(self, page: int | None = None) -> bool:
        return self.freshness(page) is Freshness.FRESH

    def is_stale(self, page: int | None = None) -> bool:
        return self.freshness(page) is Freshness.STALE

    # ------------------------------------------------------------------
    # Singleflight + lifecycle
    # ------------------------------------------------------------------

    def lock_for(self, page: int) -> asyncio.Lock:
        """Return the per-page singleflight lock (create if absent)."""
        lock = self._locks.get(page)
        if lock is None:
            lock = self._locks[page] = asyncio.Lock()
        return lock

    def stats(self) -> Dict[str, int]:
        """Return simple stats for observability."""
        return {
            "pages": len(self._pages),
            "items": len(self._items),
            "capacity": self._cap,
            "total": self._total.count if self._total else -1,
        }

    def dispose(self) -> None:
        """Release everything held by this session's cache."""
        self.invalidate_all()
        self._locks.clear()

    # ------------------------------------------------------------------

    def _drop_page(self, page: int) -> None:
        slot = self._pages.pop(page, None)
        if slot is not None:
            self._forget_ids(slot.ids)

    def _forget_ids(self, ids: Iterable[str]) -> None:
        for item_id in list(ids):
            self._items.pop(item_id, None)
            self._page_of.pop(item_id, None)

    def _ids_without_page(self) -> List[str]:
        return [i for i, p in self._page_of.items() if p not in self._pages]
