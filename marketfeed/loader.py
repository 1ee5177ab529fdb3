"""Incremental (infinite-scroll) loader over a :class:`PageCache`.

The loader owns the ordered, de-duplicated live list for one browsing session.
Pages come from the cache when it is fresh enough and from the listing source
otherwise. Every network fetch is single-flight: while one is in progress,
further ``load_more`` calls return immediately.

Results are applied only if the session that started the fetch is still
current. ``refresh()`` and ``dispose()`` open a new session, so a late
response can never resurrect discarded state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from cachetools import TTLCache

from . import metrics
from .errors import FetchError
from .ordering import SortMode, insertion_index, sort_items, sort_key
from .page_cache import Freshness, PageCache
from .schemas import Item, ListingsPage
from .settings import settings
from .source import ListingSource

log = logging.getLogger(__name__)

ErrorCallback = Callable[[FetchError], None]


@dataclass
class LoaderState:
    items: List[Item] = field(default_factory=list)
    current_page: int = 1
    total_count: int = 0
    has_more: bool = True
    is_loading: bool = False
    is_loading_more: bool = False
    in_flight: bool = False
    error: Optional[FetchError] = None

    def reset(self) -> None:
        self.items = []
        self.current_page = 1
        self.total_count = 0
        self.has_more = True
        self.is_loading = False
        self.is_loading_more = False
        self.in_flight = False
        self.error = None


class RecentChanges:
    """Short-lived memory of feed events, overlaid on every fetched page.

    A page snapshot taken before an update or delete must not undo it when
    the response lands afterwards.
    """

    def __init__(self, ttl: float | None = None, maxsize: int | None = None) -> None:
        ttl = settings.TOMBSTONE_TTL_SECONDS if ttl is None else ttl
        maxsize = settings.TOMBSTONE_MAX if maxsize is None else maxsize
        self.updates: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        # id -> deleted version; None means "every version seen so far"
        self.tombstones: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)

    def note_update(self, item: Item) -> None:
        known = self.updates.get(item.id)
        if known is None or item.version > known.version:
            self.updates[item.id] = item

    def note_delete(self, item_id: str, version: Optional[int]) -> None:
        self.updates.pop(item_id, None)
        self.tombstones[item_id] = version

    def is_deleted(self, item_id: str) -> bool:
        return item_id in self.tombstones

    def blocks(self, item: Item) -> bool:
        """True if ``item`` is at or behind a delete still on record."""
        if item.id not in self.tombstones:
            return False
        deleted = self.tombstones[item.id]
        return deleted is None or item.version <= deleted

    def forget_delete(self, item_id: str) -> None:
        self.tombstones.pop(item_id, None)

    def overlay(self, items: Sequence[Item]) -> List[Item]:
        out: List[Item] = []
        for item in items:
            if self.blocks(item):
                continue
            newer = self.updates.get(item.id)
            if newer is not None and newer.version > item.version:
                item = item.merged(newer)
            out.append(item)
        return out

    def clear(self) -> None:
        self.updates.clear()
        self.tombstones.clear()


class IncrementalLoader:
    def __init__(
        self,
        source: ListingSource,
        cache: PageCache | None = None,
        page_size: int | None = None,
        sort_mode: SortMode = SortMode.NEWEST,
        page_order: SortMode = SortMode.NEWEST,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """
        Args:
            source: Paged listing query.
            cache: Page cache owned by this loader's session.
            page_size: Items requested per page.
            sort_mode: Display order of the live list.
            page_order: Order in which the source returns pages.
            on_error: Called with every surfaced :class:`FetchError`.
        """
        self.source = source
        self.cache = cache if cache is not None else PageCache()
        self.page_size = page_size or settings.PAGE_SIZE
        self.sort_mode = SortMode(sort_mode)
        self.page_order = SortMode(page_order)
        self.changes = RecentChanges()
        self.state = LoaderState()
        self._on_error = on_error
        self._by_id: Dict[str, Item] = {}
        self._has_page = False
        self._session = 0
        self._mounted = True
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def items(self) -> Tuple[Item, ...]:
        return tuple(self.state.items)

    @property
    def mounted(self) -> bool:
        return self._mounted

    def contains(self, item_id: str) -> bool:
        return item_id in self._by_id

    def get_item(self, item_id: str) -> Optional[Item]:
        return self._by_id.get(item_id)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def load_initial(self) -> None:
        """Populate the live list from the cache and/or page 1 of the source.

        fresh cache  -> serve it, no network call
        stale cache  -> serve it, revalidate page 1 in the background
        expired/none -> fetch page 1 while ``is_loading``
        """
        if not self._mounted:
            return
        st = self.state
        token = self._session
        run = self.cache.contiguous_pages()
        tier = self.cache.freshness()

        if run and tier is not Freshness.EXPIRED:
            self._warm_start(run)
            metrics.record_cache_hit(tier.value)
            log.info(
                "loader.load_initial warm_start freshness=%s pages=%d items=%d total=%d",
                tier.value,
                len(run),
                len(st.items),
                st.total_count,
            )
            if tier is Freshness.STALE:
                self._spawn(self._revalidate(1, token))
            return

        if st.in_flight:
            log.debug("loader.load_initial skipped: fetch in flight")
            return

        st.is_loading = True
        st.in_flight = True
        try:
            async with self.cache.lock_for(1):
                result = await self._fetch(1)
            if not self._is_current(token):
                log.debug("loader.load_initial discarded stale response")
                return
            data = self.changes.overlay(result.data)
            self.cache.put(1, data)
            self.cache.put_total(result.total)
            metrics.record_cache_put()
            self._replace_all(data)
            st.current_page = 1
            st.total_count = result.total
            st.has_more = bool(data) and len(st.items) < st.total_count
            st.error = None
            log.info(
                "loader.load_initial fetched=%d total=%d has_more=%s",
                len(data),
                st.total_count,
                st.has_more,
            )
        except FetchError as exc:
            if self._is_current(token):
                self._fail(exc)
        finally:
            if self._is_current(token):
                st.is_loading = False
                st.in_flight = False

    async def load_more(self) -> None:
        """Append the next page. No-op when exhausted or a fetch is in flight."""
        st = self.state
        if not self._mounted or not st.has_more or st.in_flight:
            return
        # Guard is taken before the first await: re-entrant triggers see it set.
        st.in_flight = True
        st.is_loading_more = True
        token = self._session
        page = st.current_page + 1 if self._has_page else 1

        try:
            entry = self.cache.get(page)
            tier = self.cache.freshness(page)
            if entry is not None and tier is not Freshness.EXPIRED:
                metrics.record_cache_hit(tier.value)
                self._append(page, self.changes.overlay(entry.items))
                st.has_more = len(st.items) < st.total_count
                log.debug(
                    "loader.load_more cache_hit page=%d freshness=%s items=%d",
                    page,
                    tier.value,
                    len(st.items),
                )
                if tier is Freshness.STALE:
                    self._spawn(self._revalidate(page, token))
                return

            async with self.cache.lock_for(page):
                result = await self._fetch(page)
            if not self._is_current(token):
                log.debug("loader.load_more discarded stale response page=%d", page)
                return
            data = self.changes.overlay(result.data)
            self.cache.put(page, data)
            self.cache.put_total(result.total)
            metrics.record_cache_put()
            st.total_count = result.total
            self._append(page, data)
            st.has_more = bool(result.data) and len(st.items) < st.total_count
            st.error = None
            log.info(
                "loader.load_more page=%d fetched=%d items=%d total=%d has_more=%s",
                page,
                len(data),
                len(st.items),
                st.total_count,
                st.has_more,
            )
        except FetchError as exc:
            if self._is_current(token):
                self._fail(exc)
        finally:
            if self._is_current(token):
                st.in_flight = False
                st.is_loading_more = False

    async def refresh(self) -> None:
        """Drop the cache and all loaded state, then load page 1 again."""
        if not self._mounted:
            return
        self._session += 1
        self._cancel_background()
        # new session, new page locks: an old fetch must not hold up the next one
        self.cache.dispose()
        self.state.reset()
        self._by_id.clear()
        self._has_page = False
        log.info("loader.refresh session=%d", self._session)
        await self.load_initial()

    def set_sort_mode(self, mode: SortMode) -> None:
        """Re-sort the live list for a new display order."""
        mode = SortMode(mode)
        if mode is self.sort_mode:
            return
        self.sort_mode = mode
        self.state.items = sort_items(self.state.items, mode)
        log.info("loader.sort_mode mode=%s items=%d", mode.value, len(self.state.items))

    async def wait_idle(self) -> None:
        """Wait for background revalidations started by this loader."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def dispose(self) -> None:
        """Stop applying results and drop all cached state."""
        self._mounted = False
        self._session += 1
        self._cancel_background()
        self.cache.dispose()
        self.changes.clear()
        log.debug("loader.dispose")

    # ------------------------------------------------------------------
    # Live-list mutation (used by the reconciler)
    # ------------------------------------------------------------------

    def insert_sorted(self, item: Item) -> Optional[int]:
        """Insert a new item at its sorted position.

        An item that sorts past the loaded range in ``page_order`` while more
        pages exist belongs to an unloaded page; it is left for ``load_more``.

        Returns:
            The index used, or None if the item was not placed.
        """
        if item.id in self._by_id:
            return None
        if self.state.has_more and self._beyond_loaded(item):
            return None
        items = self.state.items
        idx = insertion_index(items, item, self.sort_mode)
        items.insert(idx, item)
        self._by_id[item.id] = item
        return idx

    def replace_item(self, item: Item) -> bool:
        """Swap the stored object for ``item`` at the same position."""
        if item.id not in self._by_id:
            return False
        idx = self._index_of(item.id)
        self.state.items[idx] = item
        self._by_id[item.id] = item
        return True

    def remove_item(self, item_id: str) -> Optional[Item]:
        if item_id not in self._by_id:
            return None
        del self.state.items[self._index_of(item_id)]
        return self._by_id.pop(item_id)

    def adjust_total(self, delta: int) -> None:
        self.state.total_count = max(0, self.state.total_count + delta)
        self.cache.adjust_total(delta)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_current(self, token: int) -> bool:
        return self._mounted and token == self._session

    async def _fetch(self, page: int) -> ListingsPage:
        """Fetch one page, normalizing every failure into :class:`FetchError`."""
        try:
            result = await self.source.fetch_page(page, self.page_size)
        except Exception as exc:
            metrics.record_fetch(False)
            raise FetchError(f"page {page} fetch failed: {exc!r}", page=page) from exc
        if result.error is not None:
            metrics.record_fetch(False)
            err = result.error
            if err.page is None:
                err.page = page
            raise err
        metrics.record_fetch(True)
        return result

    def _fail(self, exc: FetchError) -> None:
        self.state.error = exc
        log.warning("loader.fetch_failed page=%s error=%s", exc.page, exc)
        if self._on_error is not None:
            try:
                self._on_error(exc)
            except Exception:
                log.exception("loader.on_error callback raised")

    def _warm_start(self, run: List[int]) -> None:
        st = self.state
        cached: List[Item] = []
        for page in run:
            entry = self.cache.get(page)
            if entry is not None:
                cached.extend(entry.items)
        self._replace_all(self.changes.overlay(cached))
        st.current_page = run[-1]
        total = self.cache.total
        st.total_count = total.count if total is not None else len(st.items)
        st.has_more = len(st.items) < st.total_count
        st.is_loading = False
        st.error = None

    def _replace_all(self, items: Sequence[Item]) -> None:
        self.state.items = []
        self._by_id.clear()
        self._has_page = True
        self._merge(items)

    def _append(self, page: int, items: Sequence[Item]) -> None:
        self._merge(items)
        self.state.current_page = page
        self._has_page = True

    def _merge(self, items: Sequence[Item]) -> None:
        """Add fetched items: existing ids are version-gated, new ids placed."""
        in_page_order = self.sort_mode is self.page_order
        for item in items:
            existing = self._by_id.get(item.id)
            if existing is not None:
                if item.version > existing.version:
                    self.replace_item(item)
                continue
            if in_page_order:
                self.state.items.append(item)
            else:
                idx = insertion_index(self.state.items, item, self.sort_mode)
                self.state.items.insert(idx, item)
            self._by_id[item.id] = item

    def _beyond_loaded(self, item: Item) -> bool:
        """True if ``item`` sorts after every loaded item in source page order."""
        items = self.state.items
        if not items:
            return True
        if self.sort_mode is self.page_order:
            last = items[-1]
        else:
            last = max(items, key=lambda i: sort_key(i, self.page_order))
        return sort_key(item, self.page_order) > sort_key(last, self.page_order)

    def _index_of(self, item_id: str) -> int:
        for idx, item in enumerate(self.state.items):
            if item.id == item_id:
                return idx
        raise KeyError(item_id)

    def _cancel_background(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _revalidate(self, page: int, token: int) -> None:
        """Refetch a stale page and reconcile it into the live list."""
        lock = self.cache.lock_for(page)
        async with lock:
            # Another revalidation may have refreshed the page while we waited
            if self.cache.is_fresh(page) or not self._is_current(token):
                return
            try:
                result = await self._fetch(page)
            except Exception as exc:
                # keep serving the stale page; the next trigger retries
                log.warning("loader.revalidate_failed page=%d error=%r", page, exc)
                return
            if not self._is_current(token):
                return

            before = self.cache.get(page)
            data = self.changes.overlay(result.data)
            self.cache.put(page, data)
            self.cache.put_total(result.total)
            metrics.record_cache_put()

            fresh_ids = {i.id for i in data}
            dropped = 0
            for old in before.items if before is not None else []:
                # gone from this page and not cached elsewhere
                if old.id not in fresh_ids and self.cache.page_of(old.id) is None:
                    if self.remove_item(old.id) is not None:
                        dropped += 1
            for item in data:
                existing = self._by_id.get(item.id)
                if existing is None:
                    self.insert_sorted(item)
                elif item.version > existing.version:
                    self.replace_item(item)

            st = self.state
            st.total_count = result.total
            st.has_more = len(st.items) < st.total_count
            log.info(
                "loader.revalidate page=%d fetched=%d dropped=%d items=%d",
                page,
                len(data),
                dropped,
                len(st.items),
            )
