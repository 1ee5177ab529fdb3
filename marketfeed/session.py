"""Browsing-session facade: the interface a rendering layer consumes.

Wires one :class:`PageCache`, :class:`IncrementalLoader`,
:class:`RealtimeReconciler` and :class:`ViewportTrigger` together for the
lifetime of one mounted list, and tears all of them down on ``close()``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from .errors import FetchError
from .loader import ErrorCallback, IncrementalLoader
from .logging_config import configure_logging
from .ordering import SortMode
from .page_cache import PageCache
from .reconciler import RealtimeReconciler
from .schemas import Item
from .settings import settings
from .source import ListingSource
from .viewport import Observation, Sentinel, ViewportTrigger

log = logging.getLogger(__name__)


class BrowsingSession:
    def __init__(
        self,
        source: ListingSource,
        cache: PageCache | None = None,
        page_size: int | None = None,
        sort_mode: SortMode = SortMode.NEWEST,
        page_order: SortMode = SortMode.NEWEST,
        root_margin: float | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.source = source
        self.cache = cache if cache is not None else PageCache()
        self.loader = IncrementalLoader(
            source,
            self.cache,
            page_size=page_size,
            sort_mode=sort_mode,
            page_order=page_order,
            on_error=on_error,
        )
        self.reconciler = RealtimeReconciler(self.loader)
        self.trigger = ViewportTrigger(self.load_more, self._can_load_more, root_margin)
        self._pending: Optional[asyncio.Task] = None
        self._row_mode = False
        self._failures = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the change feed, then load the first page."""
        configure_logging()
        # subscribe first so events raised during the page-1 fetch are kept
        self.reconciler.attach(self.source)
        await self.loader.load_initial()
        self._sync_sentinel()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.trigger.close()
        self.reconciler.close()
        self.loader.dispose()
        await self._cancel_pending()
        log.info("session.closed")

    async def __aenter__(self) -> "BrowsingSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Consumer view
    # ------------------------------------------------------------------

    @property
    def items(self) -> Tuple[Item, ...]:
        return self.loader.items

    @property
    def is_loading(self) -> bool:
        return self.loader.state.is_loading

    @property
    def is_loading_more(self) -> bool:
        return self.loader.state.is_loading_more

    @property
    def has_more(self) -> bool:
        return self.loader.state.has_more

    @property
    def total_count(self) -> int:
        return self.loader.state.total_count

    @property
    def error(self) -> Optional[FetchError]:
        return self.loader.state.error

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def load_more(self) -> Optional[asyncio.Task]:
        """Schedule the next page; returns the in-progress task if one exists."""
        if self._closed:
            return None
        if self._pending is not None and not self._pending.done():
            return self._pending
        if not self._can_load_more():
            return None
        self._pending = asyncio.create_task(self._run_load_more())
        return self._pending

    async def refresh(self) -> None:
        if self._closed:
            return
        # a load from the old session must not block paging in the new one
        await self._cancel_pending()
        self._failures = 0
        await self.loader.refresh()
        self._sync_sentinel()

    def set_sort_mode(self, mode: SortMode) -> None:
        self.loader.set_sort_mode(mode)

    def sentinel_ref(self, node: Optional[Sentinel]) -> Optional[Observation]:
        """Attach (or, with ``None``, detach) the lazy-load sentinel."""
        self._row_mode = False
        return self.trigger.sentinel_ref(node)

    def update_viewport(self, top: float, bottom: float) -> None:
        self.trigger.update_viewport(top, bottom)

    def scroll_rows(self, top: float, bottom: float) -> None:
        """Row-based viewport: the sentinel follows the last loaded row."""
        self._row_mode = True
        self._sync_sentinel()
        self.trigger.update_viewport(top, bottom)

    # ------------------------------------------------------------------

    def _can_load_more(self) -> bool:
        st = self.loader.state
        return st.has_more and not st.is_loading and not st.is_loading_more

    async def _run_load_more(self) -> None:
        before = self.loader.state.error
        try:
            await self.loader.load_more()
        finally:
            if self._pending is asyncio.current_task():
                self._pending = None
        error = self.loader.state.error
        failed = error is not None and error is not before
        self._failures = self._failures + 1 if failed else 0
        if self._closed:
            return
        # re-attaching fires again if the sentinel is still visible
        rearm = failed and self._failures <= settings.LOAD_MORE_AUTO_RETRIES
        if failed and not rearm:
            log.warning("session.load_more gave up after %d failures", self._failures)
        self._sync_sentinel(rearm=rearm)

    async def _cancel_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)

    def _sync_sentinel(self, rearm: bool = False) -> None:
        if not self._row_mode or self._closed:
            return
        position = float(len(self.loader.state.items))
        current = self.trigger.sentinel
        if rearm or current is None or current.position != position:
            self.trigger.sentinel_ref(Sentinel(position))
