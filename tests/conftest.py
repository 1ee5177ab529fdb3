# --- keep this shim at the very top ---
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
# --------------------------------------

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple

import pytest
import pytest_asyncio

from marketfeed.errors import FetchError
from marketfeed.loader import IncrementalLoader
from marketfeed.page_cache import PageCache
from marketfeed.schemas import Item, ListingsPage

BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_item(i: int, **overrides: Any) -> Item:
    """Listing ``i``; higher ``i`` means older, so newest-first order is by ``i``."""
    fields = {
        "id": f"item-{i:03d}",
        "version": 1,
        "created_at": BASE_TIME - timedelta(minutes=i),
        "price_cents": 1000 + i,
        "title": f"Vision {i:03d}",
    }
    fields.update(overrides)
    return Item(**fields)


def make_items(n: int) -> List[Item]:
    return [make_item(i) for i in range(n)]


class FakeSource:
    """In-memory listing source.

    ``gate`` (an asyncio.Event) holds every fetch until set, so tests can
    interleave triggers and events with an in-flight request.
    """

    def __init__(self, items: List[Item], total: Optional[int] = None) -> None:
        self.catalog = list(items)
        self.total = total
        self.calls: List[Tuple[int, int]] = []
        self.gate: Optional[asyncio.Event] = None
        self.failures: List[Exception] = []
        self.error_pages: List[FetchError] = []
        self.handlers: List[Callable[[Any], None]] = []

    async def fetch_page(self, page: int, limit: int) -> ListingsPage:
        self.calls.append((page, limit))
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        if self.error_pages:
            return ListingsPage(error=self.error_pages.pop(0))
        start = (page - 1) * limit
        data = self.catalog[start : start + limit]
        total = self.total if self.total is not None else len(self.catalog)
        return ListingsPage(data=data, total=total, has_more=start + limit < total)

    def subscribe_to_changes(self, on_event: Callable[[Any], None]):
        self.handlers.append(on_event)

        def unsubscribe() -> None:
            self.handlers.remove(on_event)

        return unsubscribe

    def emit(self, payload: Any) -> None:
        for handler in list(self.handlers):
            handler(payload)

    def pages_requested(self) -> List[int]:
        return [page for page, _ in self.calls]


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def frozen_time(monkeypatch):
    """Controllable clock for page-cache freshness."""
    from marketfeed import page_cache as mod

    now = {"t": 1_000.0}
    monkeypatch.setattr(mod.time, "time", lambda: now["t"])
    return now


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(make_items(57))


@pytest.fixture
def cache() -> PageCache:
    return PageCache(fresh_ttl=60.0, expire_ttl=300.0, capacity=64)


@pytest_asyncio.fixture
async def loader(source, cache):
    ldr = IncrementalLoader(source, cache, page_size=20)
    yield ldr
    ldr.dispose()
