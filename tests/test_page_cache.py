from __future__ import annotations

import asyncio
from typing import Dict, Any

import pytest

from marketfeed.ordering import SortMode
from marketfeed.page_cache import Freshness, PageCache

from conftest import make_item, make_items


def test_put_get_returns_entry_stamped_with_now(frozen_time):
    """put() stores a page with fetched_at = now; get() returns a snapshot."""
    cache = PageCache(fresh_ttl=1.0, expire_ttl=2.0, capacity=10)
    items = make_items(3)

    cache.put(1, items)
    entry = cache.get(1)

    assert entry is not None
    assert entry.page == 1
    assert [i.id for i in entry.items] == [i.id for i in items]
    assert entry.fetched_at == 1_000.0
    assert cache.get(2) is None


def test_freshness_tiers_follow_both_thresholds(frozen_time):
    """fresh below T1, stale between T1 and T2, expired from T2 on.

    get() keeps returning the entry at every age; only the tier changes.
    """
    cache = PageCache(fresh_ttl=1.0, expire_ttl=2.0, capacity=10)
    cache.put(1, make_items(2))

    frozen_time["t"] += 0.5
    assert cache.freshness(1) is Freshness.FRESH
    assert cache.is_fresh() and not cache.is_stale()

    frozen_time["t"] += 1.0
    assert cache.freshness(1) is Freshness.STALE
    assert cache.is_stale() and not cache.is_fresh()

    frozen_time["t"] += 1.0
    assert cache.freshness(1) is Freshness.EXPIRED
    assert not cache.is_fresh() and not cache.is_stale()
    assert cache.get(1) is not None  # no eviction on read


def test_empty_cache_and_uncached_page_are_expired():
    cache = PageCache(fresh_ttl=1.0, expire_ttl=2.0)
    assert cache.freshness() is Freshness.EXPIRED
    assert cache.freshness(4) is Freshness.EXPIRED


def test_cache_wide_freshness_uses_oldest_page_of_the_run(frozen_time):
    cache = PageCache(fresh_ttl=10.0, expire_ttl=20.0)
    cache.put(1, make_items(2))
    frozen_time["t"] += 8
    cache.put(2, [make_item(5)])
    frozen_time["t"] += 4  # page 1 is 12s old, page 2 is 4s old

    assert cache.freshness(2) is Freshness.FRESH
    assert cache.freshness() is Freshness.STALE


def test_expire_ttl_must_not_be_below_fresh_ttl():
    with pytest.raises(ValueError):
        PageCache(fresh_ttl=10.0, expire_ttl=5.0)


def test_pages_need_not_be_contiguous():
    """Page 3 may be cached without page 2; warm start only uses the run from 1."""
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, [make_item(0), make_item(1)])
    cache.put(3, [make_item(4)])

    assert cache.pages() == [1, 3]
    assert cache.contiguous_pages() == [1]
    assert [i.id for i in cache.get_all_cached_items()] == [
        "item-000",
        "item-001",
        "item-004",
    ]


def test_put_moves_an_id_that_was_cached_on_another_page():
    """Shifted page boundaries never leave an item on two pages."""
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, [make_item(0), make_item(1), make_item(2)])
    cache.put(2, [make_item(2), make_item(3)])

    assert [i.id for i in cache.get(1).items] == ["item-000", "item-001"]
    assert cache.page_of("item-002") == 2
    all_ids = [i.id for i in cache.get_all_cached_items()]
    assert len(all_ids) == len(set(all_ids))


def test_patch_item_is_version_gated():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, [make_item(0, version=3)])

    assert cache.patch_item("item-000", make_item(0, version=3, title="same")) is False
    assert cache.patch_item("item-000", make_item(0, version=2, title="older")) is False
    assert cache.lookup("item-000").title == "Vision 000"

    assert cache.patch_item("item-000", make_item(0, version=4, title="newer")) is True
    patched = cache.get(1).items[0]
    assert patched.title == "newer" and patched.version == 4

    assert cache.patch_item("missing", make_item(9, version=99)) is False


def test_remove_item_shrinks_only_its_page(frozen_time):
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, make_items(3))
    cache.put(2, [make_item(3), make_item(4)])
    cache.put_total(5)

    removed = cache.remove_item("item-001")

    assert removed is not None and removed.id == "item-001"
    assert [i.id for i in cache.get(1).items] == ["item-000", "item-002"]
    assert [i.id for i in cache.get(2).items] == ["item-003", "item-004"]
    assert cache.total.count == 5  # decremented separately
    assert cache.remove_item("item-001") is None


def test_insert_item_lands_on_owning_page():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, [make_item(0), make_item(2)])
    cache.put(2, [make_item(4), make_item(6)])

    page = cache.insert_item(make_item(5), SortMode.NEWEST)

    assert page == 2
    assert [i.id for i in cache.get(2).items] == ["item-004", "item-005", "item-006"]
    assert cache.page_of("item-005") == 2


def test_insert_past_cached_run_is_unknown_unless_tail_is_open():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, [make_item(0), make_item(1)])
    cache.put(3, [make_item(8)])

    # more pages exist: position unknown, detached page 3 may have shifted
    assert cache.insert_item(make_item(5), SortMode.NEWEST) is None
    assert cache.get(3) is None
    assert cache.lookup("item-005") is None

    # no more pages: the tail page owns it
    assert cache.insert_item(make_item(5), SortMode.NEWEST, tail_open=True) == 1
    assert [i.id for i in cache.get(1).items][-1] == "item-005"


def test_insert_into_empty_cache_stores_nothing():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    assert cache.insert_item(make_item(1), SortMode.NEWEST, tail_open=True) is None
    assert cache.get_all_cached_items() == []


def test_total_count_is_tracked_separately(frozen_time):
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    assert cache.total is None
    cache.adjust_total(-1)  # nothing to adjust yet
    assert cache.total is None

    cache.put_total(2)
    frozen_time["t"] += 30
    cache.adjust_total(-3)

    assert cache.total.count == 0
    assert cache.total.fetched_at == 1_000.0


def test_invalidate_and_invalidate_all():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, make_items(2))
    cache.put(2, [make_item(2)])
    cache.put_total(3)

    cache.invalidate(2)
    assert cache.get(2) is None
    assert cache.lookup("item-002") is None
    assert cache.get(1) is not None

    cache.invalidate_all()
    assert cache.get(1) is None
    assert cache.total is None
    assert cache.stats()["pages"] == 0
    assert cache.stats()["items"] == 0


def test_capacity_evicts_oldest_written_page():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0, capacity=2)
    cache.put(1, [make_item(0)])
    cache.put(2, [make_item(1)])
    cache.put(3, [make_item(2)])

    assert cache.get(1) is None
    assert cache.lookup("item-000") is None
    assert cache.pages() == [2, 3]
    assert cache.stats()["capacity"] == 2


@pytest.mark.asyncio
async def test_singleflight_lock_ensures_one_fill():
    """Concurrent misses for the same page should execute the fill exactly once."""
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    calls = {"n": 0}
    produced: Dict[str, Any] = {"items": make_items(2)}

    async def worker():
        if cache.is_fresh(1):
            return cache.get(1)
        async with cache.lock_for(1):
            # Re-check after acquiring
            if cache.is_fresh(1):
                return cache.get(1)
            calls["n"] += 1
            await asyncio.sleep(0.01)  # simulate I/O
            cache.put(1, produced["items"])
            return cache.get(1)

    results = await asyncio.gather(*[worker() for _ in range(8)])

    assert calls["n"] == 1
    assert all([i.id for i in r.items] == ["item-000", "item-001"] for r in results)


@pytest.mark.asyncio
async def test_locks_differ_for_distinct_pages_and_reuse_for_same_page():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    assert cache.lock_for(1) is cache.lock_for(1)
    assert cache.lock_for(1) is not cache.lock_for(2)


def test_dispose_releases_everything():
    cache = PageCache(fresh_ttl=60.0, expire_ttl=120.0)
    cache.put(1, make_items(2))
    cache.put_total(2)
    cache.lock_for(1)

    cache.dispose()

    assert cache.get_all_cached_items() == []
    assert cache.total is None
    assert cache.stats()["items"] == 0
