"""Sort modes and sorted insertion for the live listing list."""

from __future__ import annotations

from bisect import bisect_right
from enum import Enum
from typing import Any, Callable, Dict, List, Sequence, Tuple

from .schemas import Item


class SortMode(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    PRICE_LOW = "price-low"
    PRICE_HIGH = "price-high"
    NAME = "name"
    SCORE = "score"


def _ts(item: Item) -> float:
    return item.created_at.timestamp() if item.created_at is not None else 0.0


def _price(item: Item) -> int:
    return item.price_cents if item.price_cents is not None else 0


# Keys ascend; descending modes negate. Missing values sort as zero / empty.
_KEYS: Dict[SortMode, Callable[[Item], Any]] = {
    SortMode.NEWEST: lambda i: -_ts(i),
    SortMode.OLDEST: _ts,
    SortMode.PRICE_LOW: _price,
    SortMode.PRICE_HIGH: lambda i: -_price(i),
    SortMode.NAME: lambda i: (i.title or "").casefold(),
    # No vision scores client-side; price is the proxy
    SortMode.SCORE: lambda i: -_price(i),
}


def sort_key(item: Item, mode: SortMode) -> Tuple[Any, str]:
    """Return the total-order key for ``item`` under ``mode`` (ties by id)."""
    return (_KEYS[SortMode(mode)](item), item.id)


def insertion_index(items: Sequence[Item], item: Item, mode: SortMode) -> int:
    """Binary-search the position of ``item`` in an already-sorted sequence."""
    return bisect_right(items, sort_key(item, mode), key=lambda i: sort_key(i, mode))


def sort_items(items: Sequence[Item], mode: SortMode) -> List[Item]:
    return sorted(items, key=lambda i: sort_key(i, mode))
