"""The listing source the core consumes: a paged query plus a change feed."""

from typing import Any, Callable, Protocol

from .schemas import ListingsPage

EventHandler = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class ListingSource(Protocol):
    async def fetch_page(self, page: int, limit: int) -> ListingsPage:
        """Return one page. Idempotent and side-effect free for equal arguments.

        Failures may be reported through ``ListingsPage.error`` or raised.
        """
        ...

    def subscribe_to_changes(self, on_event: EventHandler) -> Unsubscribe:
        """Deliver raw change payloads to ``on_event`` (FIFO per connection).

        Returns a callable that stops delivery.
        """
        ...
