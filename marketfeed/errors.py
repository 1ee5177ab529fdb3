"""Error taxonomy for the listing feed.

Only :class:`FetchError` ever reaches a consumer (through the loader's
``error`` field). The others are raised and caught inside the reconciler and
viewport trigger, where they become log lines and metrics.
"""


class FetchError(Exception):
    """A page could not be loaded from the listing source."""

    def __init__(self, message: str, page: int | None = None) -> None:
        super().__init__(message)
        self.page = page

    def __repr__(self) -> str:
        return f"FetchError({str(self)!r}, page={self.page})"


class TransientHTTPError(Exception):
    """Retryable upstream status (429 or 5xx)."""

    def __init__(self, status_code: int, retry_after: float | None = None) -> None:
        super().__init__(f"Upstream error {status_code}")
        self.status_code = status_code
        self.retry_after = retry_after


class StaleEventError(Exception):
    """A change event whose version does not advance the stored item."""

    def __init__(self, item_id: str, incoming: int, current: int) -> None:
        super().__init__(f"stale event id={item_id} incoming={incoming} current={current}")
        self.item_id = item_id
        self.incoming = incoming
        self.current = current


class MalformedEventError(ValueError):
    """A change-feed payload that does not describe an insert, update or delete."""


class ObserverAttachmentError(Exception):
    """The sentinel target is unavailable (e.g. already unmounted)."""
