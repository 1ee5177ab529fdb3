"""HTTP listing source: paged listing query plus an NDJSON change feed.

Page fetches retry 429/5xx responses and transient transport errors with
exponential backoff, honouring ``Retry-After``. A fetch that still fails is
reported through ``ListingsPage.error`` rather than raised. The change feed
reconnects after the stream ends or breaks, until unsubscribed.
"""

import json
import asyncio
import logging
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from . import metrics
from .errors import FetchError, TransientHTTPError
from .ordering import SortMode
from .schemas import ListingsPage
from .settings import settings
from .source import EventHandler, Unsubscribe

log = logging.getLogger(__name__)

LISTINGS_PATH = "/listings"
CHANGES_PATH = "/listings/changes"


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header value (seconds or HTTP-date)."""
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    return max(0.0, (dt - dt.now(dt.tzinfo)).total_seconds())


class _RetryAfterWait:
    """Use the server's ``Retry-After`` when given, else exponential backoff."""

    def __init__(self, max_wait: float) -> None:
        self._max = max_wait
        self._backoff = wait_exponential(multiplier=0.5, max=max_wait)

    def __call__(self, state: RetryCallState) -> float:
        exc = state.outcome.exception() if state.outcome else None
        if isinstance(exc, TransientHTTPError) and exc.retry_after is not None:
            return min(exc.retry_after, self._max)
        return self._backoff(state)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    log.warning(
        "upstream.retry attempt=%d err=%r delay=%.3fs",
        state.attempt_number,
        exc,
        state.next_action.sleep if state.next_action else 0.0,
    )


class HttpListingSource:
    def __init__(
        self,
        base_url: str | None = None,
        sort: SortMode = SortMode.NEWEST,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_max_wait: float | None = None,
        reconnect_delay: float | None = None,
    ) -> None:
        self.sort = SortMode(sort)
        self.timeout = settings.REQUEST_TIMEOUT if timeout is None else timeout
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.retry_max_wait = (
            settings.RETRY_MAX_WAIT if retry_max_wait is None else retry_max_wait
        )
        self.reconnect_delay = (
            settings.CHANGE_FEED_RECONNECT_DELAY
            if reconnect_delay is None
            else reconnect_delay
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.SOURCE_BASE_URL, timeout=self.timeout
        )

    async def fetch_page(self, page: int, limit: int) -> ListingsPage:
        """GET one page of listings. Never raises; failures land in ``error``."""
        params: Dict[str, Any] = {"page": page, "limit": limit, "sort": self.sort.value}
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_retries)),
            wait=_RetryAfterWait(self.retry_max_wait),
            retry=retry_if_exception_type((TransientHTTPError, httpx.TransportError)),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            result = await retrying(self._get_page, params)
        except Exception as exc:
            log.error("upstream.failed page=%d limit=%d error=%r", page, limit, exc)
            return ListingsPage(error=FetchError(f"listing page {page}: {exc}", page=page))

        attempts = retrying.statistics.get("attempt_number", 1)
        if attempts > 1:
            log.info("upstream.recovered attempt=%d page=%d", attempts, page)
        return result

    async def _get_page(self, params: Dict[str, Any]) -> ListingsPage:
        resp = await self._client.get(LISTINGS_PATH, params=params)
        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            raise TransientHTTPError(
                resp.status_code, _parse_retry_after(resp.headers.get("Retry-After"))
            )
        resp.raise_for_status()
        return ListingsPage.model_validate(resp.json())

    def subscribe_to_changes(self, on_event: EventHandler) -> Unsubscribe:
        """Start streaming change payloads to ``on_event`` on the running loop."""
        task = asyncio.create_task(self._stream_changes(on_event))

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _stream_changes(self, on_event: EventHandler) -> None:
        timeout = httpx.Timeout(self.timeout, read=None)
        while True:
            try:
                async with self._client.stream("GET", CHANGES_PATH, timeout=timeout) as resp:
                    resp.raise_for_status()
                    log.info("change_feed.connected status=%d", resp.status_code)
                    async for line in resp.aiter_lines():
                        self._dispatch(line, on_event)
                log.info("change_feed.ended; reconnecting in %.1fs", self.reconnect_delay)
            except httpx.HTTPError as exc:
                log.warning(
                    "change_feed.error err=%r reconnect_in=%.1fs", exc, self.reconnect_delay
                )
            await asyncio.sleep(self.reconnect_delay)

    @staticmethod
    def _dispatch(line: str, on_event: Callable[[Any], None]) -> None:
        line = line.strip()
        if line.startswith("data:"):  # tolerate SSE framing
            line = line[5:].strip()
        if not line or line.startswith(":"):
            return
        try:
            payload = json.loads(line)
        except ValueError:
            metrics.record_event("unknown", "malformed")
            log.warning("change_feed.bad_json line=%r", line[:200])
            return
        try:
            on_event(payload)
        except Exception:
            log.exception("change_feed.handler_failed")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpListingSource":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
