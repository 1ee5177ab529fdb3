from prometheus_client import Counter

# --- Metric objects ---
PAGE_FETCHES = Counter(
    "listing_page_fetches_total",
    "Listing page fetches issued to the source",
    labelnames=["outcome"],
)
CACHE_HITS = Counter(
    "listing_page_cache_hits_total",
    "Pages served from the session page cache",
    labelnames=["freshness"],
)
CACHE_PUTS = Counter(
    "listing_page_cache_puts_total", "Pages written to the session page cache"
)
CHANGE_EVENTS = Counter(
    "listing_change_events_total",
    "Change-feed events seen by the reconciler",
    labelnames=["type", "outcome"],
)
VIEWPORT_TRIGGERS = Counter(
    "listing_viewport_triggers_total",
    "Sentinel intersections",
    labelnames=["outcome"],
)


# --- Public helpers ---
def record_fetch(ok: bool) -> None:
    PAGE_FETCHES.labels(outcome="ok" if ok else "error").inc()


def record_cache_hit(freshness: str) -> None:
    CACHE_HITS.labels(freshness=freshness).inc()


def record_cache_put() -> None:
    CACHE_PUTS.inc()


def record_event(kind: str, outcome: str) -> None:
    CHANGE_EVENTS.labels(type=kind, outcome=outcome).inc()


def record_trigger(fired: bool) -> None:
    VIEWPORT_TRIGGERS.labels(outcome="fired" if fired else "suppressed").inc()
