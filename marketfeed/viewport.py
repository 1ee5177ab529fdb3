"""Sentinel-based lazy-load trigger.

Host-agnostic rendition of an intersection observer: the host reports the
visible window (``update_viewport``) in whatever unit it renders in (rows,
pixels) and attaches a :class:`Sentinel` at the end of the rendered list.
When the sentinel enters the window, widened by ``root_margin`` on both
sides, the trigger fires once. It fires again only after the sentinel leaves
and re-enters, or after a new sentinel is attached while visible.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from . import metrics
from .errors import ObserverAttachmentError
from .settings import settings

log = logging.getLogger(__name__)


@dataclass
class Sentinel:
    """Marker whose visibility requests the next page."""

    position: float
    mounted: bool = True


class Observation:
    """Scoped handle on one observed sentinel.

    Usable as a context manager; ``disconnect`` is idempotent.
    """

    def __init__(self, sentinel: Sentinel) -> None:
        self.sentinel = sentinel
        self.intersecting = False
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def disconnect(self) -> None:
        self._active = False

    def __enter__(self) -> "Observation":
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()


class ViewportTrigger:
    def __init__(
        self,
        on_trigger: Callable[[], Any],
        guard: Callable[[], bool],
        root_margin: float | None = None,
    ) -> None:
        """
        Args:
            on_trigger: Called when the sentinel becomes visible and the guard allows.
            guard: Evaluated at fire time (flags change after attachment).
            root_margin: Look-ahead distance added around the visible window.
        """
        self._on_trigger = on_trigger
        self._guard = guard
        self._margin = settings.VIEWPORT_ROOT_MARGIN if root_margin is None else root_margin
        self._viewport: Optional[Tuple[float, float]] = None
        self._observation: Optional[Observation] = None
        self._closed = False

    @property
    def observation(self) -> Optional[Observation]:
        return self._observation

    @property
    def sentinel(self) -> Optional[Sentinel]:
        return self._observation.sentinel if self._observation else None

    def sentinel_ref(self, node: Optional[Sentinel]) -> Optional[Observation]:
        """Attach to ``node``, tearing down the previous observation first.

        ``None`` or an unmounted node only detaches.
        """
        self._detach()
        if self._closed:
            return None
        try:
            self._observation = self._observe(node)
        except ObserverAttachmentError as exc:
            log.debug("viewport.attach_skipped reason=%s", exc)
            return None
        self._evaluate()
        return self._observation

    def update_viewport(self, top: float, bottom: float) -> None:
        """Record the visible window and fire if the sentinel just entered it."""
        self._viewport = (top, bottom)
        self._evaluate()

    def close(self) -> None:
        """Disconnect unconditionally; later attaches are ignored."""
        self._closed = True
        self._detach()

    def __enter__(self) -> "ViewportTrigger":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------

    @staticmethod
    def _observe(node: Optional[Sentinel]) -> Observation:
        if node is None or not node.mounted:
            raise ObserverAttachmentError("sentinel target unavailable")
        return Observation(node)

    def _detach(self) -> None:
        if self._observation is not None:
            self._observation.disconnect()
            self._observation = None

    def _evaluate(self) -> None:
        obs = self._observation
        if obs is None or not obs.active or self._viewport is None:
            return
        if not obs.sentinel.mounted:
            self._detach()
            return
        top, bottom = self._viewport
        pos = obs.sentinel.position
        now = top - self._margin <= pos <= bottom + self._margin
        entered = now and not obs.intersecting
        obs.intersecting = now
        if entered:
            self._fire()

    def _fire(self) -> None:
        try:
            allowed = bool(self._guard())
        except Exception:
            log.exception("viewport.guard_failed")
            return
        metrics.record_trigger(allowed)
        if not allowed:
            log.debug("viewport.suppressed by guard")
            return
        try:
            self._on_trigger()
        except Exception:
            log.exception("viewport.trigger_failed")
