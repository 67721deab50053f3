"""In-process invalidation signal.

``emit()`` carries no payload: subscribers re-read whatever state they show.
Listeners run synchronously in subscription order; one raising listener is
logged and skipped so the rest still run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def emit(self) -> None:
        # Copy: a listener may unsubscribe itself while being notified.
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Event listener %r failed", listener)

    def __len__(self) -> int:
        return len(self._listeners)
