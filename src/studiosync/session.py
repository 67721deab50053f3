"""Explicit session context: who the active owner is, and their membership tier.

Passed into repositories, the job tracker and the quota ledger instead of a
module-level "current user" global, so tests can run isolated sessions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

FREE = "free"
MEMBERSHIPS = (FREE, "pro-monthly", "pro-annual")

# (previous_owner_id, new_owner_id)
IdentityListener = Callable[[str | None, str | None], None]


@runtime_checkable
class IdentityProvider(Protocol):
    def current(self) -> str | None:
        """Active owner id, or None for a guest."""
        ...


class SessionContext:
    """Mutable identity holder with change notification."""

    def __init__(self, owner_id: str | None = None, membership: str = FREE) -> None:
        self._owner_id = owner_id
        self.membership = membership if membership in MEMBERSHIPS else FREE
        self._listeners: list[IdentityListener] = []

    def current(self) -> str | None:
        return self._owner_id

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def is_guest(self) -> bool:
        return self._owner_id is None

    def set_identity(self, owner_id: str | None, membership: str = FREE) -> None:
        """Switch identity (login/logout/account switch) and notify listeners."""
        previous = self._owner_id
        self._owner_id = owner_id
        self.membership = membership if membership in MEMBERSHIPS else FREE
        if previous == owner_id:
            return
        logger.info("Identity changed: %s -> %s", previous or "guest", owner_id or "guest")
        for listener in list(self._listeners):
            try:
                listener(previous, owner_id)
            except Exception:
                logger.exception("Identity listener %r failed", listener)

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
