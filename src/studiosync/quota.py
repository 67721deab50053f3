"""Usage counters per quota kind, with optimistic local increments.

``record`` bumps the local counter first and then upserts the whole counters
snapshot to the remote store. A full snapshot can be replayed any number of
times without double counting, which a delta increment cannot.

Remote values only replace local ones in ``start_session``; nothing during a
session ever lowers a counter the user has already seen.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from studiosync.events import EventBus
from studiosync.models import UsageCounters
from studiosync.session import FREE, SessionContext
from studiosync.storage.namespaced import NamespacedStore
from studiosync.sync.replicator import RemoteReplicator

logger = logging.getLogger(__name__)

UNLIMITED = math.inf
USAGE_KEY = "usage"
USAGE_COLLECTION = "usage_counters"

_PRO = {"conversation": UNLIMITED, "image": 100, "document": UNLIMITED, "video": 25}

QUOTA_TABLE: dict[str, dict[str, float]] = {
    FREE: {"conversation": 50, "image": 5, "document": 50, "video": 2},
    "pro-monthly": _PRO,
    "pro-annual": _PRO,
}

QUOTA_KINDS = tuple(QUOTA_TABLE[FREE])


class _CurrentOwner:
    def __repr__(self) -> str:
        return "CURRENT_OWNER"


# Default ``owner_id``: whoever the session says is active. ``None`` always means guest.
CURRENT_OWNER = _CurrentOwner()
OwnerArg = str | None | _CurrentOwner


def get_quota(kind: str, membership: str = FREE) -> float:
    """Limit for ``kind`` under ``membership``; ``math.inf`` when unbounded.

    Unknown memberships fall back to the free tier. Unknown kinds raise
    ``ValueError``.
    """
    table = QUOTA_TABLE.get(membership, QUOTA_TABLE[FREE])
    if kind not in table:
        raise ValueError(f"unknown quota kind: {kind!r}")
    return table[kind]


def default_counters() -> UsageCounters:
    return UsageCounters(
        used_by_kind={kind: 0 for kind in QUOTA_KINDS},
        free_limit_by_kind={kind: int(limit) for kind, limit in QUOTA_TABLE[FREE].items()},
    )


class QuotaLedger:
    def __init__(
        self,
        store: NamespacedStore,
        bus: EventBus,
        session: SessionContext,
        replicator: RemoteReplicator | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.bus = bus
        self.session = session
        self.replicator = replicator
        self._clock = clock
        # Owners with a start_session pull in flight -> recorded usage meanwhile.
        self._recorded_during_pull: dict[str | None, bool] = {}

    # ── Local state ──────────────────────────────────────────

    def counters(self, owner_id: OwnerArg = CURRENT_OWNER) -> UsageCounters:
        owner_id = self._owner(owner_id)
        raw = self.store.get(owner_id, USAGE_KEY)
        if not isinstance(raw, dict):
            return default_counters()
        try:
            counters = UsageCounters.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding malformed usage counters for %s: %s", owner_id, e)
            return default_counters()
        for kind, limit in QUOTA_TABLE[FREE].items():
            counters.free_limit_by_kind.setdefault(kind, int(limit))
        return counters

    def _owner(self, owner_id: OwnerArg) -> str | None:
        return self.session.owner_id if owner_id is CURRENT_OWNER else owner_id  # type: ignore[return-value]

    def _save(self, owner_id: str | None, counters: UsageCounters) -> None:
        self.store.set(owner_id, USAGE_KEY, counters.to_dict())
        self.bus.emit()

    def _push(self, owner_id: str | None, counters: UsageCounters) -> None:
        if self.replicator is None:
            return
        record = {"id": owner_id, "owner_id": owner_id, **counters.to_dict()}
        self.replicator.push(owner_id, USAGE_COLLECTION, record)

    # ── Queries ──────────────────────────────────────────────

    def get_quota(self, kind: str, membership: str | None = None) -> float:
        return get_quota(kind, membership or self.session.membership)

    def limit(self, kind: str, owner_id: OwnerArg = CURRENT_OWNER) -> float:
        """Effective limit for the active membership; free limits may be stored per owner."""
        table_limit = self.get_quota(kind)
        if self.session.membership != FREE:
            return table_limit
        return self.counters(owner_id).free_limit_by_kind.get(kind, table_limit)

    def used(self, kind: str, owner_id: OwnerArg = CURRENT_OWNER) -> int:
        return self.counters(owner_id).used(kind)

    def remaining(self, kind: str, owner_id: OwnerArg = CURRENT_OWNER) -> float:
        return max(0, self.limit(kind, owner_id) - self.used(kind, owner_id))

    def exceeded(self, kind: str, owner_id: OwnerArg = CURRENT_OWNER) -> bool:
        limit = self.limit(kind, owner_id)
        if limit == UNLIMITED:
            return False
        return self.used(kind, owner_id) >= limit

    # ── Mutations ────────────────────────────────────────────

    def record(self, kind: str, owner_id: OwnerArg = CURRENT_OWNER) -> UsageCounters:
        """Count one use of ``kind`` locally, then replicate the full snapshot."""
        get_quota(kind)
        owner_id = self._owner(owner_id)
        counters = self.counters(owner_id)
        counters.used_by_kind[kind] = counters.used(kind) + 1
        counters.updated_at = self._clock()
        self._save(owner_id, counters)
        if owner_id in self._recorded_during_pull:
            self._recorded_during_pull[owner_id] = True
        self._push(owner_id, counters)
        return counters

    async def start_session(self, owner_id: OwnerArg = CURRENT_OWNER) -> UsageCounters:
        """Replace local counters with the remote snapshot for a new session.

        If usage was recorded while the pull was in flight, counts merge by
        per-kind maximum and the merged snapshot is pushed back.
        """
        owner_id = self._owner(owner_id)
        if self.replicator is None or not self.replicator.accepts(owner_id):
            return self.counters(owner_id)

        self._recorded_during_pull[owner_id] = False
        try:
            records = await self.replicator.pull(owner_id, USAGE_COLLECTION)
        finally:
            dirty = self._recorded_during_pull.pop(owner_id, False)

        local = self.counters(owner_id)
        remote_raw = next((r for r in records or [] if r.get("id") == owner_id), None)
        if remote_raw is None:
            if records is not None:
                # Nothing stored remotely yet; seed it with what we have.
                self._push(owner_id, local)
            return local
        try:
            remote = UsageCounters.from_dict(remote_raw)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring malformed remote usage counters for %s: %s", owner_id, e)
            return local

        if dirty:
            merged = UsageCounters(
                used_by_kind={
                    kind: max(local.used(kind), remote.used(kind))
                    for kind in set(local.used_by_kind) | set(remote.used_by_kind)
                },
                free_limit_by_kind={**local.free_limit_by_kind, **remote.free_limit_by_kind},
                credits=remote.credits,
                updated_at=self._clock(),
            )
            self._save(owner_id, merged)
            self._push(owner_id, merged)
            logger.info("Merged usage recorded during session start for %s", owner_id)
            return merged

        for kind, limit in QUOTA_TABLE[FREE].items():
            remote.free_limit_by_kind.setdefault(kind, int(limit))
        if remote.to_dict() != local.to_dict():
            self._save(owner_id, remote)
        return remote
