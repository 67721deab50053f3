"""Persisted record types.

Every record round-trips through plain JSON-compatible dicts via ``to_dict`` /
``from_dict``; the local cache stores exactly those dicts. Keys an entity class
does not declare are folded into ``payload`` so records written by a newer
client survive a read-modify-write by an older one.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_CREDITS = 10000


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class HistoryKind(str, Enum):
    CHAT = "chat"
    DRAW = "draw"
    READ = "read"
    VIDEO = "video"


class JobStatus(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.SUBMITTED, JobStatus.POLLING})
TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.EXPIRED, JobStatus.CANCELLED}
)

# Fields a patch may never rewrite.
_IMMUTABLE_FIELDS = frozenset({"id", "owner_id"})


def new_entity_id(now: float | None = None) -> str:
    """Millisecond timestamp plus a short random suffix; ids double as sort keys."""
    ms = int((time.time() if now is None else now) * 1000)
    return f"{ms}_{secrets.token_hex(4)}"


def entity_sort_key(entity_id: str) -> tuple[int, str]:
    """Sort key for newest-first ordering. Non-timestamp ids sort last."""
    head, _, tail = entity_id.partition("_")
    try:
        return int(head), tail
    except ValueError:
        return 0, entity_id


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    return value


@dataclass
class Message:
    """One turn of a conversation."""

    content: str
    is_user: bool
    timestamp: str = field(default_factory=_now_iso)
    avatar_ref: str | None = None
    model_name: str | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "is_user": self.is_user,
            "timestamp": self.timestamp,
            "avatar_ref": self.avatar_ref,
            "model_name": self.model_name,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            content=data.get("content", ""),
            is_user=bool(data.get("is_user", False)),
            timestamp=data.get("timestamp") or _now_iso(),
            avatar_ref=data.get("avatar_ref"),
            model_name=data.get("model_name"),
            metadata=data.get("metadata"),
        )


@dataclass
class Entity:
    """Generic persisted record owned by one identity."""

    id: str
    owner_id: str
    updated_at: float = 0.0
    sync_status: SyncStatus = SyncStatus.PENDING
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entity:
        names = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in names}
        extra = {k: v for k, v in data.items() if k not in names}
        if extra:
            kwargs["payload"] = {**(kwargs.get("payload") or {}), **extra}
        kwargs["sync_status"] = SyncStatus(kwargs.get("sync_status", SyncStatus.PENDING))
        return cls(**cls._decode_fields(kwargs))

    @classmethod
    def _decode_fields(cls, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Hook for subclasses to rebuild nested types."""
        return kwargs

    def with_patch(self, patch: dict[str, Any]) -> Entity:
        """Return a copy with ``patch`` applied. ``id`` and ``owner_id`` are kept."""
        data = self.to_dict()
        for key, value in patch.items():
            if key in _IMMUTABLE_FIELDS:
                continue
            data[key] = _encode(value)
        return type(self).from_dict(data)


@dataclass
class HistoryRecord(Entity):
    """A saved conversation or generation session."""

    title: str = ""
    model_label: str = ""
    kind: HistoryKind = HistoryKind.CHAT
    messages: list[Message] = field(default_factory=list)

    @classmethod
    def _decode_fields(cls, kwargs: dict[str, Any]) -> dict[str, Any]:
        if "kind" in kwargs:
            kwargs["kind"] = HistoryKind(kwargs["kind"])
        kwargs["messages"] = [
            m if isinstance(m, Message) else Message.from_dict(m)
            for m in kwargs.get("messages") or []
        ]
        return kwargs


@dataclass
class FavoriteRecord(Entity):
    kind: str = "conversation"
    title: str = ""
    description: str = ""


@dataclass
class ActivityRecord(Entity):
    kind: str = "conversation"
    title: str = ""
    description: str = ""


@dataclass
class PageState(Entity):
    """Draft UI state for one page (chat/draw/read/video); the id is the page name."""

    state: dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageCounters:
    """Usage per quota kind plus the user's credit balance."""

    used_by_kind: dict[str, int] = field(default_factory=dict)
    free_limit_by_kind: dict[str, int] = field(default_factory=dict)
    credits: int = DEFAULT_CREDITS
    updated_at: float = 0.0

    def used(self, kind: str) -> int:
        return self.used_by_kind.get(kind, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "used_by_kind": dict(self.used_by_kind),
            "free_limit_by_kind": dict(self.free_limit_by_kind),
            "credits": self.credits,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageCounters:
        return cls(
            used_by_kind={k: int(v) for k, v in (data.get("used_by_kind") or {}).items()},
            free_limit_by_kind={
                k: int(v) for k, v in (data.get("free_limit_by_kind") or {}).items()
            },
            credits=int(data.get("credits", DEFAULT_CREDITS)),
            updated_at=float(data.get("updated_at", 0.0)),
        )


@dataclass
class Job:
    """Snapshot of one long-running generation job. ``owner_id`` is None for a guest."""

    id: str
    owner_id: str | None
    kind: str
    status: JobStatus = JobStatus.IDLE
    progress_pct: float = 0.0
    submitted_at: float | None = None
    last_polled_at: float | None = None
    result: str | None = None
    error: str | None = None
    error_kind: str | None = None
    request: dict[str, Any] = field(default_factory=dict)
    resume_context: dict[str, Any] = field(default_factory=dict)
    remote_id: str | None = None
    attempts: int = 0
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        names = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in names}
        kwargs["status"] = JobStatus(kwargs.get("status", JobStatus.IDLE))
        return cls(**kwargs)
