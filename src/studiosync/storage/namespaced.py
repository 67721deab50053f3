"""Owner-scoped JSON key/value store over a raw backend.

Keys are laid out as ``owner:{owner_id|guest}:{key}``. The owner id is
percent-encoded so no owner's prefix can match another owner's keys.

The cache is best-effort: a refused or failed write is logged and reported
through the return value, never raised.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote, unquote

from studiosync.errors import StorageQuotaExceeded
from studiosync.storage.backends import StorageBackend

logger = logging.getLogger(__name__)

GUEST_OWNER = "guest"
_PREFIX = "owner"


def owner_segment(owner_id: str | None) -> str:
    return quote(owner_id, safe="") if owner_id else GUEST_OWNER


class NamespacedStore:
    """JSON values scoped by owner identity."""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend

    def _owner_prefix(self, owner_id: str | None) -> str:
        return f"{_PREFIX}:{owner_segment(owner_id)}:"

    def namespaced_key(self, owner_id: str | None, key: str) -> str:
        return self._owner_prefix(owner_id) + key

    def get(self, owner_id: str | None, key: str, default: Any = None) -> Any:
        full_key = self.namespaced_key(owner_id, key)
        try:
            raw = self.backend.read(full_key)
        except OSError as e:
            logger.warning("Local read of %s failed: %s", full_key, e)
            return default
        except UnicodeDecodeError as e:
            logger.warning("Discarding undecodable local value at %s: %s", full_key, e)
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Discarding corrupt local value at %s: %s", full_key, e)
            return default

    def set(self, owner_id: str | None, key: str, value: Any) -> bool:
        """Persist ``value``. Returns False if the cache refused the write."""
        full_key = self.namespaced_key(owner_id, key)
        try:
            self.backend.write(full_key, json.dumps(value, ensure_ascii=False))
        except StorageQuotaExceeded as e:
            logger.warning("Local cache full, dropping write to %s: %s", full_key, e)
            return False
        except OSError as e:
            logger.warning("Local write of %s failed: %s", full_key, e)
            return False
        return True

    def remove(self, owner_id: str | None, key: str) -> None:
        full_key = self.namespaced_key(owner_id, key)
        try:
            self.backend.delete(full_key)
        except OSError as e:
            logger.warning("Local delete of %s failed: %s", full_key, e)

    def keys_for_owner(self, owner_id: str | None) -> list[str]:
        """Un-namespaced keys stored for ``owner_id``."""
        prefix = self._owner_prefix(owner_id)
        return [k[len(prefix):] for k in self.backend.keys() if k.startswith(prefix)]

    def owners(self) -> list[str | None]:
        """Every owner with at least one key; ``None`` stands for the guest scope."""
        seen: dict[str, None] = {}
        for k in self.backend.keys():
            parts = k.split(":", 2)
            if len(parts) == 3 and parts[0] == _PREFIX:
                seen.setdefault(parts[1])
        return [None if seg == GUEST_OWNER else unquote(seg) for seg in seen]

    def clear_owner(self, owner_id: str | None) -> int:
        """Remove every key in the owner's scope. Returns the number removed."""
        keys = self.keys_for_owner(owner_id)
        for key in keys:
            self.remove(owner_id, key)
        if keys:
            logger.info("Cleared %d local keys for owner %s", len(keys), owner_segment(owner_id))
        return len(keys)
