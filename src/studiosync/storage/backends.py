"""Raw key/value backends for the local cache.

Backends store opaque strings under flat keys and enforce a total byte budget,
mimicking a browser's local-storage quota. They raise ``StorageQuotaExceeded``
on a refused write; callers above them decide whether to swallow it.
"""

from __future__ import annotations

import errno
import logging
import os
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote, unquote

from studiosync.errors import StorageQuotaExceeded

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
_SUFFIX = ".json"


@runtime_checkable
class StorageBackend(Protocol):
    """Flat string key/value store."""

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, value: str) -> None:
        """Store ``value``; raise StorageQuotaExceeded if it does not fit."""
        ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryBackend:
    """In-process backend. Lost on exit; used for guests and tests."""

    def __init__(self, max_bytes: int | None = DEFAULT_MAX_BYTES) -> None:
        self.max_bytes = max_bytes
        self._data: dict[str, str] = {}

    def _size(self) -> int:
        return sum(len(k.encode()) + len(v.encode()) for k, v in self._data.items())

    def read(self, key: str) -> str | None:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        if self.max_bytes is not None:
            current = self._size()
            old = self._data.get(key)
            if old is not None:
                current -= len(key.encode()) + len(old.encode())
            if current + len(key.encode()) + len(value.encode()) > self.max_bytes:
                raise StorageQuotaExceeded(
                    f"write of {len(value)} bytes to {key!r} exceeds {self.max_bytes} byte budget"
                )
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileBackend:
    """One file per key under ``root``. Writes go through a temp file + replace."""

    def __init__(self, root: Path, max_bytes: int | None = DEFAULT_MAX_BYTES) -> None:
        self.root = root
        self.max_bytes = max_bytes
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / (quote(key, safe="") + _SUFFIX)

    def _size(self) -> int:
        total = 0
        for path in self.root.glob(f"*{_SUFFIX}"):
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    def read(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write(self, key: str, value: str) -> None:
        path = self._path(key)
        encoded = value.encode("utf-8")
        if self.max_bytes is not None:
            current = self._size()
            if path.exists():
                current -= path.stat().st_size
            if current + len(encoded) > self.max_bytes:
                raise StorageQuotaExceeded(
                    f"write of {len(encoded)} bytes to {key!r} exceeds {self.max_bytes} byte budget"
                )

        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_bytes(encoded)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if e.errno in (errno.ENOSPC, errno.EDQUOT):
                raise StorageQuotaExceeded(f"disk full writing {key!r}") from e
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return [unquote(p.name[: -len(_SUFFIX)]) for p in sorted(self.root.glob(f"*{_SUFFIX}"))]
