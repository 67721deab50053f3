"""Local cache: always available, best-effort, scoped per owner.

Layout inside a backend (file backend: one percent-encoded file per key):
    owner:{owner}:entities:histories     # JSON array, newest first
    owner:{owner}:entities:favorites
    owner:{owner}:entities:activities
    owner:{owner}:entities:pages
    owner:{owner}:tombstones:{collection} # ids whose remote delete failed
    owner:{owner}:job:{kind}             # latest Job snapshot
    owner:{owner}:usage                  # UsageCounters
"""

from studiosync.storage.backends import FileBackend, MemoryBackend, StorageBackend
from studiosync.storage.namespaced import GUEST_OWNER, NamespacedStore

__all__ = ["FileBackend", "MemoryBackend", "NamespacedStore", "StorageBackend", "GUEST_OWNER"]
