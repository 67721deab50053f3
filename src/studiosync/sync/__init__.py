"""Remote replication: the store protocol, its HTTP adapter and the replicator."""

from studiosync.sync.remote import HttpRemoteStore, RemoteEntityStore
from studiosync.sync.replicator import RemoteReplicator

__all__ = ["HttpRemoteStore", "RemoteEntityStore", "RemoteReplicator"]
