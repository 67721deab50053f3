"""Exception hierarchy for the state layer.

Storage and remote errors are raised by backends/adapters and swallowed at the
store/replicator boundary. Job errors are recorded on the Job itself
(``Job.error_kind`` holds the class name) and never raised to the caller.
"""

from __future__ import annotations


class StudioSyncError(Exception):
    """Base class for all studiosync errors."""


class StorageQuotaExceeded(StudioSyncError):
    """The local cache refused a write because its byte budget is spent."""


class RemoteError(StudioSyncError):
    """A remote store or job backend call did not complete."""


class RemoteUnavailable(RemoteError):
    """Transport failure, timeout or 5xx from the remote side."""


class RemoteRejected(RemoteError):
    """The remote side answered but refused the request (4xx)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class JobError(StudioSyncError):
    """Base class for generation job failures."""


class JobFailed(JobError):
    """The backend reported the job as failed, or the create call failed."""


class JobTimeout(JobError):
    """The poll budget or the wall-clock window ran out."""


class JobStateUnrecognized(JobError):
    """The backend returned a status string outside the known vocabulary."""


class ConcurrentJobConflict(JobError):
    """Another job of the same kind is already running for this owner."""
