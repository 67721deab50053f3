"""Resumable generation jobs."""

from studiosync.jobs.client import HttpJobClient, JobClient, PollResult
from studiosync.jobs.tracker import JobTracker

__all__ = ["HttpJobClient", "JobClient", "JobTracker", "PollResult"]
