"""Resumable tracking of long-running generation jobs.

One Job per (owner, kind) is persisted as the latest snapshot in the local
cache, so progress and results survive reloads. State machine::

    idle -> submitted -> polling -> succeeded | failed | expired
                                 \\-> cancelled

Guarantees:
- At most one submitted/polling Job per (owner, kind). ``submit`` runs in a
  per-(owner, kind) lane lock, so concurrent submits de-duplicate.
- ``progress_pct`` never decreases.
- Every persisted change bumps ``Job.version``. A poll response whose Job was
  cancelled, superseded or advanced while the request was in flight is
  discarded, never applied.
- A hard wall-clock window (``timeout``) and an attempt budget
  (``max_attempts``) bound every Job, independent of what the backend says.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from studiosync.errors import (
    ConcurrentJobConflict,
    JobFailed,
    JobStateUnrecognized,
    JobTimeout,
)
from studiosync.events import EventBus
from studiosync.jobs.client import JobClient, PollResult
from studiosync.models import Job, JobStatus
from studiosync.storage.namespaced import NamespacedStore

if TYPE_CHECKING:
    from studiosync.config import JobConfig

logger = logging.getLogger(__name__)

CompletionListener = Callable[[Job], None]
InputChecker = Callable[[dict[str, Any]], list[str]]


def missing_context_values(context: dict[str, Any]) -> list[str]:
    """Default input check: keys whose value is gone (None or empty)."""
    return [key for key, value in context.items() if value is None or value == ""]


class JobTracker:
    """Lifecycle manager for one resumable job per (owner, kind)."""

    def __init__(
        self,
        store: NamespacedStore,
        bus: EventBus,
        client: JobClient,
        *,
        poll_interval: float = 5.0,
        max_attempts: int = 60,
        timeout: float = 30 * 60,
        pending_progress: float = 20.0,
        progress_ceiling: float = 90.0,
        clock: Callable[[], float] = time.time,
        input_checker: InputChecker = missing_context_values,
    ) -> None:
        self.store = store
        self.bus = bus
        self.client = client
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.pending_progress = pending_progress
        self.progress_ceiling = progress_ceiling
        self._clock = clock
        self._input_checker = input_checker
        self._lanes: dict[tuple[str | None, str], asyncio.Lock] = {}
        self._resumers: dict[tuple[str | None, str], tuple[str, asyncio.Task]] = {}
        self._stop_events: dict[str, asyncio.Event] = {}
        self._completion_listeners: list[CompletionListener] = []

    @classmethod
    def from_config(
        cls,
        store: NamespacedStore,
        bus: EventBus,
        client: JobClient,
        config: JobConfig,
        **kwargs: Any,
    ) -> JobTracker:
        return cls(
            store,
            bus,
            client,
            poll_interval=config.poll_interval,
            max_attempts=config.max_attempts,
            timeout=config.timeout,
            pending_progress=config.pending_progress,
            progress_ceiling=config.progress_ceiling,
            **kwargs,
        )

    # ── Persistence ──────────────────────────────────────────

    @staticmethod
    def _key(kind: str) -> str:
        return f"job:{kind}"

    def current_job(self, owner_id: str | None, kind: str) -> Job | None:
        raw = self.store.get(owner_id, self._key(kind))
        if not isinstance(raw, dict):
            return None
        try:
            return Job.from_dict(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding malformed %s job snapshot: %s", kind, e)
            return None

    def _persist(self, job: Job) -> Job:
        job.version += 1
        self.store.set(job.owner_id, self._key(job.kind), job.to_dict())
        self.bus.emit()
        return job

    def _is_current(self, job: Job) -> bool:
        latest = self.current_job(job.owner_id, job.kind)
        return latest is not None and latest.id == job.id and latest.version == job.version

    # ── Helpers ──────────────────────────────────────────────

    def _lane(self, owner_id: str | None, kind: str) -> asyncio.Lock:
        key = (owner_id, kind)
        if key not in self._lanes:
            self._lanes[key] = asyncio.Lock()
        return self._lanes[key]

    def _stop_event(self, job_id: str) -> asyncio.Event:
        if job_id not in self._stop_events:
            self._stop_events[job_id] = asyncio.Event()
        return self._stop_events[job_id]

    def _expired(self, job: Job) -> bool:
        return job.submitted_at is not None and self._clock() - job.submitted_at > self.timeout

    @staticmethod
    def _advance(job: Job, pct: float) -> None:
        job.progress_pct = max(job.progress_pct, min(float(pct), 100.0))

    def _ramp(self, attempts: int) -> float:
        span = self.progress_ceiling - self.pending_progress
        return min(self.pending_progress + attempts / self.max_attempts * span, self.progress_ceiling)

    def _fail(self, job: Job, message: str, error_kind: type[Exception]) -> Job:
        job.status = JobStatus.FAILED
        job.error = message
        job.error_kind = error_kind.__name__
        logger.info("Job %s (%s) failed: %s", job.id, job.kind, message)
        return self._persist(job)

    def _expire(self, job: Job) -> Job:
        job.status = JobStatus.EXPIRED
        job.error = f"job did not finish within {int(self.timeout // 60)} minutes"
        job.error_kind = JobTimeout.__name__
        logger.info("Job %s (%s) expired", job.id, job.kind)
        return self._persist(job)

    # ── Submit ───────────────────────────────────────────────

    async def submit(
        self,
        owner_id: str | None,
        kind: str,
        request: dict[str, Any],
        *,
        force: bool = False,
        resume_context: dict[str, Any] | None = None,
    ) -> Job:
        """Start a job, or return the one already running for (owner, kind).

        With ``force=True`` a running job is superseded (marked cancelled).
        A failing create call leaves the new Job ``failed``; it never raises.
        """
        async with self._lane(owner_id, kind):
            existing = self.current_job(owner_id, kind)
            if existing is not None and existing.is_active:
                if not force and not self._expired(existing):
                    logger.info("Reusing running %s job %s", kind, existing.id)
                    return existing
                if force:
                    self._supersede(existing)
                else:
                    self._expire(existing)

            job = Job(
                id=uuid.uuid4().hex,
                owner_id=owner_id,
                kind=kind,
                status=JobStatus.IDLE,
                submitted_at=self._clock(),
                request=dict(request),
                resume_context=dict(resume_context or {}),
            )
            self._persist(job)

            try:
                remote_id = await self.client.create_job(kind, job.request)
            except ConcurrentJobConflict as e:
                return self._fail_if_current(job, str(e) or "another job is running", ConcurrentJobConflict)
            except Exception as e:
                return self._fail_if_current(job, str(e) or "job submission failed", JobFailed)

            if not self._is_current(job):
                logger.info("Job %s was cancelled while submitting", job.id)
                return self.current_job(owner_id, kind) or job
            job.remote_id = remote_id
            job.status = JobStatus.SUBMITTED
            logger.info("Submitted %s job %s (remote %s)", kind, job.id, remote_id)
            return self._persist(job)

    def _fail_if_current(self, job: Job, message: str, error_kind: type[Exception]) -> Job:
        if not self._is_current(job):
            return self.current_job(job.owner_id, job.kind) or job
        return self._fail(job, message, error_kind)

    def _supersede(self, job: Job) -> None:
        if job.id in self._stop_events:
            self._stop_events[job.id].set()
        job.status = JobStatus.CANCELLED
        job.error = "superseded by a newer submission"
        job.error_kind = ConcurrentJobConflict.__name__
        logger.info("Superseding %s job %s", job.kind, job.id)
        self._persist(job)

    # ── Poll ─────────────────────────────────────────────────

    async def poll(self, job: Job) -> Job:
        """Run one poll round against the backend and persist the outcome.

        Returns the tracked Job. If ``job`` is no longer the tracked one, the
        tracked Job is returned untouched.
        """
        current = self.current_job(job.owner_id, job.kind)
        if current is None or current.id != job.id:
            logger.debug("Ignoring poll for untracked job %s", job.id)
            return current or job
        job = current
        if job.is_terminal:
            return job
        if job.status == JobStatus.IDLE or not job.remote_id:
            return self._fail(job, "submission was interrupted before the backend accepted it", JobFailed)
        if self._expired(job):
            return self._expire(job)

        try:
            result: PollResult | None = await self.client.poll_job(job.remote_id, kind=job.kind)
        except Exception as e:
            logger.warning("Polling %s job %s failed: %s", job.kind, job.id, e)
            result = None

        if not self._is_current(job):
            logger.info("Discarding stale poll response for job %s", job.id)
            return self.current_job(job.owner_id, job.kind) or job

        job.attempts += 1
        job.last_polled_at = self._clock()
        if result is None:
            job.status = JobStatus.POLLING
        else:
            self._apply(job, result)

        if not job.is_terminal:
            if self._expired(job):
                return self._expire(job)
            if job.attempts >= self.max_attempts:
                return self._fail(job, "generation timed out, please try again", JobTimeout)

        self._persist(job)
        if job.status == JobStatus.SUCCEEDED:
            logger.info("Job %s (%s) succeeded", job.id, job.kind)
            self._notify_completion(job)
        return job

    def _apply(self, job: Job, result: PollResult) -> None:
        status = (result.status or "").upper()
        if status == "PENDING":
            job.status = JobStatus.POLLING
            self._advance(job, self.pending_progress)
        elif status == "RUNNING":
            job.status = JobStatus.POLLING
            target = self._ramp(job.attempts)
            if result.progress is not None:
                target = min(result.progress, self.progress_ceiling)
            self._advance(job, target)
        elif status == "SUCCEEDED":
            job.status = JobStatus.SUCCEEDED
            job.progress_pct = 100.0
            job.result = result.result_url
            job.error = None
            job.error_kind = None
            if not result.result_url:
                logger.warning("Job %s succeeded without a result url", job.id)
        elif status == "FAILED":
            job.status = JobStatus.FAILED
            job.error = result.error or "generation failed"
            job.error_kind = JobFailed.__name__
        else:
            logger.warning(
                "%s: job %s reported %r, treating as still running",
                JobStateUnrecognized.__name__,
                job.id,
                result.status,
            )
            job.status = JobStatus.POLLING

    # ── Resume ───────────────────────────────────────────────

    async def resume(self, owner_id: str | None, kind: str) -> Job | None:
        """Pick up the persisted job after a reload or visibility regain.

        Terminal jobs come back as-is with no network call. Jobs past the
        wall-clock window become ``expired`` without polling. Anything else
        is polled until it finishes, is cancelled, or runs out of attempts.
        A second caller for the same job joins the loop already running.

        The persisted job is inspected under the submit lane, so a
        submission still waiting on the backend is never mistaken for an
        interrupted one.
        """
        async with self._lane(owner_id, kind):
            job = self.current_job(owner_id, kind)
            if job is None or job.is_terminal:
                return job
            if job.status == JobStatus.IDLE or not job.remote_id:
                return self._fail(
                    job, "submission was interrupted before the backend accepted it", JobFailed
                )
            if self._expired(job):
                return self._expire(job)

        key = (owner_id, kind)
        running = self._resumers.get(key)
        if running is not None and running[0] == job.id and not running[1].done():
            return await asyncio.shield(running[1])

        logger.info("Resuming %s job %s at %.0f%%", job.kind, job.id, job.progress_pct)
        task = asyncio.ensure_future(self._poll_loop(job))
        self._resumers[key] = (job.id, task)

        def _forget(done: asyncio.Task) -> None:
            if self._resumers.get(key, (None, None))[1] is done:
                del self._resumers[key]

        task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _poll_loop(self, job: Job) -> Job:
        job_id = job.id
        stop = self._stop_event(job_id)
        try:
            while True:
                job = await self.poll(job)
                if job.id != job_id or job.is_terminal or stop.is_set():
                    return job
                tracked = self.current_job(job.owner_id, job.kind)
                if tracked is None or tracked.id != job_id or tracked.version != job.version:
                    logger.info("Job %s is no longer tracked, stopping its poll loop", job_id)
                    return tracked or job
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
                    return self.current_job(job.owner_id, job.kind) or job
                except asyncio.TimeoutError:
                    pass  # interval elapsed, poll again
        finally:
            self._stop_events.pop(job_id, None)

    def stop_owner(self, owner_id: str | None) -> int:
        """Stop every resume loop of ``owner_id``. Returns how many were signalled."""
        stopped = 0
        for (owner, _kind), (job_id, task) in list(self._resumers.items()):
            if owner != owner_id or task.done():
                continue
            if job_id in self._stop_events:
                self._stop_events[job_id].set()
                stopped += 1
        return stopped

    # ── Cancel ───────────────────────────────────────────────

    def cancel(self, job: Job) -> Job:
        """Stop tracking ``job`` locally. The backend job is left running."""
        if job.id in self._stop_events:
            self._stop_events[job.id].set()
        current = self.current_job(job.owner_id, job.kind)
        if current is None or current.id != job.id or current.is_terminal:
            return current or job
        current.status = JobStatus.CANCELLED
        logger.info("Cancelled %s job %s", current.kind, current.id)
        return self._persist(current)

    # ── Regenerate ───────────────────────────────────────────

    def missing_inputs(self, job: Job) -> list[str]:
        """Resume-context inputs that are no longer available for a regenerate."""
        return self._input_checker(job.resume_context)

    async def regenerate(self, owner_id: str | None, kind: str) -> Job | None:
        """Re-submit the last job's request. Returns None when inputs are missing."""
        job = self.current_job(owner_id, kind)
        if job is None:
            return None
        missing = self.missing_inputs(job)
        if missing:
            logger.info("Cannot regenerate %s job %s, missing inputs: %s", kind, job.id, missing)
            return None
        return await self.submit(
            owner_id, kind, job.request, force=True, resume_context=job.resume_context
        )

    # ── Completion listeners / shutdown ──────────────────────

    def add_completion_listener(self, listener: CompletionListener) -> Callable[[], None]:
        self._completion_listeners.append(listener)

        def remove() -> None:
            if listener in self._completion_listeners:
                self._completion_listeners.remove(listener)

        return remove

    def _notify_completion(self, job: Job) -> None:
        for listener in list(self._completion_listeners):
            try:
                listener(job)
            except Exception:
                logger.exception("Completion listener %r failed for job %s", listener, job.id)

    async def close(self) -> None:
        """Stop every resume loop. Persisted jobs stay as they are."""
        for event in self._stop_events.values():
            event.set()
        tasks = [task for _, task in self._resumers.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
