"""In-process job queue with bounded retries.

Producers (webhook routes, the bulk trigger, the admin API) call ``add``;
``concurrency`` consumer tasks hand each job to the registered processor.
A processor exception counts as a failed attempt: ``on_failed`` handlers
run, and the job is re-queued after its backoff delay until
``JobOptions.attempts`` is used up.

Delay before retry *n* (1-based) is ``delay_ms * 2**(n-1)`` for
exponential backoff, ``delay_ms`` for fixed.

The queue also keeps a table of recent jobs for inspection. Finished jobs
(completed or failed) beyond ``history_limit`` are dropped oldest first;
unfinished jobs are never dropped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal

from mapthew.errors import QueueError
from mapthew.models import AdminJob, GitHubJob, JiraJob

logger = logging.getLogger(__name__)

JobState = Literal["waiting", "active", "delayed", "completed", "failed"]
JOB_STATES: tuple[JobState, ...] = ("waiting", "active", "delayed", "completed", "failed")
FINISHED_STATES: frozenset[str] = frozenset({"completed", "failed"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Backoff:
    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = 5000

    def delay_seconds(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (1-based)."""
        if self.type == "fixed":
            return self.delay_ms / 1000
        return self.delay_ms * 2 ** (retry - 1) / 1000


@dataclass
class JobOptions:
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)


DEFAULT_JOB_OPTIONS = JobOptions(attempts=3, backoff=Backoff(type="exponential", delay_ms=5000))

# Job name used for every agent run, whatever its source.
PROCESS_TICKET = "process-ticket"


@dataclass
class QueuedJob:
    """A job plus its queue bookkeeping."""

    name: str
    data: JiraJob | GitHubJob | AdminJob
    options: JobOptions
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    attempts_made: int = 0
    state: JobState = "waiting"
    last_error: str | None = None
    return_value: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def final_attempt(self) -> bool:
        return self.attempts_made >= self.options.attempts

    @property
    def finished(self) -> bool:
        return self.state in FINISHED_STATES


Processor = Callable[[JiraJob | GitHubJob | AdminJob], Awaitable[Any]]
FailedHandler = Callable[[QueuedJob, Exception], Awaitable[None]]
CompletedHandler = Callable[[QueuedJob], Awaitable[None]]


class JobQueue:
    """Async FIFO of jobs with N consumer tasks."""

    def __init__(
        self,
        name: str,
        *,
        concurrency: int = 1,
        maxsize: int = 1000,
        history_limit: int = 500,
    ):
        self.name = name
        self.concurrency = concurrency
        self.history_limit = history_limit
        self._queue: asyncio.Queue[QueuedJob] = asyncio.Queue(maxsize=maxsize)

        self._processor: Processor | None = None
        self._failed_handlers: list[FailedHandler] = []
        self._completed_handlers: list[CompletedHandler] = []

        self._running = False
        self._tasks: list[asyncio.Task] = []
        # job id → pending backoff task
        self._retry_tasks: dict[str, asyncio.Task] = {}

        # job id → job, oldest first
        self._jobs: dict[str, QueuedJob] = {}

        # Jobs added but not yet completed or exhausted (retries included)
        self._unfinished = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def process(self, processor: Processor) -> None:
        """Register the consumer callback."""
        self._processor = processor

    def on_failed(self, handler: FailedHandler) -> None:
        """Called after every failed attempt, including the last."""
        self._failed_handlers.append(handler)

    def on_completed(self, handler: CompletedHandler) -> None:
        self._completed_handlers.append(handler)

    @property
    def running(self) -> bool:
        return self._running

    def pending_count(self) -> int:
        return self._unfinished

    # ── Inspection ───────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> QueuedJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self, state: JobState | None = None, limit: int = 50) -> list[QueuedJob]:
        """Most recently created first."""
        jobs = [j for j in reversed(self._jobs.values()) if state is None or j.state == state]
        return jobs[:limit]

    def stats(self) -> dict[str, int]:
        counts = Counter(job.state for job in self._jobs.values())
        return {state: counts.get(state, 0) for state in JOB_STATES}

    # ── Producers ────────────────────────────────────────────────────────

    async def add(
        self,
        name: str,
        data: JiraJob | GitHubJob | AdminJob,
        options: JobOptions | None = None,
    ) -> QueuedJob:
        """Submit a job.

        Raises:
            QueueError: If the queue is stopped or full.
        """
        job = QueuedJob(name=name, data=data, options=options or DEFAULT_JOB_OPTIONS)
        self._enqueue(job)
        self._jobs[job.id] = job
        self._trim_history()
        logger.debug("Queued %s job %s (%s)", name, job.id, data.source)
        return job

    async def retry(self, job_id: str) -> QueuedJob:
        """Re-run a failed job from its first attempt.

        Raises:
            QueueError: If the job is unknown, has not failed, or the queue
                cannot take it.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise QueueError(f"Job {job_id} not found")
        if job.state != "failed":
            raise QueueError(f"Job {job_id} is {job.state}; only failed jobs can be retried")

        self._enqueue(job)
        job.attempts_made = 0
        job.state = "waiting"
        job.last_error = None
        job.started_at = None
        job.finished_at = None
        logger.info("Job %s re-queued by request", job_id)
        return job

    def remove(self, job_id: str) -> QueuedJob:
        """Forget a job. A waiting or delayed job will not run.

        Raises:
            QueueError: If the job is unknown or currently running.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise QueueError(f"Job {job_id} not found")
        if job.state == "active":
            raise QueueError(f"Job {job_id} is running and cannot be removed")

        del self._jobs[job_id]
        retry_task = self._retry_tasks.pop(job_id, None)
        if retry_task is not None:
            retry_task.cancel()
        if not job.finished:
            # A waiting copy still in the asyncio queue is skipped by the consumer
            self._finish()
        logger.info("Job %s removed (%s)", job_id, job.state)
        return job

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._processor is None:
            raise RuntimeError("No processor registered — call process() before start()")
        self._running = True
        self._tasks = [
            asyncio.create_task(self._consumer_loop(), name=f"{self.name}-consumer-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Job queue %s started (concurrency=%d)", self.name, self.concurrency)

    async def stop(self) -> None:
        """Cancel consumers and pending retries. In-flight jobs are cancelled."""
        self._running = False
        tasks = [*self._tasks, *self._retry_tasks.values()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._retry_tasks.clear()
        logger.info("Job queue %s stopped", self.name)

    async def drain(self) -> None:
        """Wait until every added job has completed or exhausted its attempts."""
        await self._idle.wait()

    # ── Internals ────────────────────────────────────────────────────────

    def _enqueue(self, job: QueuedJob) -> None:
        if not self._running:
            raise QueueError(f"Queue {self.name} is not running")
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull as e:
            raise QueueError(f"Queue {self.name} is full ({self._queue.maxsize} jobs)") from e
        self._unfinished += 1
        self._idle.clear()

    async def _consumer_loop(self) -> None:
        while self._running:
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            if self._jobs.get(job.id) is not job:
                logger.debug("Skipping removed job %s", job.id)
                continue

            try:
                await self._run(job)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error processing job %s", job.id)
                self._finish()

    async def _run(self, job: QueuedJob) -> None:
        job.attempts_made += 1
        job.state = "active"
        job.started_at = _utcnow()
        try:
            result = await self._processor(job.data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Job %s failed (attempt %d/%d): %s",
                job.id,
                job.attempts_made,
                job.options.attempts,
                e,
            )
            job.last_error = str(e)
            if job.final_attempt:
                job.state = "failed"
                job.finished_at = _utcnow()
            else:
                job.state = "delayed"
            await self._notify_failed(job, e)
            if job.final_attempt:
                logger.error("Job %s exhausted %d attempts", job.id, job.options.attempts)
                self._finish()
                self._trim_history()
            else:
                self._schedule_retry(job)
            return

        job.state = "completed"
        job.finished_at = _utcnow()
        job.return_value = str(result) if result is not None else None
        await self._notify_completed(job)
        self._finish()
        self._trim_history()

    def _schedule_retry(self, job: QueuedJob) -> None:
        delay = job.options.backoff.delay_seconds(job.attempts_made)
        logger.info("Retrying job %s in %.1fs", job.id, delay)
        task = asyncio.create_task(self._requeue_after(job, delay), name=f"{self.name}-retry-{job.id}")
        self._retry_tasks[job.id] = task
        task.add_done_callback(lambda _: self._retry_tasks.pop(job.id, None))

    async def _requeue_after(self, job: QueuedJob, delay: float) -> None:
        await asyncio.sleep(delay)
        job.state = "waiting"
        await self._queue.put(job)

    async def _notify_failed(self, job: QueuedJob, error: Exception) -> None:
        for handler in self._failed_handlers:
            try:
                await handler(job, error)
            except Exception:
                logger.exception("on_failed handler raised for job %s", job.id)

    async def _notify_completed(self, job: QueuedJob) -> None:
        for handler in self._completed_handlers:
            try:
                await handler(job)
            except Exception:
                logger.exception("on_completed handler raised for job %s", job.id)

    def _trim_history(self) -> None:
        excess = len(self._jobs) - self.history_limit
        if excess <= 0:
            return
        for job_id in [j.id for j in self._jobs.values() if j.finished][:excess]:
            del self._jobs[job_id]

    def _finish(self) -> None:
        self._unfinished -= 1
        if self._unfinished <= 0:
            self._unfinished = 0
            self._idle.set()
