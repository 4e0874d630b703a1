"""
Background job processor for matching work.

Jobs are queued in memory by priority (highest first, FIFO within a
priority) and executed on a thread pool. A polling thread dispatches
pending jobs every ``poll_interval`` seconds; ``dispatch_pending()`` is that
single step and can be called directly.

Rules:
- At most ``max_concurrent_jobs`` jobs run at once
- Jobs of one organization never run concurrently
- Only pending jobs can be cancelled
- A failed job is terminal (no automatic retry)

Listeners subscribe with ``on(event, callback)``. Events: job_queued,
job_started, job_completed, job_failed, job_cancelled. Each callback gets
the MatchingJob.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import JobError, NotFoundError

if TYPE_CHECKING:
    from .matching_service import MatchingService

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100

JOB_EVENTS = ("job_queued", "job_started", "job_completed", "job_failed", "job_cancelled")


class JobType(str, Enum):
    BULK_MATCH = "bulk_match"
    AUTO_MATCH_NEW = "auto_match_new"
    REPROCESS_FAILED = "reprocess_failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse(timestamp: str) -> datetime:
    return datetime.fromisoformat(timestamp.replace("Z", "+00:00"))


@dataclass
class JobProgress:
    total: int = 0
    completed: int = 0
    current_operation: str = ""

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "current_operation": self.current_operation,
        }


@dataclass
class MatchingJob:
    """A queued unit of matching work for one organization."""

    id: str
    organization_id: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    progress: JobProgress = field(default_factory=JobProgress)
    result: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "type": self.type.value,
            "status": self.status.value,
            "priority": self.priority,
            "payload": self.payload,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "progress": self.progress.to_dict(),
            "result": self.result,
        }


class MatchingJobProcessor:
    """Priority queue plus worker pool for matching jobs."""

    def __init__(
        self,
        matching_service: MatchingService,
        max_concurrent_jobs: int = 3,
        poll_interval: float = 5.0,
    ) -> None:
        """
        Initialize the processor (does not start polling).

        Args:
            matching_service: Service the jobs are executed against
            max_concurrent_jobs: Worker pool size
            poll_interval: Seconds between polling steps once started
        """
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")

        self.service = matching_service
        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_interval = poll_interval

        self._jobs: dict[str, MatchingJob] = {}
        # (-priority, sequence, job_id)
        self._queue: list[tuple[int, int, str]] = []
        self._sequence = itertools.count()
        self._running: dict[str, Future] = {}
        self._busy_orgs: set[str] = set()
        self._lock = threading.Lock()

        self._listeners: dict[str, list[Callable[[MatchingJob], None]]] = {
            event: [] for event in JOB_EVENTS
        }

        self._executor: ThreadPoolExecutor | None = None
        self._poll_thread: threading.Thread | None = None
        self._shutdown = threading.Event()

    # Events

    def on(self, event: str, callback: Callable[[MatchingJob], None]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown job event: {event}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[[MatchingJob], None]) -> None:
        if event in self._listeners and callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    def _emit(self, event: str, job: MatchingJob) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(job)
            except Exception:
                logger.exception("Listener for %s failed on job %s", event, job.id)

    # Queue

    def add_job(
        self,
        organization_id: str,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Queue a job.

        Returns:
            The new job id.

        Raises:
            JobError: Unknown job type.
        """
        try:
            job_type = JobType(job_type)
        except ValueError as e:
            raise JobError(f"Unknown job type: {job_type}") from e

        job = MatchingJob(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            type=job_type,
            priority=priority,
            payload=dict(payload or {}),
        )
        with self._lock:
            self._jobs[job.id] = job
            heapq.heappush(self._queue, (-priority, next(self._sequence), job.id))

        logger.info(
            "Queued %s job %s for organization %s (priority %d)",
            job_type.value,
            job.id,
            organization_id,
            priority,
        )
        self._emit("job_queued", job)
        return job.id

    def get_job(self, job_id: str) -> MatchingJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_jobs_for_organization(self, organization_id: str) -> list[MatchingJob]:
        """Jobs of an organization, oldest first."""
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.organization_id == organization_id]
        return sorted(jobs, key=lambda j: j.created_at)

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending job.

        Returns:
            True if cancelled, False if the job already started or finished.

        Raises:
            NotFoundError: Unknown job id.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError("job", job_id)
            if job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.CANCELLED
            job.completed_at = _now()
            # Heap entry is dropped lazily on dispatch

        logger.info("Cancelled job %s", job_id)
        self._emit("job_cancelled", job)
        return True

    def notify_new_items(
        self,
        organization_id: str,
        transaction_ids: list[str] | None = None,
        receipt_ids: list[str] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> str:
        """Queue matching of newly arrived unmatched items."""
        return self.add_job(
            organization_id,
            JobType.AUTO_MATCH_NEW,
            payload={
                "transaction_ids": list(transaction_ids or []),
                "receipt_ids": list(receipt_ids or []),
            },
            priority=priority,
        )

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return {
                "total_jobs": len(self._jobs),
                "by_status": counts,
                "running": len(self._running),
                "max_concurrent_jobs": self.max_concurrent_jobs,
                "polling": self.is_running,
            }

    def cleanup_old_jobs(self, max_age_days: int = 7) -> int:
        """Forget finished jobs that completed more than ``max_age_days`` ago.

        Returns:
            Number of jobs removed.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in FINISHED_STATUSES
                and job.completed_at is not None
                and _parse(job.completed_at) < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]

        if stale:
            logger.info("Removed %d finished jobs older than %d days", len(stale), max_age_days)
        return len(stale)

    # Execution

    @property
    def is_running(self) -> bool:
        return self._poll_thread is not None and self._poll_thread.is_alive()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent_jobs, thread_name_prefix="matching-job"
            )
        return self._executor

    def dispatch_pending(self) -> list[str]:
        """Start as many pending jobs as free slots allow.

        Jobs whose organization already has a running job stay queued.

        Returns:
            Ids of the jobs started.
        """
        to_start: list[MatchingJob] = []
        with self._lock:
            deferred = []
            while self._queue and len(self._running) + len(to_start) < self.max_concurrent_jobs:
                entry = heapq.heappop(self._queue)
                job = self._jobs.get(entry[2])
                if job is None or job.status != JobStatus.PENDING:
                    continue
                if job.organization_id in self._busy_orgs:
                    deferred.append(entry)
                    continue
                job.status = JobStatus.RUNNING
                job.started_at = _now()
                self._busy_orgs.add(job.organization_id)
                to_start.append(job)

            for entry in deferred:
                heapq.heappush(self._queue, entry)

            if to_start:
                executor = self._ensure_executor()
                for job in to_start:
                    self._running[job.id] = executor.submit(self._run_job, job)

        return [job.id for job in to_start]

    def _run_job(self, job: MatchingJob) -> None:
        logger.info(
            "Starting %s job %s for organization %s", job.type.value, job.id, job.organization_id
        )
        self._emit("job_started", job)
        try:
            result = self._execute(job)
        except Exception as e:
            logger.exception("Job %s failed", job.id)
            self._finish(job, JobStatus.FAILED, error=str(e))
            self._emit("job_failed", job)
            return

        self._finish(job, JobStatus.COMPLETED, result=result)
        logger.info("Completed job %s", job.id)
        self._emit("job_completed", job)

    def _finish(
        self,
        job: MatchingJob,
        status: JobStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            job.status = status
            job.result = result
            job.error = error
            job.completed_at = _now()
            self._running.pop(job.id, None)
            self._busy_orgs.discard(job.organization_id)

    def _execute(self, job: MatchingJob) -> dict[str, Any]:
        payload = job.payload
        org = job.organization_id

        if job.type == JobType.BULK_MATCH:
            job.progress.current_operation = "bulk matching"

            def report(processed: int, batch_number: int) -> None:
                job.progress.completed = processed
                job.progress.current_operation = f"batch {batch_number}"

            outcome = self.service.perform_bulk_matching(
                org,
                batch_size=payload.get("batch_size"),
                config=payload.get("config"),
                progress=report,
            )
            job.progress.total = outcome.total_processed
            return outcome.to_dict()

        if job.type == JobType.AUTO_MATCH_NEW:
            transaction_ids = payload.get("transaction_ids") or None
            receipt_ids = payload.get("receipt_ids") or None
            job.progress.total = len(transaction_ids or [])
            job.progress.current_operation = "matching new items"
            suggestion = self.service.auto_match_new(
                org,
                transaction_ids=transaction_ids,
                receipt_ids=receipt_ids,
                config=payload.get("config"),
            )
            job.progress.completed = suggestion.stats.transactions_processed
            return suggestion.to_dict()

        if job.type == JobType.REPROCESS_FAILED:
            job.progress.current_operation = "reprocessing rejected matches"
            suggestion = self.service.reprocess_rejected(org, config=payload.get("config"))
            job.progress.total = job.progress.completed = suggestion.stats.transactions_processed
            return suggestion.to_dict()

        raise JobError(f"Unsupported job type: {job.type}")

    # Lifecycle

    def start(self) -> None:
        """Start the polling thread."""
        if self.is_running:
            return
        self._shutdown.clear()
        self._ensure_executor()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name="matching-job-poller", daemon=True
        )
        self._poll_thread.start()
        logger.info(
            "Started job processor (%d workers, polling every %.1fs)",
            self.max_concurrent_jobs,
            self.poll_interval,
        )

    def _poll_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                self.dispatch_pending()
            except Exception as e:
                logger.error("Error dispatching matching jobs: %s", e, exc_info=True)
            self._shutdown.wait(self.poll_interval)

    def stop(self, wait: bool = True) -> None:
        """Stop polling; with ``wait`` block until running jobs finish.

        Pending jobs stay pending.
        """
        self._shutdown.set()
        if self._poll_thread is not None:
            self._poll_thread.join()
            self._poll_thread = None

        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("Stopped job processor")
