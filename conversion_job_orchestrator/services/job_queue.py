"""
JobQueue service for the Conversion Job Orchestrator

Owns job records, their status lifecycle and the priority ordering in which
they are handed to the dispatcher.
"""

import heapq
import itertools
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, Union

from ..core import events
from ..core.events import EventBus
from ..core.exceptions import InvalidTransitionError, JobNotFoundError, ValidationError
from ..models.job import (
    Job, JobType, JobStatus, JobProgress, JobError, QueueStats,
    PriorityLike, resolve_priority
)
from ..models.resources import ResourceRequirements
from ..utils.logger import get_logger, set_log_context

AWAITING_RETRY_STAGE = "awaiting retry"


class JobQueue:
    """
    Priority queue and system of record for jobs.

    Provides capabilities for:
    - Validated admission of jobs
    - Stable priority ordering (priority descending, then insertion order)
    - Peek-then-commit dispatch via get_next_job/return_job
    - Monotonic status transitions with lifecycle events
    - Bounded retention of terminal jobs

    Every method is synchronous, so under a single event loop two callers can
    never pop the same job.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        default_priority: PriorityLike = "normal",
        default_max_retries: int = 3,
        default_timeout: Optional[float] = None,
        default_requirements: Optional[ResourceRequirements] = None,
        max_history: int = 10000,
        retention_seconds: Optional[float] = None
    ):
        """
        Initialize JobQueue.

        Args:
            event_bus: Bus receiving lifecycle events
            default_priority: Priority used when add_job gets none
            default_max_retries: Retry budget used when add_job gets none
            default_timeout: Per-job timeout in seconds (None disables it)
            default_requirements: Resource estimate used when add_job gets none
            max_history: Number of terminal jobs kept before the oldest are evicted
            retention_seconds: Age after which terminal jobs may be purged
        """
        if max_history < 1:
            raise ValidationError("max_history", "must be at least 1", max_history)

        self.event_bus = event_bus or EventBus()
        self.default_priority = resolve_priority(default_priority)
        self.default_max_retries = self._check_max_retries(default_max_retries)
        self.default_timeout = self._check_timeout(default_timeout)
        self.default_requirements = default_requirements or ResourceRequirements()
        self.max_history = max_history
        self.retention_seconds = retention_seconds

        self._jobs: Dict[str, Job] = {}
        self._heap: List[tuple] = []
        self._sequence = itertools.count()
        self._job_sequence: Dict[str, int] = {}
        self._queued: set = set()
        self._terminal: "OrderedDict[str, None]" = OrderedDict()
        self._finished_durations: List[float] = []

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="job_queue")

    # Admission

    def add_job(
        self,
        job_type: Union[JobType, str],
        payload: Any = None,
        priority: Optional[PriorityLike] = None,
        *,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        resource_requirements: Optional[Union[ResourceRequirements, Dict[str, Any]]] = None
    ) -> Job:
        """
        Validate and enqueue a new job.

        Raises:
            InvalidJobTypeError: If job_type is not a known JobType
            ValidationError: If the priority or an option is malformed
        """
        parsed_type = JobType.parse(job_type)
        job = Job(
            job_id=Job.generate_id(),
            job_type=parsed_type,
            payload=payload,
            priority=resolve_priority(priority, self.default_priority),
            max_retries=self.default_max_retries if max_retries is None else self._check_max_retries(max_retries),
            timeout=self.default_timeout if timeout is None else self._check_timeout(timeout),
            resource_requirements=(
                self.default_requirements if resource_requirements is None
                else ResourceRequirements.coerce(resource_requirements)
            )
        )

        self._jobs[job.job_id] = job
        self._job_sequence[job.job_id] = next(self._sequence)
        self._push(job)

        self.logger.info("Job queued", extra={
            "job_id": job.job_id,
            "job_type": job.job_type.value,
            "priority": job.priority_label,
            "queue_depth": len(self._queued)
        })

        self._emit(events.JOB_QUEUED, job)
        self._emit(events.JOB_PROCESS, job)
        return job

    # Lookup

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def require_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_jobs(self, status: Optional[JobStatus] = None, job_type: Optional[JobType] = None) -> List[Job]:
        """List known jobs in creation order, optionally filtered."""
        jobs = sorted(self._jobs.values(), key=lambda job: self._job_sequence[job.job_id])
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        if job_type is not None:
            jobs = [job for job in jobs if job.job_type == job_type]
        return jobs

    @property
    def depth(self) -> int:
        """Number of jobs waiting to be dispatched."""
        return len(self._queued)

    def __len__(self) -> int:
        return len(self._queued)

    # Dispatch

    def get_next_job(self) -> Optional[Job]:
        """
        Pop the most urgent dispatchable job.

        The job's status is left untouched; the caller either starts an
        attempt or hands the job back with return_job.
        """
        while self._heap:
            negated_priority, _, job_id = heapq.heappop(self._heap)
            if job_id not in self._queued:
                continue
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal():
                self._queued.discard(job_id)
                continue
            if -negated_priority != job.priority_value:
                # Superseded by update_job_priority
                continue
            self._queued.discard(job_id)
            return job
        return None

    def return_job(self, job: Job) -> bool:
        """Put a popped job back at its original position."""
        if job.job_id not in self._jobs or job.is_terminal() or job.job_id in self._queued:
            return False
        self._push(job)
        return True

    def update_job_priority(self, job_id: str, priority: PriorityLike) -> bool:
        """
        Re-prioritize a pending job.

        The job keeps its insertion sequence, so it lands behind the jobs
        already waiting at its new priority that were enqueued before it.

        Returns:
            False for unknown jobs and jobs that are no longer pending

        Raises:
            ValidationError: If the priority is malformed
        """
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return False

        new_priority = resolve_priority(priority)
        previous = job.priority_label
        job.priority = new_priority
        if job_id in self._queued:
            heapq.heappush(self._heap, (-job.priority_value, self._job_sequence[job_id], job_id))

        self.logger.info("Job priority updated", extra={
            "job_id": job_id,
            "previous_priority": previous,
            "priority": job.priority_label
        })
        self._emit(events.JOB_PRIORITY, job, previous_priority=previous)
        return True

    def start_attempt(self, job_id: str, worker_id: str) -> Job:
        """
        Record the start of an attempt on a worker.

        The first attempt moves the job from pending to running; later
        attempts (retries) find it already running.
        """
        job = self.require_job(job_id)
        if job.status == JobStatus.PENDING:
            job.transition_to(JobStatus.RUNNING)
            job.started_at = datetime.now(timezone.utc)
        elif job.status != JobStatus.RUNNING:
            raise InvalidTransitionError(job_id, job.status.value, JobStatus.RUNNING.value)

        self._queued.discard(job_id)
        job.attempts += 1
        job.worker_id = worker_id
        job.progress = JobProgress(stage="running", current_step="Assigned to worker")

        self.logger.info("Job attempt started", extra={
            "job_id": job_id,
            "worker_id": worker_id,
            "attempt": job.attempts
        })
        self._emit(events.JOB_STARTED, job, worker_id=worker_id, attempt=job.attempts)
        return job

    def update_progress(self, job_id: str, progress: Union[JobProgress, Dict[str, Any]]) -> bool:
        """Attach executor-reported progress to a running job."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False

        if isinstance(progress, dict):
            progress = JobProgress(**progress)
        job.progress = progress
        self._emit(events.JOB_PROGRESS, job, progress=progress.to_dict())
        return True

    # Retries

    def schedule_retry(self, job_id: str, error: Union[BaseException, JobError], delay: Optional[float] = None) -> Job:
        """Mark a running job as awaiting its next attempt."""
        job = self.require_job(job_id)
        if job.status != JobStatus.RUNNING:
            raise InvalidTransitionError(job_id, job.status.value, "retrying")

        job.retry_count += 1
        job.error = error if isinstance(error, JobError) else JobError.from_exception(error, recoverable=True)
        job.worker_id = None
        job.progress = JobProgress(
            stage=AWAITING_RETRY_STAGE,
            percent=job.progress.percent,
            current_step=f"Retry {job.retry_count} of {job.max_retries}"
        )

        self.logger.warning("Job scheduled for retry", extra={
            "job_id": job_id,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "delay_seconds": delay,
            "error": job.error.message
        })
        self._emit(events.JOB_RETRYING, job, retry_count=job.retry_count, delay=delay, error=job.error.to_dict())
        return job

    def requeue_job(self, job_id: str) -> bool:
        """Re-insert a running job awaiting retry, keeping its original position."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING or job_id in self._queued:
            return False

        self._push(job)
        self.logger.debug("Job requeued", extra={"job_id": job_id, "queue_depth": len(self._queued)})
        self._emit(events.JOB_PROCESS, job)
        return True

    def is_awaiting_retry(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is not None and job.status == JobStatus.RUNNING and job.progress.stage == AWAITING_RETRY_STAGE

    # Completion

    def complete_job(self, job_id: str, result: Any = None) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False

        job.result = result
        job.error = None
        job.progress = JobProgress(
            stage="completed",
            percent=100.0,
            current_step="Completed",
            completed_steps=job.progress.total_steps,
            total_steps=job.progress.total_steps
        )
        self._finalize(job, JobStatus.COMPLETED)

        self.logger.info("Job completed", extra={
            "job_id": job_id,
            "attempts": job.attempts,
            "duration_seconds": job.get_duration()
        })
        self._emit(events.JOB_COMPLETED, job, result=result)
        return True

    def fail_job(self, job_id: str, error: Union[BaseException, JobError]) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False

        job.error = error if isinstance(error, JobError) else JobError.from_exception(error, recoverable=False)
        job.progress = JobProgress(
            stage="failed",
            percent=job.progress.percent,
            current_step=job.error.message
        )
        self._finalize(job, JobStatus.FAILED)

        self.logger.error("Job failed", extra={
            "job_id": job_id,
            "attempts": job.attempts,
            "retry_count": job.retry_count,
            "error_code": job.error.code,
            "error": job.error.message
        })
        self._emit(events.JOB_FAILED, job, error=job.error.to_dict())
        return True

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending or running job; a no-op returning False otherwise."""
        job = self._jobs.get(job_id)
        if job is None or not job.can_be_cancelled():
            return False

        was_running = job.status == JobStatus.RUNNING
        self._queued.discard(job_id)
        job.progress = JobProgress(
            stage="cancelled",
            percent=job.progress.percent,
            current_step="Cancelled"
        )
        self._finalize(job, JobStatus.CANCELLED)

        self.logger.info("Job cancelled", extra={"job_id": job_id, "was_running": was_running})
        self._emit(events.JOB_CANCELLED, job, was_running=was_running)
        return True

    # Statistics and retention

    def get_stats(self) -> QueueStats:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1

        average = 0.0
        if self._finished_durations:
            average = sum(self._finished_durations) / len(self._finished_durations)

        return QueueStats(
            total_jobs=len(self._jobs),
            pending_jobs=counts[JobStatus.PENDING],
            running_jobs=counts[JobStatus.RUNNING],
            completed_jobs=counts[JobStatus.COMPLETED],
            failed_jobs=counts[JobStatus.FAILED],
            cancelled_jobs=counts[JobStatus.CANCELLED],
            queue_depth=len(self._queued),
            average_processing_time=average
        )

    def purge_job(self, job_id: str) -> bool:
        """Forget a terminal job."""
        job = self._jobs.get(job_id)
        if job is None or not job.is_terminal():
            return False
        self._forget(job_id)
        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Drop terminal jobs older than the retention window; returns how many."""
        if self.retention_seconds is None:
            return 0

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=self.retention_seconds)
        expired = [
            job_id for job_id in self._terminal
            if self._jobs[job_id].completed_at and self._jobs[job_id].completed_at <= cutoff
        ]
        for job_id in expired:
            self._forget(job_id)

        if expired:
            self.logger.debug("Expired jobs purged", extra={"purged": len(expired)})
        return len(expired)

    # Internals

    def _push(self, job: Job):
        entry = (-job.priority_value, self._job_sequence[job.job_id], job.job_id)
        heapq.heappush(self._heap, entry)
        self._queued.add(job.job_id)

    def _finalize(self, job: Job, status: JobStatus):
        job.transition_to(status)
        job.completed_at = datetime.now(timezone.utc)
        job.worker_id = None

        if status == JobStatus.COMPLETED:
            duration = job.get_duration()
            if duration is not None:
                self._finished_durations.append(duration)
                if len(self._finished_durations) > self.max_history:
                    self._finished_durations.pop(0)

        self._terminal[job.job_id] = None
        while len(self._terminal) > self.max_history:
            oldest, _ = self._terminal.popitem(last=False)
            self._forget(oldest)

    def _forget(self, job_id: str):
        self._jobs.pop(job_id, None)
        self._job_sequence.pop(job_id, None)
        self._terminal.pop(job_id, None)
        self._queued.discard(job_id)

    def _emit(self, event: str, job: Job, **extra):
        payload = {"job_id": job.job_id, "job_type": job.job_type.value, "job": job.to_dict()}
        payload.update(extra)
        self.event_bus.emit(event, payload)

    @staticmethod
    def _check_max_retries(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("max_retries", "must be a non-negative integer", value)
        return value

    @staticmethod
    def _check_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValidationError("timeout", "must be a positive number of seconds", value)
        return float(value)


__all__ = ["JobQueue", "AWAITING_RETRY_STAGE"]
