"""
Worker models for the Conversion Job Orchestrator

Defines logical workers, their capability profiles, direct worker tasks and
pool statistics. Workers are bookkeeping records: the actual work runs as
asyncio tasks driven by the WorkerPool.
"""

import time
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, FrozenSet, Iterable, List
from dataclasses import dataclass, field
from uuid import uuid4

from .job import JobType, JobPriority, PriorityLike, resolve_priority, priority_value


class WorkerStatus(Enum):
    """Worker status enumeration."""
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"
    TERMINATED = "terminated"


# One profile per job type, mirroring the converter's worker kinds.
DEFAULT_WORKER_PROFILES: Dict[str, List[JobType]] = {
    "conversion-worker": [JobType.CONVERSION],
    "validation-worker": [JobType.VALIDATION],
    "analysis-worker": [JobType.ANALYSIS],
    "packaging-worker": [JobType.PACKAGING],
}


def normalize_profiles(profiles: Optional[Dict[str, Iterable[Any]]]) -> Dict[str, FrozenSet[JobType]]:
    """Turn ``{profile: [job types]}`` into ``{profile: frozenset(JobType)}``."""
    source = profiles if profiles else DEFAULT_WORKER_PROFILES
    return {name: frozenset(JobType.parse(job_type) for job_type in job_types)
            for name, job_types in source.items()}


@dataclass
class Worker:
    """Logical worker slot."""

    worker_id: str
    profile: str
    capabilities: FrozenSet[JobType]
    sequence: int = 0

    status: WorkerStatus = WorkerStatus.IDLE
    current_job_id: Optional[str] = None

    # Monotonic clock readings
    last_heartbeat: float = field(default_factory=time.monotonic)
    idle_since: Optional[float] = field(default_factory=time.monotonic)
    busy_since: Optional[float] = None

    processed_count: int = 0
    failed_count: int = 0
    consecutive_failures: int = 0

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def can_handle(self, job_type: JobType) -> bool:
        return job_type in self.capabilities

    def is_available(self) -> bool:
        return self.status == WorkerStatus.IDLE and self.current_job_id is None

    def heartbeat(self, now: Optional[float] = None):
        """Advance the heartbeat; it never moves backwards."""
        now = time.monotonic() if now is None else now
        if now > self.last_heartbeat:
            self.last_heartbeat = now

    def mark_busy(self, job_id: str, now: Optional[float] = None):
        now = time.monotonic() if now is None else now
        self.status = WorkerStatus.BUSY
        self.current_job_id = job_id
        self.busy_since = now
        self.idle_since = None
        self.heartbeat(now)

    def mark_idle(self, now: Optional[float] = None):
        now = time.monotonic() if now is None else now
        self.status = WorkerStatus.IDLE
        self.current_job_id = None
        self.busy_since = None
        self.idle_since = now
        self.heartbeat(now)

    def record_success(self):
        self.processed_count += 1
        self.consecutive_failures = 0

    def record_failure(self, stalled: bool = False):
        """Count a failed unit; only stalls count toward consecutive_failures."""
        self.failed_count += 1
        if stalled:
            self.consecutive_failures += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "profile": self.profile,
            "capabilities": sorted(job_type.value for job_type in self.capabilities),
            "status": self.status.value,
            "current_job_id": self.current_job_id,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "consecutive_failures": self.consecutive_failures,
            "created_at": self.created_at.isoformat()
        }


@dataclass
class WorkerTask:
    """Unit of work submitted straight to the pool, bypassing the job queue."""

    task_id: str
    job_type: JobType
    payload: Any = None
    priority: Any = JobPriority.NORMAL
    timeout: Optional[float] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(
        cls,
        job_type: Any,
        payload: Any = None,
        priority: Optional[PriorityLike] = None,
        timeout: Optional[float] = None
    ) -> "WorkerTask":
        return cls(
            task_id=f"task-{uuid4().hex}",
            job_type=JobType.parse(job_type),
            payload=payload,
            priority=resolve_priority(priority),
            timeout=timeout
        )

    @property
    def priority_value(self) -> float:
        return priority_value(self.priority)


@dataclass
class WorkerPoolStats:
    """Point-in-time pool statistics."""

    total_workers: int = 0
    idle_workers: int = 0
    busy_workers: int = 0
    error_workers: int = 0
    pending_tasks: int = 0
    total_processed: int = 0
    total_failed: int = 0
    average_processed_per_worker: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_workers": self.total_workers,
            "idle_workers": self.idle_workers,
            "busy_workers": self.busy_workers,
            "error_workers": self.error_workers,
            "pending_tasks": self.pending_tasks,
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "average_processed_per_worker": self.average_processed_per_worker
        }
