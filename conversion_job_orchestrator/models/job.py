"""
Job-related data models for the Conversion Job Orchestrator

Defines jobs, job types, priorities, the status lifecycle and progress/error
records. The payload of a job is opaque: nothing in the scheduling core looks
inside it, jobs are routed by ``job_type`` alone.
"""

import traceback
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Union
from dataclasses import dataclass, field
from uuid import uuid4

from .resources import ResourceRequirements
from ..core.exceptions import InvalidJobTypeError, InvalidTransitionError, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    """Job execution status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(Enum):
    """Kinds of work the converter hands to the scheduler."""
    CONVERSION = "conversion"
    VALIDATION = "validation"
    ANALYSIS = "analysis"
    PACKAGING = "packaging"

    @classmethod
    def parse(cls, value: Union["JobType", str]) -> "JobType":
        """Resolve a job type from an enum member or its value; raises InvalidJobTypeError."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidJobTypeError(value, supported=[member.value for member in cls])


class JobPriority(Enum):
    """Named priority tiers; higher weight is more urgent."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> float:
        return PRIORITY_WEIGHTS[self]


PRIORITY_WEIGHTS = {
    JobPriority.LOW: 1.0,
    JobPriority.NORMAL: 2.0,
    JobPriority.HIGH: 3.0,
    JobPriority.URGENT: 4.0,
}

PriorityLike = Union[JobPriority, str, int, float]


def resolve_priority(priority: Optional[PriorityLike], default: PriorityLike = JobPriority.NORMAL) -> Union[JobPriority, float]:
    """
    Normalise a priority given as a tier, a tier name or a number.

    Numbers share the tier scale (low=1 ... urgent=4), so 2.5 sits between
    normal and high.
    """
    if priority is None:
        priority = default
    if isinstance(priority, JobPriority):
        return priority
    if isinstance(priority, bool):
        raise ValidationError("priority", "must be a tier name or a number", priority)
    if isinstance(priority, (int, float)):
        return float(priority)
    if isinstance(priority, str):
        try:
            return JobPriority(priority.strip().lower())
        except ValueError:
            raise ValidationError("priority", f"unknown priority tier {priority!r}", priority)
    raise ValidationError("priority", "must be a tier name or a number", priority)


def priority_value(priority: Union[JobPriority, float]) -> float:
    if isinstance(priority, JobPriority):
        return priority.weight
    return float(priority)


# Status lifecycle: pending -> running -> {completed | failed | cancelled}
JOB_STATUS_TRANSITIONS = {
    JobStatus.PENDING: [JobStatus.RUNNING, JobStatus.CANCELLED],
    JobStatus.RUNNING: [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED],
    JobStatus.COMPLETED: [],
    JobStatus.FAILED: [],
    JobStatus.CANCELLED: [],
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    return JOB_STATUS_TRANSITIONS.get(current_status, [])


@dataclass
class JobProgress:
    """Progress of a job as reported by its executor."""

    stage: str = "queued"
    percent: float = 0.0
    current_step: str = "Waiting in queue"
    completed_steps: int = 0
    total_steps: int = 1
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.percent = max(0.0, min(100.0, float(self.percent)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "percent": self.percent,
            "current_step": self.current_step,
            "completed_steps": self.completed_steps,
            "total_steps": self.total_steps,
            "updated_at": self.updated_at.isoformat()
        }


@dataclass
class JobError:
    """Error attached to a job that failed or is awaiting a retry."""

    code: str
    message: str
    recoverable: bool = False
    error_type: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    stack: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, error: BaseException, recoverable: bool = False) -> "JobError":
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return cls(
            code=getattr(error, "error_code", None) or "JOB_EXECUTION_FAILED",
            message=str(error) or error.__class__.__name__,
            recoverable=recoverable,
            error_type=error.__class__.__name__,
            details=dict(getattr(error, "details", {}) or {}),
            stack=stack
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "error_type": self.error_type,
            "details": self.details,
            "occurred_at": self.occurred_at.isoformat()
        }


@dataclass
class Job:
    """Core job data model. Only the JobQueue mutates a job once it is queued."""

    job_id: str
    job_type: JobType
    payload: Any = None

    priority: Union[JobPriority, float] = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    progress: JobProgress = field(default_factory=JobProgress)
    error: Optional[JobError] = None
    result: Any = None

    retry_count: int = 0
    max_retries: int = 3
    attempts: int = 0
    timeout: Optional[float] = None

    resource_requirements: ResourceRequirements = field(default_factory=ResourceRequirements)
    worker_id: Optional[str] = None

    @staticmethod
    def generate_id() -> str:
        return f"job-{uuid4().hex}"

    @property
    def priority_value(self) -> float:
        return priority_value(self.priority)

    @property
    def priority_label(self) -> str:
        if isinstance(self.priority, JobPriority):
            return self.priority.value
        return str(self.priority)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_be_cancelled(self) -> bool:
        return self.status in (JobStatus.PENDING, JobStatus.RUNNING)

    def transition_to(self, target: JobStatus):
        """Move to ``target`` or raise InvalidTransitionError."""
        if not can_transition_to(self.status, target):
            raise InvalidTransitionError(self.job_id, self.status.value, target.value)
        self.status = target

    def get_duration(self) -> Optional[float]:
        """Get job duration in seconds if finished."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for serialization (payload and result are passed through as-is)."""
        return {
            "job_id": self.job_id,
            "job_type": self.job_type.value,
            "priority": self.priority_label,
            "priority_value": self.priority_value,
            "status": self.status.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "progress": self.progress.to_dict(),
            "error": self.error.to_dict() if self.error else None,
            "result": self.result,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "attempts": self.attempts,
            "timeout": self.timeout,
            "resource_requirements": self.resource_requirements.to_dict(),
            "worker_id": self.worker_id,
            "duration_seconds": self.get_duration()
        }


@dataclass
class QueueStats:
    """Point-in-time queue statistics."""

    total_jobs: int = 0
    pending_jobs: int = 0
    running_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    queue_depth: int = 0
    average_processing_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_jobs": self.total_jobs,
            "pending_jobs": self.pending_jobs,
            "running_jobs": self.running_jobs,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "cancelled_jobs": self.cancelled_jobs,
            "queue_depth": self.queue_depth,
            "average_processing_time": self.average_processing_time
        }
