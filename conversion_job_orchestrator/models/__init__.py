"""
Data models for the Conversion Job Orchestrator

Jobs and their lifecycle, logical workers and worker tasks, and the resource
records used for admission control.
"""

# Job models
from .job import (
    Job,
    JobStatus,
    JobType,
    JobPriority,
    JobProgress,
    JobError,
    QueueStats,
    PRIORITY_WEIGHTS,
    TERMINAL_STATUSES,
    JOB_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions,
    resolve_priority
)

# Worker models
from .worker import (
    Worker,
    WorkerStatus,
    WorkerTask,
    WorkerPoolStats,
    DEFAULT_WORKER_PROFILES
)

# Resource models
from .resources import (
    ResourceRequirements,
    ResourceAllocation,
    ResourceUsage
)

__all__ = [
    # Job models
    "Job",
    "JobStatus",
    "JobType",
    "JobPriority",
    "JobProgress",
    "JobError",
    "QueueStats",
    "PRIORITY_WEIGHTS",
    "TERMINAL_STATUSES",
    "JOB_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",
    "resolve_priority",

    # Worker models
    "Worker",
    "WorkerStatus",
    "WorkerTask",
    "WorkerPoolStats",
    "DEFAULT_WORKER_PROFILES",

    # Resource models
    "ResourceRequirements",
    "ResourceAllocation",
    "ResourceUsage"
]
