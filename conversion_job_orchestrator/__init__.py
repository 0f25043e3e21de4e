"""
Conversion Job Orchestrator

The job and worker scheduling core of a Java-mod to Bedrock-addon converter.
Conversion jobs are queued by priority and run on a bounded, auto-scaling pool
of logical workers under memory/CPU/disk admission control, with progress
tracking, cooperative cancellation, retry with backoff and recovery from
stalled workers.

The conversion work itself is pluggable: anything implementing JobExecutor
(or a plain ``fn(job_type, payload, context)``) can be scheduled.

Key Features:
- Stable priority queue with a monotonic job lifecycle
- Capability-routed worker pool with heartbeat monitoring and autoscaling
- Atomic resource reservation with backpressure
- Retry with exponential or linear backoff
- Lifecycle events, job history and Prometheus metrics
- CLI for running job manifests

Usage:
    from conversion_job_orchestrator import ConversionOrchestrator, LocalJobExecutor

    executor = LocalJobExecutor()

    @executor.handler("conversion")
    async def convert(payload, context):
        context.report_progress("assets", percent=50)
        return {"addon": payload["mod"] + ".mcaddon"}

    async with ConversionOrchestrator(executor) as orchestrator:
        job_id = orchestrator.enqueue("conversion", {"mod": "example"}, priority="high")
        job = await orchestrator.wait_for(job_id)
        print(job["status"], job["result"])
"""

__version__ = "1.0.0"
__author__ = "Conversion Job Orchestrator Team"
__license__ = "MIT"

# Core orchestrator
from .core.orchestrator import ConversionOrchestrator
from .core.events import EventBus

# Data models
from .models.job import Job, JobStatus, JobType, JobPriority, JobProgress, JobError, QueueStats
from .models.worker import Worker, WorkerStatus, WorkerTask, WorkerPoolStats
from .models.resources import ResourceRequirements, ResourceAllocation, ResourceUsage

# Services (for advanced usage)
from .services.job_queue import JobQueue
from .services.worker_pool import WorkerPool
from .services.resource_allocator import ResourceAllocator
from .services.fault_tolerance import RetryPolicy
from .services.job_history import JobHistory
from .services.monitoring_service import MonitoringService

# Executors
from .executors.base import ExecutionContext, JobExecutor, CallableExecutor
from .executors.local import LocalJobExecutor

# Utilities
from .utils.config import SchedulerConfig, load_config
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
    ConversionOrchestratorError,
    InvalidJobTypeError,
    ValidationError,
    JobNotFoundError,
    InvalidTransitionError,
    JobExecutionError,
    FatalJobError,
    JobCancelledError,
    WorkerTimeoutError,
    JobTimeoutError,
    WorkerAssignmentError,
    PoolShutdownError,
    ResourceExhaustedError,
    ConfigurationError
)

__all__ = [
    # Core
    "ConversionOrchestrator",
    "EventBus",

    # Models
    "Job",
    "JobStatus",
    "JobType",
    "JobPriority",
    "JobProgress",
    "JobError",
    "QueueStats",
    "Worker",
    "WorkerStatus",
    "WorkerTask",
    "WorkerPoolStats",
    "ResourceRequirements",
    "ResourceAllocation",
    "ResourceUsage",

    # Services (for advanced usage)
    "JobQueue",
    "WorkerPool",
    "ResourceAllocator",
    "RetryPolicy",
    "JobHistory",
    "MonitoringService",

    # Executors
    "ExecutionContext",
    "JobExecutor",
    "CallableExecutor",
    "LocalJobExecutor",

    # Utilities
    "SchedulerConfig",
    "load_config",
    "setup_logger",
    "get_logger",

    # Exceptions
    "ConversionOrchestratorError",
    "InvalidJobTypeError",
    "ValidationError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "JobExecutionError",
    "FatalJobError",
    "JobCancelledError",
    "WorkerTimeoutError",
    "JobTimeoutError",
    "WorkerAssignmentError",
    "PoolShutdownError",
    "ResourceExhaustedError",
    "ConfigurationError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())


def quick_start(config_path: str = None, executor=None) -> ConversionOrchestrator:
    """
    Quick start helper for simple use cases.

    Args:
        config_path: Optional YAML configuration file (falls back to $CJO_CONFIG and defaults)
        executor: JobExecutor or callable; an empty LocalJobExecutor when omitted

    Returns:
        Configured ConversionOrchestrator, not yet started

    Example:
        orchestrator = quick_start()
        orchestrator.worker_pool.executor.register("validation", validate_pack)
        await orchestrator.start()
    """
    return ConversionOrchestrator.from_config(load_config(config_path), executor or LocalJobExecutor())
