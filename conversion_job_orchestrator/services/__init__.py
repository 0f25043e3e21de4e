"""
Services package for the Conversion Job Orchestrator

Contains the job queue, worker pool, resource allocator and the supporting
fault tolerance, history and monitoring services.
"""

from .job_queue import JobQueue
from .worker_pool import WorkerPool
from .resource_allocator import ResourceAllocator
from .fault_tolerance import RetryPolicy, is_retryable
from .job_history import JobHistory
from .monitoring_service import MonitoringService

__all__ = [
    "JobQueue",
    "WorkerPool",
    "ResourceAllocator",
    "RetryPolicy",
    "is_retryable",
    "JobHistory",
    "MonitoringService"
]
