"""
Job executors for the Conversion Job Orchestrator

Executors perform the actual conversion work for a job type; the scheduling
core only routes, times and retries them.
"""

from .base import ExecutionContext, JobExecutor, CallableExecutor, as_executor
from .local import LocalJobExecutor, ThreadSafeContext

__all__ = [
    "ExecutionContext",
    "JobExecutor",
    "CallableExecutor",
    "as_executor",
    "LocalJobExecutor",
    "ThreadSafeContext"
]
