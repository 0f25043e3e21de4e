"""
Core package for the Conversion Job Orchestrator

Contains the orchestrator, the event bus and the error taxonomy.
"""

from .exceptions import (
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
    WorkerNotFoundError,
    WorkerAssignmentError,
    PoolShutdownError,
    ResourceExhaustedError,
    ConfigurationError,
    OrchestratorError,
    ErrorRegistry,
    is_fatal
)
from .events import EventBus
from .orchestrator import ConversionOrchestrator

__all__ = [
    "ConversionOrchestrator",
    "EventBus",
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
    "WorkerNotFoundError",
    "WorkerAssignmentError",
    "PoolShutdownError",
    "ResourceExhaustedError",
    "ConfigurationError",
    "OrchestratorError",
    "ErrorRegistry",
    "is_fatal"
]
