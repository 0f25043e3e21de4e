"""
Exception classes for the Conversion Job Orchestrator

Provides the error taxonomy used by the job queue, worker pool, resource
allocator and orchestrator: admission errors, execution errors, worker
failures, cancellation and shutdown.
"""

from typing import Optional, Dict, Any


class ConversionOrchestratorError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class InvalidJobTypeError(ConversionOrchestratorError):
    """Raised when a job is submitted with an unsupported job type."""

    def __init__(self, job_type: Any, supported: Optional[list] = None):
        super().__init__(
            f"Unsupported job type: {job_type!r}",
            error_code="INVALID_JOB_TYPE",
            details={"job_type": str(job_type), "supported": supported or []}
        )


class ValidationError(ConversionOrchestratorError):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class JobNotFoundError(ConversionOrchestratorError):
    """Raised when a requested job cannot be found."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Job {job_id} not found",
            error_code="JOB_NOT_FOUND",
            details={"job_id": job_id}
        )


class InvalidTransitionError(ConversionOrchestratorError):
    """Raised when a job status change would violate the lifecycle."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {target}",
            error_code="INVALID_TRANSITION",
            details={"job_id": job_id, "current": current, "target": target}
        )


class JobExecutionError(ConversionOrchestratorError):
    """Raised when job execution encounters an error."""

    fatal = False

    def __init__(self, job_id: str, message: str, stage: Optional[str] = None):
        super().__init__(
            f"Job {job_id} execution failed: {message}",
            error_code="JOB_EXECUTION_ERROR",
            details={"job_id": job_id, "stage": stage}
        )


class FatalJobError(ConversionOrchestratorError):
    """Raised by executors for failures that must not be retried."""

    fatal = True

    def __init__(self, message: str, job_type: Optional[str] = None):
        super().__init__(
            message,
            error_code="FATAL_JOB_ERROR",
            details={"job_type": job_type}
        )


class JobCancelledError(ConversionOrchestratorError):
    """Raised to the waiter of a job or task that was cancelled."""

    def __init__(self, unit_id: str, reason: str = "cancelled"):
        super().__init__(
            f"{unit_id} was {reason}",
            error_code="JOB_CANCELLED",
            details={"id": unit_id, "reason": reason}
        )


class WorkerTimeoutError(ConversionOrchestratorError):
    """Raised when a busy worker stops sending heartbeats."""

    def __init__(self, worker_id: str, job_id: str, timeout_seconds: float,
                 message: Optional[str] = None, error_code: str = "WORKER_TIMEOUT"):
        super().__init__(
            message or f"Worker {worker_id} timed out after {timeout_seconds}s while running {job_id}",
            error_code=error_code,
            details={"worker_id": worker_id, "job_id": job_id, "timeout_seconds": timeout_seconds}
        )


class JobTimeoutError(WorkerTimeoutError):
    """Raised when a job runs longer than its own timeout."""

    def __init__(self, worker_id: str, job_id: str, timeout_seconds: float):
        super().__init__(
            worker_id,
            job_id,
            timeout_seconds,
            message=f"Job {job_id} exceeded its timeout of {timeout_seconds}s on worker {worker_id}",
            error_code="JOB_TIMEOUT"
        )


class WorkerNotFoundError(ConversionOrchestratorError):
    """Raised when a requested worker cannot be found."""

    def __init__(self, worker_id: str):
        super().__init__(
            f"Worker {worker_id} not found",
            error_code="WORKER_NOT_FOUND",
            details={"worker_id": worker_id}
        )


class WorkerAssignmentError(ConversionOrchestratorError):
    """Raised when worker job assignment fails."""

    def __init__(self, message: str, worker_id: Optional[str] = None, job_id: Optional[str] = None):
        super().__init__(
            f"Worker assignment failed: {message}",
            error_code="WORKER_ASSIGNMENT_ERROR",
            details={"worker_id": worker_id, "job_id": job_id}
        )


class PoolShutdownError(ConversionOrchestratorError):
    """Raised to callers whose work was cut short by a pool shutdown."""

    fatal = True

    def __init__(self, message: str = "Worker pool is shutting down"):
        super().__init__(message, error_code="POOL_SHUTDOWN")


class ResourceExhaustedError(ConversionOrchestratorError):
    """Raised when requested resources can not be granted."""

    def __init__(self, resource_type: str, requested: Optional[float] = None, limit: Optional[float] = None):
        message = f"Resource exhausted: {resource_type}"
        if requested is not None and limit is not None:
            message += f" (requested {requested}, limit {limit})"

        super().__init__(
            message,
            error_code="RESOURCE_EXHAUSTED",
            details={"resource_type": resource_type, "requested": requested, "limit": limit}
        )


class ConfigurationError(ConversionOrchestratorError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class OrchestratorError(ConversionOrchestratorError):
    """Raised when orchestrator-level operations fail."""

    def __init__(self, message: str):
        super().__init__(
            f"Orchestrator error: {message}",
            error_code="ORCHESTRATOR_ERROR"
        )


def is_fatal(error: BaseException) -> bool:
    """Return True when an error is flagged as not worth retrying."""
    return bool(getattr(error, "fatal", False))


class ErrorRegistry:
    """Aggregates execution errors seen by one orchestrator."""

    def __init__(self, max_recent: int = 100):
        self.error_counts: Dict[str, int] = {}
        self.recent_errors: list = []
        self.max_recent = max_recent

    def record_error(self, error: BaseException, job_id: Optional[str] = None):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        self.recent_errors.append({"job_id": job_id, "error": error_type, "message": str(error)})
        if len(self.recent_errors) > self.max_recent:
            self.recent_errors.pop(0)

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None,
            "recent_errors": list(self.recent_errors)
        }
