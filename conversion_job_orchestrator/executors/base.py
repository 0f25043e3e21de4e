"""
Base job executor interface.

The scheduling core never looks inside a payload. It hands
``(job_type, payload, context)`` to a JobExecutor and awaits the result.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional, TYPE_CHECKING

from ..core.exceptions import JobCancelledError
from ..models.job import JobType, JobProgress

if TYPE_CHECKING:
    from ..services.resource_allocator import ResourceAllocator


class ExecutionContext:
    """
    Handle given to an executor for one attempt of one job (or worker task).

    Executors call heartbeat() or report_progress() while they work; a worker
    that stays silent longer than the pool's worker_timeout is considered
    stalled. Cancellation is cooperative: check ``cancelled`` or call
    raise_if_cancelled() between steps.
    """

    def __init__(
        self,
        unit_id: str,
        job_type: JobType,
        worker_id: str,
        attempt: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
        on_heartbeat: Optional[Callable[[], None]] = None,
        on_progress: Optional[Callable[[JobProgress], None]] = None,
        allocator: Optional["ResourceAllocator"] = None
    ):
        self.unit_id = unit_id
        self.job_type = job_type
        self.worker_id = worker_id
        self.attempt = attempt
        self.cancel_event = cancel_event or asyncio.Event()
        self._on_heartbeat = on_heartbeat
        self._on_progress = on_progress
        self._allocator = allocator

    @property
    def job_id(self) -> str:
        return self.unit_id

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def heartbeat(self):
        """Tell the pool this worker is still alive."""
        if self._on_heartbeat is not None:
            self._on_heartbeat()

    def report_progress(
        self,
        stage: str,
        percent: float = 0.0,
        current_step: Optional[str] = None,
        completed_steps: int = 0,
        total_steps: int = 1
    ):
        """Publish progress; also counts as a heartbeat."""
        self.heartbeat()
        if self._on_progress is not None:
            self._on_progress(JobProgress(
                stage=stage,
                percent=percent,
                current_step=current_step or stage,
                completed_steps=completed_steps,
                total_steps=total_steps
            ))

    def raise_if_cancelled(self):
        if self.cancel_event.is_set():
            raise JobCancelledError(self.unit_id)

    @asynccontextmanager
    async def pooled(self, name: str, timeout: Optional[float] = None):
        """Hold one unit of a named allocator pool (a no-op without an allocator)."""
        if self._allocator is None:
            yield
            return
        async with self._allocator.pooled(name, timeout=timeout):
            yield


class JobExecutor(ABC):
    """
    Abstract base class for job executors.

    Implementations run the actual conversion work. They may raise
    FatalJobError (or any error with ``fatal = True``) for failures that must
    not be retried; every other exception is retryable.
    """

    async def initialize(self) -> bool:
        """Prepare executor resources. Called once before the pool starts."""
        return True

    async def shutdown(self) -> bool:
        """Release executor resources."""
        return True

    @abstractmethod
    async def execute(self, job_type: JobType, payload: Any, context: ExecutionContext) -> Any:
        """
        Execute one attempt.

        Args:
            job_type: Type the job was routed by
            payload: Opaque payload given at submission
            context: Heartbeat, progress and cancellation handle

        Returns:
            The job result
        """

    def supports_job_type(self, job_type: JobType) -> bool:
        return True

    @property
    def executor_name(self) -> str:
        """Get the name of this executor."""
        return self.__class__.__name__


class CallableExecutor(JobExecutor):
    """Adapts a plain ``fn(job_type, payload, context)`` (sync or async) to JobExecutor."""

    def __init__(self, fn: Callable[..., Any]):
        self.fn = fn

    async def execute(self, job_type: JobType, payload: Any, context: ExecutionContext) -> Any:
        outcome = self.fn(job_type, payload, context)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    @property
    def executor_name(self) -> str:
        return getattr(self.fn, "__qualname__", "CallableExecutor")


def as_executor(candidate: Any) -> JobExecutor:
    """Accept a JobExecutor instance or a bare callable."""
    if isinstance(candidate, JobExecutor):
        return candidate
    if callable(candidate):
        return CallableExecutor(candidate)
    raise TypeError(f"Expected a JobExecutor or a callable, got {type(candidate).__name__}")
