"""
Local job executor.

Routes each job type to a registered handler running in this process.
Coroutine handlers run on the event loop; plain functions run on a thread
pool and talk back to the loop through a thread-safe context.
"""

import asyncio
import functools
import inspect
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional, Union

import psutil

from .base import ExecutionContext, JobExecutor
from ..core.exceptions import FatalJobError, JobCancelledError
from ..models.job import JobType
from ..utils.logger import get_logger

Handler = Callable[[Any, Any], Any]


class ThreadSafeContext:
    """
    ExecutionContext facade for handlers running on a worker thread.

    Heartbeats and progress are marshalled onto the event loop with
    ``call_soon_threadsafe``; the cancellation flag is read directly.
    """

    def __init__(self, context: ExecutionContext, loop: asyncio.AbstractEventLoop):
        self._context = context
        self._loop = loop

    @property
    def job_id(self) -> str:
        return self._context.unit_id

    @property
    def job_type(self) -> JobType:
        return self._context.job_type

    @property
    def attempt(self) -> int:
        return self._context.attempt

    @property
    def cancelled(self) -> bool:
        return self._context.cancel_event.is_set()

    def heartbeat(self):
        self._loop.call_soon_threadsafe(self._context.heartbeat)

    def report_progress(self, stage: str, percent: float = 0.0, current_step: Optional[str] = None,
                        completed_steps: int = 0, total_steps: int = 1):
        self._loop.call_soon_threadsafe(functools.partial(
            self._context.report_progress, stage, percent, current_step, completed_steps, total_steps
        ))

    def raise_if_cancelled(self):
        if self.cancelled:
            raise JobCancelledError(self._context.unit_id)


class LocalJobExecutor(JobExecutor):
    """
    In-process executor with one handler per job type.

    Handlers are called as ``handler(payload, context)``. A job type without
    a handler fails with FatalJobError, so it is never retried.
    """

    def __init__(self, handlers: Optional[Dict[Union[JobType, str], Handler]] = None, max_threads: int = 4):
        """
        Initialize local executor.

        Args:
            handlers: Mapping of job type to handler
            max_threads: Size of the thread pool used for synchronous handlers
        """
        self.max_threads = max_threads
        self.handlers: Dict[JobType, Handler] = {}
        self.thread_executor: Optional[ThreadPoolExecutor] = None
        self.logger = get_logger(__name__)

        for job_type, handler in (handlers or {}).items():
            self.register(job_type, handler)

    def register(self, job_type: Union[JobType, str], handler: Handler):
        self.handlers[JobType.parse(job_type)] = handler

    def handler(self, job_type: Union[JobType, str]):
        """Decorator form of register()."""
        def decorator(fn: Handler) -> Handler:
            self.register(job_type, fn)
            return fn
        return decorator

    def supports_job_type(self, job_type: JobType) -> bool:
        return job_type in self.handlers

    async def initialize(self) -> bool:
        if self.thread_executor is None:
            self.thread_executor = ThreadPoolExecutor(max_workers=self.max_threads, thread_name_prefix="cjo-handler")
            self.logger.info("Local executor initialized", extra={
                "handlers": sorted(job_type.value for job_type in self.handlers),
                "max_threads": self.max_threads
            })
        return True

    async def shutdown(self) -> bool:
        if self.thread_executor is not None:
            # Running handlers are cooperative; do not block the loop waiting for them
            self.thread_executor.shutdown(wait=False)
            self.thread_executor = None
            self.logger.info("Local executor shut down")
        return True

    async def execute(self, job_type: JobType, payload: Any, context: ExecutionContext) -> Any:
        handler = self.handlers.get(job_type)
        if handler is None:
            raise FatalJobError(f"No handler registered for job type {job_type.value!r}", job_type=job_type.value)

        if inspect.iscoroutinefunction(handler):
            return await handler(payload, context)

        if self.thread_executor is None:
            await self.initialize()

        loop = asyncio.get_running_loop()
        safe_context = ThreadSafeContext(context, loop)
        outcome = await loop.run_in_executor(self.thread_executor, handler, payload, safe_context)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def get_resource_usage(self) -> Dict[str, Any]:
        """Host load as seen by this process."""
        process = psutil.Process()
        return {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": psutil.virtual_memory().percent,
            "process_rss_mb": process.memory_info().rss // 1024 // 1024,
            "threads": self.max_threads
        }
