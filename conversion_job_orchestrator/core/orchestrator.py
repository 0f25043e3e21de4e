"""
Main ConversionOrchestrator class that coordinates all services

Provides the primary interface for job submission, status, cancellation and
results, and runs the dispatch loop that moves jobs from the queue onto
workers under resource admission control.
"""

import asyncio
import functools
from typing import Any, Callable, Dict, List, Optional, Union

from . import events
from .events import EventBus
from .exceptions import (
    ErrorRegistry,
    InvalidJobTypeError,
    JobCancelledError,
    JobNotFoundError,
    OrchestratorError,
    ResourceExhaustedError
)
from ..executors.base import as_executor
from ..models.job import Job, JobType, JobStatus, PriorityLike, QueueStats
from ..models.resources import RESOURCE_DIMENSIONS, ResourceAllocation, ResourceRequirements, ResourceUsage
from ..models.worker import WorkerTask, WorkerPoolStats
from ..services.fault_tolerance import RetryPolicy, should_retry
from ..services.job_history import JobHistory
from ..services.job_queue import JobQueue
from ..services.monitoring_service import MonitoringService
from ..services.resource_allocator import ResourceAllocator, detect_system_capacity
from ..services.worker_pool import WorkerPool
from ..utils.logger import get_logger, set_log_context, LoggerContext


class ConversionOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Job submission, status, cancellation and results
    - Dispatch of queued jobs onto capable workers under resource limits
    - Retry with backoff of failed attempts
    - Job history and metrics
    """

    def __init__(
        self,
        executor: Any = None,
        *,
        event_bus: Optional[EventBus] = None,
        job_queue: Optional[JobQueue] = None,
        worker_pool: Optional[WorkerPool] = None,
        allocator: Optional[ResourceAllocator] = None,
        retry_policy: Optional[RetryPolicy] = None,
        history: Optional[JobHistory] = None,
        monitoring: Optional[MonitoringService] = None,
        poll_interval: float = 1.0
    ):
        """
        Initialize the ConversionOrchestrator.

        Components not supplied are built with their defaults and share one
        EventBus.

        Args:
            executor: JobExecutor or callable; required unless worker_pool is given
            event_bus: Bus shared by all components
            job_queue: Job queue
            worker_pool: Worker pool
            allocator: Resource allocator (host capacity when omitted)
            retry_policy: Backoff between attempts
            history: Job status history
            monitoring: Prometheus metrics
            poll_interval: Maximum seconds between dispatch ticks
        """
        if executor is None and worker_pool is None:
            raise OrchestratorError("an executor or a worker pool is required")

        if event_bus is None:
            if job_queue is not None:
                event_bus = job_queue.event_bus
            elif worker_pool is not None:
                event_bus = worker_pool.event_bus
            else:
                event_bus = EventBus()
        if allocator is None:
            if worker_pool is not None and worker_pool.allocator is not None:
                allocator = worker_pool.allocator
            else:
                allocator = ResourceAllocator()

        self.event_bus = event_bus
        self.allocator = allocator
        self.job_queue = job_queue if job_queue is not None else JobQueue(event_bus=self.event_bus)
        if worker_pool is None:
            worker_pool = WorkerPool(as_executor(executor), event_bus=self.event_bus, allocator=self.allocator)
        self.worker_pool = worker_pool
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self.history = history if history is not None else JobHistory()
        self.monitoring = monitoring
        self.poll_interval = poll_interval

        self.error_registry = ErrorRegistry()

        self._executions: Dict[str, asyncio.Task] = {}
        self._retry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._wake_event: Optional[asyncio.Event] = None
        self._is_running = False

        self.history.attach(self.event_bus)
        if self.monitoring is not None:
            self.monitoring.attach(self.event_bus)

        for event in (events.JOB_PROCESS, events.WORKER_RECOVERED, events.WORKER_CREATED):
            self.event_bus.on(event, self._on_wake_event)
        for event in events.JOB_TERMINAL_EVENTS:
            self.event_bus.on(event, self._on_job_terminal)

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    @classmethod
    def from_config(cls, config: Any, executor: Any) -> "ConversionOrchestrator":
        """Build an orchestrator and all of its components from a SchedulerConfig."""
        event_bus = EventBus()

        queue_settings = config.queue
        job_queue = JobQueue(
            event_bus=event_bus,
            default_priority=queue_settings.default_priority,
            default_max_retries=queue_settings.default_max_retries,
            default_timeout=queue_settings.default_timeout,
            default_requirements=ResourceRequirements(**queue_settings.default_requirements.model_dump()),
            max_history=queue_settings.max_history,
            retention_seconds=queue_settings.retention_seconds
        )

        resources = config.resources
        configured = {name: getattr(resources, name) for name in RESOURCE_DIMENSIONS}
        if any(value is None for value in configured.values()):
            detected = detect_system_capacity(resources.system_fraction)
            configured = {
                name: getattr(detected, name) if value is None else value
                for name, value in configured.items()
            }
        allocator = ResourceAllocator(
            capacity=ResourceUsage(**configured),
            pool_limits=resources.pools,
            default_pool_size=resources.default_pool_size,
            scale_up_threshold=resources.scale_up_threshold
        )

        workers = config.workers
        worker_pool = WorkerPool(
            executor,
            event_bus=event_bus,
            allocator=allocator,
            profiles=workers.profiles,
            min_workers=workers.min_workers,
            max_workers=workers.max_workers,
            heartbeat_interval=workers.heartbeat_interval,
            worker_timeout=workers.worker_timeout,
            recovery_delay=workers.recovery_delay,
            idle_timeout=workers.idle_timeout,
            max_worker_failures=workers.max_worker_failures,
            drain_poll_interval=workers.drain_poll_interval,
            shutdown_timeout=workers.shutdown_timeout
        )

        return cls(
            event_bus=event_bus,
            job_queue=job_queue,
            worker_pool=worker_pool,
            allocator=allocator,
            retry_policy=RetryPolicy(**config.retry.model_dump()),
            history=JobHistory(
                path=config.history.path,
                max_entries=config.history.max_entries,
                flush_interval=config.history.flush_interval
            ),
            monitoring=MonitoringService() if config.orchestrator.metrics_enabled else None,
            poll_interval=config.orchestrator.poll_interval
        )

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self):
        """Start the worker pool, history persistence and the dispatch loop."""
        if self._is_running:
            return
        self.logger.info("Starting ConversionOrchestrator", extra={
            "workers": len(self.worker_pool.workers),
            "capacity": self.allocator.capacity.to_dict()
        })

        try:
            await self.worker_pool.start()
            await self.history.start()
        except Exception as e:
            self.logger.error("Failed to start ConversionOrchestrator", exc_info=True)
            raise OrchestratorError(f"Failed to start orchestrator: {str(e)}")

        self._wake_event = asyncio.Event()
        self._is_running = True
        self._loop_task = asyncio.create_task(self._processing_loop())
        self.logger.info("ConversionOrchestrator started successfully")

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop dispatching, drain the pool and flush history.

        Jobs waiting for a retry are put back in the queue; jobs still in
        flight when the pool's shutdown timeout expires fail with
        PoolShutdownError.
        """
        if not self._is_running:
            return
        self.logger.info("Stopping ConversionOrchestrator", extra={"in_flight": len(self._executions)})
        self._is_running = False

        if self._loop_task is not None:
            self._wake()
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        for job_id, handle in list(self._retry_handles.items()):
            handle.cancel()
            self.job_queue.requeue_job(job_id)
        self._retry_handles.clear()

        await self.worker_pool.shutdown(timeout)

        if self._executions:
            await asyncio.gather(*list(self._executions.values()), return_exceptions=True)

        try:
            await self.history.stop()
        except OSError:
            self.logger.error("Failed to flush job history on stop", exc_info=True)

        self.logger.info("ConversionOrchestrator stopped")

    async def __aenter__(self) -> "ConversionOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # Job Management Interface

    def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Any = None,
        priority: Optional[PriorityLike] = None,
        **options
    ) -> str:
        """
        Submit a job.

        Args:
            job_type: One of the JobType values
            payload: Opaque data handed to the executor
            priority: Tier name, JobPriority or number (higher is more urgent)
            **options: max_retries, timeout, resource_requirements

        Returns:
            The job id

        Raises:
            InvalidJobTypeError: Unknown job type, or no worker profile handles it
            ValidationError: Malformed priority or options
            ResourceExhaustedError: Requirements larger than total capacity
        """
        parsed_type = JobType.parse(job_type)
        if not self.worker_pool.has_capable_profile(parsed_type):
            supported = [job_type.value for job_type in self.worker_pool.supported_job_types()]
            raise InvalidJobTypeError(parsed_type.value, supported=supported)

        unknown = set(options) - {"max_retries", "timeout", "resource_requirements"}
        if unknown:
            raise TypeError(f"Unexpected job options: {', '.join(sorted(unknown))}")

        requirements = options.get("resource_requirements")
        requirements = (
            self.job_queue.default_requirements if requirements is None
            else ResourceRequirements.coerce(requirements)
        )
        if not self.allocator.fits_capacity(requirements):
            for name in RESOURCE_DIMENSIONS:
                if getattr(requirements, name) > getattr(self.allocator.capacity, name):
                    raise ResourceExhaustedError(name, getattr(requirements, name), getattr(self.allocator.capacity, name))

        job = self.job_queue.add_job(
            parsed_type,
            payload,
            priority,
            max_retries=options.get("max_retries"),
            timeout=options.get("timeout"),
            resource_requirements=requirements
        )
        return job.job_id

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot of a job, or None if unknown."""
        job = self.job_queue.get_job(job_id)
        return job.to_dict() if job else None

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.job_queue.get_job(job_id)

    def get_result(self, job_id: str) -> Any:
        """Result of a completed job; None while it is not completed."""
        job = self.job_queue.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.result if job.status == JobStatus.COMPLETED else None

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a pending or running job.

        Returns:
            False for unknown or already finished jobs
        """
        if not self.job_queue.cancel_job(job_id):
            return False

        handle = self._retry_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        self.worker_pool.cancel_job(job_id)
        return True

    def update_priority(self, job_id: str, priority: PriorityLike) -> bool:
        """Re-prioritize a job that has not started yet; False otherwise."""
        return self.job_queue.update_job_priority(job_id, priority)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Wait until a job reaches a terminal status.

        Returns:
            The final job snapshot

        Raises:
            JobNotFoundError: If the job is unknown
            asyncio.TimeoutError: If the timeout elapses first
        """
        job = self.job_queue.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.is_terminal():
            return job.to_dict()

        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            waiters = self._waiters.get(job_id)
            if waiters and future in waiters:
                waiters.remove(future)
                if not waiters:
                    del self._waiters[job_id]

    async def run_task(
        self,
        job_type: Union[JobType, str],
        payload: Any = None,
        priority: Optional[PriorityLike] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """Run work directly on the pool, bypassing the queue (no retries, no history)."""
        return await self.worker_pool.run_task(WorkerTask.create(job_type, payload, priority, timeout))

    def on(self, event: str, handler: Callable[[str, Dict[str, Any]], Any]) -> Callable[[], None]:
        """Subscribe to a lifecycle event; returns an unsubscribe callable."""
        return self.event_bus.on(event, handler)

    # Monitoring Interface

    def get_queue_stats(self) -> QueueStats:
        return self.job_queue.get_stats()

    def get_worker_stats(self) -> WorkerPoolStats:
        return self.worker_pool.get_worker_stats()

    def get_error_summary(self) -> Dict[str, Any]:
        return self.error_registry.get_error_statistics()

    def get_metrics(self) -> bytes:
        """Prometheus exposition of the current metrics."""
        if self.monitoring is None:
            raise OrchestratorError("metrics are disabled")
        self._refresh_metrics()
        return self.monitoring.render()

    def get_system_status(self) -> Dict[str, Any]:
        return {
            "running": self._is_running,
            "queue": self.get_queue_stats().to_dict(),
            "workers": self.get_worker_stats().to_dict(),
            "resources": self.allocator.get_status(),
            "errors": self.get_error_summary()["total_errors"]
        }

    # Dispatch

    def dispatch_pending(self) -> int:
        """
        Run one dispatch tick.

        Returns:
            Number of attempts started
        """
        started = 0
        skipped_types = set()
        skipped: List[Job] = []

        try:
            while True:
                job = self.job_queue.get_next_job()
                if job is None:
                    break
                if job.job_type in skipped_types:
                    skipped.append(job)
                    continue

                allocation = self.allocator.reserve(job.resource_requirements, job.job_id)
                if allocation is None:
                    self.job_queue.return_job(job)
                    break

                worker_id = None
                try:
                    worker_id = self.worker_pool.assign_job(job)
                    if worker_id is not None:
                        self.allocator.bind_worker(allocation, worker_id)
                        self.job_queue.start_attempt(job.job_id, worker_id)
                except Exception:
                    if worker_id is not None:
                        self.worker_pool.cancel_job(job.job_id)
                    self.allocator.release(allocation)
                    self.job_queue.return_job(job)
                    raise

                if worker_id is None:
                    self.allocator.release(allocation)
                    skipped.append(job)
                    skipped_types.add(job.job_type)
                    continue

                self._executions[job.job_id] = asyncio.create_task(self._execute_job(job, allocation))
                started += 1
        finally:
            for job in skipped:
                self.job_queue.return_job(job)
        return started

    async def _processing_loop(self):
        """Dispatch whenever woken by an event, and at least every poll_interval."""
        while self._is_running:
            self._wake_event.clear()
            try:
                self.dispatch_pending()
                self.job_queue.purge_expired()
            except Exception:
                self.logger.error("Dispatch tick failed", exc_info=True)

            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                if self.monitoring is not None:
                    self._refresh_metrics()

    async def _execute_job(self, job: Job, allocation: ResourceAllocation):
        job_id = job.job_id
        try:
            with LoggerContext(self.logger, job_id=job_id, worker_id=job.worker_id):
                self.logger.debug("Executing job attempt", extra={"attempt": job.attempts})

            result = await self.worker_pool.run_assigned(
                job_id,
                attempt=job.attempts,
                on_progress=functools.partial(self.job_queue.update_progress, job_id)
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_failure(job, e)
        else:
            if not self.job_queue.complete_job(job_id, result):
                self.logger.debug("Result discarded for finished job", extra={"job_id": job_id})
        finally:
            self.allocator.release(allocation)
            self._executions.pop(job_id, None)
            self._wake()

    def _handle_failure(self, job: Job, error: BaseException):
        if job.is_terminal():
            # Cancelled while running; nothing left to decide
            return

        if isinstance(error, JobCancelledError):
            self.job_queue.cancel_job(job.job_id)
            return

        self.error_registry.record_error(error, job.job_id)

        if should_retry(job, error):
            delay = self.retry_policy.get_delay(job.retry_count)
            self.job_queue.schedule_retry(job.job_id, error, delay)
            self._retry_handles[job.job_id] = asyncio.get_running_loop().call_later(
                delay, self._requeue, job.job_id
            )
        else:
            self.job_queue.fail_job(job.job_id, error)

    def _requeue(self, job_id: str):
        self._retry_handles.pop(job_id, None)
        self.job_queue.requeue_job(job_id)

    def _wake(self):
        if self._wake_event is not None:
            self._wake_event.set()

    def _on_wake_event(self, event: str, payload: Dict[str, Any]):
        self._wake()

    def _on_job_terminal(self, event: str, payload: Dict[str, Any]):
        for future in self._waiters.pop(payload.get("job_id"), []):
            if not future.done():
                future.set_result(payload.get("job"))

    def _refresh_metrics(self):
        self.monitoring.update_snapshot(
            self.job_queue.get_stats(),
            self.worker_pool.get_worker_stats(),
            self.allocator.get_usage().to_dict()
        )
