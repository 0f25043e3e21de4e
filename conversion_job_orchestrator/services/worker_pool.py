"""
WorkerPool service for the Conversion Job Orchestrator

Manages a bounded, auto-scaling set of logical workers: capability routing,
execution of bound jobs and direct worker tasks, heartbeat-based stall
detection with recovery, and graceful shutdown.
"""

import asyncio
import heapq
import itertools
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..core import events
from ..core.events import EventBus
from ..core.exceptions import (
    JobCancelledError,
    JobTimeoutError,
    PoolShutdownError,
    ValidationError,
    WorkerAssignmentError,
    WorkerNotFoundError,
    WorkerTimeoutError
)
from ..executors.base import ExecutionContext, JobExecutor, as_executor
from ..models.job import Job, JobType, JobProgress
from ..models.worker import (
    Worker, WorkerStatus, WorkerTask, WorkerPoolStats, normalize_profiles
)
from ..utils.logger import get_logger, set_log_context, LoggerContext
from .resource_allocator import ResourceAllocator

UNIT_JOB = "job"
UNIT_TASK = "task"


class _Binding:
    """A job or task bound to a worker, from assignment until settled."""

    __slots__ = (
        "unit_id", "kind", "job_type", "payload", "worker_id", "timeout",
        "attempt", "cancel_event", "future", "exec_task", "started_at", "on_progress"
    )

    def __init__(self, unit_id: str, kind: str, job_type: JobType, payload: Any,
                 worker_id: str, timeout: Optional[float]):
        self.unit_id = unit_id
        self.kind = kind
        self.job_type = job_type
        self.payload = payload
        self.worker_id = worker_id
        self.timeout = timeout
        self.attempt = 1
        self.cancel_event = asyncio.Event()
        self.future: Optional[asyncio.Future] = None
        self.exec_task: Optional[asyncio.Task] = None
        self.started_at: Optional[float] = None
        self.on_progress: Optional[Callable[[JobProgress], None]] = None

    @property
    def running(self) -> bool:
        return self.exec_task is not None and not self.exec_task.done()


class WorkerPool:
    """
    Bounded pool of logical workers.

    Provides capabilities for:
    - Capability-based routing (idle worker with fewest processed jobs, then oldest)
    - Scale up on demand and scale down of long-idle workers
    - Execution of queue jobs (assign_job/run_assigned) and direct tasks (run_task)
    - Cooperative cancellation
    - Heartbeat monitoring with timeout, recovery and replacement of failing workers
    - Graceful shutdown with draining
    """

    def __init__(
        self,
        executor: Any,
        event_bus: Optional[EventBus] = None,
        allocator: Optional[ResourceAllocator] = None,
        profiles: Optional[Dict[str, Iterable[Any]]] = None,
        min_workers: int = 4,
        max_workers: int = 8,
        heartbeat_interval: float = 30.0,
        worker_timeout: float = 300.0,
        recovery_delay: float = 5.0,
        idle_timeout: float = 300.0,
        max_worker_failures: int = 3,
        drain_poll_interval: float = 0.1,
        shutdown_timeout: float = 30.0
    ):
        """
        Initialize WorkerPool and create min_workers workers round-robin over the profiles.

        Args:
            executor: JobExecutor (or plain callable) that performs the work
            event_bus: Bus receiving worker lifecycle events
            allocator: Resource allocator consulted before scaling up
            profiles: ``{profile_name: [job types]}``; one profile per job type when omitted
            min_workers: Workers kept alive at all times
            max_workers: Upper bound on pool size
            heartbeat_interval: Seconds between heartbeat checks
            worker_timeout: Seconds of heartbeat silence before a busy worker is stalled
            recovery_delay: Seconds a stalled worker stays in error before returning to idle
            idle_timeout: Seconds an idle worker may linger above min_workers
            max_worker_failures: Consecutive stalls after which a worker is terminated
            drain_poll_interval: Poll interval while draining at shutdown
            shutdown_timeout: Seconds to wait for in-flight work at shutdown
        """
        if min_workers < 0:
            raise ValidationError("min_workers", "must not be negative", min_workers)
        if max_workers < max(1, min_workers):
            raise ValidationError("max_workers", "must be at least 1 and not below min_workers", max_workers)
        if max_worker_failures < 1:
            raise ValidationError("max_worker_failures", "must be at least 1", max_worker_failures)

        self.executor: JobExecutor = as_executor(executor)
        self.event_bus = event_bus or EventBus()
        self.allocator = allocator
        self.profiles = normalize_profiles(profiles)
        self.min_workers = min_workers
        self.max_workers = max_workers
        self.heartbeat_interval = heartbeat_interval
        self.worker_timeout = worker_timeout
        self.recovery_delay = recovery_delay
        self.idle_timeout = idle_timeout
        self.max_worker_failures = max_worker_failures
        self.drain_poll_interval = drain_poll_interval
        self.shutdown_timeout = shutdown_timeout

        self.workers: Dict[str, Worker] = {}
        self._worker_sequence = itertools.count(1)
        self._bindings: Dict[str, _Binding] = {}

        # Direct worker tasks waiting for a capable worker
        self._task_heap: List[tuple] = []
        self._task_sequence = itertools.count()
        self._pending_tasks: Dict[str, tuple] = {}

        self._abandoned: Set[asyncio.Task] = set()
        self._recovery_handles: Dict[str, asyncio.TimerHandle] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._started = False
        self._shutting_down = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="worker_pool")

        self._replenish_workers()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def start(self):
        """Initialize the executor and start heartbeat monitoring; a pool that was shut down is restaffed."""
        if self._started:
            return
        if self._shutting_down:
            self._shutting_down = False
            self._replenish_workers()
        self.logger.info("Starting WorkerPool", extra={
            "workers": len(self.workers),
            "executor": self.executor.executor_name
        })

        await self.executor.initialize()
        self._shutdown_event.clear()
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        self._started = True

    # Job execution

    def assign_job(self, job: Job) -> Optional[str]:
        """
        Bind a job to an idle capable worker, scaling up if needed.

        Returns:
            The worker id, or None if no worker can take the job right now

        Raises:
            WorkerAssignmentError: If the job is already bound to a worker
            PoolShutdownError: If the pool is shutting down
        """
        if self._shutting_down:
            raise PoolShutdownError()
        if job.job_id in self._bindings:
            raise WorkerAssignmentError("job is already bound", self._bindings[job.job_id].worker_id, job.job_id)

        worker = self._select_idle_worker(job.job_type) or self._scale_up(job.job_type)
        if worker is None:
            return None

        self._bind(worker, _Binding(job.job_id, UNIT_JOB, job.job_type, job.payload, worker.worker_id, job.timeout))

        with LoggerContext(self.logger, job_id=job.job_id, worker_id=worker.worker_id):
            self.logger.debug("Job assigned to worker", extra={"job_type": job.job_type.value})
        return worker.worker_id

    async def run_assigned(
        self,
        job_id: str,
        attempt: int = 1,
        on_progress: Optional[Callable[[JobProgress], None]] = None
    ) -> Any:
        """
        Run a bound job on its worker and wait for the outcome.

        Raises whatever the executor raised, or JobCancelledError,
        WorkerTimeoutError/JobTimeoutError and PoolShutdownError when the
        pool gave up on the job first.
        """
        binding = self._bindings.get(job_id)
        if binding is None or binding.kind != UNIT_JOB:
            raise WorkerAssignmentError("job is not bound to a worker", job_id=job_id)
        if binding.future is not None:
            raise WorkerAssignmentError("job is already running", binding.worker_id, job_id)

        binding.attempt = attempt
        binding.on_progress = on_progress
        binding.future = asyncio.get_running_loop().create_future()
        self._start_execution(binding)
        return await self._wait(binding)

    def cancel_job(self, job_id: str) -> bool:
        """Cooperatively cancel a bound job; its waiter gets JobCancelledError."""
        binding = self._bindings.get(job_id)
        if binding is None or binding.kind != UNIT_JOB:
            return False
        self._cancel_binding(binding)
        return True

    # Direct worker tasks

    async def run_task(self, task: WorkerTask) -> Any:
        """Run a task on the first capable worker, bypassing the job queue."""
        if self._shutting_down:
            raise PoolShutdownError()
        if task.task_id in self._pending_tasks or task.task_id in self._bindings:
            raise WorkerAssignmentError("task was already submitted", job_id=task.task_id)

        future = asyncio.get_running_loop().create_future()
        self._pending_tasks[task.task_id] = (task, future)
        heapq.heappush(self._task_heap, (-task.priority_value, next(self._task_sequence), task.task_id))
        self.logger.debug("Worker task submitted", extra={
            "task_id": task.task_id,
            "job_type": task.job_type.value,
            "pending_tasks": len(self._pending_tasks)
        })

        self._dispatch_tasks()

        try:
            return await future
        except asyncio.CancelledError:
            self.cancel_task(task.task_id)
            raise

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a pending or in-flight task; its caller gets JobCancelledError."""
        pending = self._pending_tasks.pop(task_id, None)
        if pending is not None:
            _, future = pending
            if not future.done():
                future.set_exception(JobCancelledError(task_id))
            self.logger.info("Pending worker task cancelled", extra={"task_id": task_id})
            return True

        binding = self._bindings.get(task_id)
        if binding is None or binding.kind != UNIT_TASK:
            return False
        self._cancel_binding(binding)
        return True

    # Monitoring

    def check_heartbeats(self, now: Optional[float] = None) -> List[str]:
        """
        Detect stalled workers and jobs past their timeout, then trim idle workers.

        Returns:
            Ids of the jobs/tasks taken away from their workers
        """
        now = time.monotonic() if now is None else now
        timed_out = []

        for binding in list(self._bindings.values()):
            worker = self.workers.get(binding.worker_id)
            if worker is None:
                continue

            error = None
            if binding.timeout and binding.started_at is not None and now - binding.started_at > binding.timeout:
                error = JobTimeoutError(worker.worker_id, binding.unit_id, binding.timeout)
            elif now - worker.last_heartbeat > self.worker_timeout:
                error = WorkerTimeoutError(worker.worker_id, binding.unit_id, self.worker_timeout)

            if error is not None:
                self._handle_timeout(binding, worker, error)
                timed_out.append(binding.unit_id)

        self._scale_down(now)
        return timed_out

    def get_worker_stats(self) -> WorkerPoolStats:
        workers = list(self.workers.values())
        processed = sum(worker.processed_count for worker in workers)
        return WorkerPoolStats(
            total_workers=len(workers),
            idle_workers=sum(1 for worker in workers if worker.status == WorkerStatus.IDLE),
            busy_workers=sum(1 for worker in workers if worker.status == WorkerStatus.BUSY),
            error_workers=sum(1 for worker in workers if worker.status == WorkerStatus.ERROR),
            pending_tasks=len(self._pending_tasks),
            total_processed=processed,
            total_failed=sum(worker.failed_count for worker in workers),
            average_processed_per_worker=processed / len(workers) if workers else 0.0
        )

    def get_worker_info(self, worker_id: Optional[str] = None) -> Any:
        """Describe one worker, or all of them when no id is given."""
        if worker_id is None:
            return [worker.to_dict() for worker in sorted(self.workers.values(), key=lambda w: w.sequence)]
        worker = self.workers.get(worker_id)
        if worker is None:
            raise WorkerNotFoundError(worker_id)
        return worker.to_dict()

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        return self.workers.get(worker_id)

    def has_capable_profile(self, job_type: JobType) -> bool:
        """A worker profile routes ``job_type`` and the executor can run it."""
        if not self.executor.supports_job_type(job_type):
            return False
        return any(job_type in capabilities for capabilities in self.profiles.values())

    def supported_job_types(self) -> List[JobType]:
        routed = {job_type for capabilities in self.profiles.values() for job_type in capabilities}
        return sorted(
            (job_type for job_type in routed if self.executor.supports_job_type(job_type)),
            key=lambda job_type: job_type.value
        )

    # Shutdown

    async def shutdown(self, timeout: Optional[float] = None):
        """
        Stop the pool.

        Pending tasks are rejected with PoolShutdownError, in-flight work gets
        up to ``timeout`` (default shutdown_timeout) seconds to finish, then
        the leftovers are rejected and every worker is terminated.
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        timeout = self.shutdown_timeout if timeout is None else timeout
        self.logger.info("Shutting down WorkerPool", extra={
            "in_flight": len(self._bindings),
            "pending_tasks": len(self._pending_tasks)
        })

        for task_id, (_, future) in list(self._pending_tasks.items()):
            if not future.done():
                future.set_exception(PoolShutdownError())
        self._pending_tasks.clear()
        self._task_heap.clear()

        for handle in self._recovery_handles.values():
            handle.cancel()
        self._recovery_handles.clear()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while any(binding.running for binding in self._bindings.values()) and loop.time() < deadline:
            await asyncio.sleep(self.drain_poll_interval)

        for binding in list(self._bindings.values()):
            self.logger.warning("Abandoning in-flight work at shutdown", extra={
                "job_id": binding.unit_id,
                "worker_id": binding.worker_id
            })
            self._unbind(binding)
            binding.cancel_event.set()
            self._abandon(binding)
            self._reject(binding, PoolShutdownError(f"Worker pool shut down before {binding.unit_id} finished"))

        self._shutdown_event.set()
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        if self._abandoned:
            abandoned = list(self._abandoned)
            for task in abandoned:
                task.cancel()
            await asyncio.gather(*abandoned, return_exceptions=True)
            self._abandoned.clear()

        for worker in list(self.workers.values()):
            self._terminate_worker(worker, reason="shutdown")

        try:
            await self.executor.shutdown()
        except Exception:
            self.logger.error("Executor shutdown failed", exc_info=True)

        self._started = False
        self.logger.info("WorkerPool stopped")

    # Internals: workers

    def _create_worker(self, profile: str) -> Worker:
        sequence = next(self._worker_sequence)
        worker = Worker(
            worker_id=f"{profile}-{sequence}",
            profile=profile,
            capabilities=self.profiles[profile],
            sequence=sequence
        )
        self.workers[worker.worker_id] = worker

        self.logger.info("Worker created", extra={"worker_id": worker.worker_id, "profile": profile})
        self.event_bus.emit(events.WORKER_CREATED, {
            "worker_id": worker.worker_id,
            "profile": profile,
            "capabilities": sorted(job_type.value for job_type in worker.capabilities)
        })
        return worker

    def _replenish_workers(self):
        profile_names = list(self.profiles)
        while len(self.workers) < self.min_workers:
            self._create_worker(profile_names[len(self.workers) % len(profile_names)])

    def _terminate_worker(self, worker: Worker, reason: str):
        handle = self._recovery_handles.pop(worker.worker_id, None)
        if handle is not None:
            handle.cancel()
        worker.status = WorkerStatus.TERMINATED
        worker.current_job_id = None
        self.workers.pop(worker.worker_id, None)

        self.logger.info("Worker removed", extra={"worker_id": worker.worker_id, "reason": reason})
        self.event_bus.emit(events.WORKER_REMOVED, {
            "worker_id": worker.worker_id,
            "profile": worker.profile,
            "reason": reason
        })

    def _select_idle_worker(self, job_type: JobType) -> Optional[Worker]:
        candidates = [
            worker for worker in self.workers.values()
            if worker.is_available() and worker.can_handle(job_type)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda worker: (worker.processed_count, worker.sequence))

    def _scale_up(self, job_type: JobType) -> Optional[Worker]:
        if self._shutting_down or len(self.workers) >= self.max_workers:
            return None
        if self.allocator is not None and not self.allocator.allows_scale_up():
            return None

        capable = [name for name, capabilities in self.profiles.items() if job_type in capabilities]
        if not capable:
            return None

        counts = {name: 0 for name in capable}
        for worker in self.workers.values():
            if worker.profile in counts:
                counts[worker.profile] += 1
        profile = min(capable, key=lambda name: counts[name])

        self.logger.info("Scaling up", extra={"job_type": job_type.value, "profile": profile})
        return self._create_worker(profile)

    def _scale_down(self, now: float):
        if self._shutting_down:
            return
        idle = sorted(
            (worker for worker in self.workers.values()
             if worker.status == WorkerStatus.IDLE and worker.idle_since is not None
             and now - worker.idle_since > self.idle_timeout),
            key=lambda worker: worker.idle_since
        )
        for worker in idle:
            if len(self.workers) <= self.min_workers:
                break
            if self._is_last_for_capability(worker):
                continue
            self._terminate_worker(worker, reason="idle")

    def _is_last_for_capability(self, worker: Worker) -> bool:
        others = [other for other in self.workers.values() if other.worker_id != worker.worker_id]
        return any(
            not any(job_type in other.capabilities for other in others)
            for job_type in worker.capabilities
        )

    def _recover_worker(self, worker_id: str):
        self._recovery_handles.pop(worker_id, None)
        worker = self.workers.get(worker_id)
        if worker is None or worker.status != WorkerStatus.ERROR or self._shutting_down:
            return

        worker.mark_idle()
        self.logger.info("Worker recovered", extra={"worker_id": worker_id})
        self.event_bus.emit(events.WORKER_RECOVERED, {"worker_id": worker_id, "profile": worker.profile})
        self._dispatch_tasks()

    # Internals: bindings

    def _bind(self, worker: Worker, binding: _Binding):
        worker.mark_busy(binding.unit_id)
        self._bindings[binding.unit_id] = binding

    def _unbind(self, binding: _Binding) -> bool:
        if self._bindings.get(binding.unit_id) is not binding:
            return False
        del self._bindings[binding.unit_id]
        return True

    def _is_current(self, binding: _Binding) -> bool:
        return self._bindings.get(binding.unit_id) is binding

    def _start_execution(self, binding: _Binding):
        worker = self.workers[binding.worker_id]

        def on_heartbeat():
            if self._is_current(binding):
                worker.heartbeat()

        def on_progress(progress: JobProgress):
            if self._is_current(binding) and binding.on_progress is not None:
                binding.on_progress(progress)

        context = ExecutionContext(
            unit_id=binding.unit_id,
            job_type=binding.job_type,
            worker_id=binding.worker_id,
            attempt=binding.attempt,
            cancel_event=binding.cancel_event,
            on_heartbeat=on_heartbeat,
            on_progress=on_progress,
            allocator=self.allocator
        )
        binding.started_at = time.monotonic()
        worker.heartbeat(binding.started_at)
        binding.exec_task = asyncio.create_task(self._execute(binding, context))

    async def _execute(self, binding: _Binding, context: ExecutionContext):
        try:
            result = await self.executor.execute(binding.job_type, binding.payload, context)
        except asyncio.CancelledError:
            self._settle(binding, error=PoolShutdownError(f"Execution of {binding.unit_id} was cancelled"))
            raise
        except Exception as e:
            self._settle(binding, error=e)
        else:
            self._settle(binding, result=result)

    def _settle(self, binding: _Binding, result: Any = None, error: Optional[BaseException] = None):
        if not self._unbind(binding):
            # Cancelled, timed out or abandoned earlier; the outcome has no taker
            self.logger.debug("Late outcome discarded", extra={
                "job_id": binding.unit_id,
                "worker_id": binding.worker_id
            })
            return

        worker = self.workers.get(binding.worker_id)
        if worker is not None:
            if error is None:
                worker.record_success()
            else:
                worker.record_failure()
            worker.mark_idle()

        if error is None:
            if binding.future is not None and not binding.future.done():
                binding.future.set_result(result)
        else:
            self.logger.debug("Execution failed", extra={
                "job_id": binding.unit_id,
                "worker_id": binding.worker_id,
                "error": str(error)
            })
            self._reject(binding, error)

        self._dispatch_tasks()

    def _cancel_binding(self, binding: _Binding):
        self._unbind(binding)
        binding.cancel_event.set()
        self._abandon(binding)

        worker = self.workers.get(binding.worker_id)
        if worker is not None and worker.current_job_id == binding.unit_id:
            worker.mark_idle()

        self._reject(binding, JobCancelledError(binding.unit_id))

        with LoggerContext(self.logger, job_id=binding.unit_id, worker_id=binding.worker_id):
            self.logger.info("Work cancelled on worker", extra={"kind": binding.kind})
        self.event_bus.emit(events.WORKER_JOB_CANCELLED, {
            "worker_id": binding.worker_id,
            "job_id": binding.unit_id,
            "kind": binding.kind
        })
        self._dispatch_tasks()

    def _handle_timeout(self, binding: _Binding, worker: Worker, error: WorkerTimeoutError):
        self._unbind(binding)
        binding.cancel_event.set()
        self._abandon(binding)

        worker.record_failure(stalled=True)
        worker.status = WorkerStatus.ERROR
        worker.current_job_id = None
        worker.busy_since = None

        reason = "job_timeout" if isinstance(error, JobTimeoutError) else "heartbeat"
        self.logger.warning("Worker timed out", extra={
            "worker_id": worker.worker_id,
            "job_id": binding.unit_id,
            "reason": reason,
            "consecutive_failures": worker.consecutive_failures
        })
        self.event_bus.emit(events.WORKER_TIMEOUT, {
            "worker_id": worker.worker_id,
            "job_id": binding.unit_id,
            "reason": reason,
            "timeout_seconds": error.details.get("timeout_seconds")
        })
        self._reject(binding, error)

        if worker.consecutive_failures >= self.max_worker_failures:
            self._terminate_worker(worker, reason="failures")
            if len(self.workers) < self.min_workers:
                self._create_worker(worker.profile)
        else:
            loop = asyncio.get_running_loop()
            self._recovery_handles[worker.worker_id] = loop.call_later(
                self.recovery_delay, self._recover_worker, worker.worker_id
            )
        self._dispatch_tasks()

    def _abandon(self, binding: _Binding):
        task = binding.exec_task
        if task is not None and not task.done():
            self._abandoned.add(task)
            task.add_done_callback(self._abandoned.discard)

    @staticmethod
    def _reject(binding: _Binding, error: BaseException):
        if binding.future is not None and not binding.future.done():
            binding.future.set_exception(error)

    async def _wait(self, binding: _Binding) -> Any:
        try:
            return await binding.future
        except asyncio.CancelledError:
            if self._is_current(binding):
                self._cancel_binding(binding)
            raise

    # Internals: task dispatch

    def _dispatch_tasks(self):
        if self._shutting_down or not self._task_heap:
            return

        deferred = []
        while self._task_heap:
            entry = heapq.heappop(self._task_heap)
            task_id = entry[2]
            pending = self._pending_tasks.get(task_id)
            if pending is None:
                continue

            task, future = pending
            worker = self._select_idle_worker(task.job_type) or self._scale_up(task.job_type)
            if worker is None:
                deferred.append(entry)
                continue

            del self._pending_tasks[task_id]
            binding = _Binding(task_id, UNIT_TASK, task.job_type, task.payload, worker.worker_id, task.timeout)
            binding.future = future
            self._bind(worker, binding)
            self._start_execution(binding)

        for entry in deferred:
            heapq.heappush(self._task_heap, entry)

    async def _monitor_loop(self):
        """Run heartbeat checks every heartbeat_interval until shutdown."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break

            try:
                self.check_heartbeats()
            except Exception:
                self.logger.error("Heartbeat check failed", exc_info=True)
