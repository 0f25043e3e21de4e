"""Shared fixtures for the scheduler tests."""

import asyncio
import time
from typing import Any, Callable, Dict, List

import pytest

from conversion_job_orchestrator.core.events import EventBus
from conversion_job_orchestrator.core.exceptions import (
    FatalJobError,
    JobCancelledError,
    JobExecutionError
)
from conversion_job_orchestrator.core.orchestrator import ConversionOrchestrator
from conversion_job_orchestrator.executors.base import ExecutionContext, JobExecutor
from conversion_job_orchestrator.models.job import JobType
from conversion_job_orchestrator.models.resources import ResourceRequirements, ResourceUsage
from conversion_job_orchestrator.services.fault_tolerance import RetryPolicy
from conversion_job_orchestrator.services.job_queue import JobQueue
from conversion_job_orchestrator.services.monitoring_service import MonitoringService
from conversion_job_orchestrator.services.resource_allocator import ResourceAllocator
from conversion_job_orchestrator.services.worker_pool import WorkerPool

CAPACITY = ResourceUsage(memory_mb=1000.0, cpu=4.0, disk_mb=1000.0)
SMALL_JOB = ResourceRequirements(memory_mb=100.0, cpu=1.0, disk_mb=10.0)


class ScriptedExecutor(JobExecutor):
    """
    Executor whose behaviour for each attempt is read from the payload.

    ``payload["script"]`` lists one step per attempt; the last step repeats.
    Steps: ok, fail, fatal, slow, block, hang, progress.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.gate = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.initialized = False
        self.shut_down = False

    async def initialize(self) -> bool:
        self.initialized = True
        return True

    async def shutdown(self) -> bool:
        self.shut_down = True
        return True

    def values(self) -> List[Any]:
        return [value for _, value, _ in self.calls]

    async def execute(self, job_type: JobType, payload: Any, context: ExecutionContext) -> Any:
        payload = payload or {}
        script = payload.get("script") or ["ok"]
        step = script[min(context.attempt, len(script)) - 1]
        self.calls.append((job_type, payload.get("value"), context.attempt))

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            return await self._run_step(step, payload, context)
        finally:
            self.active -= 1

    async def _run_step(self, step: str, payload: Dict[str, Any], context: ExecutionContext) -> Any:
        if step == "fail":
            raise JobExecutionError(context.unit_id, "scripted failure")
        if step == "fatal":
            raise FatalJobError("scripted fatal failure", job_type=context.job_type.value)
        if step == "slow":
            for _ in range(4):
                await asyncio.sleep(0.005)
                context.heartbeat()
        elif step == "block":
            while not self.gate.is_set():
                context.raise_if_cancelled()
                context.heartbeat()
                await asyncio.sleep(0.005)
        elif step == "hang":
            await asyncio.sleep(3600)
        elif step == "progress":
            context.report_progress("assets", percent=50, current_step="Converting textures",
                                    completed_steps=1, total_steps=2)
        return {"value": payload.get("value"), "attempt": context.attempt}


class EventRecorder:
    """Records every event published on a bus."""

    def __init__(self, event_bus: EventBus):
        self.events: List[tuple] = []
        event_bus.on(EventBus.WILDCARD, self)

    def __call__(self, event: str, payload: Dict[str, Any]):
        self.events.append((event, payload))

    def names(self, job_id: str = None) -> List[str]:
        return [event for event, payload in self.events if job_id is None or payload.get("job_id") == job_id]

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)


@pytest.fixture
def executor():
    return ScriptedExecutor()


@pytest.fixture
def queue(event_bus):
    return JobQueue(event_bus=event_bus, default_requirements=SMALL_JOB)


@pytest.fixture
def allocator():
    return ResourceAllocator(capacity=CAPACITY, pool_limits={"temp_files": 2})


@pytest.fixture
def make_pool(event_bus):
    """Build a WorkerPool; call it inside the test's event loop."""

    def factory(executor: Any, **options) -> WorkerPool:
        settings = dict(
            min_workers=1,
            max_workers=2,
            recovery_delay=0.01,
            drain_poll_interval=0.01,
            shutdown_timeout=0.5
        )
        settings.update(options)
        return WorkerPool(executor, event_bus=event_bus, **settings)

    return factory


@pytest.fixture
def make_orchestrator(event_bus):
    """Build an orchestrator with fixed capacity and fast timings."""

    def factory(
        executor: Any,
        capacity: ResourceUsage = CAPACITY,
        retry_policy: RetryPolicy = None,
        poll_interval: float = 0.05,
        **pool_options
    ) -> ConversionOrchestrator:
        allocator = ResourceAllocator(capacity=capacity)
        settings = dict(
            min_workers=1,
            max_workers=2,
            recovery_delay=0.01,
            drain_poll_interval=0.01,
            shutdown_timeout=0.5
        )
        settings.update(pool_options)
        pool = WorkerPool(executor, event_bus=event_bus, allocator=allocator, **settings)
        return ConversionOrchestrator(
            event_bus=event_bus,
            job_queue=JobQueue(event_bus=event_bus, default_requirements=SMALL_JOB),
            worker_pool=pool,
            allocator=allocator,
            retry_policy=retry_policy or RetryPolicy(initial_delay=0.01, max_delay=0.05),
            monitoring=MonitoringService(),
            poll_interval=poll_interval
        )

    return factory


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds."""

    async def waiter(predicate: Callable[[], bool], timeout: float = 2.0):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return waiter
