"""Tests for the WorkerPool: routing, scaling, execution, timeouts and shutdown."""

import asyncio
import time

import pytest

from conversion_job_orchestrator.core.exceptions import (
    JobCancelledError,
    JobExecutionError,
    JobTimeoutError,
    PoolShutdownError,
    ValidationError,
    WorkerAssignmentError,
    WorkerNotFoundError,
    WorkerTimeoutError
)
from conversion_job_orchestrator.models.resources import ResourceRequirements
from conversion_job_orchestrator.models.worker import WorkerStatus, WorkerTask

GENERAL = {"general": ["conversion", "validation"]}


@pytest.mark.asyncio
async def test_min_workers_created_round_robin(make_pool, executor, recorder):
    pool = make_pool(executor, min_workers=4, max_workers=4)

    assert sorted(pool.workers) == [
        "analysis-worker-3", "conversion-worker-1", "packaging-worker-4", "validation-worker-2"
    ]
    stats = pool.get_worker_stats()
    assert stats.total_workers == 4
    assert stats.idle_workers == 4
    assert len(recorder.of("worker:created")) == 4


@pytest.mark.asyncio
async def test_invalid_bounds_are_rejected(make_pool, executor):
    with pytest.raises(ValidationError):
        make_pool(executor, min_workers=3, max_workers=2)
    with pytest.raises(ValidationError):
        make_pool(executor, max_worker_failures=0)


@pytest.mark.asyncio
async def test_jobs_are_routed_by_capability(make_pool, executor, queue):
    pool = make_pool(executor, min_workers=4, max_workers=4)

    worker_id = pool.assign_job(queue.add_job("validation"))

    assert worker_id == "validation-worker-2"
    assert pool.get_worker(worker_id).status == WorkerStatus.BUSY
    assert pool.has_capable_profile(queue.add_job("packaging").job_type)


@pytest.mark.asyncio
async def test_idle_worker_with_fewest_processed_jobs_wins(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL, min_workers=3, max_workers=3)
    pool.get_worker("general-1").processed_count = 2
    pool.get_worker("general-2").processed_count = 1
    pool.get_worker("general-3").processed_count = 1

    assert pool.assign_job(queue.add_job("conversion")) == "general-2"
    assert pool.assign_job(queue.add_job("validation")) == "general-3"
    assert pool.assign_job(queue.add_job("conversion")) == "general-1"


@pytest.mark.asyncio
async def test_job_cannot_be_bound_twice(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL)
    job = queue.add_job("conversion")
    pool.assign_job(job)

    with pytest.raises(WorkerAssignmentError):
        pool.assign_job(job)


@pytest.mark.asyncio
async def test_scale_up_stops_at_max_workers(make_pool, executor, queue, recorder):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=2)

    assert pool.assign_job(queue.add_job("conversion")) == "general-1"
    assert pool.assign_job(queue.add_job("conversion")) == "general-2"
    assert pool.assign_job(queue.add_job("conversion")) is None
    assert [payload["worker_id"] for payload in recorder.of("worker:created")] == ["general-1", "general-2"]


@pytest.mark.asyncio
async def test_scale_up_picks_least_populated_capable_profile(make_pool, executor, queue):
    profiles = {"heavy": ["conversion"], "light": ["conversion"], "checker": ["validation"]}
    pool = make_pool(executor, profiles=profiles, min_workers=3, max_workers=5)

    pool.assign_job(queue.add_job("conversion"))
    pool.assign_job(queue.add_job("conversion"))
    created = pool.assign_job(queue.add_job("conversion"))

    assert created == "heavy-4"
    assert pool.get_worker(created).profile == "heavy"


@pytest.mark.asyncio
async def test_scale_up_waits_for_resource_headroom(make_pool, executor, queue, allocator):
    pool = make_pool(executor, profiles=GENERAL, allocator=allocator, min_workers=1, max_workers=3)
    pool.assign_job(queue.add_job("conversion"))

    allocator.reserve(ResourceRequirements(memory_mb=950, cpu=1, disk_mb=0), "job-external")

    assert pool.assign_job(queue.add_job("conversion")) is None
    assert len(pool.workers) == 1


@pytest.mark.asyncio
async def test_run_assigned_returns_result_and_frees_worker(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL)
    await pool.start()
    try:
        job = queue.add_job("conversion", {"value": 5})
        worker_id = pool.assign_job(job)

        result = await pool.run_assigned(job.job_id, attempt=1)

        worker = pool.get_worker(worker_id)
        assert result == {"value": 5, "attempt": 1}
        assert worker.status == WorkerStatus.IDLE
        assert worker.processed_count == 1
        assert executor.initialized
    finally:
        await pool.shutdown()
    assert executor.shut_down


@pytest.mark.asyncio
async def test_run_assigned_propagates_executor_errors(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL)
    job = queue.add_job("conversion", {"script": ["fail"]})
    worker_id = pool.assign_job(job)

    with pytest.raises(JobExecutionError):
        await pool.run_assigned(job.job_id)

    worker = pool.get_worker(worker_id)
    assert worker.status == WorkerStatus.IDLE
    assert worker.failed_count == 1
    assert worker.consecutive_failures == 0
    await pool.shutdown()


@pytest.mark.asyncio
async def test_run_assigned_requires_binding(make_pool, executor):
    pool = make_pool(executor, profiles=GENERAL)
    with pytest.raises(WorkerAssignmentError):
        await pool.run_assigned("job-unbound")


@pytest.mark.asyncio
async def test_progress_reaches_the_callback(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL)
    seen = []
    job = queue.add_job("conversion", {"script": ["progress"]})
    pool.assign_job(job)

    await pool.run_assigned(job.job_id, on_progress=seen.append)

    assert [progress.stage for progress in seen] == ["assets"]
    assert seen[0].percent == 50.0
    await pool.shutdown()


@pytest.mark.asyncio
async def test_cancel_job_rejects_waiter_and_frees_worker(make_pool, executor, queue, recorder, wait_until):
    pool = make_pool(executor, profiles=GENERAL)
    job = queue.add_job("conversion", {"script": ["block"]})
    worker_id = pool.assign_job(job)
    waiter = asyncio.create_task(pool.run_assigned(job.job_id))
    await wait_until(lambda: executor.active == 1)

    assert pool.cancel_job(job.job_id) is True
    assert pool.cancel_job(job.job_id) is False

    with pytest.raises(JobCancelledError):
        await waiter
    assert pool.get_worker(worker_id).status == WorkerStatus.IDLE
    cancelled = recorder.of("worker:job_cancelled")[0]
    assert cancelled == {"worker_id": worker_id, "job_id": job.job_id, "kind": "job"}

    await wait_until(lambda: executor.active == 0)
    await pool.shutdown()


@pytest.mark.asyncio
async def test_tasks_run_by_priority(make_pool, executor, wait_until):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=1)
    blocker = asyncio.create_task(pool.run_task(WorkerTask.create("conversion", {"script": ["block"], "value": "blocker"})))
    await wait_until(lambda: executor.active == 1)

    waiting = [
        asyncio.create_task(pool.run_task(WorkerTask.create("conversion", {"value": name}, priority)))
        for name, priority in (("low", "low"), ("urgent", "urgent"), ("normal", None))
    ]
    await wait_until(lambda: pool.get_worker_stats().pending_tasks == 3)

    executor.gate.set()
    results = await asyncio.gather(blocker, *waiting)

    assert executor.values() == ["blocker", "urgent", "normal", "low"]
    assert [result["value"] for result in results] == ["blocker", "low", "urgent", "normal"]
    await pool.shutdown()


@pytest.mark.asyncio
async def test_cancel_pending_task(make_pool, executor, wait_until):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=1)
    blocker = asyncio.create_task(pool.run_task(WorkerTask.create("conversion", {"script": ["block"]})))
    await wait_until(lambda: executor.active == 1)

    task = WorkerTask.create("validation", {"value": 1})
    pending = asyncio.create_task(pool.run_task(task))
    await wait_until(lambda: pool.get_worker_stats().pending_tasks == 1)

    assert pool.cancel_task(task.task_id) is True
    with pytest.raises(JobCancelledError):
        await pending

    executor.gate.set()
    await blocker
    assert pool.cancel_task(task.task_id) is False
    await pool.shutdown()


@pytest.mark.asyncio
async def test_heartbeat_timeout_recovers_worker(make_pool, executor, queue, recorder, wait_until):
    pool = make_pool(executor, profiles=GENERAL, worker_timeout=60)
    job = queue.add_job("conversion", {"script": ["hang"]})
    worker_id = pool.assign_job(job)
    waiter = asyncio.create_task(pool.run_assigned(job.job_id))
    await wait_until(lambda: executor.active == 1)

    assert pool.check_heartbeats(now=time.monotonic() + 61) == [job.job_id]

    with pytest.raises(WorkerTimeoutError) as excinfo:
        await waiter
    assert not isinstance(excinfo.value, JobTimeoutError)
    worker = pool.get_worker(worker_id)
    assert worker.status == WorkerStatus.ERROR
    assert worker.consecutive_failures == 1
    timeout = recorder.of("worker:timeout")[0]
    assert timeout["reason"] == "heartbeat"
    assert timeout["timeout_seconds"] == 60

    await wait_until(lambda: worker.status == WorkerStatus.IDLE)
    assert recorder.of("worker:recovered") == [{"worker_id": worker_id, "profile": "general"}]

    await pool.shutdown()
    assert executor.active == 0


@pytest.mark.asyncio
async def test_job_timeout_is_reported_separately(make_pool, executor, queue, recorder, wait_until):
    pool = make_pool(executor, profiles=GENERAL, worker_timeout=300)
    job = queue.add_job("conversion", {"script": ["hang"]}, timeout=5)
    pool.assign_job(job)
    waiter = asyncio.create_task(pool.run_assigned(job.job_id))
    await wait_until(lambda: executor.active == 1)

    assert pool.check_heartbeats(now=time.monotonic() + 1) == []
    assert pool.check_heartbeats(now=time.monotonic() + 6) == [job.job_id]

    with pytest.raises(JobTimeoutError):
        await waiter
    assert recorder.of("worker:timeout")[0]["reason"] == "job_timeout"
    await pool.shutdown()


@pytest.mark.asyncio
async def test_heartbeats_keep_a_slow_worker_alive(make_pool, executor, queue, wait_until):
    pool = make_pool(executor, profiles=GENERAL, worker_timeout=60)
    job = queue.add_job("conversion", {"script": ["block"]})
    worker_id = pool.assign_job(job)
    waiter = asyncio.create_task(pool.run_assigned(job.job_id))
    await wait_until(lambda: executor.active == 1)

    worker = pool.get_worker(worker_id)
    worker.heartbeat(time.monotonic() + 100)
    assert pool.check_heartbeats(now=time.monotonic() + 61) == []

    executor.gate.set()
    assert (await waiter)["attempt"] == 1
    await pool.shutdown()


@pytest.mark.asyncio
async def test_repeatedly_stalling_worker_is_replaced(make_pool, executor, queue, recorder, wait_until):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=2, max_worker_failures=1, worker_timeout=60)
    job = queue.add_job("conversion", {"script": ["hang"]})
    pool.assign_job(job)
    waiter = asyncio.create_task(pool.run_assigned(job.job_id))
    await wait_until(lambda: executor.active == 1)

    pool.check_heartbeats(now=time.monotonic() + 61)

    with pytest.raises(WorkerTimeoutError):
        await waiter
    removed = recorder.of("worker:removed")
    assert removed == [{"worker_id": "general-1", "profile": "general", "reason": "failures"}]
    assert list(pool.workers) == ["general-2"]
    with pytest.raises(WorkerNotFoundError):
        pool.get_worker_info("general-1")
    await pool.shutdown()


@pytest.mark.asyncio
async def test_idle_workers_above_minimum_are_removed(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=3, idle_timeout=30)
    jobs = [queue.add_job("conversion") for _ in range(3)]
    for job in jobs:
        pool.assign_job(job)
    for job in jobs:
        await pool.run_assigned(job.job_id)
    assert len(pool.workers) == 3

    pool.check_heartbeats(now=time.monotonic() + 1)
    assert len(pool.workers) == 3

    pool.check_heartbeats(now=time.monotonic() + 31)
    assert len(pool.workers) == 1
    await pool.shutdown()


@pytest.mark.asyncio
async def test_last_worker_for_a_job_type_is_kept(make_pool, executor):
    pool = make_pool(executor, min_workers=0, max_workers=4, idle_timeout=30)
    pool._create_worker("conversion-worker")
    pool._create_worker("validation-worker")

    pool.check_heartbeats(now=time.monotonic() + 31)

    assert sorted(worker.profile for worker in pool.workers.values()) == ["conversion-worker", "validation-worker"]


@pytest.mark.asyncio
async def test_shutdown_rejects_pending_and_unfinished_work(make_pool, executor, queue, recorder, wait_until):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=1)
    await pool.start()
    blocker = asyncio.create_task(pool.run_task(WorkerTask.create("conversion", {"script": ["block"]})))
    await wait_until(lambda: executor.active == 1)
    pending = asyncio.create_task(pool.run_task(WorkerTask.create("validation")))
    await wait_until(lambda: pool.get_worker_stats().pending_tasks == 1)

    await pool.shutdown(timeout=0.05)

    with pytest.raises(PoolShutdownError):
        await pending
    with pytest.raises(PoolShutdownError):
        await blocker
    assert pool.workers == {}
    assert [payload["reason"] for payload in recorder.of("worker:removed")] == ["shutdown"]
    assert executor.shut_down

    with pytest.raises(PoolShutdownError):
        pool.assign_job(queue.add_job("conversion"))
    with pytest.raises(PoolShutdownError):
        await pool.run_task(WorkerTask.create("conversion"))


@pytest.mark.asyncio
async def test_shutdown_drains_work_that_finishes_in_time(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL)
    await pool.start()
    job = queue.add_job("conversion", {"script": ["slow"], "value": "drained"})
    pool.assign_job(job)
    waiter = asyncio.create_task(pool.run_assigned(job.job_id))
    await asyncio.sleep(0)

    await pool.shutdown(timeout=1.0)

    assert (await waiter)["value"] == "drained"


@pytest.mark.asyncio
async def test_worker_info(make_pool, executor):
    pool = make_pool(executor, profiles=GENERAL, min_workers=2, max_workers=2)

    info = pool.get_worker_info()
    assert [worker["worker_id"] for worker in info] == ["general-1", "general-2"]
    assert info[0]["capabilities"] == ["conversion", "validation"]
    assert pool.get_worker_info("general-2")["status"] == "idle"


@pytest.mark.asyncio
async def test_cancel_running_task(make_pool, executor, recorder, wait_until):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=1)
    task = WorkerTask.create("conversion", {"script": ["block"]})
    running = asyncio.create_task(pool.run_task(task))
    await wait_until(lambda: executor.active == 1)

    assert pool.cancel_task(task.task_id) is True
    with pytest.raises(JobCancelledError):
        await running

    assert pool.get_worker("general-1").is_available()
    assert recorder.of("worker:job_cancelled") == [
        {"worker_id": "general-1", "job_id": task.task_id, "kind": "task"}
    ]
    await wait_until(lambda: executor.active == 0)
    assert pool.cancel_task(task.task_id) is False
    await pool.shutdown()


@pytest.mark.asyncio
async def test_replacement_worker_picks_up_waiting_tasks(make_pool, executor, wait_until):
    pool = make_pool(executor, profiles=GENERAL, min_workers=1, max_workers=1,
                     max_worker_failures=1, worker_timeout=60)
    stalled = asyncio.create_task(pool.run_task(WorkerTask.create("conversion", {"script": ["hang"]})))
    await wait_until(lambda: executor.active == 1)
    waiting = asyncio.create_task(pool.run_task(WorkerTask.create("validation", {"value": "next"})))
    await wait_until(lambda: pool.get_worker_stats().pending_tasks == 1)

    pool.check_heartbeats(now=time.monotonic() + 61)

    with pytest.raises(WorkerTimeoutError):
        await stalled
    assert await asyncio.wait_for(waiting, timeout=2) == {"value": "next", "attempt": 1}
    assert list(pool.workers) == ["general-2"]
    assert pool.get_worker_stats().pending_tasks == 0
    await pool.shutdown()


@pytest.mark.asyncio
async def test_pool_restarts_after_shutdown(make_pool, executor, queue):
    pool = make_pool(executor, profiles=GENERAL, min_workers=2, max_workers=2)
    await pool.start()
    await pool.shutdown()

    assert pool.workers == {}
    with pytest.raises(PoolShutdownError):
        pool.assign_job(queue.add_job("conversion"))

    await pool.start()

    assert not pool.is_shutting_down
    assert sorted(pool.workers) == ["general-3", "general-4"]
    assert await pool.run_task(WorkerTask.create("validation", {"value": 7})) == {"value": 7, "attempt": 1}
    await pool.shutdown()
    assert pool.workers == {}
