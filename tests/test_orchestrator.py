"""End-to-end tests for the ConversionOrchestrator."""

import asyncio
import time

import pytest

from conversion_job_orchestrator.core.exceptions import (
    InvalidJobTypeError,
    JobNotFoundError,
    OrchestratorError,
    ResourceExhaustedError,
    ValidationError
)
from conversion_job_orchestrator.core.orchestrator import ConversionOrchestrator
from conversion_job_orchestrator.models.job import JobPriority, JobStatus
from conversion_job_orchestrator.models.resources import ResourceUsage
from conversion_job_orchestrator.services.fault_tolerance import RetryPolicy
from conversion_job_orchestrator.services.resource_allocator import ResourceAllocator

STATUS_RANK = {"pending": 0, "running": 1, "completed": 2, "failed": 2, "cancelled": 2}


@pytest.mark.asyncio
async def test_job_runs_to_completion(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"value": 7})
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["status"] == "completed"
    assert job["result"] == {"value": 7, "attempt": 1}
    assert job["attempts"] == 1
    assert job["progress"]["percent"] == 100.0
    assert orchestrator.get_result(job_id) == {"value": 7, "attempt": 1}
    assert orchestrator.get_status(job_id)["status"] == "completed"
    assert orchestrator.allocator.active_allocations == 0


@pytest.mark.asyncio
async def test_jobs_dispatch_in_priority_order(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor, min_workers=1, max_workers=1)
    job_ids = [
        orchestrator.enqueue("conversion", {"value": value}, priority)
        for value, priority in (("a", "low"), ("b", "urgent"), ("c", None), ("d", "high"), ("e", "normal"))
    ]

    async with orchestrator:
        await asyncio.gather(*(orchestrator.wait_for(job_id, timeout=2) for job_id in job_ids))

    assert executor.values() == ["b", "d", "c", "e", "a"]


@pytest.mark.asyncio
async def test_retries_until_exhausted(make_orchestrator, executor, recorder):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["fail"]}, max_retries=2)
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["status"] == "failed"
    assert job["attempts"] == 3
    assert job["retry_count"] == 2
    assert "scripted failure" in job["error"]["message"]
    assert [attempt for _, _, attempt in executor.calls] == [1, 2, 3]
    assert len(recorder.of("job:retrying")) == 2
    assert orchestrator.get_result(job_id) is None

    summary = orchestrator.get_error_summary()
    assert summary["total_errors"] == 3
    assert summary["most_common_error"] == "JobExecutionError"


@pytest.mark.asyncio
async def test_retry_succeeds_on_later_attempt(make_orchestrator, executor, recorder):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["fail", "ok"], "value": 1})
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["status"] == "completed"
    assert job["attempts"] == 2
    assert job["retry_count"] == 1
    assert job["result"] == {"value": 1, "attempt": 2}
    assert job["error"] is None

    statuses = [payload["job"]["status"] for event, payload in recorder.events
                if payload.get("job_id") == job_id and "job" in payload]
    ranks = [STATUS_RANK[status] for status in statuses]
    assert ranks == sorted(ranks)


@pytest.mark.asyncio
async def test_fatal_errors_are_not_retried(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["fatal"]}, max_retries=3)
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["status"] == "failed"
    assert job["attempts"] == 1
    assert job["retry_count"] == 0
    assert job["error"]["code"] == "FATAL_JOB_ERROR"


@pytest.mark.asyncio
async def test_cancel_pending_job(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor)
    job_id = orchestrator.enqueue("conversion", {"value": "never"})

    assert orchestrator.cancel(job_id) is True
    assert orchestrator.cancel(job_id) is False

    async with orchestrator:
        other = orchestrator.enqueue("conversion", {"value": "ran"})
        await orchestrator.wait_for(other, timeout=2)

    assert orchestrator.get_status(job_id)["status"] == "cancelled"
    assert executor.values() == ["ran"]


@pytest.mark.asyncio
async def test_cancel_running_job(make_orchestrator, executor, recorder, wait_until):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["block"]})
        await wait_until(lambda: executor.active == 1)
        worker_id = orchestrator.get_job(job_id).worker_id

        assert orchestrator.cancel(job_id) is True
        job = await orchestrator.wait_for(job_id, timeout=2)

        assert job["status"] == "cancelled"
        await wait_until(lambda: orchestrator.allocator.active_allocations == 0)
        assert orchestrator.worker_pool.get_worker(worker_id).is_available()
        assert recorder.of("job:cancelled")[0]["was_running"] is True
        assert recorder.of("worker:job_cancelled")[0]["job_id"] == job_id

    assert orchestrator.get_error_summary()["total_errors"] == 0


@pytest.mark.asyncio
async def test_wait_for_times_out(make_orchestrator, executor, wait_until):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["block"]})
        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.wait_for(job_id, timeout=0.05)
        executor.gate.set()
        assert (await orchestrator.wait_for(job_id, timeout=2))["status"] == "completed"


@pytest.mark.asyncio
async def test_unknown_jobs(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor)

    assert orchestrator.get_status("job-missing") is None
    assert orchestrator.cancel("job-missing") is False
    with pytest.raises(JobNotFoundError):
        orchestrator.get_result("job-missing")
    with pytest.raises(JobNotFoundError):
        await orchestrator.wait_for("job-missing")


@pytest.mark.asyncio
async def test_enqueue_validation(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor, profiles={"conversion-worker": ["conversion"]})

    with pytest.raises(InvalidJobTypeError):
        orchestrator.enqueue("rendering")
    with pytest.raises(InvalidJobTypeError) as excinfo:
        orchestrator.enqueue("packaging")
    assert excinfo.value.details["supported"] == ["conversion"]
    with pytest.raises(ValidationError):
        orchestrator.enqueue("conversion", priority="critical")
    with pytest.raises(TypeError):
        orchestrator.enqueue("conversion", retries=2)
    with pytest.raises(ResourceExhaustedError) as excinfo:
        orchestrator.enqueue("conversion", resource_requirements={"memory_mb": 4096})
    assert excinfo.value.details["resource_type"] == "memory_mb"

    assert orchestrator.get_queue_stats().total_jobs == 0


@pytest.mark.asyncio
async def test_resource_limits_apply_backpressure(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor, min_workers=1, max_workers=4)
    heavy = {"memory_mb": 600, "cpu": 1, "disk_mb": 10}

    async with orchestrator:
        job_ids = [
            orchestrator.enqueue("conversion", {"script": ["slow"], "value": index}, resource_requirements=heavy)
            for index in range(3)
        ]
        jobs = await asyncio.gather(*(orchestrator.wait_for(job_id, timeout=2) for job_id in job_ids))

    assert [job["status"] for job in jobs] == ["completed"] * 3
    assert executor.max_active == 1
    assert executor.values() == [0, 1, 2]


@pytest.mark.asyncio
async def test_independent_jobs_run_concurrently(make_orchestrator, executor, wait_until):
    orchestrator = make_orchestrator(executor, min_workers=1, max_workers=3)

    async with orchestrator:
        job_ids = [orchestrator.enqueue("conversion", {"script": ["block"]}) for _ in range(3)]
        await wait_until(lambda: executor.active == 3)
        assert orchestrator.get_worker_stats().busy_workers == 3
        executor.gate.set()
        await asyncio.gather(*(orchestrator.wait_for(job_id, timeout=2) for job_id in job_ids))


@pytest.mark.asyncio
async def test_stalled_attempt_is_retried(make_orchestrator, executor, recorder, wait_until):
    orchestrator = make_orchestrator(executor, worker_timeout=60)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["hang", "ok"], "value": "x"})
        await wait_until(lambda: executor.active == 1)

        orchestrator.worker_pool.check_heartbeats(now=time.monotonic() + 61)
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["status"] == "completed"
    assert job["attempts"] == 2
    assert recorder.of("worker:timeout")[0]["reason"] == "heartbeat"
    assert orchestrator.get_error_summary()["error_counts"] == {"WorkerTimeoutError": 1}


@pytest.mark.asyncio
async def test_job_timeout_fails_job(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor, heartbeat_interval=0.02)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["hang"]}, timeout=0.05, max_retries=0)
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["status"] == "failed"
    assert job["error"]["code"] == "JOB_TIMEOUT"


@pytest.mark.asyncio
async def test_stop_fails_unfinished_jobs(make_orchestrator, executor, wait_until):
    orchestrator = make_orchestrator(executor)
    await orchestrator.start()
    job_id = orchestrator.enqueue("conversion", {"script": ["block"]})
    await wait_until(lambda: executor.active == 1)

    await orchestrator.stop(timeout=0.05)

    job = orchestrator.get_status(job_id)
    assert job["status"] == "failed"
    assert job["error"]["code"] == "POOL_SHUTDOWN"
    assert job["attempts"] == 1
    assert orchestrator.allocator.active_allocations == 0
    assert not orchestrator.is_running


@pytest.mark.asyncio
async def test_stop_requeues_jobs_waiting_for_retry(make_orchestrator, executor, recorder, wait_until):
    orchestrator = make_orchestrator(executor, retry_policy=RetryPolicy(initial_delay=30))
    await orchestrator.start()
    job_id = orchestrator.enqueue("conversion", {"script": ["fail"]})
    await wait_until(lambda: recorder.of("job:retrying"))

    await orchestrator.stop()

    assert orchestrator.job_queue.depth == 1
    assert orchestrator.get_job(job_id).status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_progress_is_tracked(make_orchestrator, executor, recorder):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["progress"]})
        await orchestrator.wait_for(job_id, timeout=2)

    progress = recorder.of("job:progress")[0]
    assert progress["job_id"] == job_id
    assert progress["progress"]["stage"] == "assets"
    assert progress["progress"]["completed_steps"] == 1


@pytest.mark.asyncio
async def test_run_task_bypasses_the_queue(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        result = await orchestrator.run_task("analysis", {"value": 3}, priority="high")

    assert result == {"value": 3, "attempt": 1}
    assert orchestrator.get_queue_stats().total_jobs == 0


@pytest.mark.asyncio
async def test_history_and_metrics(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor)

    async with orchestrator:
        job_id = orchestrator.enqueue("validation", {"value": 1})
        await orchestrator.wait_for(job_id, timeout=2)
        metrics = orchestrator.get_metrics()

    events = [entry["event"] for entry in orchestrator.history.get_entries(job_id)]
    assert events == ["job:queued", "job:started", "job:completed"]

    assert b"cjo_jobs_submitted_total" in metrics
    monitoring = orchestrator.monitoring
    assert monitoring.get_sample("cjo_jobs_submitted_total", {"job_type": "validation"}) == 1.0
    assert monitoring.get_sample(
        "cjo_jobs_finished_total", {"job_type": "validation", "outcome": "completed"}
    ) == 1.0
    assert monitoring.get_sample("cjo_jobs", {"status": "completed"}) == 1.0

    status = orchestrator.get_system_status()
    assert status["queue"]["completed_jobs"] == 1
    assert status["resources"]["active_allocations"] == 0


@pytest.mark.asyncio
async def test_subscribers_see_lifecycle_events(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor)
    seen = []
    unsubscribe = orchestrator.on("job:completed", lambda event, payload: seen.append(payload["job_id"]))

    async with orchestrator:
        first = orchestrator.enqueue("conversion")
        await orchestrator.wait_for(first, timeout=2)
        unsubscribe()
        second = orchestrator.enqueue("conversion")
        await orchestrator.wait_for(second, timeout=2)

    assert seen == [first]


@pytest.mark.asyncio
async def test_orchestrator_accepts_a_plain_callable():
    async def convert(job_type, payload, context):
        context.report_progress("models", percent=10)
        return payload["mod"] + ".mcaddon"

    orchestrator = ConversionOrchestrator(
        convert,
        allocator=ResourceAllocator(capacity=ResourceUsage(memory_mb=4096, cpu=4, disk_mb=4096)),
        poll_interval=0.05
    )

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"mod": "copper"}, resource_requirements={"memory_mb": 10})
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["result"] == "copper.mcaddon"


def test_executor_or_pool_is_required():
    with pytest.raises(OrchestratorError):
        ConversionOrchestrator()


@pytest.mark.asyncio
async def test_orchestrator_restarts_after_stop(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor, min_workers=1, max_workers=1)
    await orchestrator.start()
    await orchestrator.stop(timeout=0.1)
    assert orchestrator.get_worker_stats().total_workers == 0

    await orchestrator.start()
    try:
        assert orchestrator.get_worker_stats().total_workers == 1
        job_id = orchestrator.enqueue("conversion", {"value": "again"})
        job = await orchestrator.wait_for(job_id, timeout=2)
    finally:
        await orchestrator.stop()

    assert job["status"] == "completed"
    assert job["result"] == {"value": "again", "attempt": 1}
    assert orchestrator.allocator.active_allocations == 0
    assert orchestrator.job_queue.depth == 0


@pytest.mark.asyncio
async def test_requeued_retry_resumes_after_restart(make_orchestrator, executor, recorder, wait_until):
    orchestrator = make_orchestrator(executor, retry_policy=RetryPolicy(initial_delay=30))
    await orchestrator.start()
    job_id = orchestrator.enqueue("conversion", {"script": ["fail", "ok"], "value": "resumed"})
    await wait_until(lambda: recorder.of("job:retrying"))
    await orchestrator.stop()

    async with orchestrator:
        job = await orchestrator.wait_for(job_id, timeout=2)

    assert job["status"] == "completed"
    assert job["attempts"] == 2
    assert [attempt for _, _, attempt in executor.calls] == [1, 2]


@pytest.mark.asyncio
async def test_cancel_during_retry_backoff(make_orchestrator, executor, recorder, wait_until):
    orchestrator = make_orchestrator(executor, retry_policy=RetryPolicy(initial_delay=0.2, max_delay=0.2))

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"script": ["fail", "ok"]})
        await wait_until(lambda: recorder.of("job:retrying"))

        assert orchestrator.cancel(job_id) is True
        job = await orchestrator.wait_for(job_id, timeout=2)
        await asyncio.sleep(0.3)

        assert orchestrator.get_status(job_id)["status"] == "cancelled"

    assert job["status"] == "cancelled"
    assert len(executor.calls) == 1
    assert orchestrator.allocator.active_allocations == 0
    assert orchestrator.job_queue.depth == 0
    assert recorder.names(job_id).count("job:started") == 1


@pytest.mark.asyncio
async def test_failed_assignment_leaves_queue_and_resources_intact(make_orchestrator, executor, monkeypatch):
    orchestrator = make_orchestrator(executor)
    conversion = orchestrator.enqueue("conversion", priority="high")
    validation = orchestrator.enqueue("validation")

    def assign_job(job):
        if job.job_id == conversion:
            return None
        raise RuntimeError("worker registry unavailable")

    monkeypatch.setattr(orchestrator.worker_pool, "assign_job", assign_job)

    with pytest.raises(RuntimeError):
        orchestrator.dispatch_pending()

    assert orchestrator.allocator.active_allocations == 0
    assert orchestrator.job_queue.depth == 2
    assert orchestrator.get_status(conversion)["status"] == "pending"
    assert orchestrator.get_status(validation)["status"] == "pending"


@pytest.mark.asyncio
async def test_update_priority_reorders_waiting_jobs(make_orchestrator, executor):
    orchestrator = make_orchestrator(executor, min_workers=1, max_workers=1)
    job_ids = [orchestrator.enqueue("conversion", {"value": value}) for value in ("a", "b", "c")]

    assert orchestrator.update_priority(job_ids[2], "urgent") is True
    assert orchestrator.update_priority(job_ids[0], 1) is True
    assert orchestrator.get_job(job_ids[2]).priority == JobPriority.URGENT

    async with orchestrator:
        await asyncio.gather(*(orchestrator.wait_for(job_id, timeout=2) for job_id in job_ids))

        assert orchestrator.update_priority(job_ids[0], "high") is False
        assert orchestrator.update_priority("job-missing", "high") is False

    assert executor.values() == ["c", "b", "a"]
