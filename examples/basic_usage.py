"""
Basic usage example for Conversion Job Orchestrator

This example demonstrates how to schedule Java-mod to Bedrock-addon
conversion work with the orchestrator as a standalone package.
"""

import asyncio

from conversion_job_orchestrator import (
    ConversionOrchestrator,
    LocalJobExecutor,
    FatalJobError,
    load_config,
    setup_logger
)

executor = LocalJobExecutor()


@executor.handler("analysis")
async def analyse_mod(payload, context):
    """Inspect a mod jar and report what it contains."""
    context.report_progress("scanning classes", percent=50)
    await asyncio.sleep(0.1)
    return {"mod": payload["mod"], "blocks": 12, "items": 30, "entities": 2}


@executor.handler("conversion")
async def convert_mod(payload, context):
    """Convert a mod in stages, checking for cancellation between them."""
    stages = ["textures", "models", "blocks", "items"]
    for index, stage in enumerate(stages):
        context.raise_if_cancelled()
        context.report_progress(stage, percent=100 * index / len(stages),
                                completed_steps=index, total_steps=len(stages))
        async with context.pooled("temp_files"):
            await asyncio.sleep(0.05)

    if payload.get("flaky") and context.attempt == 1:
        raise RuntimeError("texture atlas writer crashed")
    return {"addon": f"{payload['mod']}.mcaddon"}


@executor.handler("validation")
def validate_pack(payload, context):
    """Synchronous handlers run on the executor's thread pool."""
    context.heartbeat()
    if not payload.get("manifest", True):
        raise FatalJobError("manifest.json is missing", job_type="validation")
    return {"pack": payload["pack"], "valid": True}


@executor.handler("packaging")
async def package_addon(payload, context):
    await asyncio.sleep(0.05)
    return f"{payload['addon']}.zip"


async def basic_example():
    """Submit jobs and wait for their results."""
    print("🚀 Starting Conversion Job Orchestrator Example")

    config = load_config(overrides={
        "resources": {"memory_mb": 4096, "cpu": 4, "disk_mb": 8192},
        "retry": {"initial_delay": 0.2},
        "orchestrator": {"poll_interval": 0.2}
    })
    orchestrator = ConversionOrchestrator.from_config(config, executor)
    await orchestrator.start()

    try:
        job_ids = [
            orchestrator.enqueue("analysis", {"mod": "copper-age"}, priority="high"),
            orchestrator.enqueue("conversion", {"mod": "copper-age", "flaky": True}, max_retries=2),
            orchestrator.enqueue("validation", {"pack": "copper-age-bp", "manifest": False}),
            orchestrator.enqueue("conversion", {"mod": "giant-lore"}, priority="low",
                                 resource_requirements={"memory_mb": 2048, "cpu": 2}),
        ]
        print(f"✅ Submitted {len(job_ids)} jobs")

        for job_id in job_ids:
            job = await orchestrator.wait_for(job_id, timeout=30)
            outcome = job["result"] if job["status"] == "completed" else job["error"]["message"]
            print(f"📊 {job['job_type']:<11} {job['status']:<10} attempts={job['attempts']}  {outcome}")

        stats = orchestrator.get_queue_stats()
        print(f"📈 Queue statistics: {stats.to_dict()}")

    finally:
        await orchestrator.stop()
        print("🛑 Orchestrator stopped")


async def cancellation_example():
    """Cancel a running conversion and follow it through lifecycle events."""
    print("\n🔧 Cancellation Example")

    config = load_config(overrides={"resources": {"memory_mb": 4096, "cpu": 4, "disk_mb": 8192}})
    orchestrator = ConversionOrchestrator.from_config(config, executor)
    orchestrator.on("job:progress", lambda event, payload: print(
        f"   ⏳ {payload['job_id'][:12]} {payload['progress']['stage']}"
    ))

    async with orchestrator:
        job_id = orchestrator.enqueue("conversion", {"mod": "huge-modpack"})
        await asyncio.sleep(0.12)

        orchestrator.cancel(job_id)
        job = await orchestrator.wait_for(job_id)
        print(f"🛑 Conversion {job['status']} at stage {job['progress']['stage']!r}")

        # Direct worker tasks skip the queue, retries and history
        archive = await orchestrator.run_task("packaging", {"addon": "copper-age"}, priority="high")
        print(f"📦 Packaged {archive}")

        print(f"👷 Workers: {orchestrator.get_worker_stats().to_dict()}")


async def main():
    """Run all examples."""
    print("🎯 Conversion Job Orchestrator - Examples\n")
    setup_logger("conversion_job_orchestrator", level="WARNING", structured=False)

    try:
        await basic_example()
        await cancellation_example()

        print("\n✅ All examples completed successfully!")

    except Exception as e:
        print(f"\n❌ Example failed: {str(e)}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    asyncio.run(main())
