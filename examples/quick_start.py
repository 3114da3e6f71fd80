#!/usr/bin/env python3
"""Quick start example for benchorch.

Spawns two local simulated workers and runs a handful of benchmark jobs on
them, printing progress as it arrives.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from benchorch.core.config import EndpointConfig, OrchestratorConfig
from benchorch.core.jobs import BenchmarkJob
from benchorch.core.results import InMemoryResultStore
from benchorch.core.scheduler import BenchmarkScheduler
from benchorch.utils.logging import setup_logging


def print_progress(event):
    if event.kind == "progress" and event.progress is not None:
        print(f"   {event.job_id}: {event.progress:.0%} {event.message}")


async def run_quick_benchmark():
    """Run a quick benchmark example."""

    # Setup logging
    setup_logging(level="WARNING", component="example")

    config = OrchestratorConfig(
        endpoints=[
            EndpointConfig(
                name="local",
                command=[sys.executable, "-m", "benchorch.worker.cli", "--log-level", "WARNING",
                         "serve", "--simulate", "--host", "{host}", "--port", "{port}",
                         "--worker-id", "{worker_id}"],
            ),
        ],
        maxWorkers=2,
        maxRetries=1,
        resultsPath="",
    )

    jobs = [
        BenchmarkJob(benchmark="mteb", model="all-MiniLM-L6-v2", parameters={"steps": 4, "step_delay": 0.2}),
        BenchmarkJob(benchmark="humaneval", model="codegen-350M", parameters={"steps": 3, "step_delay": 0.3}),
        BenchmarkJob(benchmark="lm-eval", model="gpt2", parameters={"tasks": "arc_easy", "steps": 2}),
        BenchmarkJob(benchmark="hellaswag", model="gpt2", parameters={"fail": 2, "fail_message": "out of memory"}),
    ]

    print("🚀 Starting quick benchmark example...")
    print(f"   Jobs: {len(jobs)}")
    print(f"   Workers: {config.max_workers}")

    store = InMemoryResultStore()
    async with BenchmarkScheduler.from_config(config, result_store=store, on_event=print_progress) as scheduler:
        results = await scheduler.run_many(jobs)

    print("\n📊 Benchmark Results:")
    for result in results:
        if result.succeeded:
            metrics = ", ".join(f"{k}={v}" for k, v in result.metrics.items())
            print(f"   ✓ {result.benchmark} on {result.model}: {metrics}")
        else:
            message = (result.error or {}).get('message', '')
            print(f"   ✗ {result.benchmark} on {result.model}: {result.status.value} {message}")

    print(f"\n✅ Recorded {len(store.query())} results")


if __name__ == "__main__":
    print("benchorch - Quick Start Example")
    print("=" * 60)

    try:
        asyncio.run(run_quick_benchmark())
    except KeyboardInterrupt:
        print("\n⏹️  Benchmark interrupted by user")
    except Exception as e:
        print(f"\n💥 Unexpected error: {e}")
        sys.exit(1)
