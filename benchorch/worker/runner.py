"""Benchmark runners executed inside a worker process."""

import asyncio
import hashlib
import importlib
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Type

from ..core.errors import BenchmarkError
from ..core.jobs import BenchmarkJob
from ..core.suites import BenchmarkSuite
from ..utils.logging import LoggerMixin

# emit(progress=None, message="", data=None, kind="progress")
Emit = Callable[..., Awaitable[None]]

# Headline metric reported by the simulated runner for each suite
HEADLINE_METRICS = {
    BenchmarkSuite.MTEB.value: "main_score",
    BenchmarkSuite.LM_EVAL.value: "acc",
    BenchmarkSuite.HELLASWAG.value: "acc_norm",
    BenchmarkSuite.HUMANEVAL.value: "pass@1",
}


class BaseRunner(LoggerMixin, ABC):
    """Executes one benchmark suite.

    Subclasses implement :meth:`execute`, report progress through ``emit``
    and return a metrics mapping. Raising :class:`BenchmarkError` (or any
    other exception) produces a failure result.
    """

    suite: str = ""

    def __init__(self, worker_id: str):
        super().__init__()
        self.worker_id = worker_id

    @abstractmethod
    async def execute(self, job: BenchmarkJob, emit: Emit) -> Dict[str, Any]:
        """Run the benchmark and return its metrics."""
        pass


class SimulatedRunner(BaseRunner):
    """Deterministic stand-in runner for smoke runs and tests.

    Parameters read from the job:
        steps: number of progress steps (default 5)
        step_delay: seconds between steps (default 0.1)
        fail: fail after the given step, or at the end when ``True``
        fail_message: message of the simulated failure
    """

    def __init__(self, worker_id: str, suite: Optional[str] = None):
        super().__init__(worker_id)
        if suite:
            self.suite = suite

    async def execute(self, job: BenchmarkJob, emit: Emit) -> Dict[str, Any]:
        params = job.parameters
        steps = max(1, int(params.get('steps', 5)))
        step_delay = float(params.get('step_delay', 0.1))
        fail = params.get('fail', False)
        fail_at = steps if fail is True else (int(fail) if fail else None)

        await emit(message=f"Running {job.benchmark} on {job.model} in {steps} step(s)", kind="log")
        for step in range(1, steps + 1):
            await asyncio.sleep(step_delay)
            if fail_at is not None and step >= fail_at:
                raise BenchmarkError(
                    params.get('fail_message') or f"Simulated failure at step {step}",
                    self.worker_id,
                    error_type="SimulatedFailure",
                )
            await emit(progress=step / steps, message=f"step {step}/{steps}", data={'step': step})

        score = simulated_score(job.benchmark, job.model)
        return {
            HEADLINE_METRICS.get(job.benchmark, "score"): score,
            'steps': steps,
        }


def simulated_score(benchmark: str, model: str) -> float:
    """Stable pseudo score in [0, 1) for a benchmark/model pair."""
    digest = hashlib.sha256(f"{benchmark}:{model}".encode()).hexdigest()
    return round(int(digest[:8], 16) / 0xFFFFFFFF, 4)


def load_runner(path: str) -> Type[BaseRunner]:
    """Import a runner class from ``package.module:Class`` or ``package.module.Class``."""
    if ':' in path:
        module_name, _, class_name = path.partition(':')
    else:
        module_name, _, class_name = path.rpartition('.')
    if not module_name or not class_name:
        raise ValueError(f"Invalid runner path '{path}'")

    module = importlib.import_module(module_name)
    try:
        runner_cls = getattr(module, class_name)
    except AttributeError:
        raise ValueError(f"Module '{module_name}' has no runner '{class_name}'") from None

    if not (isinstance(runner_cls, type) and issubclass(runner_cls, BaseRunner)):
        raise ValueError(f"'{path}' is not a BaseRunner subclass")
    return runner_cls
