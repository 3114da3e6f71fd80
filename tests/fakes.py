"""In-memory fakes of the worker transport and spawner."""

import asyncio
import itertools
import time
from typing import Any, Dict, List, Optional

from benchorch.core.config import EndpointConfig
from benchorch.core.errors import ConnectionLost, ProtocolError, SpawnError
from benchorch.core.handle import WorkerHandle, WorkerState
from benchorch.core.jobs import ProgressEvent
from benchorch.core.registry import WorkerRegistry
from benchorch.core.results import InMemoryResultStore, RunResult, RunStatus
from benchorch.core.scheduler import BenchmarkScheduler


class FakeWorker:
    """Scripted remote runner.

    Behaviours, consumed one per job (the last one repeats):
        succeed, fail, protocol_error, disconnect, hang
    """

    def __init__(self, url: str, behaviors=("succeed",), healthy: bool = True, ack_stop: bool = True,
                 steps: int = 2, step_delay: float = 0.0, metrics: Optional[Dict[str, Any]] = None,
                 capabilities=()):
        self.url = url
        self.behaviors = list(behaviors)
        self.healthy = healthy
        self.ack_stop = ack_stop
        self.steps = steps
        self.step_delay = step_delay
        self.metrics = metrics if metrics is not None else {'main_score': 0.71}
        self.capabilities = list(capabilities)
        self.jobs_started: List[str] = []
        self.stops: List[str] = []
        self.active: Dict[str, "FakeStream"] = {}
        self.max_concurrent = 0

    def next_behavior(self) -> str:
        if len(self.behaviors) > 1:
            return self.behaviors.pop(0)
        return self.behaviors[0]


class FakeStream:
    """In-memory stand-in for ExecutionStream."""

    def __init__(self, worker: FakeWorker, handle: WorkerHandle, job, behavior: str):
        self.worker = worker
        self.handle = handle
        self.job = job
        self.behavior = behavior
        self.stopped = asyncio.Event()
        self._gen = None

    def __aiter__(self):
        if self._gen is not None:
            raise RuntimeError("stream is not restartable")
        self._gen = self._iterate()
        return self

    async def __anext__(self):
        return await self._gen.__anext__()

    async def aclose(self):
        if self._gen is not None:
            await self._gen.aclose()

    async def cancel(self, grace: float) -> bool:
        return await self.handle.transport.stop(self.handle.url, self.job.job_id, timeout=grace)

    def _result(self, status: RunStatus, started_at: float, error=None, metrics=None) -> RunResult:
        return RunResult(
            job_id=self.job.job_id,
            benchmark=self.job.benchmark,
            model=self.job.model,
            status=status,
            started_at=started_at,
            finished_at=time.time(),
            metrics=metrics or {},
            error=error,
            worker_id=self.handle.worker_id,
        )

    async def _iterate(self):
        worker = self.worker
        job_id = self.job.job_id
        started_at = time.time()
        worker.jobs_started.append(job_id)
        worker.active[job_id] = self
        worker.max_concurrent = max(worker.max_concurrent, len(worker.active))
        try:
            yield ProgressEvent(job_id=job_id, seq=0, kind="started")

            if self.behavior == "protocol_error":
                raise ProtocolError(f"Malformed event line from {worker.url}")
            if self.behavior == "disconnect":
                raise ConnectionLost(f"Event stream from {worker.url} broke")
            if self.behavior == "hang":
                await self.stopped.wait()
                yield self._result(RunStatus.CANCELLED, started_at)
                return

            for step in range(1, worker.steps + 1):
                await asyncio.sleep(worker.step_delay)
                yield ProgressEvent(job_id=job_id, seq=step, kind="progress", progress=step / worker.steps)

            if self.behavior == "fail":
                yield self._result(RunStatus.FAILURE, started_at,
                                   error={'type': 'ValueError', 'message': 'boom'})
            else:
                yield self._result(RunStatus.SUCCESS, started_at, metrics=dict(worker.metrics))
        finally:
            worker.active.pop(job_id, None)


class FakeTransport:
    """Transport routing RPCs to FakeWorkers by URL."""

    def __init__(self):
        self.workers: Dict[str, FakeWorker] = {}
        self.streams: List[FakeStream] = []
        self.shutdowns: List[str] = []

    def add_worker(self, url: str, **kwargs) -> FakeWorker:
        worker = FakeWorker(url, **kwargs)
        self.workers[url] = worker
        return worker

    async def health_check(self, url: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        worker = self.workers.get(url)
        if worker is None or not worker.healthy:
            raise ConnectionLost(f"GET {url}/health timed out")
        return {
            'worker_id': url,
            'status': 'healthy',
            'busy': bool(worker.active),
            'capabilities': worker.capabilities,
        }

    async def stop(self, url: str, job_id: str, timeout: Optional[float] = None) -> bool:
        worker = self.workers.get(url)
        if worker is None:
            return False
        worker.stops.append(job_id)
        stream = worker.active.get(job_id)
        if not worker.ack_stop:
            return False
        if stream is not None:
            stream.stopped.set()
        return True

    async def shutdown(self, url: str, timeout: Optional[float] = None) -> bool:
        self.shutdowns.append(url)
        return True

    def execute(self, handle: WorkerHandle, job) -> FakeStream:
        worker = self.workers[handle.url]
        stream = FakeStream(worker, handle, job, worker.next_behavior())
        self.streams.append(stream)
        return stream

    async def close(self) -> None:
        pass


class FakeSpawner:
    """Registry spawner creating FakeWorkers instead of processes.

    ``worker_configs[i]`` holds the FakeWorker options of the i-th spawned
    worker; later workers use ``default``.
    """

    def __init__(self, transport: FakeTransport, worker_configs=(), default=None, fail_first: int = 0):
        self.transport = transport
        self.worker_configs = list(worker_configs)
        self.default = default or {}
        self.fail_remaining = fail_first
        self.spawned: List[WorkerHandle] = []
        self._counter = itertools.count()

    async def __call__(self, endpoint: EndpointConfig, transport, ping_timeout: float = 2.0) -> WorkerHandle:
        index = next(self._counter)
        await asyncio.sleep(0)
        if self.fail_remaining > 0:
            self.fail_remaining -= 1
            raise SpawnError(f"Cannot launch worker for {endpoint.name}")

        options = dict(self.worker_configs[index]) if index < len(self.worker_configs) else dict(self.default)
        options.setdefault('capabilities', endpoint.capabilities)
        url = f"fake://{endpoint.name}/{index}"
        self.transport.add_worker(url, **options)

        handle = WorkerHandle(
            worker_id=f"{endpoint.name}-{index}",
            url=url,
            transport=transport,
            endpoint=endpoint,
            capabilities=endpoint.capabilities,
        )
        handle.state = WorkerState.IDLE
        self.spawned.append(handle)
        return handle


def local_endpoint(name: str = "local", capabilities=()) -> EndpointConfig:
    return EndpointConfig(name=name, command=["fake-worker", "--port", "{port}"], capabilities=list(capabilities))


def make_registry(transport, spawner, max_workers=1, backpressure="block", endpoints=None, **kwargs) -> WorkerRegistry:
    return WorkerRegistry(
        endpoints=endpoints or [local_endpoint()],
        transport=transport,
        max_workers=max_workers,
        backpressure=backpressure,
        terminate_grace=0.1,
        spawner=spawner,
        **kwargs,
    )


def make_scheduler(transport, spawner, max_workers=1, backpressure="block", max_retries=3,
                   **kwargs) -> BenchmarkScheduler:
    registry = make_registry(transport, spawner, max_workers=max_workers, backpressure=backpressure)
    options = dict(
        result_store=InMemoryResultStore(),
        max_retries=max_retries,
        retry_backoff=0,
        health_check_interval=0.01,
        health_check_timeout=0.05,
        ping_timeout=0.01,
        cancel_grace=0.1,
    )
    options.update(kwargs)
    return BenchmarkScheduler(registry, transport, **options)


async def wait_for_state(record, state, timeout: float = 2.0) -> None:
    """Poll a job record until it reaches ``state``."""
    deadline = time.monotonic() + timeout
    while record.state != state:
        if time.monotonic() > deadline:
            raise AssertionError(f"{record!r} never reached {state.value}")
        await asyncio.sleep(0.005)
