"""Pool of benchmark workers shared by concurrently running jobs."""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set, Union

from .config import BackpressureMode, EndpointConfig, OrchestratorConfig
from .errors import NoCapacityError, TerminateError
from .handle import WorkerHandle, WorkerState
from ..utils.logging import LoggerMixin

Spawner = Callable[..., Awaitable[WorkerHandle]]


@dataclass
class _Waiter:
    """A blocked ``acquire`` call.

    The future resolves to an idle handle, or to an endpoint whose
    capacity slot has been reserved for the waiter to spawn on.
    """
    requirements: FrozenSet[str]
    future: asyncio.Future


class WorkerRegistry(LoggerMixin):
    """Tracks worker handles and hands them out to jobs.

    Every mutation of the idle set, the handle table and the waiter queue
    happens under ``self._lock``; spawning and termination run outside it
    against a reserved capacity slot.
    """

    def __init__(
        self,
        endpoints: Iterable[EndpointConfig],
        transport,
        max_workers: int = 4,
        min_workers: int = 0,
        backpressure: Union[BackpressureMode, str] = BackpressureMode.BLOCK,
        ping_timeout: float = 2.0,
        terminate_grace: float = 10.0,
        spawner: Optional[Spawner] = None,
    ):
        super().__init__()
        self.endpoints: List[EndpointConfig] = list(endpoints)
        self.transport = transport
        self.max_workers = max_workers
        self.min_workers = min_workers
        self.backpressure = BackpressureMode(backpressure)
        self.ping_timeout = ping_timeout
        self.terminate_grace = terminate_grace
        self._spawner = spawner or WorkerHandle.spawn_or_attach

        self._lock = asyncio.Lock()
        self._handles: Dict[str, WorkerHandle] = {}
        self._idle: Dict[str, WorkerHandle] = {}
        self._reserved = 0
        self._urls_in_use: Set[str] = set()
        self._waiters: Deque[_Waiter] = deque()
        self._background: Set[asyncio.Task] = set()
        self._closed = False

    @classmethod
    def from_config(cls, config: OrchestratorConfig, transport, spawner: Optional[Spawner] = None) -> "WorkerRegistry":
        return cls(
            endpoints=config.endpoints,
            transport=transport,
            max_workers=config.max_workers,
            min_workers=config.min_workers,
            backpressure=config.backpressure,
            ping_timeout=config.ping_timeout,
            terminate_grace=config.terminate_grace_timeout,
            spawner=spawner,
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.drain()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        """Live handles plus spawns in flight."""
        return len(self._handles) + self._reserved

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def busy_count(self) -> int:
        return len(self._handles) - len(self._idle)

    @property
    def waiting_count(self) -> int:
        return sum(1 for w in self._waiters if not w.future.done())

    @property
    def handles(self) -> List[WorkerHandle]:
        return list(self._handles.values())

    def is_idle(self, handle: WorkerHandle) -> bool:
        return handle.worker_id in self._idle

    def stats(self) -> Dict[str, Any]:
        return {
            'size': self.size,
            'max_workers': self.max_workers,
            'idle': self.idle_count,
            'busy': self.busy_count,
            'spawning': self._reserved,
            'waiting': self.waiting_count,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Warm the pool up to ``min_workers`` idle handles."""
        self._closed = False
        if self.min_workers <= 0:
            return

        self.logger.info(f"Warming worker pool with {self.min_workers} worker(s)")
        handles = []
        for _ in range(self.min_workers):
            handles.append(await self.acquire())
        for handle in handles:
            await self.release(handle)

    async def drain(self) -> None:
        """Fail pending waiters and terminate every worker."""
        async with self._lock:
            self._closed = True
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.future.done():
                    waiter.future.set_exception(NoCapacityError("Worker registry is draining"))
            handles = list(self._handles.values())
            self._handles.clear()
            self._idle.clear()
            self._urls_in_use.clear()

        if handles:
            self.logger.info(f"Draining worker pool: terminating {len(handles)} worker(s)")
        await asyncio.gather(*(self._terminate(h) for h in handles))
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Acquire / release / evict
    # ------------------------------------------------------------------

    async def acquire(self, requirements: Iterable[str] = (), job_id: Optional[str] = None) -> WorkerHandle:
        """Get a worker satisfying ``requirements``.

        Prefers an idle handle, then spawns one below the ceiling, then
        blocks in FIFO order or raises :class:`NoCapacityError` depending
        on the backpressure mode.

        Raises:
            NoCapacityError: pool exhausted in fail-fast mode, or draining.
            SpawnError: a new worker could not be started.
        """
        requirements = frozenset(requirements)
        waiter = None
        endpoint = None

        async with self._lock:
            if self._closed:
                raise NoCapacityError("Worker registry is draining")

            handle = self._take_idle(requirements)
            if handle is not None:
                return self._assign(handle, job_id)

            endpoint = self._reserve_endpoint(requirements)
            if endpoint is None and self._retire_idle_for(requirements):
                endpoint = self._reserve_endpoint(requirements)

            if endpoint is None:
                if self.backpressure == BackpressureMode.FAIL_FAST:
                    raise NoCapacityError(
                        f"No worker capacity for {sorted(requirements) or 'any suite'} "
                        f"({self.size}/{self.max_workers} in use)"
                    )
                waiter = _Waiter(requirements, asyncio.get_running_loop().create_future())
                self._waiters.append(waiter)
                self.logger.info(f"Pool exhausted, queued acquire ({len(self._waiters)} waiting)")

        if waiter is not None:
            granted = await self._wait(waiter)
            if isinstance(granted, WorkerHandle):
                return self._assign(granted, job_id)
            endpoint = granted

        handle = await self._spawn_reserved(endpoint)
        return self._assign(handle, job_id)

    async def release(self, handle: WorkerHandle) -> None:
        """Return a handle to the idle set. Releasing an idle handle is a no-op."""
        async with self._lock:
            if handle.worker_id not in self._handles:
                self.logger.debug(f"Ignoring release of unknown worker {handle.worker_id}")
                return
            if handle.worker_id in self._idle:
                return

            handle.mark_idle()
            self._idle[handle.worker_id] = handle
            self._dispatch_waiters()

    async def evict(self, handle: WorkerHandle) -> None:
        """Remove a handle from the pool and terminate it in the background."""
        async with self._lock:
            known = self._handles.pop(handle.worker_id, None)
            self._idle.pop(handle.worker_id, None)
            if known is None:
                return
            self._forget_url(handle)
            if handle.state != WorkerState.TERMINATED:
                handle.state = WorkerState.UNRESPONSIVE
            self._dispatch_waiters()

        self.logger.warning(f"Evicted worker {handle.worker_id}")
        self._run_background(self._terminate(handle))

    # ------------------------------------------------------------------
    # Internals (callers hold the lock unless noted)
    # ------------------------------------------------------------------

    def _assign(self, handle: WorkerHandle, job_id: Optional[str]) -> WorkerHandle:
        if job_id is not None:
            handle.mark_busy(job_id)
        else:
            handle.state = WorkerState.BUSY
        return handle

    def _take_idle(self, requirements: FrozenSet[str]) -> Optional[WorkerHandle]:
        for worker_id, handle in self._idle.items():
            if handle.matches(requirements):
                del self._idle[worker_id]
                handle.state = WorkerState.BUSY
                return handle
        return None

    def _endpoint_serves(self, endpoint: EndpointConfig, requirements: FrozenSet[str]) -> bool:
        if not endpoint.capabilities or not requirements:
            return True
        return requirements <= frozenset(endpoint.capabilities)

    def _reserve_endpoint(self, requirements: FrozenSet[str]) -> Optional[EndpointConfig]:
        if self.size >= self.max_workers:
            return None
        for endpoint in self.endpoints:
            if not self._endpoint_serves(endpoint, requirements):
                continue
            if endpoint.url and endpoint.url in self._urls_in_use:
                continue
            if endpoint.url:
                self._urls_in_use.add(endpoint.url)
            self._reserved += 1
            return endpoint
        return None

    def _unreserve(self, endpoint: EndpointConfig) -> None:
        self._reserved -= 1
        if endpoint.url:
            self._urls_in_use.discard(endpoint.url)

    def _forget_url(self, handle: WorkerHandle) -> None:
        if handle.endpoint is not None and handle.endpoint.url:
            self._urls_in_use.discard(handle.endpoint.url)

    def _retire_idle_for(self, requirements: FrozenSet[str]) -> bool:
        """Free capacity by retiring the oldest idle handle that cannot serve ``requirements``."""
        if self.size < self.max_workers:
            return False
        if not any(self._endpoint_serves(e, requirements) for e in self.endpoints):
            return False

        for worker_id, handle in self._idle.items():
            if not handle.matches(requirements):
                del self._idle[worker_id]
                del self._handles[worker_id]
                self._forget_url(handle)
                self.logger.info(f"Retiring idle worker {worker_id} to make room for {sorted(requirements)}")
                self._run_background(self._terminate(handle))
                return True
        return False

    def _dispatch_waiters(self) -> None:
        """Hand freed handles or capacity to queued waiters, oldest first."""
        for waiter in list(self._waiters):
            if waiter.future.done():
                self._waiters.remove(waiter)
                continue

            handle = self._take_idle(waiter.requirements)
            if handle is not None:
                self._waiters.remove(waiter)
                waiter.future.set_result(handle)
                continue

            endpoint = self._reserve_endpoint(waiter.requirements)
            if endpoint is None and self._retire_idle_for(waiter.requirements):
                endpoint = self._reserve_endpoint(waiter.requirements)
            if endpoint is not None:
                self._waiters.remove(waiter)
                waiter.future.set_result(endpoint)

    async def _wait(self, waiter: _Waiter) -> Union[WorkerHandle, EndpointConfig]:
        """Block until the waiter is served (lock not held)."""
        try:
            return await waiter.future
        except asyncio.CancelledError:
            async with self._lock:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                elif waiter.future.done() and not waiter.future.cancelled() and waiter.future.exception() is None:
                    granted = waiter.future.result()
                    if isinstance(granted, WorkerHandle):
                        granted.mark_idle()
                        self._idle[granted.worker_id] = granted
                    else:
                        self._unreserve(granted)
                    self._dispatch_waiters()
            raise

    async def _spawn_reserved(self, endpoint: EndpointConfig) -> WorkerHandle:
        """Spawn on a reserved slot (lock not held)."""
        handle = None
        try:
            handle = await self._spawner(endpoint, self.transport, ping_timeout=self.ping_timeout)
        finally:
            if handle is None:
                async with self._lock:
                    self._unreserve(endpoint)
                    self._dispatch_waiters()

        async with self._lock:
            self._reserved -= 1
            if self._closed:
                self._forget_url(handle)
                self._run_background(self._terminate(handle))
                raise NoCapacityError("Worker registry is draining")
            self._handles[handle.worker_id] = handle
            handle.state = WorkerState.BUSY

        self.logger.info(f"Worker {handle.worker_id} joined the pool ({self.size}/{self.max_workers})")
        return handle

    async def _terminate(self, handle: WorkerHandle) -> None:
        try:
            await handle.terminate(self.terminate_grace)
        except TerminateError as e:
            self.logger.warning(f"Worker {handle.worker_id} termination was forced: {e}")

    def _run_background(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
