"""Handles on benchmark runner processes."""

import asyncio
import os
import socket
import time
import uuid
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from .config import EndpointConfig
from .errors import ConnectionLost, ProtocolError, SpawnError, TerminateError
from ..utils.logging import LoggerMixin

STARTUP_POLL_INTERVAL = 0.25
FORCE_KILL_TIMEOUT = 5.0


class WorkerState(str, Enum):
    """Lifecycle of a worker handle."""
    STARTING = "starting"
    IDLE = "idle"
    BUSY = "busy"
    UNRESPONSIVE = "unresponsive"
    TERMINATED = "terminated"


class HealthStatus(str, Enum):
    """Outcome of a ping."""
    HEALTHY = "healthy"
    UNRESPONSIVE = "unresponsive"


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class WorkerHandle(LoggerMixin):
    """One benchmark runner, either spawned by us or attached over the network.

    Handles are owned by the registry. ``state`` and ``current_job_id``
    are only changed by the registry and scheduler.
    """

    def __init__(
        self,
        worker_id: str,
        url: str,
        transport,
        endpoint: Optional[EndpointConfig] = None,
        process: Optional[asyncio.subprocess.Process] = None,
        capabilities: Iterable[str] = (),
    ):
        super().__init__()
        self.worker_id = worker_id
        self.url = url.rstrip('/')
        self.transport = transport
        self.endpoint = endpoint
        self.process = process
        self.capabilities: FrozenSet[str] = frozenset(capabilities)
        self.state = WorkerState.STARTING
        self.current_job_id: Optional[str] = None
        self.last_health_check: Optional[float] = None
        self.last_health: Dict[str, Any] = {}
        self.created_at = time.time()

    @property
    def is_spawned(self) -> bool:
        return self.process is not None

    @property
    def endpoint_name(self) -> Optional[str]:
        return self.endpoint.name if self.endpoint else None

    def matches(self, requirements: Iterable[str]) -> bool:
        """A handle without declared capabilities serves any suite."""
        required = frozenset(requirements)
        if not required or not self.capabilities:
            return True
        return required <= self.capabilities

    def mark_busy(self, job_id: str) -> None:
        if self.current_job_id is not None:
            raise RuntimeError(
                f"Worker {self.worker_id} already runs job {self.current_job_id}, cannot take {job_id}"
            )
        self.current_job_id = job_id
        self.state = WorkerState.BUSY

    def mark_idle(self) -> None:
        self.current_job_id = None
        self.state = WorkerState.IDLE

    def _record_health(self, info: Dict[str, Any]) -> None:
        self.last_health = info
        self.last_health_check = time.time()

    @classmethod
    async def spawn_or_attach(
        cls,
        endpoint: EndpointConfig,
        transport,
        ping_timeout: float = 2.0,
    ) -> "WorkerHandle":
        """Create a handle for ``endpoint``.

        Raises:
            SpawnError: the process could not be started or the endpoint
                never answered a health check.
        """
        if endpoint.is_spawned:
            return await cls._spawn(endpoint, transport, ping_timeout)
        return await cls._attach(endpoint, transport)

    @classmethod
    async def _attach(cls, endpoint: EndpointConfig, transport) -> "WorkerHandle":
        worker_id = f"{endpoint.name}-{uuid.uuid4().hex[:8]}"
        try:
            info = await transport.health_check(endpoint.url, timeout=endpoint.startup_timeout)
        except (ConnectionLost, ProtocolError) as e:
            raise SpawnError(f"Endpoint {endpoint.url} is unreachable: {e}", worker_id) from e

        if info.get('busy'):
            raise SpawnError(f"Endpoint {endpoint.url} is already running job {info.get('current_job')}", worker_id)

        handle = cls(
            worker_id=worker_id,
            url=endpoint.url,
            transport=transport,
            endpoint=endpoint,
            capabilities=endpoint.capabilities or info.get('capabilities') or (),
        )
        handle._record_health(info)
        handle.state = WorkerState.IDLE
        handle.logger.info(f"Attached worker {worker_id} at {handle.url}")
        return handle

    @classmethod
    async def _spawn(cls, endpoint: EndpointConfig, transport, ping_timeout: float) -> "WorkerHandle":
        worker_id = f"{endpoint.name}-{uuid.uuid4().hex[:8]}"
        host = endpoint.host
        port = endpoint.port or find_free_port(host)
        url = f"http://{host}:{port}"

        args = [
            arg.replace('{host}', host).replace('{port}', str(port)).replace('{worker_id}', worker_id)
            for arg in endpoint.command
        ]
        env = dict(os.environ)
        env.update(endpoint.env)

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise SpawnError(f"Cannot launch {args[0]!r}: {e}", worker_id) from e

        handle = cls(
            worker_id=worker_id,
            url=url,
            transport=transport,
            endpoint=endpoint,
            process=process,
            capabilities=endpoint.capabilities,
        )
        handle.logger.info(f"Spawned worker {worker_id} (PID: {process.pid}) at {url}")

        deadline = time.monotonic() + endpoint.startup_timeout
        while True:
            if process.returncode is not None:
                raise SpawnError(f"Worker {worker_id} exited during startup with code {process.returncode}", worker_id)
            try:
                info = await transport.health_check(url, timeout=ping_timeout)
                break
            except (ConnectionLost, ProtocolError):
                if time.monotonic() >= deadline:
                    await handle._force_kill()
                    raise SpawnError(
                        f"Worker {worker_id} did not become healthy within {endpoint.startup_timeout}s",
                        worker_id,
                    )
                await asyncio.sleep(STARTUP_POLL_INTERVAL)

        if not handle.capabilities:
            handle.capabilities = frozenset(info.get('capabilities') or ())
        handle._record_health(info)
        handle.state = WorkerState.IDLE
        return handle

    async def ping(self, timeout: float = 2.0) -> HealthStatus:
        """Health-check the runner; never raises."""
        if self.state == WorkerState.TERMINATED:
            return HealthStatus.UNRESPONSIVE
        if self.process is not None and self.process.returncode is not None:
            self.logger.warning(f"Worker {self.worker_id} process exited with code {self.process.returncode}")
            return HealthStatus.UNRESPONSIVE

        try:
            info = await self.transport.health_check(self.url, timeout=timeout)
        except (ConnectionLost, ProtocolError) as e:
            self.logger.debug(f"Ping to worker {self.worker_id} failed: {e}")
            return HealthStatus.UNRESPONSIVE

        self._record_health(info)
        return HealthStatus.HEALTHY

    async def terminate(self, grace: float = 10.0) -> bool:
        """Shut the worker down.

        Spawned workers are asked to exit and force-killed after ``grace``
        seconds. Attached workers have their current job stopped and are
        detached.

        Returns:
            True when the worker went away gracefully.

        Raises:
            TerminateError: graceful shutdown failed and the process was killed.
        """
        if self.state == WorkerState.TERMINATED:
            return True
        self.state = WorkerState.TERMINATED

        if self.process is None:
            if self.current_job_id:
                await self.transport.stop(self.url, self.current_job_id, timeout=grace or None)
            self.logger.info(f"Detached worker {self.worker_id}")
            return True

        if self.process.returncode is not None:
            return True

        await self.transport.shutdown(self.url, timeout=grace or None)
        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace)
            self.logger.info(f"Worker {self.worker_id} exited with code {self.process.returncode}")
            return True
        except asyncio.TimeoutError:
            pass

        await self._force_kill()
        raise TerminateError(
            f"Worker {self.worker_id} did not exit within {grace}s and was force-killed",
            self.worker_id,
        )

    async def _force_kill(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return

        self.logger.warning(f"Force terminating worker {self.worker_id} (PID: {self.process.pid})")
        try:
            self.process.terminate()
            await asyncio.wait_for(self.process.wait(), timeout=FORCE_KILL_TIMEOUT)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            try:
                self.process.kill()
            except ProcessLookupError:
                return
            await self.process.wait()

    def describe(self) -> Dict[str, Any]:
        return {
            'worker_id': self.worker_id,
            'url': self.url,
            'endpoint': self.endpoint_name,
            'state': self.state.value,
            'current_job': self.current_job_id,
            'capabilities': sorted(self.capabilities),
            'last_health_check': self.last_health_check,
        }

    def __repr__(self) -> str:
        return f"WorkerHandle({self.worker_id}, {self.url}, state={self.state.value})"
