"""HTTP transport between the orchestrator and remote benchmark runners."""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Union

import aiohttp

from .errors import ConnectionLost, ProtocolError
from .jobs import BenchmarkJob, ProgressEvent
from .results import RunResult, RunStatus
from ..utils.logging import LoggerMixin

EVENT_TYPES = ("progress", "log", "result")

StreamItem = Union[ProgressEvent, RunResult]


class TransportClient(LoggerMixin):
    """Client side of the runner RPC surface.

    Wraps one ``aiohttp.ClientSession``. Network failures surface as
    :class:`ConnectionLost`, malformed or rejected messages as
    :class:`ProtocolError`.
    """

    def __init__(self, request_timeout: float = 30.0, session: Optional[aiohttp.ClientSession] = None):
        super().__init__()
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        """Async context manager entry."""
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        url: str,
        timeout: Optional[float] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        session = self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.request_timeout)
        try:
            async with session.request(method, url, json=payload, timeout=client_timeout) as response:
                if response.status >= 500:
                    raise ConnectionLost(f"{method} {url} failed with HTTP {response.status}")
                if response.status >= 400:
                    body = await response.text()
                    raise ProtocolError(f"{method} {url} rejected with HTTP {response.status}: {body[:200]}")
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise ProtocolError(f"{method} {url} returned invalid JSON: {e}") from e
        except asyncio.TimeoutError as e:
            raise ConnectionLost(f"{method} {url} timed out") from e
        except aiohttp.ClientError as e:
            raise ConnectionLost(f"{method} {url} failed: {e}") from e

        if not isinstance(data, dict):
            raise ProtocolError(f"{method} {url} returned {type(data).__name__}, expected an object")
        return data

    async def health_check(self, url: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """``healthCheck()`` RPC."""
        data = await self._request("GET", f"{url}/health", timeout=timeout)
        if 'status' not in data:
            raise ProtocolError(f"Health response from {url} has no status")
        return data

    async def start(self, url: str, job: BenchmarkJob) -> Dict[str, Any]:
        """``start(jobSpec)`` RPC."""
        data = await self._request("POST", f"{url}/jobs", payload=job.to_spec())
        if data.get('job_id') != job.job_id:
            raise ProtocolError(f"Worker {url} acknowledged job {data.get('job_id')!r}, expected {job.job_id}")
        return data

    async def stop(self, url: str, job_id: str, timeout: Optional[float] = None) -> bool:
        """``stop()`` RPC. Returns True once the worker acknowledged the abort."""
        try:
            data = await self._request("POST", f"{url}/jobs/{job_id}/stop", timeout=timeout)
        except (ConnectionLost, ProtocolError) as e:
            self.logger.warning(f"Stop request for job {job_id} on {url} failed: {e}")
            return False
        return data.get('status') == 'stopped'

    async def shutdown(self, url: str, timeout: Optional[float] = None) -> bool:
        """Ask a worker process to exit."""
        try:
            await self._request("POST", f"{url}/shutdown", timeout=timeout)
        except (ConnectionLost, ProtocolError) as e:
            self.logger.warning(f"Shutdown request to {url} failed: {e}")
            return False
        return True

    def execute(self, handle, job: BenchmarkJob) -> "ExecutionStream":
        """Start ``job`` on ``handle`` and stream its events.

        Nothing is sent until the returned stream is iterated.
        """
        return ExecutionStream(self, handle, job)


class ExecutionStream(LoggerMixin):
    """One-shot async sequence of progress events ending in a RunResult.

    The first item is a ``started`` event once the worker accepted the job.
    Iterating a second time raises ``RuntimeError``.
    """

    def __init__(self, transport: TransportClient, handle, job: BenchmarkJob):
        super().__init__()
        self._transport = transport
        self.handle = handle
        self.job = job
        self.result: Optional[RunResult] = None
        self._gen: Optional[AsyncIterator[StreamItem]] = None
        self._response: Optional[aiohttp.ClientResponse] = None

    @property
    def finished(self) -> bool:
        return self.result is not None

    def __aiter__(self):
        if self._gen is not None:
            raise RuntimeError(f"Execution stream for job {self.job.job_id} is not restartable")
        self._gen = self._iterate()
        return self

    async def __anext__(self) -> StreamItem:
        if self._gen is None:
            self.__aiter__()
        return await self._gen.__anext__()

    async def aclose(self) -> None:
        if self._gen is not None:
            await self._gen.aclose()

    async def cancel(self, grace: float) -> bool:
        """Abort the remote execution and close the channel.

        Returns True if the worker acknowledged the stop within ``grace``.
        """
        if self.finished:
            return True
        acked = await self._transport.stop(self.handle.url, self.job.job_id, timeout=grace or None)
        if self._response is not None:
            self._response.close()
        return acked

    async def _iterate(self) -> AsyncIterator[StreamItem]:
        url = self.handle.url
        job_id = self.job.job_id

        await self._transport.start(url, self.job)
        yield ProgressEvent(job_id=job_id, seq=0, kind="started",
                            message=f"Started on worker {self.handle.worker_id}")

        session = self._transport._get_session()
        events_url = f"{url}/jobs/{job_id}/events"
        last_seq = 0
        try:
            async with session.get(events_url, timeout=aiohttp.ClientTimeout(total=None)) as response:
                self._response = response
                if response.status >= 500:
                    raise ConnectionLost(f"GET {events_url} failed with HTTP {response.status}")
                if response.status >= 400:
                    raise ProtocolError(f"GET {events_url} rejected with HTTP {response.status}")

                async for raw_line in response.content:
                    line = raw_line.strip()
                    if not line:
                        continue
                    message = decode_event(line, last_seq)
                    last_seq = message['seq']

                    if message['type'] == 'result':
                        self.result = build_result(message, self.job, self.handle.worker_id)
                        yield self.result
                        return

                    yield ProgressEvent(
                        job_id=job_id,
                        seq=message['seq'],
                        kind=message['type'],
                        progress=message.get('progress'),
                        message=message.get('message') or "",
                        data=message.get('data') or {},
                        timestamp=message.get('timestamp') or 0.0,
                    )
        except asyncio.TimeoutError as e:
            raise ConnectionLost(f"Event stream for job {job_id} timed out") from e
        except aiohttp.ClientError as e:
            raise ConnectionLost(f"Event stream for job {job_id} broke: {e}") from e
        finally:
            self._response = None

        raise ConnectionLost(f"Event stream for job {job_id} ended without a result")


def decode_event(line: Union[bytes, str], last_seq: int) -> Dict[str, Any]:
    """Parse and validate one NDJSON event line."""
    try:
        message = json.loads(line)
    except ValueError as e:
        raise ProtocolError(f"Malformed event line: {e}") from e

    if not isinstance(message, dict):
        raise ProtocolError(f"Event must be an object, got {type(message).__name__}")

    event_type = message.get('type')
    if event_type not in EVENT_TYPES:
        raise ProtocolError(f"Unknown event type {event_type!r}")

    seq = message.get('seq')
    if not isinstance(seq, int) or isinstance(seq, bool):
        raise ProtocolError(f"Event has no integer seq: {message!r}")
    if seq <= last_seq:
        raise ProtocolError(f"Out-of-order event seq {seq} after {last_seq}")

    if event_type == 'result':
        if message.get('status') not in {s.value for s in RunStatus}:
            raise ProtocolError(f"Result has invalid status {message.get('status')!r}")
        if message.get('error') is not None and not isinstance(message['error'], dict):
            raise ProtocolError("Result error must be an object")
        if not isinstance(message.get('metrics') or {}, dict):
            raise ProtocolError("Result metrics must be an object")
    else:
        progress = message.get('progress')
        if progress is not None:
            if not isinstance(progress, (int, float)) or isinstance(progress, bool) or not 0.0 <= progress <= 1.0:
                raise ProtocolError(f"Event progress must be a number in [0, 1], got {progress!r}")
        if message.get('message') is not None and not isinstance(message['message'], str):
            raise ProtocolError("Event message must be a string")
        if message.get('data') is not None and not isinstance(message['data'], dict):
            raise ProtocolError("Event data must be an object")

    return message


def build_result(message: Dict[str, Any], job: BenchmarkJob, worker_id: Optional[str]) -> RunResult:
    """Turn a terminal ``result`` event into a RunResult."""
    try:
        started_at = float(message['started_at'])
        finished_at = float(message['finished_at'])
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Result for job {job.job_id} lacks valid timestamps") from e

    return RunResult(
        job_id=job.job_id,
        benchmark=job.benchmark,
        model=job.model,
        status=RunStatus(message['status']),
        started_at=started_at,
        finished_at=finished_at,
        metrics=message.get('metrics') or {},
        error=message.get('error'),
        worker_id=worker_id,
        parameters=dict(job.parameters),
    )
