"""Test the HTTP transport against a scripted aiohttp runner."""

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from benchorch.core.errors import ConnectionLost, ProtocolError
from benchorch.core.handle import HealthStatus, WorkerHandle, find_free_port
from benchorch.core.jobs import BenchmarkJob
from benchorch.core.results import RunResult, RunStatus
from benchorch.core.transport import TransportClient, build_result, decode_event


def progress_line(seq, progress=0.5, message="working"):
    return {"type": "progress", "seq": seq, "progress": progress, "message": message, "data": {}, "timestamp": 1.0}


def result_line(seq, status="success", metrics=None, error=None):
    return {
        "type": "result",
        "seq": seq,
        "status": status,
        "metrics": metrics if metrics is not None else {"main_score": 0.8},
        "error": error,
        "started_at": 100.0,
        "finished_at": 160.0,
    }


class ScriptedRunner:
    """Minimal runner API whose event stream is a fixed list of lines."""

    def __init__(self, lines=(), start_status=202, health=None):
        self.lines = list(lines)
        self.start_status = start_status
        self.health = health or {"worker_id": "w1", "status": "healthy", "busy": False,
                                 "capabilities": ["mteb"]}
        self.started = []
        self.stopped = []
        self.shutdown_requested = False

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_post("/jobs", self.handle_start)
        app.router.add_get("/jobs/{job_id}/events", self.handle_events)
        app.router.add_post("/jobs/{job_id}/stop", self.handle_stop)
        app.router.add_post("/shutdown", self.handle_shutdown)
        return app

    async def handle_health(self, request):
        return web.json_response(self.health)

    async def handle_start(self, request):
        spec = await request.json()
        self.started.append(spec)
        if self.start_status != 202:
            return web.json_response({"detail": "nope"}, status=self.start_status)
        return web.json_response({"job_id": spec["job_id"], "status": "started"}, status=202)

    async def handle_events(self, request):
        response = web.StreamResponse()
        response.content_type = "application/x-ndjson"
        await response.prepare(request)
        for line in self.lines:
            raw = line if isinstance(line, str) else json.dumps(line)
            await response.write((raw + "\n").encode())
        await response.write_eof()
        return response

    async def handle_stop(self, request):
        job_id = request.match_info["job_id"]
        self.stopped.append(job_id)
        return web.json_response({"job_id": job_id, "status": "stopped"})

    async def handle_shutdown(self, request):
        self.shutdown_requested = True
        return web.json_response({"status": "shutting_down"})


async def serve(runner: ScriptedRunner) -> TestServer:
    server = TestServer(runner.app())
    await server.start_server()
    return server


def base_url(server: TestServer) -> str:
    return str(server.make_url("")).rstrip("/")


async def collect(transport, url, job):
    handle = WorkerHandle("w1", url, transport)
    return [item async for item in transport.execute(handle, job)]


class TestExecutionStream:
    """Test streaming a job's events."""

    @pytest.mark.asyncio
    async def test_stream_yields_started_progress_and_result(self):
        """A well-formed stream yields started, progress events and one result."""
        runner = ScriptedRunner([progress_line(1, 0.5), progress_line(2, 1.0), result_line(3)])
        server = await serve(runner)
        job = BenchmarkJob(benchmark="mteb", model="gpt-3.5-turbo", parameters={"batch_size": 8})
        try:
            async with TransportClient() as transport:
                items = await collect(transport, base_url(server), job)
        finally:
            await server.close()

        assert [getattr(i, 'kind', 'result') for i in items] == ["started", "progress", "progress", "result"]
        result = items[-1]
        assert isinstance(result, RunResult)
        assert result.status == RunStatus.SUCCESS
        assert result.metrics == {"main_score": 0.8}
        assert result.duration_seconds == 60.0
        assert result.worker_id == "w1"
        assert result.parameters == {"batch_size": 8}
        assert runner.started[0] == job.to_spec()

    @pytest.mark.asyncio
    async def test_stream_is_not_restartable(self):
        """Iterating a stream twice raises RuntimeError."""
        runner = ScriptedRunner([result_line(1)])
        server = await serve(runner)
        job = BenchmarkJob(benchmark="mteb", model="gpt-3.5-turbo")
        try:
            async with TransportClient() as transport:
                stream = transport.execute(WorkerHandle("w1", base_url(server), transport), job)
                items = [item async for item in stream]
                assert stream.finished
                with pytest.raises(RuntimeError):
                    async for _ in stream:
                        pass
        finally:
            await server.close()

        assert len(items) == 2

    @pytest.mark.asyncio
    async def test_malformed_line_is_protocol_error(self):
        """A line that is not JSON fails with ProtocolError."""
        runner = ScriptedRunner([progress_line(1), "{not json", result_line(3)])
        server = await serve(runner)
        try:
            async with TransportClient() as transport:
                with pytest.raises(ProtocolError):
                    await collect(transport, base_url(server), BenchmarkJob(benchmark="mteb", model="m"))
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_out_of_order_seq_is_protocol_error(self):
        """Event sequence numbers must increase."""
        runner = ScriptedRunner([progress_line(2), progress_line(1), result_line(3)])
        server = await serve(runner)
        try:
            async with TransportClient() as transport:
                with pytest.raises(ProtocolError):
                    await collect(transport, base_url(server), BenchmarkJob(benchmark="mteb", model="m"))
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_stream_without_result_is_connection_lost(self):
        """A stream that ends before the result line counts as a lost connection."""
        runner = ScriptedRunner([progress_line(1)])
        server = await serve(runner)
        try:
            async with TransportClient() as transport:
                with pytest.raises(ConnectionLost):
                    await collect(transport, base_url(server), BenchmarkJob(benchmark="mteb", model="m"))
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_rejected_start_is_protocol_error(self):
        """A 4xx answer to start fails with ProtocolError."""
        server = await serve(ScriptedRunner(start_status=409))
        try:
            async with TransportClient() as transport:
                with pytest.raises(ProtocolError):
                    await collect(transport, base_url(server), BenchmarkJob(benchmark="mteb", model="m"))
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_server_error_on_start_is_connection_lost(self):
        """A 5xx answer to start is transient."""
        server = await serve(ScriptedRunner(start_status=503))
        try:
            async with TransportClient() as transport:
                with pytest.raises(ConnectionLost):
                    await collect(transport, base_url(server), BenchmarkJob(benchmark="mteb", model="m"))
        finally:
            await server.close()


class TestRpcs:
    """Test the request/response RPCs."""

    @pytest.mark.asyncio
    async def test_health_check_and_stop(self):
        """Health, stop and shutdown round-trip against a live server."""
        runner = ScriptedRunner()
        server = await serve(runner)
        url = base_url(server)
        try:
            async with TransportClient() as transport:
                health = await transport.health_check(url)
                stopped = await transport.stop(url, "job-1")
                shut = await transport.shutdown(url)
        finally:
            await server.close()

        assert health["capabilities"] == ["mteb"]
        assert stopped is True
        assert runner.stopped == ["job-1"]
        assert shut is True
        assert runner.shutdown_requested

    @pytest.mark.asyncio
    async def test_health_without_status_is_protocol_error(self):
        """A health answer must carry a status."""
        server = await serve(ScriptedRunner(health={"worker_id": "w1"}))
        try:
            async with TransportClient() as transport:
                with pytest.raises(ProtocolError):
                    await transport.health_check(base_url(server))
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_unreachable_worker(self):
        """Nothing listening means ConnectionLost, an unresponsive ping and a failed stop."""
        url = f"http://127.0.0.1:{find_free_port()}"
        async with TransportClient(request_timeout=1.0) as transport:
            with pytest.raises(ConnectionLost):
                await transport.health_check(url)
            assert await transport.stop(url, "job-1") is False

            handle = WorkerHandle("w1", url, transport)
            assert await handle.ping(timeout=0.5) == HealthStatus.UNRESPONSIVE


class TestEventDecoding:
    """Test validation of individual event lines."""

    def test_decode_progress(self):
        """A valid progress line decodes to a dict."""
        message = decode_event(json.dumps(progress_line(3)), last_seq=2)
        assert message["seq"] == 3
        assert message["type"] == "progress"

    @pytest.mark.parametrize("line", [
        '[]',
        '{"type": "bogus", "seq": 1}',
        '{"type": "progress"}',
        '{"type": "progress", "seq": true}',
        '{"type": "result", "seq": 1, "status": "maybe"}',
        '{"type": "result", "seq": 1, "status": "failure", "error": "boom"}',
        '{"type": "progress", "seq": 1, "progress": "abc"}',
        '{"type": "progress", "seq": 1, "progress": 1.5}',
        '{"type": "progress", "seq": 1, "progress": -0.1}',
        '{"type": "progress", "seq": 1, "progress": true}',
        '{"type": "progress", "seq": 1, "data": [1, 2]}',
        '{"type": "log", "seq": 1, "message": 5}',
    ])
    def test_decode_rejects_invalid_lines(self, line):
        """Malformed lines raise ProtocolError."""
        with pytest.raises(ProtocolError):
            decode_event(line, last_seq=0)

    def test_build_result_requires_timestamps(self):
        """A result line without timestamps is a protocol violation."""
        job = BenchmarkJob(benchmark="mteb", model="m")
        with pytest.raises(ProtocolError):
            build_result({"type": "result", "seq": 1, "status": "success"}, job, "w1")

    def test_build_failure_result(self):
        """Failure results keep the runner's error detail."""
        job = BenchmarkJob(benchmark="mteb", model="m")
        error = {"type": "ValueError", "message": "boom"}
        result = build_result(result_line(1, status="failure", metrics={}, error=error), job, "w1")

        assert result.status == RunStatus.FAILURE
        assert result.error == error
        assert not result.succeeded
