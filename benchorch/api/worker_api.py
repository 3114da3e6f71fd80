"""FastAPI-based worker API serving the benchmark runner protocol."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..core.errors import JobRejected
from ..worker.service import StreamClaimedError, WorkerBusyError, WorkerService
from ..utils.logging import LoggerMixin


# API Models
class JobSpecRequest(BaseModel):
    """Job spec sent by the orchestrator's ``start`` RPC."""
    job_id: str = Field(min_length=1)
    benchmark: str
    model: str = Field(min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class JobStartedResponse(BaseModel):
    """Acknowledgement of a started job."""
    job_id: str
    status: str


class JobStopResponse(BaseModel):
    """Acknowledgement of a stop request."""
    job_id: str
    status: str


class HealthResponse(BaseModel):
    """Health check response model."""
    worker_id: str
    status: str
    busy: bool
    current_job: Optional[str] = None
    capabilities: List[str]
    completed_jobs: int
    system_stats: Dict[str, Any]


class WorkerAPI(LoggerMixin):
    """Worker API server."""

    def __init__(self, service: WorkerService, host: str = "0.0.0.0", port: int = 8080):
        super().__init__()
        self.service = service
        self.host = host
        self.port = port
        self._server: Optional[uvicorn.Server] = None
        self.app = FastAPI(
            title="benchorch worker",
            description="Benchmark runner API driven by the benchorch orchestrator",
            version="0.1.0"
        )
        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.get("/health", response_model=HealthResponse)
        async def health_check():
            """Health check endpoint."""
            return self.service.health()

        @self.app.post("/jobs", response_model=JobStartedResponse, status_code=202)
        async def start_job(request: JobSpecRequest):
            """Start a benchmark job; returns as soon as it is running."""
            try:
                return self.service.submit(request.model_dump())
            except WorkerBusyError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except JobRejected as e:
                raise HTTPException(status_code=422, detail=e.message)

        @self.app.get("/jobs/{job_id}/events")
        async def stream_events(job_id: str):
            """Stream job events as NDJSON, ending with the result event."""
            try:
                events = self.service.claim_events(job_id)
            except KeyError:
                raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
            except StreamClaimedError as e:
                raise HTTPException(status_code=409, detail=str(e))

            async def ndjson():
                async for event in events:
                    yield json.dumps(event, default=str) + "\n"

            return StreamingResponse(ndjson(), media_type="application/x-ndjson")

        @self.app.post("/jobs/{job_id}/stop", response_model=JobStopResponse)
        async def stop_job(job_id: str):
            """Abort a running job."""
            try:
                return await self.service.stop_job(job_id)
            except KeyError:
                raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")

        @self.app.post("/shutdown")
        async def shutdown():
            """Ask the server to exit once this response is sent."""
            self.logger.info("Shutdown requested")
            asyncio.get_running_loop().call_later(0.1, self.request_exit)
            return {"status": "shutting_down"}

        @self.app.on_event("startup")
        async def startup_event():
            """Startup event handler."""
            await self.service.start()
            self.logger.info(f"Worker API started on {self.host}:{self.port}")

        @self.app.on_event("shutdown")
        async def shutdown_event():
            """Shutdown event handler."""
            await self.service.stop()
            self.logger.info("Worker API shutdown")

    def request_exit(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def run(self, log_level: str = "info"):
        """Run the worker API server."""
        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level=log_level.lower()
        )
        self._server = uvicorn.Server(config)
        await self._server.serve()


# Utility function for standalone worker server
async def run_worker_server(
    service: WorkerService,
    host: str = "0.0.0.0",
    port: int = 8080,
    log_level: str = "info"
):
    """Run worker server."""
    api = WorkerAPI(service, host, port)
    await api.run(log_level=log_level)
