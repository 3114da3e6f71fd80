"""API components for the orchestrator."""

from .worker_api import WorkerAPI, run_worker_server

__all__ = ["WorkerAPI", "run_worker_server"]
