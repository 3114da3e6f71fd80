"""Configuration management for the orchestrator."""

import shlex
import yaml
from typing import Dict, List, Optional, Any, Union
from pathlib import Path
from pydantic import BaseModel, Field, field_validator, model_validator
from enum import Enum

from ..utils.env import Env


class BackpressureMode(str, Enum):
    """What ``acquire`` does when the worker pool is exhausted."""
    BLOCK = "block"
    FAIL_FAST = "fail-fast"


class EndpointConfig(BaseModel):
    """Where a worker comes from: an existing URL or a command to spawn."""

    name: str = Field(..., description="Endpoint name")
    url: Optional[str] = Field(default=None, description="URL of an already running worker")
    command: Optional[List[str]] = Field(
        default=None,
        description="Command that starts a worker; {host} and {port} are substituted"
    )
    host: str = Field(default="127.0.0.1", description="Bind host for spawned workers")
    port: Optional[int] = Field(default=None, ge=0, le=65535, description="Port for spawned workers, free port if unset")
    capabilities: List[str] = Field(default_factory=list, description="Suites served, empty means whatever the worker reports")
    startup_timeout: float = Field(alias="startupTimeout", default=30.0, gt=0)
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for spawned workers")

    class Config:
        populate_by_name = True

    @field_validator('command', mode='before')
    @classmethod
    def parse_command(cls, v):
        """Accept a shell-style string as well as a list."""
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator('url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip('/') if v else v

    @model_validator(mode='after')
    def check_source(self):
        if bool(self.url) == bool(self.command):
            raise ValueError(f"Endpoint '{self.name}' needs exactly one of 'url' or 'command'")
        return self

    @property
    def is_spawned(self) -> bool:
        return self.command is not None


class OrchestratorConfig(BaseModel):
    """Main orchestrator configuration.

    Timeouts are in seconds. Defaults: three retries, blocking backpressure,
    a health check every 5s with a 15s unresponsive deadline, 2s ping
    timeout and 10s grace for cancellation and shutdown.
    """

    endpoints: List[EndpointConfig] = Field(default_factory=list, description="Worker endpoints")

    # Pool settings
    max_workers: int = Field(alias="maxWorkers", default=4, ge=1, description="Concurrency ceiling")
    min_workers: int = Field(alias="minWorkers", default=0, ge=0, description="Workers started eagerly")
    backpressure: BackpressureMode = Field(default=BackpressureMode.BLOCK)

    # Retry settings
    max_retries: int = Field(alias="maxRetries", default=3, ge=0, description="Retries after a transient failure")
    retry_backoff: float = Field(alias="retryBackoff", default=1.0, ge=0, description="Delay before a retry")

    # Health settings
    health_check_interval: float = Field(alias="healthCheckInterval", default=5.0, gt=0)
    health_check_timeout: float = Field(alias="healthCheckTimeout", default=15.0, gt=0)
    ping_timeout: float = Field(alias="pingTimeout", default=2.0, gt=0)

    # Shutdown settings
    cancel_grace_timeout: float = Field(alias="cancelGraceTimeout", default=10.0, ge=0)
    terminate_grace_timeout: float = Field(alias="terminateGraceTimeout", default=10.0, ge=0)
    request_timeout: float = Field(alias="requestTimeout", default=30.0, gt=0)

    # Results settings
    results_path: str = Field(alias="resultsPath", default="results/runs.jsonl")

    # Logging settings
    log_level: str = Field(alias="logLevel", default="INFO", description="Logging level")
    log_file: Optional[str] = Field(alias="logFile", default=None, description="Log file path")

    class Config:
        populate_by_name = True

    @model_validator(mode='after')
    def check_pool(self):
        if self.min_workers > self.max_workers:
            raise ValueError("min_workers cannot exceed max_workers")
        return self


class WorkerServerConfig(BaseModel):
    """Configuration of a worker process serving the runner API."""

    worker_id: str = Field(..., alias="workerId", description="Unique worker identifier")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=0, le=65535)
    runners: Dict[str, str] = Field(
        default_factory=dict,
        description="Suite name to runner class path (module.Class)"
    )
    simulate: bool = Field(default=False, description="Serve every suite with the simulated runner")
    log_level: str = Field(alias="logLevel", default="INFO")

    class Config:
        populate_by_name = True


class JobRequest(BaseModel):
    """One entry of a job file."""

    benchmark: str
    model: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class JobFile(BaseModel):
    """A batch of job requests loaded from YAML."""

    jobs: List[JobRequest] = Field(default_factory=list)


class ConfigLoader:
    """Configuration loader utility."""

    @staticmethod
    def _load_yaml(file_path: Union[str, Path]) -> Dict[str, Any]:
        with open(file_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def load_orchestrator(file_path: Union[str, Path]) -> OrchestratorConfig:
        """Load orchestrator configuration from YAML file."""
        return OrchestratorConfig(**ConfigLoader._load_yaml(file_path))

    @staticmethod
    def load_worker(file_path: Union[str, Path]) -> WorkerServerConfig:
        """Load worker configuration from YAML file."""
        return WorkerServerConfig(**ConfigLoader._load_yaml(file_path))

    @staticmethod
    def load_jobs(file_path: Union[str, Path]) -> JobFile:
        """Load a job list from YAML file.

        Accepts either ``{jobs: [...]}`` or a bare list.
        """
        with open(file_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, list):
            data = {'jobs': data}
        return JobFile(**data)

    @staticmethod
    def save_config(config: BaseModel, file_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        with open(file_path, 'w', encoding='utf-8') as f:
            data = config.model_dump(mode='json', by_alias=True, exclude_none=True)
            yaml.safe_dump(data, f, default_flow_style=False, indent=2)


def load_env_config() -> Dict[str, Any]:
    """Collect orchestrator settings from ``BENCHORCH_*`` environment variables.

    Only variables that are set are returned, so the result can be used as
    an override on top of a file-based configuration.
    """
    overrides: Dict[str, Any] = {}

    if Env.is_set('workers'):
        overrides['endpoints'] = [
            {'name': f"env-{i}", 'url': url}
            for i, url in enumerate(Env.get_list('workers', []))
        ]
    if Env.is_set('max_workers'):
        overrides['max_workers'] = Env.get_int('max_workers', 4)
    if Env.is_set('backpressure'):
        overrides['backpressure'] = Env.get_str('backpressure', BackpressureMode.BLOCK.value)
    if Env.is_set('max_retries'):
        overrides['max_retries'] = Env.get_int('max_retries', 3)
    if Env.is_set('health_check_interval'):
        overrides['health_check_interval'] = Env.get_float('health_check_interval', 5.0)
    if Env.is_set('health_check_timeout'):
        overrides['health_check_timeout'] = Env.get_float('health_check_timeout', 15.0)
    if Env.is_set('results_path'):
        overrides['results_path'] = Env.get_str('results_path', "results/runs.jsonl")
    if Env.is_set('log_level'):
        overrides['log_level'] = Env.get_str('log_level', "INFO")
    if Env.is_set('log_file'):
        overrides['log_file'] = Env.get_str('log_file', None)

    return overrides


def merge_configs(base: OrchestratorConfig, override: Union[OrchestratorConfig, Dict[str, Any]]) -> OrchestratorConfig:
    """Merge two configurations, with override taking precedence.

    A model override only contributes the fields that were explicitly set.
    """
    base_dict = base.model_dump()
    if isinstance(override, OrchestratorConfig):
        override_dict = override.model_dump(exclude_unset=True)
    else:
        override_dict = dict(override)
    base_dict.update(override_dict)
    return OrchestratorConfig(**base_dict)
