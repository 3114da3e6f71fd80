"""Test configuration management."""

import pytest
import tempfile
import yaml
from pathlib import Path

from benchorch.core.config import (
    BackpressureMode,
    ConfigLoader,
    EndpointConfig,
    OrchestratorConfig,
    WorkerServerConfig,
    load_env_config,
    merge_configs,
)


class TestEndpointConfig:
    """Test endpoint configuration."""

    def test_url_endpoint(self):
        """Test an endpoint attached by URL."""
        config = EndpointConfig(name="remote", url="http://gpu-box:8080/")

        assert config.url == "http://gpu-box:8080"
        assert config.command is None
        assert not config.is_spawned
        assert config.capabilities == []

    def test_command_endpoint_from_string(self):
        """Test a spawn command given as a shell-style string."""
        data = {
            "name": "local",
            "command": "benchorch-worker serve --simulate --port {port}",
            "capabilities": ["mteb", "humaneval"],
            "startupTimeout": 5,
        }

        config = EndpointConfig(**data)
        assert config.is_spawned
        assert config.command == ["benchorch-worker", "serve", "--simulate", "--port", "{port}"]
        assert config.startup_timeout == 5.0
        assert config.capabilities == ["mteb", "humaneval"]

    def test_endpoint_needs_exactly_one_source(self):
        """Test that url and command are mutually exclusive and one is required."""
        with pytest.raises(ValueError):
            EndpointConfig(name="none")

        with pytest.raises(ValueError):
            EndpointConfig(name="both", url="http://localhost:8080", command=["benchorch-worker"])


class TestOrchestratorConfig:
    """Test orchestrator configuration."""

    def test_orchestrator_config_defaults(self):
        """Test orchestrator configuration defaults."""
        config = OrchestratorConfig()

        assert config.endpoints == []
        assert config.max_workers == 4
        assert config.min_workers == 0
        assert config.backpressure == BackpressureMode.BLOCK
        assert config.max_retries == 3
        assert config.health_check_interval == 5.0
        assert config.health_check_timeout == 15.0
        assert config.ping_timeout == 2.0
        assert config.cancel_grace_timeout == 10.0
        assert config.log_level == "INFO"

    def test_orchestrator_config_from_dict(self):
        """Test orchestrator configuration from camelCase keys."""
        data = {
            "endpoints": [{"name": "remote", "url": "http://localhost:8080"}],
            "maxWorkers": 8,
            "backpressure": "fail-fast",
            "maxRetries": 1,
            "healthCheckInterval": 2,
            "resultsPath": "out/runs.jsonl",
        }

        config = OrchestratorConfig(**data)
        assert config.max_workers == 8
        assert config.backpressure == BackpressureMode.FAIL_FAST
        assert config.max_retries == 1
        assert config.health_check_interval == 2.0
        assert config.results_path == "out/runs.jsonl"
        assert config.endpoints[0].url == "http://localhost:8080"

    def test_orchestrator_config_validation(self):
        """Test orchestrator configuration validation."""
        # Concurrency ceiling must be positive
        with pytest.raises(ValueError):
            OrchestratorConfig(maxWorkers=0)

        # Warm pool cannot exceed the ceiling
        with pytest.raises(ValueError):
            OrchestratorConfig(maxWorkers=2, minWorkers=3)

        with pytest.raises(ValueError):
            OrchestratorConfig(backpressure="drop")

        with pytest.raises(ValueError):
            OrchestratorConfig(maxRetries=-1)


class TestConfigLoader:
    """Test configuration loader."""

    def test_load_orchestrator_config(self):
        """Test loading orchestrator configuration from file."""
        data = {
            "endpoints": [
                {"name": "local", "command": ["benchorch-worker", "serve", "--port", "{port}"]},
            ],
            "maxWorkers": 2,
            "logLevel": "DEBUG",
        }

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.dump(data, f)
            temp_path = f.name

        try:
            config = ConfigLoader.load_orchestrator(temp_path)
            assert config.max_workers == 2
            assert config.log_level == "DEBUG"
            assert config.endpoints[0].is_spawned
        finally:
            Path(temp_path).unlink()

    def test_load_worker_config(self):
        """Test loading worker configuration from file."""
        data = {
            "workerId": "gpu-1",
            "port": 9001,
            "runners": {"mteb": "my_runners:MtebRunner"},
        }

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.dump(data, f)
            temp_path = f.name

        try:
            config = ConfigLoader.load_worker(temp_path)
            assert isinstance(config, WorkerServerConfig)
            assert config.worker_id == "gpu-1"
            assert config.port == 9001
            assert config.runners == {"mteb": "my_runners:MtebRunner"}
            assert config.simulate is False
        finally:
            Path(temp_path).unlink()

    @pytest.mark.parametrize("content", [
        {"jobs": [{"benchmark": "mteb", "model": "m1"}, {"benchmark": "humaneval", "model": "m2"}]},
        [{"benchmark": "mteb", "model": "m1"}, {"benchmark": "humaneval", "model": "m2"}],
    ])
    def test_load_jobs(self, tmp_path, content):
        """Test loading a job file in both accepted shapes."""
        path = tmp_path / "jobs.yaml"
        path.write_text(yaml.dump(content))

        job_file = ConfigLoader.load_jobs(path)

        assert [j.benchmark for j in job_file.jobs] == ["mteb", "humaneval"]
        assert job_file.jobs[0].parameters == {}

    def test_save_config(self):
        """Test saving configuration to file."""
        config = OrchestratorConfig(
            endpoints=[EndpointConfig(name="remote", url="http://localhost:8080")],
            maxWorkers=3,
            backpressure=BackpressureMode.FAIL_FAST,
        )

        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            temp_path = f.name

        try:
            ConfigLoader.save_config(config, temp_path)

            # Load it back
            loaded_config = ConfigLoader.load_orchestrator(temp_path)
            assert loaded_config.max_workers == config.max_workers
            assert loaded_config.backpressure == config.backpressure
            assert loaded_config.endpoints[0].url == "http://localhost:8080"
        finally:
            Path(temp_path).unlink()


class TestEnvOverrides:
    """Test BENCHORCH_* environment overrides."""

    def test_unset_environment_gives_no_overrides(self, monkeypatch):
        """Test that nothing is overridden by default."""
        for name in ("WORKERS", "MAX_WORKERS", "BACKPRESSURE", "MAX_RETRIES", "LOG_LEVEL"):
            monkeypatch.delenv(f"BENCHORCH_{name}", raising=False)

        assert load_env_config() == {}

    def test_environment_overrides(self, monkeypatch):
        """Test that set variables override the file configuration."""
        monkeypatch.setenv("BENCHORCH_WORKERS", "http://a:8080, http://b:8080")
        monkeypatch.setenv("BENCHORCH_MAX_WORKERS", "6")
        monkeypatch.setenv("BENCHORCH_BACKPRESSURE", "fail-fast")
        monkeypatch.setenv("BENCHORCH_LOG_LEVEL", "DEBUG")

        base = OrchestratorConfig(maxWorkers=2, maxRetries=5)
        config = merge_configs(base, load_env_config())

        assert [e.url for e in config.endpoints] == ["http://a:8080", "http://b:8080"]
        assert config.max_workers == 6
        assert config.backpressure == BackpressureMode.FAIL_FAST
        assert config.log_level == "DEBUG"
        assert config.max_retries == 5

    def test_invalid_number_falls_back_to_default(self, monkeypatch):
        """Test that an unparsable number keeps the default value."""
        monkeypatch.setenv("BENCHORCH_MAX_RETRIES", "many")

        assert load_env_config()["max_retries"] == 3

    def test_merge_model_override_only_uses_set_fields(self):
        """Test merging two configuration models."""
        base = OrchestratorConfig(maxWorkers=2, maxRetries=5)
        override = OrchestratorConfig(maxRetries=0)

        merged = merge_configs(base, override)

        assert merged.max_workers == 2
        assert merged.max_retries == 0
