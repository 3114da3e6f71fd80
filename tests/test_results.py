"""Test run results and result stores."""

import pytest
import json

from benchorch.core.results import (
    DuplicateResultError,
    InMemoryResultStore,
    JsonlResultStore,
    ResultFilter,
    RunResult,
    RunStatus,
    to_dataframe,
)


def make_result(job_id="job-1", benchmark="mteb", model="gpt-3.5-turbo",
                status=RunStatus.SUCCESS, finished_at=160.0, **kwargs):
    return RunResult(
        job_id=job_id,
        benchmark=benchmark,
        model=model,
        status=status,
        started_at=100.0,
        finished_at=finished_at,
        **kwargs
    )


class TestRunResult:
    """Test the RunResult record."""

    def test_run_result_basic(self):
        """Test basic result properties."""
        result = make_result(metrics={"main_score": 0.71}, worker_id="w1")

        assert result.duration_seconds == 60.0
        assert result.succeeded
        assert result.attempts == 1
        assert result.error is None

    def test_duration_never_negative(self):
        """Test that a clock skew does not produce a negative duration."""
        result = make_result(finished_at=90.0)
        assert result.duration_seconds == 0.0

    def test_failure_result(self):
        """Test a failed result with error detail."""
        result = make_result(
            status=RunStatus.FAILURE,
            error={"type": "BenchmarkError", "message": "OOM", "retryable": False},
            attempts=2,
        )

        assert not result.succeeded
        assert result.error["message"] == "OOM"

    def test_serialization(self):
        """Test conversion to and from the JSON-lines form."""
        result = make_result(
            metrics={"pass@1": 0.42},
            parameters={"k": [1]},
            worker_id="w2",
            attempts=3,
        )

        data = json.loads(result.to_json())
        assert data["status"] == "success"
        assert data["metrics"] == {"pass@1": 0.42}

        restored = RunResult.from_dict(data)
        assert restored == result


class TestResultFilter:
    """Test result filtering."""

    def test_empty_filter_matches_everything(self):
        """Test that unset fields match all results."""
        assert ResultFilter().matches(make_result())

    def test_filter_fields(self):
        """Test each filter field."""
        result = make_result(benchmark="humaneval", model="codegen", status=RunStatus.FAILURE)

        assert ResultFilter(benchmark="humaneval").matches(result)
        assert not ResultFilter(benchmark="mteb").matches(result)
        assert ResultFilter(model="codegen", status="failure").matches(result)
        assert not ResultFilter(status=RunStatus.SUCCESS).matches(result)
        assert ResultFilter(since=150.0).matches(result)
        assert not ResultFilter(since=170.0).matches(result)


class TestInMemoryResultStore:
    """Test the in-memory store."""

    def test_append_and_get(self):
        """Test storing and looking up a result."""
        store = InMemoryResultStore()
        result = make_result()

        store.append(result)

        assert store.get("job-1") == result
        assert store.get("job-2") is None

    def test_duplicate_rejected(self):
        """Test that a job can be recorded only once."""
        store = InMemoryResultStore()
        store.append(make_result())

        with pytest.raises(DuplicateResultError):
            store.append(make_result(status=RunStatus.FAILURE))

        assert len(store.query()) == 1

    def test_query_with_filter_and_limit(self):
        """Test filtering and keeping the most recent results."""
        store = InMemoryResultStore()
        for i in range(5):
            benchmark = "mteb" if i % 2 == 0 else "humaneval"
            store.append(make_result(job_id=f"job-{i}", benchmark=benchmark, finished_at=100.0 + i))

        mteb = store.query(ResultFilter(benchmark="mteb"))
        assert [r.job_id for r in mteb] == ["job-0", "job-2", "job-4"]

        latest = store.query(ResultFilter(limit=2))
        assert [r.job_id for r in latest] == ["job-3", "job-4"]

        assert store.query(ResultFilter(limit=0)) == []


class TestJsonlResultStore:
    """Test the durable JSON-lines store."""

    def test_results_survive_reopen(self, tmp_path):
        """Test that results are read back by a new store instance."""
        path = tmp_path / "results" / "runs.jsonl"
        store = JsonlResultStore(path)
        store.append(make_result(job_id="job-1", metrics={"main_score": 0.5}))
        store.append(make_result(job_id="job-2", status=RunStatus.CANCELLED))

        reopened = JsonlResultStore(path)

        assert [r.job_id for r in reopened.query()] == ["job-1", "job-2"]
        assert reopened.get("job-1").metrics == {"main_score": 0.5}
        with pytest.raises(DuplicateResultError):
            reopened.append(make_result(job_id="job-2"))

    def test_one_line_per_result(self, tmp_path):
        """Test the file layout."""
        path = tmp_path / "runs.jsonl"
        store = JsonlResultStore(path)
        store.append(make_result(job_id="job-1"))
        store.append(make_result(job_id="job-2"))

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["job_id"] == "job-2"

    def test_corrupt_lines_skipped(self, tmp_path):
        """Test that unreadable lines do not hide the valid ones."""
        path = tmp_path / "runs.jsonl"
        path.write_text(
            make_result(job_id="job-1").to_json() + "\n"
            + "{truncated\n"
            + "\n"
            + json.dumps({"job_id": "job-x"}) + "\n"
            + make_result(job_id="job-2").to_json() + "\n"
        )

        store = JsonlResultStore(path)

        assert [r.job_id for r in store.query()] == ["job-1", "job-2"]


class TestDataFrame:
    """Test the tabular export."""

    def test_to_dataframe(self):
        """Test flattening results with their numeric metrics."""
        results = [
            make_result(job_id="job-1", metrics={"main_score": 0.7, "label": "x", "flag": True}),
            make_result(job_id="job-2", status=RunStatus.FAILURE,
                        error={"type": "BenchmarkError", "message": "boom"}),
        ]

        df = to_dataframe(results)

        assert list(df["job_id"]) == ["job-1", "job-2"]
        assert df.loc[0, "metric.main_score"] == 0.7
        assert "metric.label" not in df.columns
        assert "metric.flag" not in df.columns
        assert df.loc[1, "error"] == "boom"
        assert df.loc[0, "duration_seconds"] == 60.0

    def test_empty_dataframe(self):
        """Test that an empty result list still has the base columns."""
        df = to_dataframe([])

        assert df.empty
        assert "benchmark" in df.columns
