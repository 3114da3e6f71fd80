"""Run results and their append-only store."""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import pandas as pd

from ..utils.logging import LoggerMixin


class RunStatus(str, Enum):
    """Terminal outcome of a job."""
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunResult:
    """Outcome of one benchmark job."""
    job_id: str
    benchmark: str
    model: str
    status: RunStatus
    started_at: float
    finished_at: float
    metrics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    attempts: int = 1
    worker_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        """Get run duration in seconds."""
        return max(0.0, self.finished_at - self.started_at)

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data['status'] = self.status.value
        return data

    def to_json(self) -> str:
        """Convert to a single-line JSON string."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunResult":
        """Rebuild a result from its serialized form."""
        return cls(
            job_id=data['job_id'],
            benchmark=data['benchmark'],
            model=data['model'],
            status=RunStatus(data['status']),
            started_at=float(data['started_at']),
            finished_at=float(data['finished_at']),
            metrics=data.get('metrics') or {},
            error=data.get('error'),
            attempts=int(data.get('attempts', 1)),
            worker_id=data.get('worker_id'),
            parameters=data.get('parameters') or {},
        )


@dataclass
class ResultFilter:
    """Query filter for stored results. Unset fields match everything."""
    job_id: Optional[str] = None
    benchmark: Optional[str] = None
    model: Optional[str] = None
    status: Optional[RunStatus] = None
    since: Optional[float] = None
    limit: Optional[int] = None

    def matches(self, result: RunResult) -> bool:
        if self.job_id is not None and result.job_id != self.job_id:
            return False
        if self.benchmark is not None and result.benchmark != self.benchmark:
            return False
        if self.model is not None and result.model != self.model:
            return False
        if self.status is not None and result.status != RunStatus(self.status):
            return False
        if self.since is not None and result.finished_at < self.since:
            return False
        return True


class DuplicateResultError(ValueError):
    """A result for this job has already been recorded."""


class ResultStore(LoggerMixin, ABC):
    """Append-only record of run outcomes."""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()

    def append(self, result: RunResult) -> None:
        """Persist a result. Each job may be recorded exactly once."""
        with self._lock:
            if self._contains(result.job_id):
                raise DuplicateResultError(f"Result for job {result.job_id} already recorded")
            self._write(result)
        self.logger.info(f"Recorded {result.status.value} result for job {result.job_id}")

    def query(self, result_filter: Optional[ResultFilter] = None) -> List[RunResult]:
        """Return stored results matching the filter, oldest first."""
        result_filter = result_filter or ResultFilter()
        with self._lock:
            matched = [r for r in self._read_all() if result_filter.matches(r)]
        if result_filter.limit is not None:
            matched = matched[-result_filter.limit:] if result_filter.limit > 0 else []
        return matched

    def get(self, job_id: str) -> Optional[RunResult]:
        results = self.query(ResultFilter(job_id=job_id))
        return results[0] if results else None

    @abstractmethod
    def _write(self, result: RunResult) -> None:
        pass

    @abstractmethod
    def _read_all(self) -> Iterable[RunResult]:
        pass

    @abstractmethod
    def _contains(self, job_id: str) -> bool:
        pass


class InMemoryResultStore(ResultStore):
    """Process-local result store."""

    def __init__(self):
        super().__init__()
        self._results: List[RunResult] = []
        self._job_ids = set()

    def _write(self, result: RunResult) -> None:
        self._results.append(result)
        self._job_ids.add(result.job_id)

    def _read_all(self) -> Iterable[RunResult]:
        return list(self._results)

    def _contains(self, job_id: str) -> bool:
        return job_id in self._job_ids


class JsonlResultStore(ResultStore):
    """Durable result store backed by an append-only JSON-lines file."""

    def __init__(self, file_path: Union[str, Path]):
        super().__init__()
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._job_ids = {r.job_id for r in self._read_all()}

    def _write(self, result: RunResult) -> None:
        with open(self.file_path, 'a', encoding='utf-8') as f:
            f.write(result.to_json() + "\n")
        self._job_ids.add(result.job_id)

    def _read_all(self) -> Iterable[RunResult]:
        if not self.file_path.exists():
            return []

        results = []
        with open(self.file_path, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(RunResult.from_dict(json.loads(line)))
                except (ValueError, KeyError) as e:
                    self.logger.warning(f"Skipping corrupt result at {self.file_path}:{line_no}: {e}")
        return results

    def _contains(self, job_id: str) -> bool:
        return job_id in self._job_ids


def to_dataframe(results: List[RunResult]) -> pd.DataFrame:
    """Flatten results into a DataFrame, one row per job.

    Numeric metrics are expanded into ``metric.<name>`` columns.
    """
    rows = []
    for result in results:
        row = {
            'job_id': result.job_id,
            'benchmark': result.benchmark,
            'model': result.model,
            'status': result.status.value,
            'attempts': result.attempts,
            'worker_id': result.worker_id,
            'duration_seconds': result.duration_seconds,
            'finished_at': pd.to_datetime(result.finished_at, unit='s'),
            'error': (result.error or {}).get('message'),
        }
        for name, value in result.metrics.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                row[f'metric.{name}'] = value
        rows.append(row)

    columns = ['job_id', 'benchmark', 'model', 'status', 'attempts', 'worker_id',
               'duration_seconds', 'finished_at', 'error']
    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame(rows)
