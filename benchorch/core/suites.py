"""Supported benchmark suites.

Each suite is a closed variant with its own capability tag, parameter
contract and attempt timeout. The scheduler resolves a job's suite at
dispatch time and asks the registry for a worker advertising that
capability.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import JobRejected


class BenchmarkSuite(str, Enum):
    """Benchmark suites the orchestrator can dispatch."""
    MTEB = "mteb"
    LM_EVAL = "lm-eval"
    HELLASWAG = "hellaswag"
    HUMANEVAL = "humaneval"


@dataclass(frozen=True)
class SuiteSpec:
    """Dispatch contract for one benchmark suite."""
    suite: BenchmarkSuite
    description: str
    required_parameters: Tuple[str, ...] = ()
    default_parameters: Mapping[str, Any] = field(default_factory=dict)
    # Per-attempt timeout in seconds, None means unbounded
    attempt_timeout: Optional[float] = None

    @property
    def capability(self) -> str:
        return self.suite.value

    @property
    def requirements(self) -> FrozenSet[str]:
        return frozenset({self.capability})

    def prepare(self, parameters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Validate parameters and fill in suite defaults."""
        prepared = dict(self.default_parameters)
        prepared.update(parameters or {})

        missing = [name for name in self.required_parameters if prepared.get(name) in (None, "")]
        if missing:
            raise JobRejected(
                f"Suite '{self.capability}' requires parameter(s): {', '.join(missing)}"
            )
        return prepared


SUITES: Dict[BenchmarkSuite, SuiteSpec] = {
    BenchmarkSuite.MTEB: SuiteSpec(
        suite=BenchmarkSuite.MTEB,
        description="Massive Text Embedding Benchmark",
        default_parameters={"tasks": ["STSBenchmark"], "batch_size": 32},
        attempt_timeout=6 * 3600,
    ),
    BenchmarkSuite.LM_EVAL: SuiteSpec(
        suite=BenchmarkSuite.LM_EVAL,
        description="EleutherAI language model evaluation harness",
        required_parameters=("tasks",),
        default_parameters={"num_fewshot": 0, "batch_size": 1},
        attempt_timeout=12 * 3600,
    ),
    BenchmarkSuite.HELLASWAG: SuiteSpec(
        suite=BenchmarkSuite.HELLASWAG,
        description="HellaSwag commonsense sentence completion",
        default_parameters={"split": "validation", "limit": None},
        attempt_timeout=3 * 3600,
    ),
    BenchmarkSuite.HUMANEVAL: SuiteSpec(
        suite=BenchmarkSuite.HUMANEVAL,
        description="HumanEval code generation with pass@k",
        default_parameters={"k": [1], "temperature": 0.0, "timeout_per_sample": 10.0},
        attempt_timeout=3 * 3600,
    ),
}


def resolve_suite(name: str) -> SuiteSpec:
    """Resolve a suite name to its dispatch spec."""
    try:
        suite = BenchmarkSuite(name)
    except ValueError:
        known = ", ".join(s.value for s in BenchmarkSuite)
        raise JobRejected(f"Unknown benchmark suite '{name}' (known: {known})") from None
    return SUITES[suite]


def all_capabilities() -> FrozenSet[str]:
    """Capability tags for every supported suite."""
    return frozenset(s.value for s in BenchmarkSuite)
