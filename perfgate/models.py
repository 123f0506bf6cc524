"""Data models for load test runs, gate decisions, and pipeline records."""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

MODE_TRICKLE = "trickle"
MODE_SATURATION = "saturation"

ORDER_RANDOM = "random"
ORDER_CYCLE = "cycle"

OUTCOME_PASS = "pass"
OUTCOME_FAIL = "fail"

SKIPPED = "skipped"
RAN_OK = "ran-ok"
RAN_FAILED = "ran-failed"


class UnknownMetricError(Exception):
    """Raised when a metric name does not exist in AggregateMetrics."""


@dataclass(frozen=True)
class RequestSample:
    path: str
    method: str
    issued_at: float  # epoch seconds at dispatch
    latency_ms: float
    status: Optional[int] = None
    failure: Optional[str] = None  # "connect-error", "timeout", "transport-error", "request-error"
    bytes: int = 0

    @property
    def is_error(self) -> bool:
        return self.failure is not None or self.status is None or self.status >= 400


@dataclass(frozen=True)
class DriverConfig:
    base_url: str
    endpoints: Tuple[str, ...]
    mode: str = MODE_SATURATION
    concurrency: int = 10
    duration_seconds: float = 30.0
    requests: int = 20
    interval_ms: float = 500.0
    timeout_seconds: float = 10.0
    order: str = ORDER_RANDOM
    method: str = "GET"
    seed: Optional[int] = None


@dataclass(frozen=True)
class LoadTestRun:
    run_id: str
    started_at: float
    ended_at: float
    config: DriverConfig
    samples: Tuple[RequestSample, ...] = ()
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float:
        return max(self.ended_at - self.started_at, 0.0)


# Names accepted by AggregateMetrics.value(), mapped to attribute names.
METRIC_ALIASES = {
    "requests": "requests",
    "count": "requests",
    "total_bytes": "total_bytes",
    "throughput": "throughput",
    "requests_per_sec": "requests_per_sec",
    "avg_duration": "avg_duration",
    "latency_avg": "avg_duration",
    "latency_p50": "latency_p50",
    "p50": "latency_p50",
    "latency_p90": "latency_p90",
    "p90": "latency_p90",
    "latency_p95": "latency_p95",
    "p95": "latency_p95",
    "latency_p99": "latency_p99",
    "p99": "latency_p99",
    "max_duration": "max_duration",
    "error_rate": "error_rate",
    "errors": "errors",
}


@dataclass
class AggregateMetrics:
    requests: Optional[int] = None
    total_bytes: Optional[int] = None
    throughput: Optional[float] = None  # bytes/sec
    requests_per_sec: Optional[float] = None
    avg_duration: Optional[float] = None  # ms
    latency_p50: Optional[float] = None
    latency_p90: Optional[float] = None
    latency_p95: Optional[float] = None
    latency_p99: Optional[float] = None
    max_duration: Optional[float] = None
    error_rate: Optional[float] = None  # fraction, 0..1
    errors: Optional[int] = None

    def value(self, name: str) -> Optional[float]:
        """Return the observed value for a metric name or alias.

        Raises:
            UnknownMetricError: If the name is not a known metric.
        """
        attr = METRIC_ALIASES.get(name)
        if attr is None:
            raise UnknownMetricError(
                f"unknown metric: {name!r} (known: {', '.join(sorted(METRIC_ALIASES))})"
            )
        return getattr(self, attr)


@dataclass(frozen=True)
class ThresholdRule:
    metric: str
    operator: str  # "below", "above", "equal"
    value: float
    window_seconds: Optional[int] = None  # None: the freshly run load test


@dataclass(frozen=True)
class GateDecision:
    rule: ThresholdRule
    observed: float
    outcome: str  # "pass", "fail"
    evaluated_at: str

    @property
    def passed(self) -> bool:
        return self.outcome == OUTCOME_PASS


@dataclass(frozen=True)
class PipelineStage:
    name: str
    kind: str  # "gate", "deploy", "notify"
    depends_on: Tuple[str, ...] = ()
    guard: Optional[Callable] = None
    environment: Optional[str] = None


@dataclass(frozen=True)
class DeploymentMarker:
    revision: str
    actor: str
    description: str
    timestamp: str
    environment: str


@dataclass(frozen=True)
class TransactionSummary:
    name: str
    avg_duration: float
    count: Optional[int] = None


@dataclass
class PipelineConfig:
    driver: DriverConfig
    rule: ThresholdRule
    revision: str = ""
    actor: str = ""


@dataclass
class PerformanceReport:
    run_id: Optional[str]
    metrics: Optional[AggregateMetrics]
    decision: Optional[GateDecision]
    outcomes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
