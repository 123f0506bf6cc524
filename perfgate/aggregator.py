"""Aggregate request samples into metrics, and parse externally sourced metrics."""

import json
import math
import os
from fractions import Fraction
from typing import Iterable, List, Optional, Sequence

from perfgate.models import (
    METRIC_ALIASES,
    AggregateMetrics,
    LoadTestRun,
    RequestSample,
    TransactionSummary,
    UnknownMetricError,
)


class MetricsParseError(Exception):
    """Raised when stored or queried metrics cannot be parsed."""


def percentile(latencies: Sequence[float], p: float) -> Optional[float]:
    """Nearest-rank percentile of a latency sequence.

    The value at rank ``ceil(p/100 * count) - 1`` of the ascending sort,
    clamped to ``[0, count-1]``. Small samples return the maximum for high
    percentiles.
    """
    if not 0 < p <= 100:
        raise ValueError(f"percentile must be in (0, 100], got {p}")
    if not latencies:
        return None
    ordered = sorted(latencies)
    rank = math.ceil(Fraction(str(p)) * len(ordered) / 100) - 1
    rank = min(max(rank, 0), len(ordered) - 1)
    return ordered[rank]


def aggregate(
    samples: Iterable[RequestSample],
    duration_seconds: Optional[float] = None,
) -> AggregateMetrics:
    """Compute aggregate metrics over a sample set.

    The result depends only on the multiset of samples, not their order.

    Args:
        samples: Request samples from one run or window.
        duration_seconds: Wall-clock duration used for throughput. Defaults
            to the span from the earliest dispatch to the latest completion.

    Returns:
        An AggregateMetrics. Latency fields and error_rate are None when
        there are no samples.
    """
    samples = list(samples)
    count = len(samples)
    total_bytes = sum(s.bytes for s in samples)
    errors = sum(1 for s in samples if s.is_error)

    if duration_seconds is None:
        duration_seconds = _sample_span(samples)

    if duration_seconds > 0:
        throughput = total_bytes / duration_seconds
        rps = count / duration_seconds
    else:
        throughput = 0.0
        rps = 0.0

    if not count:
        return AggregateMetrics(
            requests=0,
            total_bytes=0,
            throughput=throughput,
            requests_per_sec=rps,
            errors=0,
        )

    latencies = [s.latency_ms for s in samples]
    return AggregateMetrics(
        requests=count,
        total_bytes=total_bytes,
        throughput=throughput,
        requests_per_sec=rps,
        avg_duration=math.fsum(latencies) / count,
        latency_p50=percentile(latencies, 50),
        latency_p90=percentile(latencies, 90),
        latency_p95=percentile(latencies, 95),
        latency_p99=percentile(latencies, 99),
        max_duration=max(latencies),
        error_rate=errors / count,
        errors=errors,
    )


def aggregate_run(run: LoadTestRun) -> AggregateMetrics:
    """Aggregate a sealed run over its own wall-clock duration."""
    return aggregate(run.samples, run.duration_seconds)


def parse_query_response(metric: str, payload) -> AggregateMetrics:
    """Place a Metrics Query Service scalar into the named metric's slot.

    Accepts ``{"value": x}`` or a bare number. No further statistics are
    computed on this path.

    Raises:
        UnknownMetricError: If ``metric`` is not a known metric name.
        MetricsParseError: If the payload has no numeric scalar.
    """
    attr = METRIC_ALIASES.get(metric)
    if attr is None:
        raise UnknownMetricError(f"unknown metric: {metric!r}")

    raw = payload.get("value") if isinstance(payload, dict) else payload
    return AggregateMetrics(**{attr: _coerce(attr, _to_number(raw, metric))})


def parse_facets(payload) -> List[TransactionSummary]:
    """Parse a faceted query response into TransactionSummary rows.

    Expects ``{"facets": [{"facet": name, "value": avg, "count": n}, ...]}``.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("facets"), list):
        raise MetricsParseError("faceted response must be an object with a 'facets' list")

    rows = []
    for i, item in enumerate(payload["facets"]):
        if not isinstance(item, dict):
            raise MetricsParseError(f"facets[{i}] must be an object")
        name = item.get("facet")
        if not name or not isinstance(name, str):
            raise MetricsParseError(f"facets[{i}].facet must be a non-empty string")
        count = item.get("count")
        rows.append(TransactionSummary(
            name=name,
            avg_duration=_to_number(item.get("value"), f"facets[{i}].value"),
            count=int(count) if isinstance(count, (int, float)) else None,
        ))
    return rows


def load_metrics(path: str) -> AggregateMetrics:
    """Load a stored AggregateMetrics snapshot from a JSON file.

    Unknown keys are ignored; known keys must be numeric or null.

    Raises:
        MetricsParseError: If the file cannot be read or parsed.
    """
    if not os.path.isfile(path):
        raise MetricsParseError(f"metrics file not found: {path}")
    if os.path.splitext(path)[1].lower() != ".json":
        raise MetricsParseError(f"unsupported metrics format: {path} (expected .json)")

    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except json.JSONDecodeError as exc:
        raise MetricsParseError(f"failed to parse JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise MetricsParseError("metrics JSON must be an object at top level")

    kwargs = {}
    for key, val in raw.items():
        attr = METRIC_ALIASES.get(key)
        if attr is None or val is None:
            continue
        kwargs[attr] = _coerce(attr, _to_number(val, key))
    return AggregateMetrics(**kwargs)


def metrics_to_dict(metrics: AggregateMetrics) -> dict:
    return {
        "requests": metrics.requests,
        "total_bytes": metrics.total_bytes,
        "throughput": metrics.throughput,
        "requests_per_sec": metrics.requests_per_sec,
        "avg_duration": metrics.avg_duration,
        "latency_p50": metrics.latency_p50,
        "latency_p90": metrics.latency_p90,
        "latency_p95": metrics.latency_p95,
        "latency_p99": metrics.latency_p99,
        "max_duration": metrics.max_duration,
        "error_rate": metrics.error_rate,
        "errors": metrics.errors,
    }


# -- internal helpers ---------------------------------------------------------


def _sample_span(samples: List[RequestSample]) -> float:
    if not samples:
        return 0.0
    first = min(s.issued_at for s in samples)
    last = max(s.issued_at + s.latency_ms / 1000.0 for s in samples)
    return last - first


_INTEGER_METRICS = ("requests", "total_bytes", "errors")


def _coerce(attr: str, value: float):
    return int(value) if attr in _INTEGER_METRICS else value


def _to_number(raw, label: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise MetricsParseError(f"non-numeric value for {label}: {raw!r}")
    if math.isnan(raw) or math.isinf(raw):
        raise MetricsParseError(f"non-finite value for {label}: {raw!r}")
    return float(raw)
