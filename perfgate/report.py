"""Render deterministic Markdown performance reports."""

import os
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from perfgate.evaluator import OPERATOR_SYMBOLS, format_ts, utc_now
from perfgate.models import (
    AggregateMetrics,
    GateDecision,
    LoadTestRun,
    PerformanceReport,
    TransactionSummary,
)

_METRIC_ROWS = [
    ("Requests", "requests", "{:d}"),
    ("Total bytes", "total_bytes", "{:d}"),
    ("Throughput (bytes/sec)", "throughput", "{:.2f}"),
    ("Requests/sec", "requests_per_sec", "{:.2f}"),
    ("Latency avg (ms)", "avg_duration", "{:.2f}"),
    ("Latency p50 (ms)", "latency_p50", "{:.2f}"),
    ("Latency p90 (ms)", "latency_p90", "{:.2f}"),
    ("Latency p95 (ms)", "latency_p95", "{:.2f}"),
    ("Latency p99 (ms)", "latency_p99", "{:.2f}"),
    ("Latency max (ms)", "max_duration", "{:.2f}"),
    ("Error rate (%)", "error_rate", "{:.2%}"),
]


def render(
    run: Optional[LoadTestRun],
    metrics: Optional[AggregateMetrics],
    decision: Optional[GateDecision],
    outcomes: Dict[str, str],
    clock: Optional[Callable[[], datetime]] = None,
    errors: Optional[Dict[str, str]] = None,
) -> str:
    """Render the per-run performance report.

    Output depends only on the arguments; with a fixed ``clock`` repeated
    calls are byte-identical.
    """
    lines = [
        "# Performance Report",
        "",
        f"Generated: {format_ts((clock or utc_now)())}",
        "",
    ]

    lines.append("## Load Test")
    lines.append("")
    if run is None:
        lines.append("No load test was run for this pipeline.")
    else:
        cfg = run.config
        lines.append(f"- Run: `{run.run_id}`")
        lines.append(f"- Target: {cfg.base_url}")
        lines.append(f"- Endpoints: {', '.join(cfg.endpoints)}")
        if cfg.mode == "saturation":
            lines.append(
                f"- Mode: saturation ({cfg.concurrency} connections, {cfg.duration_seconds:g}s)"
            )
        else:
            lines.append(f"- Mode: trickle ({cfg.requests} requests, {cfg.interval_ms:g}ms apart)")
        lines.append(f"- Duration: {run.duration_seconds:.2f}s")
        if run.cancelled:
            lines.append("- Cancelled before completion")
    lines.append("")

    if metrics is not None:
        lines.append("| Metric | Value |")
        lines.append("| --- | ---: |")
        for label, attr, fmt in _METRIC_ROWS:
            value = getattr(metrics, attr)
            if value is not None:
                lines.append(f"| {label} | {fmt.format(value)} |")
        lines.append("")

    lines.append("## Performance Gate")
    lines.append("")
    if decision is None:
        lines.append("ERROR: no gate decision was produced.")
        gate_error = (errors or {}).get("performance-gate")
        if gate_error:
            lines.append(f"Reason: {gate_error}")
    else:
        rule = decision.rule
        lines.append(f"- Metric: {rule.metric}")
        lines.append(f"- Operator: {rule.operator} ({OPERATOR_SYMBOLS[rule.operator]})")
        lines.append(f"- Threshold: {rule.value:g}")
        lines.append(f"- Observed: {decision.observed:.2f}")
        lines.append(f"- Evaluated: {decision.evaluated_at}")
        lines.append("")
        if decision.passed:
            lines.append("Result: PASSED - performance is within the threshold.")
        else:
            lines.append("Result: FAILED - performance threshold exceeded.")
    lines.append("")

    lines.append("## Stages")
    lines.append("")
    lines.append("| Stage | Outcome |")
    lines.append("| --- | --- |")
    for stage, outcome in outcomes.items():
        lines.append(f"| {stage} | {outcome} |")

    return "\n".join(lines) + "\n"


def top_transactions(
    transactions: Sequence[TransactionSummary],
    top_n: int = 10,
) -> List[TransactionSummary]:
    """Slowest transactions first; ties broken by name ascending."""
    ordered = sorted(transactions, key=lambda t: (-t.avg_duration, t.name))
    return ordered[:max(top_n, 0)]


def render_weekly(
    transactions: Sequence[TransactionSummary],
    decision: Optional[GateDecision] = None,
    top_n: int = 10,
    window_label: str = "last 7 days",
    clock: Optional[Callable[[], datetime]] = None,
) -> str:
    """Render the windowed report of the slowest transactions."""
    lines = [
        "# Weekly Performance Report",
        "",
        f"Generated: {format_ts((clock or utc_now)())}",
        f"Window: {window_label}",
        "",
    ]

    if decision is not None:
        rule = decision.rule
        verdict = "PASSED" if decision.passed else "FAILED"
        lines.append(
            f"Gate: {verdict} - {rule.metric} {decision.observed:.2f} "
            f"{rule.operator} {rule.value:g}"
        )
        lines.append("")

    rows = top_transactions(transactions, top_n)
    lines.append(f"## Top {len(rows)} transactions by average duration")
    lines.append("")
    if not rows:
        lines.append("No transactions recorded in this window.")
        return "\n".join(lines) + "\n"

    lines.append("| # | Transaction | Avg duration (ms) | Count |")
    lines.append("| ---: | --- | ---: | ---: |")
    for i, row in enumerate(rows, start=1):
        count = "-" if row.count is None else str(row.count)
        lines.append(f"| {i} | {row.name} | {row.avg_duration:.2f} | {count} |")
    return "\n".join(lines) + "\n"


def build_report(result, clock: Optional[Callable[[], datetime]] = None) -> PerformanceReport:
    """Assemble a PerformanceReport from a PipelineResult."""
    text = render(
        result.run,
        result.metrics,
        result.decision,
        result.outcomes,
        clock=clock,
        errors=result.errors,
    )
    return PerformanceReport(
        run_id=result.run.run_id if result.run else None,
        metrics=result.metrics,
        decision=result.decision,
        outcomes=dict(result.outcomes),
        text=text,
    )


def write_report(text: str, path: str) -> None:
    """Write a report artifact once; an existing file is never overwritten.

    Raises:
        FileExistsError: If ``path`` already exists.
    """
    parent = os.path.dirname(path)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)
    with open(path, "x") as f:
        f.write(text)
