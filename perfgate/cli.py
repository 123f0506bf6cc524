"""CLI entry point for the performance-gated deployment pipeline."""

import json
import logging
import os
import sys

import click

from perfgate import driver
from perfgate.aggregator import (
    MetricsParseError,
    aggregate_run,
    load_metrics,
    metrics_to_dict,
    parse_facets,
    parse_query_response,
)
from perfgate.evaluator import GateConfigurationError, build_rule, describe, evaluate
from perfgate.loader import ConfigValidationError, load_config
from perfgate.markers import read_markers
from perfgate.models import MODE_TRICKLE, DriverConfig, UnknownMetricError
from perfgate.pipeline import STATUS_FAILED, run_pipeline
from perfgate.query import MetricsQueryClient, QueryError
from perfgate.report import build_report, render_weekly, write_report

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(EXIT_CONFIG_ERROR)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose):
    """Performance gate -- benchmark a service and gate deployments on the result."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


@main.command("load-test")
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a pipeline config file (YAML or JSON).",
)
@click.option(
    "--json-out",
    default=None,
    type=click.Path(),
    help="Optional path to write the aggregate metrics as JSON.",
)
def load_test(config_path, json_out):
    """Run the configured load test and check it against the threshold."""
    try:
        config = load_config(config_path)
        run = driver.run(config.driver)
    except (ConfigValidationError, driver.DriverConfigError) as exc:
        _fail(str(exc))

    metrics = aggregate_run(run)
    click.echo("Load test complete")
    click.echo("Results:")
    click.echo(f"- Requests: {metrics.requests}")
    click.echo(f"- Throughput: {metrics.throughput:.2f} bytes/sec")
    if metrics.requests:
        click.echo(f"- Latency (avg): {metrics.avg_duration:.2f} ms")
        click.echo(f"- Latency (p99): {metrics.latency_p99:.2f} ms")
        click.echo(f"- Error rate: {metrics.error_rate:.2%}")

    if json_out:
        with open(json_out, "w") as f:
            f.write(json.dumps(metrics_to_dict(metrics), indent=2) + "\n")

    try:
        decision = evaluate(metrics, config.rule)
    except GateConfigurationError as exc:
        _fail(str(exc))

    click.echo(describe(decision))
    if not decision.passed:
        click.echo("Performance threshold exceeded!", err=True)
        sys.exit(EXIT_FAILED)


@main.command()
@click.option("--base-url", default="http://localhost:3000", show_default=True)
@click.option(
    "--endpoint",
    "endpoints",
    multiple=True,
    default=("/", "/fast", "/slow", "/error"),
    show_default=True,
    help="Endpoint path; repeat for several.",
)
@click.option("--requests", "count", default=20, show_default=True, type=int)
@click.option("--interval-ms", default=500.0, show_default=True, type=float)
def traffic(base_url, endpoints, count, interval_ms):
    """Generate low-rate background traffic, one request at a time."""
    config = DriverConfig(
        base_url=base_url,
        endpoints=tuple(endpoints),
        mode=MODE_TRICKLE,
        requests=count,
        interval_ms=interval_ms,
    )
    try:
        run = driver.run(config)
    except driver.DriverConfigError as exc:
        _fail(str(exc))

    for sample in run.samples:
        if sample.failure:
            click.echo(f"{sample.path}: Error: {sample.failure}")
        else:
            click.echo(f"{sample.path}: Status: {sample.status}")
    click.echo(f"Sent {len(run.samples)} requests to {base_url}")


@main.command()
@click.option(
    "--metrics",
    "metrics_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a stored metrics snapshot (JSON).",
)
@click.option("--metric", required=True, help="Metric name, e.g. avg_duration.")
@click.option(
    "--operator",
    required=True,
    type=click.Choice(["below", "above", "equal"]),
)
@click.option("--value", required=True, type=float, help="Threshold value.")
def gate(metrics_path, metric, operator, value):
    """Evaluate a stored metrics snapshot against one threshold rule."""
    try:
        metrics = load_metrics(metrics_path)
        decision = evaluate(
            metrics,
            build_rule({"metric": metric, "operator": operator, "value": value}),
        )
    except (MetricsParseError, GateConfigurationError) as exc:
        _fail(str(exc))

    click.echo(describe(decision))
    output = {
        "metric": metric,
        "operator": operator,
        "threshold": value,
        "observed": decision.observed,
        "outcome": decision.outcome,
        "evaluated_at": decision.evaluated_at,
    }
    click.echo(json.dumps(output, indent=2))
    if not decision.passed:
        sys.exit(EXIT_FAILED)


@main.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a pipeline config file (YAML or JSON).",
)
@click.option("--revision", envvar="GITHUB_SHA", default=None, help="Revision being deployed.")
@click.option("--actor", envvar="GITHUB_ACTOR", default=None, help="Who triggered the run.")
@click.option(
    "--report",
    "report_path",
    default=None,
    type=click.Path(),
    help="Optional path for the Markdown report. Must not already exist.",
)
@click.option(
    "--markers",
    "marker_log",
    default=None,
    type=click.Path(),
    help="Optional JSONL log that deployment markers are appended to.",
)
@click.option(
    "--query-url",
    default=None,
    help="Metrics Query Service URL, used when the rule sets window_seconds.",
)
def pipeline(config_path, revision, actor, report_path, marker_log, query_url):
    """Run the gate, then the staging, production, and notification stages."""
    try:
        config = load_config(config_path)
    except ConfigValidationError as exc:
        _fail(str(exc))

    # refuse before any stage deploys
    if report_path and os.path.exists(report_path):
        _fail(f"report already exists: {report_path}")

    if revision:
        config.revision = revision
    if actor:
        config.actor = actor

    query_client = MetricsQueryClient(query_url) if query_url else None
    try:
        result = run_pipeline(config, query_client=query_client, marker_log=marker_log)
    finally:
        if query_client is not None:
            query_client.close()

    report = build_report(result)
    if report_path:
        try:
            write_report(report.text, report_path)
        except FileExistsError:
            _fail(f"report already exists: {report_path}")
        click.echo(f"Report written to {report_path}")
    else:
        click.echo(report.text)

    for stage, outcome in result.outcomes.items():
        click.echo(f"{stage}: {outcome}")
    for marker in result.markers:
        click.echo(f"marker: {marker.description} ({marker.revision})")
    click.echo(f"Pipeline {result.status}")

    if result.status == STATUS_FAILED:
        sys.exit(EXIT_FAILED)


@main.command("weekly-report")
@click.option("--query-url", required=True, help="Metrics Query Service URL.")
@click.option("--target", required=True, help="Target service identity.")
@click.option("--metric", default="avg_duration", show_default=True)
@click.option("--top", "top_n", default=10, show_default=True, type=int)
@click.option("--window-seconds", default=7 * 24 * 3600, show_default=True, type=int)
@click.option("--out", default=None, type=click.Path(), help="Optional output path.")
@click.option(
    "--threshold",
    default=None,
    type=float,
    help="Optional threshold; gates the window's overall value of --metric.",
)
@click.option(
    "--operator",
    default="below",
    show_default=True,
    type=click.Choice(["below", "above", "equal"]),
)
def weekly_report(query_url, target, metric, top_n, window_seconds, out, threshold, operator):
    """Report the slowest transactions over a window."""
    decision = None
    try:
        with MetricsQueryClient(query_url) as client:
            payload = client.query(metric, target, window_seconds, facet="name")
            transactions = parse_facets(payload)
            if threshold is not None:
                rule = build_rule({
                    "metric": metric,
                    "operator": operator,
                    "value": threshold,
                    "window_seconds": window_seconds,
                })
                overall = parse_query_response(metric, client.query(metric, target, window_seconds))
                decision = evaluate(overall, rule)
    except (QueryError, MetricsParseError, UnknownMetricError, GateConfigurationError) as exc:
        _fail(str(exc))

    label = "last 7 days" if window_seconds == 7 * 24 * 3600 else f"last {window_seconds}s"
    text = render_weekly(transactions, decision=decision, top_n=top_n, window_label=label)
    if out:
        try:
            write_report(text, out)
        except FileExistsError:
            _fail(f"report already exists: {out}")
        click.echo(f"Report written to {out}")
    else:
        click.echo(text)

    if decision is not None and not decision.passed:
        sys.exit(EXIT_FAILED)


@main.command("markers")
@click.option(
    "--log",
    "log_path",
    required=True,
    type=click.Path(),
    help="Path to the JSONL deployment marker log.",
)
@click.option("--environment", default=None, help="Only list markers for this environment.")
def list_markers(log_path, environment):
    """List recorded deployment markers, oldest first."""
    markers = read_markers(log_path, environment=environment)
    for marker in markers:
        click.echo(f"{marker.timestamp} {marker.environment} {marker.revision} ({marker.actor})")
    click.echo(f"{len(markers)} marker(s)")


@main.command("serve-target")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=3000, show_default=True, type=int)
@click.option("--slow-delay", default=2.0, show_default=True, type=float)
def serve_target(host, port, slow_delay):
    """Serve the demo target service."""
    import uvicorn

    from mock_service.app import create_app

    uvicorn.run(create_app(slow_delay=slow_delay), host=host, port=port)


if __name__ == "__main__":
    main()
