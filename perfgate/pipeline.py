"""Dependency-ordered stage execution with guarded edges.

The topology is plain data: a tuple of PipelineStage records, each naming its
upstream dependencies and an optional guard predicate. One generic executor
walks the stages in dependency order, evaluates each guard once against the
RunContext, and records exactly one outcome per stage.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from perfgate import driver
from perfgate.aggregator import aggregate_run, parse_query_response
from perfgate.evaluator import describe, evaluate, format_ts, utc_now
from perfgate.markers import append_marker, create_marker
from perfgate.models import (
    RAN_FAILED,
    RAN_OK,
    SKIPPED,
    AggregateMetrics,
    DeploymentMarker,
    GateDecision,
    LoadTestRun,
    PipelineConfig,
    PipelineStage,
)

logger = logging.getLogger(__name__)

GATE_STAGE = "performance-gate"
STAGING_STAGE = "deploy-staging"
PRODUCTION_STAGE = "deploy-production"
NOTIFY_STAGE = "notify-performance-issue"

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"


class PipelineConfigurationError(Exception):
    """Raised when a stage graph is not a valid DAG."""


class StateConflictError(Exception):
    """Raised when a run tries to record a second outcome or decision."""


class RunContext:
    """Per-run state threaded through every stage invocation."""

    def __init__(
        self,
        revision: str,
        actor: str,
        clock: Optional[Callable[[], datetime]] = None,
        marker_log: Optional[str] = None,
    ):
        self.revision = revision
        self.actor = actor
        self.clock = clock or utc_now
        self.marker_log = marker_log
        self.outcomes: Dict[str, str] = {}
        self.errors: Dict[str, str] = {}
        self.markers: List[DeploymentMarker] = []
        self.decision: Optional[GateDecision] = None
        self.run: Optional[LoadTestRun] = None
        self.metrics: Optional[AggregateMetrics] = None

    def outcome(self, stage: str) -> Optional[str]:
        return self.outcomes.get(stage)

    def set_outcome(self, stage: str, outcome: str) -> None:
        if stage in self.outcomes:
            raise StateConflictError(
                f"stage {stage!r} already has outcome {self.outcomes[stage]!r}"
            )
        self.outcomes[stage] = outcome

    def set_decision(self, decision: GateDecision) -> None:
        if self.decision is not None:
            raise StateConflictError("gate decision already recorded for this run")
        self.decision = decision

    def record_run(self, run: Optional[LoadTestRun], metrics: AggregateMetrics) -> None:
        self.run = run
        self.metrics = metrics

    def emit_marker(self, environment: str) -> DeploymentMarker:
        marker = create_marker(
            revision=self.revision,
            actor=self.actor,
            environment=environment,
            timestamp=format_ts(self.clock()),
        )
        if self.marker_log:
            append_marker(marker, self.marker_log)
        self.markers.append(marker)
        logger.info("deployment marker: %s at %s", marker.description, marker.revision)
        return marker


@dataclass
class PipelineResult:
    outcomes: Dict[str, str]
    decision: Optional[GateDecision]
    markers: List[DeploymentMarker] = field(default_factory=list)
    run: Optional[LoadTestRun] = None
    metrics: Optional[AggregateMetrics] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        """``failed`` iff a stage hit a real execution error; skips are normal."""
        if any(o == RAN_FAILED for o in self.outcomes.values()):
            return STATUS_FAILED
        return STATUS_PASSED


# -- guards -------------------------------------------------------------------


def gate_passed_and_staging_ok(ctx: RunContext) -> bool:
    return (
        ctx.decision is not None
        and ctx.decision.passed
        and ctx.outcome(STAGING_STAGE) == RAN_OK
    )


def gate_failed(ctx: RunContext) -> bool:
    return ctx.decision is not None and not ctx.decision.passed


# Staging is informational and deliberately unguarded: it runs whatever the
# gate decided, so it can coexist with the notification branch.
REFERENCE_STAGES = (
    PipelineStage(name=GATE_STAGE, kind="gate"),
    PipelineStage(
        name=STAGING_STAGE,
        kind="deploy",
        depends_on=(GATE_STAGE,),
        environment="staging",
    ),
    PipelineStage(
        name=PRODUCTION_STAGE,
        kind="deploy",
        depends_on=(GATE_STAGE, STAGING_STAGE),
        guard=gate_passed_and_staging_ok,
        environment="production",
    ),
    PipelineStage(
        name=NOTIFY_STAGE,
        kind="notify",
        depends_on=(GATE_STAGE,),
        guard=gate_failed,
    ),
)


# -- executor -----------------------------------------------------------------


def order_stages(stages: Sequence[PipelineStage]) -> List[PipelineStage]:
    """Return stages in dependency order, keeping declaration order among peers.

    Raises:
        PipelineConfigurationError: On duplicate names, unknown dependencies,
            or cycles.
    """
    by_name: Dict[str, PipelineStage] = {}
    for stage in stages:
        if stage.name in by_name:
            raise PipelineConfigurationError(f"duplicate stage name: {stage.name!r}")
        by_name[stage.name] = stage

    for stage in stages:
        for dep in stage.depends_on:
            if dep not in by_name:
                raise PipelineConfigurationError(
                    f"stage {stage.name!r} depends on unknown stage {dep!r}"
                )

    ordered: List[PipelineStage] = []
    placed = set()
    pending = list(stages)
    while pending:
        ready = [s for s in pending if all(d in placed for d in s.depends_on)]
        if not ready:
            names = ", ".join(s.name for s in pending)
            raise PipelineConfigurationError(f"dependency cycle among stages: {names}")
        stage = ready[0]
        ordered.append(stage)
        placed.add(stage.name)
        pending.remove(stage)
    return ordered


def execute(
    stages: Sequence[PipelineStage],
    handlers: Dict[str, Callable],
    ctx: RunContext,
) -> PipelineResult:
    """Run every stage once in dependency order and collect outcomes.

    Args:
        stages: The stage graph.
        handlers: Maps a stage kind to ``handler(ctx, stage)``. The ``gate``
            handler returns the GateDecision; others return nothing. Any
            exception marks the stage ``ran-failed``.
        ctx: Per-run context.

    Returns:
        A PipelineResult.
    """
    ordered = order_stages(stages)
    for stage in ordered:
        if stage.kind not in handlers:
            raise PipelineConfigurationError(
                f"no handler for stage kind {stage.kind!r} ({stage.name})"
            )

    for stage in ordered:
        unsettled = [d for d in stage.depends_on if ctx.outcome(d) is None]
        if unsettled:
            raise PipelineConfigurationError(
                f"stage {stage.name!r} reached before {', '.join(unsettled)} settled"
            )

        if stage.guard is not None and not stage.guard(ctx):
            logger.info("stage %s skipped by guard", stage.name)
            ctx.set_outcome(stage.name, SKIPPED)
            continue

        logger.info("running stage %s", stage.name)
        ctx.set_outcome(stage.name, _run_stage(stage, handlers[stage.kind], ctx))

    return PipelineResult(
        outcomes=dict(ctx.outcomes),
        decision=ctx.decision,
        markers=list(ctx.markers),
        run=ctx.run,
        metrics=ctx.metrics,
        errors=dict(ctx.errors),
    )


def _run_stage(stage: PipelineStage, handler: Callable, ctx: RunContext) -> str:
    try:
        result = handler(ctx, stage)
        if stage.kind == "gate":
            if not isinstance(result, GateDecision):
                raise TypeError(f"gate handler returned {type(result).__name__}, not GateDecision")
            ctx.set_decision(result)
        elif stage.kind == "deploy":
            # a deploy whose marker cannot be recorded counts as failed
            ctx.emit_marker(stage.environment or stage.name)
    except Exception as exc:
        logger.error("stage %s failed: %s", stage.name, exc)
        ctx.errors[stage.name] = f"{type(exc).__name__}: {exc}"
        return RAN_FAILED
    return RAN_OK


# -- handlers -----------------------------------------------------------------


def make_gate_handler(config: PipelineConfig, transport=None, query_client=None, cancel=None):
    """Build the performance-gate handler for a pipeline configuration.

    A rule with ``window_seconds`` and a query client evaluates a queried
    window; otherwise a fresh load test is run, aggregated, and evaluated.
    """
    rule = config.rule

    def handler(ctx: RunContext, stage: PipelineStage) -> GateDecision:
        if rule.window_seconds and query_client is not None:
            payload = query_client.query(rule.metric, config.driver.base_url, rule.window_seconds)
            ctx.record_run(None, parse_query_response(rule.metric, payload))
        else:
            run = driver.run(config.driver, transport=transport, cancel=cancel)
            ctx.record_run(run, aggregate_run(run))
        decision = evaluate(ctx.metrics, rule, clock=ctx.clock)
        logger.info("gate %s", describe(decision))
        return decision

    return handler


def log_deploy(ctx: RunContext, stage: PipelineStage) -> None:
    logger.info("deploying %s to %s", ctx.revision or "(unknown revision)", stage.environment)


def log_notification(ctx: RunContext, stage: PipelineStage) -> None:
    logger.warning("performance issue detected: %s", describe(ctx.decision))


def run_pipeline(
    config: PipelineConfig,
    transport=None,
    query_client=None,
    handlers: Optional[Dict[str, Callable]] = None,
    clock: Optional[Callable[[], datetime]] = None,
    marker_log: Optional[str] = None,
    cancel=None,
) -> PipelineResult:
    """Run the reference topology for one revision.

    ``handlers`` overrides the default handler for any stage kind.
    """
    ctx = RunContext(
        revision=config.revision,
        actor=config.actor,
        clock=clock,
        marker_log=marker_log,
    )
    table = {
        "gate": make_gate_handler(config, transport, query_client, cancel),
        "deploy": log_deploy,
        "notify": log_notification,
    }
    table.update(handlers or {})
    return execute(REFERENCE_STAGES, table, ctx)
