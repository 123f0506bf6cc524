"""Compare an aggregate metric against a threshold rule."""

import operator
from datetime import datetime, timezone
from typing import Callable, Optional

from perfgate.models import (
    OUTCOME_FAIL,
    OUTCOME_PASS,
    AggregateMetrics,
    GateDecision,
    ThresholdRule,
    UnknownMetricError,
)


class GateConfigurationError(Exception):
    """Base class for evaluation failures that are not threshold breaches."""


class RuleValidationError(GateConfigurationError):
    """Raised when a threshold rule is malformed."""


class MetricNotFoundError(GateConfigurationError, UnknownMetricError):
    """Raised when a rule names a metric that does not exist."""


class MetricUnavailableError(GateConfigurationError):
    """Raised when the metric exists but has no value in the snapshot."""


OPERATORS = {
    "below": operator.lt,
    "above": operator.gt,
    "equal": operator.eq,
}

OPERATOR_SYMBOLS = {
    "below": "<",
    "above": ">",
    "equal": "==",
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def build_rule(raw: dict) -> ThresholdRule:
    """Build a ThresholdRule from a configuration mapping.

    Raises:
        RuleValidationError: If a field is missing or has the wrong type.
    """
    if not isinstance(raw, dict):
        raise RuleValidationError("threshold rule must be a mapping")

    metric = raw.get("metric")
    op = raw.get("operator")
    value = raw.get("value")
    window = raw.get("window_seconds")

    if not metric or not isinstance(metric, str):
        raise RuleValidationError("'metric' is required and must be a non-empty string")
    if op not in OPERATORS:
        raise RuleValidationError(
            f"unknown operator: {op!r} (expected one of: {', '.join(OPERATORS)})"
        )
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RuleValidationError("'value' is required and must be a number")
    if window is not None and (isinstance(window, bool) or not isinstance(window, int) or window <= 0):
        raise RuleValidationError("'window_seconds' must be a positive integer")

    return ThresholdRule(metric=metric, operator=op, value=float(value), window_seconds=window)


def evaluate(
    metrics: AggregateMetrics,
    rule: ThresholdRule,
    clock: Optional[Callable[[], datetime]] = None,
) -> GateDecision:
    """Evaluate one metric against a rule and produce a GateDecision.

    ``below`` and ``above`` are strict; ``equal`` is an exact match with no
    tolerance.

    Args:
        metrics: Aggregate metrics from a run or a queried window.
        rule: The threshold rule.
        clock: Returns the evaluation time; defaults to UTC now.

    Raises:
        RuleValidationError: If the rule's operator is unknown.
        MetricNotFoundError: If the rule's metric name is unknown.
        MetricUnavailableError: If the metric has no observed value.
    """
    compare = OPERATORS.get(rule.operator)
    if compare is None:
        raise RuleValidationError(f"unknown operator: {rule.operator!r}")

    try:
        observed = metrics.value(rule.metric)
    except UnknownMetricError as exc:
        raise MetricNotFoundError(str(exc)) from exc
    if observed is None:
        raise MetricUnavailableError(f"no observed value for metric {rule.metric!r}")

    passed = compare(observed, rule.value)
    return GateDecision(
        rule=rule,
        observed=float(observed),
        outcome=OUTCOME_PASS if passed else OUTCOME_FAIL,
        evaluated_at=format_ts((clock or utc_now)()),
    )


def describe(decision: GateDecision) -> str:
    """One-line human summary of a decision."""
    rule = decision.rule
    verdict = "PASSED" if decision.passed else "FAILED"
    return (
        f"{verdict}: {rule.metric} = {decision.observed:g} "
        f"(required {OPERATOR_SYMBOLS[rule.operator]} {rule.value:g})"
    )
