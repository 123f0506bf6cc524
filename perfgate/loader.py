"""Load and validate pipeline configuration files (YAML or JSON)."""

import json
import os
from typing import List

import yaml

from perfgate.evaluator import RuleValidationError, build_rule
from perfgate.models import (
    MODE_SATURATION,
    MODE_TRICKLE,
    ORDER_CYCLE,
    ORDER_RANDOM,
    DriverConfig,
    PipelineConfig,
    ThresholdRule,
)


class ConfigValidationError(Exception):
    """Raised when a pipeline configuration fails validation."""


def load_config(path: str) -> PipelineConfig:
    """Load a pipeline configuration from a YAML or JSON file.

    Args:
        path: Path to the configuration file.

    Returns:
        A validated PipelineConfig instance.

    Raises:
        ConfigValidationError: If the file is missing, unreadable, or invalid.
    """
    if not os.path.isfile(path):
        raise ConfigValidationError(f"config file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r") as f:
            if ext in (".yaml", ".yml"):
                raw = yaml.safe_load(f)
            elif ext == ".json":
                raw = json.load(f)
            else:
                raise ConfigValidationError(
                    f"unsupported file extension: {ext} (expected .yaml, .yml, or .json)"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigValidationError(f"failed to parse {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigValidationError("config must be a mapping/object at the top level")

    return build_config(raw)


def build_config(raw: dict) -> PipelineConfig:
    """Construct and validate a PipelineConfig from a raw dict."""
    errors: List[str] = []

    target = raw.get("target")
    if not isinstance(target, dict):
        errors.append("'target' is required and must be a mapping")
        target = {}
    load = raw.get("load", {})
    if not isinstance(load, dict):
        errors.append("'load' must be a mapping")
        load = {}

    driver = _parse_driver(target, load, errors)
    rule = _parse_rule(raw.get("threshold"), errors)

    deployment = raw.get("deployment", {})
    if not isinstance(deployment, dict):
        errors.append("'deployment' must be a mapping")
        deployment = {}

    if errors:
        raise ConfigValidationError(
            "config validation failed:\n  - " + "\n  - ".join(errors)
        )

    return PipelineConfig(
        driver=driver,
        rule=rule,
        revision=str(deployment.get("revision", "")),
        actor=str(deployment.get("actor", "")),
    )


def _parse_driver(target: dict, load: dict, errors: List[str]) -> DriverConfig:
    base_url = target.get("base_url")
    if not base_url or not isinstance(base_url, str):
        errors.append("'target.base_url' is required and must be a non-empty string")
        base_url = ""

    endpoints = target.get("endpoints")
    if not isinstance(endpoints, list) or not endpoints:
        errors.append("'target.endpoints' is required and must be a non-empty list")
        endpoints = []
    for i, path in enumerate(endpoints):
        if not isinstance(path, str) or not path.startswith("/"):
            errors.append(f"target.endpoints[{i}] must be a path starting with '/'")

    mode = load.get("mode", MODE_SATURATION)
    if mode not in (MODE_SATURATION, MODE_TRICKLE):
        errors.append(f"'load.mode' must be 'saturation' or 'trickle', got {mode!r}")
    order = load.get("order", ORDER_RANDOM)
    if order not in (ORDER_RANDOM, ORDER_CYCLE):
        errors.append(f"'load.order' must be 'random' or 'cycle', got {order!r}")

    seed = load.get("seed")
    if seed is not None and not isinstance(seed, int):
        errors.append("'load.seed' must be an integer")

    return DriverConfig(
        base_url=base_url,
        endpoints=tuple(endpoints),
        mode=mode,
        concurrency=int(_number(load, "concurrency", 10, errors, integer=True)),
        duration_seconds=float(_number(load, "duration_seconds", 30, errors)),
        requests=int(_number(load, "requests", 20, errors, integer=True)),
        interval_ms=float(_number(load, "interval_ms", 500, errors)),
        timeout_seconds=float(_number(load, "timeout_seconds", 10, errors)),
        order=order,
        method=str(load.get("method", "GET")).upper(),
        seed=seed,
    )


def _parse_rule(raw, errors: List[str]) -> ThresholdRule:
    if raw is None:
        errors.append("'threshold' is required")
        return None
    try:
        return build_rule(raw)
    except RuleValidationError as exc:
        errors.append(f"threshold: {exc}")
        return None


def _number(section: dict, key: str, default, errors: List[str], integer=False):
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"'load.{key}' must be a number")
        return default
    if integer and isinstance(value, float) and not value.is_integer():
        errors.append(f"'load.{key}' must be an integer, got {value!r}")
        return default
    if value <= 0 and key != "interval_ms":
        errors.append(f"'load.{key}' must be positive")
        return default
    if value < 0:
        errors.append(f"'load.{key}' must not be negative")
        return default
    return value
