"""Deployment markers, kept in an append-only JSONL log.

One line per successful deploy stage. Consumers correlate these with
performance changes, so a row is only meaningful when it names both the
environment and the revision that reached it.
"""

import json
import os
from dataclasses import asdict
from typing import List, Optional

from perfgate.models import DeploymentMarker

DESCRIPTIONS = {
    "staging": "Deployment to staging",
    "production": "Deployment to production",
}


def describe_environment(environment: str) -> str:
    return DESCRIPTIONS.get(environment, f"Deployment to {environment}")


def create_marker(
    revision: str,
    actor: str,
    environment: str,
    timestamp: str,
) -> DeploymentMarker:
    """Build a DeploymentMarker with the fixed description for its environment.

    Args:
        revision: Code revision being deployed.
        actor: Who or what triggered the deployment.
        environment: Target environment name.
        timestamp: ISO-8601 UTC timestamp.
    """
    return DeploymentMarker(
        revision=revision,
        actor=actor,
        description=describe_environment(environment),
        timestamp=timestamp,
        environment=environment,
    )


def append_marker(marker: DeploymentMarker, log_path: str) -> None:
    """Append one marker to the log, creating the file and its directory.

    Raises:
        OSError: If the log cannot be opened for appending.
    """
    parent = os.path.dirname(log_path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    with open(log_path, "a") as f:
        f.write(json.dumps(asdict(marker), sort_keys=True) + "\n")


def read_markers(log_path: str, environment: Optional[str] = None) -> List[DeploymentMarker]:
    """Read markers from a JSONL log, oldest first.

    Malformed lines, and rows that do not name both an environment and a
    revision, are skipped. A missing description is filled in from the
    environment.

    Args:
        log_path: Path to the JSONL log. A missing file reads as empty.
        environment: Only return markers for this environment.
    """
    if not os.path.isfile(log_path):
        return []

    markers = []
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(raw, dict):
                continue

            env = raw.get("environment")
            revision = raw.get("revision")
            if not env or not revision:
                continue
            if environment is not None and env != environment:
                continue
            markers.append(DeploymentMarker(
                revision=str(revision),
                actor=str(raw.get("actor", "")),
                description=raw.get("description") or describe_environment(env),
                timestamp=str(raw.get("timestamp", "")),
                environment=str(env),
            ))
    return markers
