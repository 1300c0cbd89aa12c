"""
work_config.loader -- YAML loading and parsing into settings dataclasses.

Responsibility:
    Read the packaged ``defaults.yaml`` and an optional override file,
    deep-merge them, and parse the result into ``WorkflowSettings``.

Architecture position:
    Configuration -- build/load time only.  Callers go through
    ``work_config.get_active_config()``.

Failure modes:
    * Missing override file -> ``FileNotFoundError``.
    * Malformed YAML        -> ``yaml.YAMLError`` propagates.
    * Bad values            -> ``ValueError`` from the dataclass checks.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from work_config.schema import (
    DatabaseSettings,
    LifecycleSettings,
    LoggingSettings,
    WorkflowSettings,
)
from work_kernel.domain.approval import ChainPolicy

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dict merge; override wins, neither input is mutated."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{name}: '{value}' is not a number") from exc


def parse_chain_policy(data: dict[str, Any]) -> ChainPolicy:
    approvers = data.get("approvers", {})
    timeouts = data.get("timeouts", {})
    return ChainPolicy(
        review_approvers=tuple(approvers.get("reviewers", ())),
        operations_lead_id=approvers.get("operations_lead", ""),
        finance_approver_id=approvers.get("finance", ""),
        finance_threshold=parse_decimal(
            data.get("finance_threshold", "10000"), "approval.finance_threshold",
        ),
        standard_timeout_hours=int(timeouts.get("standard", 24)),
        elevated_timeout_hours=int(timeouts.get("elevated", 24)),
        executive_timeout_hours=int(timeouts.get("executive", 48)),
        emergency_timeout_hours=int(timeouts.get("emergency", 2)),
        default_estimated_approval_hours=int(
            data.get("default_estimated_approval_hours", 24)
        ),
    )


def parse_lifecycle(data: dict[str, Any]) -> LifecycleSettings:
    return LifecycleSettings(
        bulk_max_workers=int(data.get("bulk_max_workers", 8)),
        compensation_max_attempts=int(data.get("compensation_max_attempts", 3)),
        compensation_backoff_seconds=float(data.get("compensation_backoff_seconds", 0.05)),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_settings(data: dict[str, Any]) -> WorkflowSettings:
    database = data.get("database", {})
    logging_section = data.get("logging", {})
    return WorkflowSettings(
        approval=parse_chain_policy(data.get("approval", {})),
        lifecycle=parse_lifecycle(data.get("lifecycle", {})),
        database=DatabaseSettings(
            url=database.get("url", "sqlite:///work_requests.db"),
            echo=bool(database.get("echo", False)),
        ),
        logging=LoggingSettings(level=str(logging_section.get("level", "INFO"))),
        checksum=compute_checksum(data),
    )


def load_settings(path: Path | None = None) -> WorkflowSettings:
    """Packaged defaults, overlaid with ``path`` when given."""
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = merge(data, load_yaml_file(Path(path)))
    return parse_settings(data)
