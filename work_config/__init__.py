"""
work_config -- single public entrypoint for workflow configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files directly.

Architecture position:
    Configuration.  Sits beside ``work_kernel`` and below
    ``work_services``.  The kernel and the engines never import from
    ``work_config``; the approval section is handed to them as a kernel
    ``ChainPolicy``.

Invariants enforced:
    - Deterministic loading: the same YAML content always produces the
      same ``WorkflowSettings.checksum``.
    - Validation at load time: invalid values raise ValueError here.

Failure modes:
    - ``FileNotFoundError`` -- override file does not exist.
    - ``ValueError`` -- a value fails validation.
    - ``yaml.YAMLError`` -- malformed YAML.
"""

from __future__ import annotations

import logging
from pathlib import Path

from work_config.loader import load_settings
from work_config.schema import (
    DatabaseSettings,
    LifecycleSettings,
    LoggingSettings,
    WorkflowSettings,
)

_logger = logging.getLogger("work_kernel.config")


def get_active_config(path: Path | str | None = None) -> WorkflowSettings:
    """The ONLY public configuration entrypoint.

    Args:
        path: Optional YAML file overlaid on the packaged defaults.

    Returns:
        Frozen ``WorkflowSettings``.
    """
    settings = load_settings(Path(path) if path is not None else None)
    _logger.info(
        "WORK_CONFIG_LOADED",
        extra={
            "checksum": settings.checksum,
            "override": str(path) if path is not None else None,
            "finance_threshold": str(settings.approval.finance_threshold),
        },
    )
    return settings


__all__ = [
    "get_active_config",
    "WorkflowSettings",
    "LifecycleSettings",
    "DatabaseSettings",
    "LoggingSettings",
]
