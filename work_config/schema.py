"""
work_config.schema -- Frozen settings dataclasses.

Responsibility:
    Typed, validated in-memory form of the YAML configuration.  The approval
    section is parsed straight into the kernel's ``ChainPolicy`` so the
    chain builder can read it without importing this package.

Invariants enforced:
    - Every dataclass is frozen.
    - Numeric bounds are checked in ``__post_init__``; bad values raise
      ValueError at load time, never at first use.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from work_kernel.domain.approval import ChainPolicy


@dataclass(frozen=True)
class LifecycleSettings:
    """Bulk fan-out and compensation retry settings."""

    bulk_max_workers: int = 8
    compensation_max_attempts: int = 3
    compensation_backoff_seconds: float = 0.05

    def __post_init__(self) -> None:
        if self.bulk_max_workers < 1:
            raise ValueError("lifecycle.bulk_max_workers must be >= 1")
        if self.compensation_max_attempts < 1:
            raise ValueError("lifecycle.compensation_max_attempts must be >= 1")
        if self.compensation_backoff_seconds < 0:
            raise ValueError("lifecycle.compensation_backoff_seconds must be >= 0")


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///work_requests.db"
    echo: bool = False

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("database.url must be non-empty")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"

    def __post_init__(self) -> None:
        if self.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"logging.level '{self.level}' is not a logging level")


@dataclass(frozen=True)
class WorkflowSettings:
    """The complete runtime configuration.

    ``checksum`` is the SHA-256 of the canonical JSON of the merged YAML,
    so two settings objects built from the same content compare equal.
    """

    approval: ChainPolicy
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    checksum: str = ""
