"""Configuration management with validation.

All limits are enforced at configuration load time so that a reconciliation
run never starts with settings it cannot honour.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class DriftPolicy(str, Enum):
    """What to do when live provider state diverges from the last applied state."""

    REPORT = "report"
    CORRECT = "correct"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_DIR = ".converge/state"

DEFAULT_WORKER_COUNT = 4
MIN_WORKER_COUNT = 1
MAX_WORKER_COUNT = 32

DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_LIMIT = 10

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_CALL_TIMEOUT_SECONDS = 300
MIN_CALL_TIMEOUT_SECONDS = 1
MAX_CALL_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_CHANGES_PER_RUN = 500

# Input limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max desired-state file
MAX_RESOURCE_NAME_LENGTH = 63
MAX_RESOURCES_PER_DOCUMENT = 2000

# Input validation patterns
VALID_PROJECT_PATTERN = r"^[a-z0-9][a-z0-9-]{0,62}$"
VALID_REGION_PATTERN = r"^[a-z]{2,}[a-z0-9-]*$"


@dataclass(frozen=True)
class Config:
    """Engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Provider context
    project: str
    region: str
    resource_group: str | None = None

    # Paths
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))

    # Scheduling
    worker_count: int = DEFAULT_WORKER_COUNT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS

    # Behavior
    drift_policy: DriftPolicy = DriftPolicy.REPORT
    refresh: bool = True
    max_changes_per_run: int = DEFAULT_MAX_CHANGES_PER_RUN

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.project:
            errors.append("CONVERGE_PROJECT is required")
        elif not re.match(VALID_PROJECT_PATTERN, self.project):
            errors.append(f"CONVERGE_PROJECT must match pattern {VALID_PROJECT_PATTERN}: {self.project}")

        if not self.region:
            errors.append("CONVERGE_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"CONVERGE_REGION must be a valid region name: {self.region}")

        if not (MIN_WORKER_COUNT <= self.worker_count <= MAX_WORKER_COUNT):
            errors.append(
                f"CONVERGE_WORKERS must be between {MIN_WORKER_COUNT} and {MAX_WORKER_COUNT}"
            )

        if not (1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT):
            errors.append(f"CONVERGE_MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("CONVERGE_BACKOFF_BASE must not be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("CONVERGE_BACKOFF_MAX must be at least CONVERGE_BACKOFF_BASE")

        if not (MIN_CALL_TIMEOUT_SECONDS <= self.call_timeout_seconds <= MAX_CALL_TIMEOUT_SECONDS):
            errors.append(
                f"CONVERGE_CALL_TIMEOUT must be between {MIN_CALL_TIMEOUT_SECONDS} "
                f"and {MAX_CALL_TIMEOUT_SECONDS} seconds"
            )

        if self.max_changes_per_run < 1:
            errors.append("CONVERGE_MAX_CHANGES must be at least 1")

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"State path is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: object) -> Config:
        """Load configuration from environment variables.

        Keyword overrides that are not None win over the environment, which is
        how CLI options are layered on top.

        Environment Variables:
            CONVERGE_PROJECT: Provider project (subscription) to reconcile into
            CONVERGE_REGION: Default region for regional resources
            CONVERGE_RESOURCE_GROUP: Resource group for providers that need one
            CONVERGE_STATE_DIR: State store directory (default: .converge/state)
            CONVERGE_WORKERS: Concurrent provider calls per wave (default: 4)
            CONVERGE_MAX_ATTEMPTS: Attempts per resource on transient errors (default: 3)
            CONVERGE_BACKOFF_BASE: First retry delay in seconds (default: 2)
            CONVERGE_BACKOFF_MAX: Upper bound for a retry delay (default: 60)
            CONVERGE_CALL_TIMEOUT: Per provider call timeout in seconds (default: 300)
            CONVERGE_DRIFT_POLICY: report or correct (default: report)
            CONVERGE_REFRESH: Observe live state while diffing (default: true)
            CONVERGE_MAX_CHANGES: Max mutating actions per run (default: 500)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_policy(value: str | None) -> DriftPolicy:
            if not value:
                return DriftPolicy.REPORT
            try:
                return DriftPolicy(value.lower())
            except ValueError as e:
                valid = [p.value for p in DriftPolicy]
                raise ConfigurationError(f"CONVERGE_DRIFT_POLICY must be one of {valid}: {value}") from e

        values: dict[str, object] = {
            "project": os.environ.get("CONVERGE_PROJECT", ""),
            "region": os.environ.get("CONVERGE_REGION", ""),
            "resource_group": os.environ.get("CONVERGE_RESOURCE_GROUP"),
            "state_dir": Path(os.environ.get("CONVERGE_STATE_DIR", DEFAULT_STATE_DIR)),
            "worker_count": get_int("CONVERGE_WORKERS", DEFAULT_WORKER_COUNT),
            "max_attempts": get_int("CONVERGE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            "retry_backoff_base_seconds": get_float(
                "CONVERGE_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            "retry_backoff_max_seconds": get_float(
                "CONVERGE_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            "call_timeout_seconds": get_int("CONVERGE_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            "drift_policy": get_policy(os.environ.get("CONVERGE_DRIFT_POLICY")),
            "refresh": get_bool("CONVERGE_REFRESH", True),
            "max_changes_per_run": get_int("CONVERGE_MAX_CHANGES", DEFAULT_MAX_CHANGES_PER_RUN),
        }
        for key, value in overrides.items():
            if key not in values:
                raise ConfigurationError(f"Unknown configuration override: {key}")
            if value is not None:
                values[key] = value

        return cls(**values)  # type: ignore[arg-type]
