"""Run provenance for audit.

Every plan, apply and destroy run is stamped with one structured record:
what ran (command, tool version, git commit of the desired-state repo),
against what (project, region, desired-state digest), what it decided
(changeset counts) and how it ended (outcome counts, duration, error).
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
CONVERGE_VERSION = os.environ.get("CONVERGE_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Changeset counts for provenance tracking."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0
    no_change_count: int = 0
    drift_count: int = 0

    @property
    def total_significant(self) -> int:
        return self.create_count + self.update_count + self.replace_count + self.delete_count

    @classmethod
    def from_summary(cls, summary: dict[str, int]) -> ChangeProvenanceSummary:
        """Build from ChangeSet.summary()."""
        return cls(
            create_count=summary.get("create", 0),
            update_count=summary.get("update", 0),
            replace_count=summary.get("replace", 0),
            delete_count=summary.get("delete", 0),
            no_change_count=summary.get("noop", 0),
            drift_count=summary.get("drift", 0),
        )


@dataclass
class RunProvenance:
    """Provenance record of one engine run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    command: str = ""
    tool_version: str = CONVERGE_VERSION
    git_commit_sha: str = ""
    git_branch: str = ""
    desired_state_hash: str = ""

    project: str = ""
    region: str = ""

    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)
    outcome_counts: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    exit_code: int = 0

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Writes provenance records to the structured log."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")

    def create_provenance(self, command: str, project: str, region: str) -> RunProvenance:
        return RunProvenance(
            command=command,
            tool_version=CONVERGE_VERSION,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            project=project,
            region=region,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        Errors log at ERROR, partial failures and cancellations at WARNING.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.exit_code != 0 or provenance.cancelled:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "command": provenance.command,
                "project": provenance.project,
                "changes_planned": provenance.change_summary.total_significant,
                "exit_code": provenance.exit_code,
                "git_commit": provenance.git_commit_sha,
                "tool_version": provenance.tool_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )

    def log_change_detail(
        self,
        provenance: RunProvenance,
        resource_id: str,
        action: str,
        status: str,
        provider_id: str | None = None,
    ) -> None:
        """Log the terminal status of one resource in a run."""
        logger.info(
            "Resource change",
            extra={
                "command": provenance.command,
                "git_commit": provenance.git_commit_sha,
                "resource_id": resource_id,
                "action": action,
                "status": status,
                "provider_id": provider_id,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
