"""Tests for run provenance records."""

from __future__ import annotations

import os
from datetime import UTC
from unittest.mock import patch

import pytest

from builders import INSTANCE_ID, SUBNET_ID, three_tier
from converge.config import Config
from converge.provenance import (
    CONVERGE_VERSION,
    ChangeProvenanceSummary,
    ProvenanceLogger,
    RunProvenance,
    get_provenance_logger,
)
from converge.reconciler import Reconciler
from converge.state_store import FileStateStore
from provider_mock import InMemoryProvider


def provenance_records(caplog: pytest.LogCaptureFixture) -> list:
    return [r for r in caplog.records if r.getMessage() == "Run provenance"]


class TestChangeCounts:
    """Tests for ChangeProvenanceSummary."""

    def test_noop_and_drift_are_not_significant(self) -> None:
        """Test only mutating actions count as planned changes."""
        counts = ChangeProvenanceSummary(create_count=2, delete_count=1, no_change_count=7, drift_count=3)
        assert counts.total_significant == 3
        assert ChangeProvenanceSummary().total_significant == 0

    def test_from_changeset_summary(self) -> None:
        """Test the ChangeSet.summary() keys map onto the counters."""
        counts = ChangeProvenanceSummary.from_summary(
            {"create": 1, "update": 2, "replace": 1, "delete": 3, "noop": 4, "drift": 1}
        )
        assert (counts.update_count, counts.replace_count, counts.no_change_count) == (2, 1, 4)
        assert counts.total_significant == 7


class TestRunProvenance:
    """Tests for RunProvenance."""

    def test_fresh_record(self) -> None:
        """Test a new record is stamped in UTC with the tool version."""
        record = RunProvenance()
        assert record.timestamp.tzinfo is UTC
        assert record.tool_version == CONVERGE_VERSION
        assert (record.exit_code, record.cancelled, record.error) == (0, False, None)

    def test_serializes_to_plain_data(self) -> None:
        """Test to_dict yields JSON-ready values."""
        record = RunProvenance(
            command="destroy",
            project="demo",
            outcome_counts={"Applied": 2, "Failed": 1},
            exit_code=2,
            error_type="ProviderError",
        )

        data = record.to_dict()

        assert data["timestamp"] == record.timestamp.isoformat()
        assert data["outcome_counts"] == {"Applied": 2, "Failed": 1}
        assert data["change_summary"] == {
            "create_count": 0,
            "update_count": 0,
            "replace_count": 0,
            "delete_count": 0,
            "no_change_count": 0,
            "drift_count": 0,
        }
        assert data["error_type"] == "ProviderError"


class TestProvenanceLogger:
    """Tests for ProvenanceLogger."""

    @patch.dict(os.environ, {"GIT_COMMIT_SHA": "9f1c2e7", "GIT_BRANCH": "release"})
    def test_git_details_from_environment(self) -> None:
        """Test the desired-state repo commit is read when the logger is built."""
        record = ProvenanceLogger().create_provenance("plan", "demo", "europe-west1")

        assert (record.command, record.project, record.region) == ("plan", "demo", "europe-west1")
        assert (record.git_commit_sha, record.git_branch) == ("9f1c2e7", "release")

    @pytest.mark.parametrize(
        ("record", "level"),
        [
            (RunProvenance(command="apply"), "INFO"),
            (RunProvenance(command="apply", exit_code=2), "WARNING"),
            (RunProvenance(command="apply", cancelled=True), "WARNING"),
            (RunProvenance(command="apply", error="state unreadable"), "ERROR"),
        ],
    )
    def test_level_follows_outcome(
        self, record: RunProvenance, level: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test clean runs log at INFO, partial runs at WARNING and errors at ERROR."""
        with caplog.at_level("INFO"):
            ProvenanceLogger().log_provenance(record)

        [logged] = provenance_records(caplog)
        assert logged.levelname == level
        assert logged.command == "apply"

    def test_change_detail(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test one resource outcome is logged with its ids."""
        with caplog.at_level("INFO"):
            ProvenanceLogger().log_change_detail(
                RunProvenance(command="apply"), SUBNET_ID, "Create", "Applied", "pid-subnet"
            )

        record = caplog.records[-1]
        assert record.getMessage() == "Resource change"
        assert (record.resource_id, record.status, record.provider_id) == (SUBNET_ID, "Applied", "pid-subnet")

    def test_shared_instance(self) -> None:
        """Test the module-level logger is created once."""
        assert isinstance(get_provenance_logger(), ProvenanceLogger)
        assert get_provenance_logger() is get_provenance_logger()


class TestRunProvenanceFromReconciler:
    """Tests for provenance emitted by engine runs."""

    @pytest.mark.asyncio
    async def test_apply_emits_one_record(
        self,
        config: Config,
        provider: InMemoryProvider,
        store: FileStateStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test an apply logs its digest, planned changes and outcomes."""
        desired = three_tier()

        with caplog.at_level("INFO"):
            await Reconciler(config, provider, store).apply(desired)

        [logged] = provenance_records(caplog)
        data = logged.provenance
        assert data["command"] == "apply"
        assert data["desired_state_hash"] == desired.digest
        assert data["change_summary"]["create_count"] == 3
        assert data["outcome_counts"]["Applied"] == 3
        assert logged.changes_planned == 3

    @pytest.mark.asyncio
    async def test_failed_run_logs_warning(
        self,
        config: Config,
        provider: InMemoryProvider,
        store: FileStateStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test a partial failure is logged at WARNING with its exit code."""
        provider.inject_error("create", INSTANCE_ID)

        with caplog.at_level("INFO"):
            await Reconciler(config, provider, store).apply(three_tier())

        [logged] = provenance_records(caplog)
        assert logged.levelname == "WARNING"
        assert logged.exit_code == 2
