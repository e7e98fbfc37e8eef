"""Integration tests for the reconciliation loop.

These tests drive the whole engine, from YAML files through the state
store, against the in-memory provider.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import pytest
import yaml

from builders import INSTANCE_ID, NETWORK_ID, SUBNET_ID, document, firewall_rule, instance, network, subnet
from converge.config import Config
from converge.diff import Action
from converge.main import HANDLER_NAME, JsonFormatter, setup_logging
from converge.reconciler import Reconciler
from converge.spec_loader import load_desired_state
from converge.state_store import FileStateStore
from provider_mock import InMemoryProvider

FIREWALL_ID = "firewallrule/global/allow-ssh"


def write_infra(directory: Path, *, machine_type: str = "e2-small", cidr: str = "10.1.0.0/24", firewall: bool = True):
    network_entries: list[dict[str, Any]] = [network()]
    if firewall:
        network_entries.append(firewall_rule())
    (directory / "10-network.yaml").write_text(yaml.safe_dump(document(*network_entries)))
    (directory / "20-compute.yaml").write_text(
        yaml.safe_dump(document(subnet(cidr=cidr), instance(machine_type=machine_type)))
    )


class TestLifecycle:
    """Create, update, replace, prune and destroy through one state store."""

    @pytest.fixture
    def infra(self, tmp_path: Path) -> Path:
        directory = tmp_path / "infra"
        directory.mkdir()
        write_infra(directory)
        return directory

    @pytest.mark.asyncio
    async def test_full_lifecycle(
        self,
        infra: Path,
        config: Config,
        provider: InMemoryProvider,
        store: FileStateStore,
    ) -> None:
        """Test every kind of change converges and leaves state consistent."""
        reconciler = Reconciler(config, provider, store)

        # Initial apply
        summary = await reconciler.apply(load_desired_state(infra))
        assert summary.success
        assert set(store.load()) == {NETWORK_ID, FIREWALL_ID, SUBNET_ID, INSTANCE_ID}
        assert provider.mutations()[0] == ("create", NETWORK_ID)

        # In-place update
        write_infra(infra, machine_type="e2-medium")
        changeset = await reconciler.plan(load_desired_state(infra))
        assert changeset[INSTANCE_ID].action is Action.UPDATE
        assert [c.resource_id for c in changeset if c.is_mutation] == [INSTANCE_ID]

        before = len(provider.mutations())
        await reconciler.apply(load_desired_state(infra))
        assert provider.mutations()[before:] == [("update", INSTANCE_ID)]
        assert store.get(INSTANCE_ID).attributes["machineType"] == "e2-medium"

        # Immutable change: subnet and instance are replaced
        write_infra(infra, machine_type="e2-medium", cidr="10.1.1.0/24")
        old_subnet_id = store.get(SUBNET_ID).provider_id

        before = len(provider.mutations())
        summary = await reconciler.apply(load_desired_state(infra))
        assert summary.success
        assert provider.mutations()[before:] == [
            ("delete", INSTANCE_ID),
            ("delete", SUBNET_ID),
            ("create", SUBNET_ID),
            ("create", INSTANCE_ID),
        ]
        assert store.get(SUBNET_ID).provider_id != old_subnet_id
        assert store.get(SUBNET_ID).attributes["cidr"] == "10.1.1.0/24"

        # Removed from the files: pruned
        write_infra(infra, machine_type="e2-medium", cidr="10.1.1.0/24", firewall=False)

        before = len(provider.mutations())
        await reconciler.apply(load_desired_state(infra))
        assert provider.mutations()[before:] == [("delete", FIREWALL_ID)]
        assert store.get(FIREWALL_ID) is None

        # Converged
        changeset = await reconciler.plan(load_desired_state(infra))
        assert not changeset.has_changes

        # Destroy
        summary = await reconciler.destroy()
        assert summary.success
        assert provider.resource_ids() == set()
        assert store.load() == {}

    @pytest.mark.asyncio
    async def test_restart_resumes_from_state(
        self,
        infra: Path,
        config: Config,
        provider: InMemoryProvider,
        store: FileStateStore,
    ) -> None:
        """Test a fresh engine on the same state directory picks up where the last one failed."""
        provider.inject_error("create", INSTANCE_ID, times=1)
        first = await Reconciler(config, provider, store).apply(load_desired_state(infra))
        assert not first.success

        second = await Reconciler(config, provider, FileStateStore(config.state_dir)).apply(
            load_desired_state(infra)
        )

        assert second.success
        assert provider.call_count("create", NETWORK_ID) == 1
        assert provider.call_count("create", INSTANCE_ID) == 2
        assert store.failures() == []


class TestLogging:
    """Tests for logging setup."""

    def test_setup_logging_is_idempotent(self) -> None:
        """Test repeated setup keeps a single handler."""
        setup_logging("INFO")
        setup_logging("DEBUG", "text")

        root = logging.getLogger()
        handlers = [h for h in root.handlers if h.get_name() == HANDLER_NAME]
        assert len(handlers) == 1
        assert root.level == logging.DEBUG
        assert not isinstance(handlers[0].formatter, JsonFormatter)

    def test_json_formatter_includes_extra(self) -> None:
        """Test extra fields land in the JSON output."""
        record = logging.LogRecord("converge.test", logging.INFO, __file__, 1, "Resource applied", None, None)
        record.resource_id = NETWORK_ID

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Resource applied"
        assert data["level"] == "INFO"
        assert data["resource_id"] == NETWORK_ID
        assert data["timestamp"].endswith("Z")

    def test_json_formatter_includes_exception(self) -> None:
        """Test exceptions are rendered into the record."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord("converge.test", logging.ERROR, __file__, 1, "failed", None, exc_info)

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]
