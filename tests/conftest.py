"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock and builders imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from converge.config import Config  # noqa: E402
from converge.main import HANDLER_NAME  # noqa: E402
from converge.state_store import FileStateStore  # noqa: E402
from provider_mock import InMemoryProvider  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Fast configuration: no backoff delay, short call timeout."""
    return Config(
        project="test-project",
        region="europe-west1",
        state_dir=tmp_path / "state",
        worker_count=4,
        max_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        call_timeout_seconds=5,
    )


@pytest.fixture
def store(config: Config) -> FileStateStore:
    return FileStateStore(config.state_dir)


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Drop handlers installed by CLI runs; they write to CliRunner's closed streams."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler.get_name() == HANDLER_NAME:
            root.removeHandler(handler)
    root.setLevel(level)
