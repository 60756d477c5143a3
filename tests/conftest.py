"""Shared pytest configuration: markers, execution ordering and store fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from kata_engine.cycle_manager import CycleManager
from kata_engine.history import ExecutionHistory
from kata_engine.knowledge import KnowledgeStore
from kata_engine.run_store import RunStore


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: run-tree, pipeline and cooldown tests on disk")
    config.addinivalue_line("markers", "slow: tests that spawn gate command subprocesses")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture
def kata_dir(tmp_path: Path) -> Path:
    path = tmp_path / ".kata"
    path.mkdir()
    return path


@pytest.fixture
def run_store(kata_dir: Path) -> RunStore:
    return RunStore(kata_dir / "runs")


@pytest.fixture
def cycles(kata_dir: Path) -> CycleManager:
    return CycleManager(kata_dir / "cycles")


@pytest.fixture
def knowledge(kata_dir: Path) -> KnowledgeStore:
    return KnowledgeStore(kata_dir / "knowledge")


@pytest.fixture
def history(kata_dir: Path) -> ExecutionHistory:
    return ExecutionHistory(kata_dir / "history")
