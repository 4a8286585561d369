"""Shared pytest fixtures for taskboard tests."""

import pytest

from taskboard_mcp import engine
from taskboard_mcp.models import TaskStatus
from taskboard_mcp.store import TaskStore


@pytest.fixture
def store(tmp_path):
    """Task store on a fresh database file."""
    return TaskStore(tmp_path / "board.db")


@pytest.fixture
def make_tasks(store):
    """Create tasks for one owner/status and return them in creation order."""

    def _make(count, owner="u1", status=TaskStatus.TODO):
        return [
            engine.create_task(store, owner, f"Task {i}", status=status)
            for i in range(1, count + 1)
        ]

    return _make


@pytest.fixture
def set_positions(store):
    """Overwrite task positions directly, bypassing the engine."""

    def _set(tasks, positions):
        with store.transaction() as tx:
            for task, position in zip(tasks, positions, strict=True):
                tx.place(task.id, task.status, position)

    return _set


@pytest.fixture
def read_positions(store):
    """(id, position) pairs of a partition in board order."""

    def _read(owner="u1", status=TaskStatus.TODO):
        with store.transaction(write=False) as tx:
            return [(t.id, t.position) for t in tx.partition(owner, status)]

    return _read
