"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from src.scheduler.store import TaskStore

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock, callable like ``datetime.now``."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "scheduler.db"


@pytest.fixture
async def store(db_path: Path) -> TaskStore:
    """Create a TaskStore backed by a temp database."""
    return TaskStore(db_path=db_path)


@pytest.fixture(autouse=True)
def _reset_store_singleton():
    TaskStore._reset()
    yield
    TaskStore._reset()
