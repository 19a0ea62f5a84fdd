"""Tests for TaskStore — aiosqlite persistence and conditional updates."""

from datetime import UTC, datetime, timedelta

import pytest

from src.scheduler.models import TaskRun, TaskStatus
from src.scheduler.store import TaskStore

T0 = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)


def _make_run(
    instance_id: str = "run1",
    identity: str = "NoopTask",
    due_offset: float = 0,
    **kwargs,
) -> TaskRun:
    defaults = {"created_at": T0}
    defaults.update(kwargs)
    return TaskRun(
        instance_id=instance_id,
        identity=identity,
        next_due_at=T0 + timedelta(seconds=due_offset),
        **defaults,
    )


# -- add_run / get_run ---------------------------------------------------------


async def test_add_and_get_run(store: TaskStore) -> None:
    await store.add_run(_make_run(parameters={"festival": 3}, interval_seconds=60))

    fetched = await store.get_run("run1")
    assert fetched is not None
    assert fetched.identity == "NoopTask"
    assert fetched.parameters == {"festival": 3}
    assert fetched.interval_seconds == 60
    assert fetched.status is TaskStatus.PENDING
    assert fetched.next_due_at == T0


async def test_get_run_not_found(store: TaskStore) -> None:
    assert await store.get_run("nonexistent") is None


# -- list_due ------------------------------------------------------------------


async def test_list_due_orders_by_due_then_id(store: TaskStore) -> None:
    await store.add_run(_make_run("c", identity="X", due_offset=-10))
    await store.add_run(_make_run("b", identity="Y", due_offset=-20))
    await store.add_run(_make_run("a", identity="Z", due_offset=-10))
    await store.add_run(_make_run("future", due_offset=60))

    due = await store.list_due(T0)
    assert [r.instance_id for r in due] == ["b", "a", "c"]


async def test_list_due_includes_exactly_due(store: TaskStore) -> None:
    await store.add_run(_make_run("now", due_offset=0))
    due = await store.list_due(T0)
    assert [r.instance_id for r in due] == ["now"]


async def test_list_due_respects_limit(store: TaskStore) -> None:
    for i in range(5):
        await store.add_run(_make_run(f"r{i}", identity=f"T{i}", due_offset=-i))
    assert len(await store.list_due(T0, limit=2)) == 2


async def test_list_due_skips_non_pending(store: TaskStore) -> None:
    await store.add_run(_make_run("done", status=TaskStatus.SUCCEEDED))
    await store.add_run(_make_run("gone", identity="Other", status=TaskStatus.ABANDONED))
    assert await store.list_due(T0) == []


# -- acquire_lease -------------------------------------------------------------


async def test_acquire_lease(store: TaskStore) -> None:
    await store.add_run(_make_run())

    leased = await store.acquire_lease("run1", "engine-a", T0, T0 + timedelta(seconds=30))
    assert leased is not None
    assert leased.status is TaskStatus.LEASED
    assert leased.lease_owner == "engine-a"
    assert leased.lease_expires_at == T0 + timedelta(seconds=30)


async def test_acquire_lease_only_once(store: TaskStore) -> None:
    await store.add_run(_make_run())

    first = await store.acquire_lease("run1", "engine-a", T0, T0 + timedelta(seconds=30))
    second = await store.acquire_lease("run1", "engine-b", T0, T0 + timedelta(seconds=30))
    assert first is not None
    assert second is None

    row = await store.get_run("run1")
    assert row is not None
    assert row.lease_owner == "engine-a"


async def test_acquire_lease_not_due(store: TaskStore) -> None:
    await store.add_run(_make_run(due_offset=60))
    assert await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30)) is None


async def test_acquire_lease_single_flight_per_identity(store: TaskStore) -> None:
    await store.add_run(_make_run("run1"))
    await store.add_run(_make_run("run2"))

    assert await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30)) is not None
    assert await store.acquire_lease("run2", "b", T0, T0 + timedelta(seconds=30)) is None

    leased = await store.list_by_status(TaskStatus.LEASED, identity="NoopTask")
    assert [r.instance_id for r in leased] == ["run1"]


async def test_acquire_lease_other_identity_unaffected(store: TaskStore) -> None:
    await store.add_run(_make_run("run1", identity="A"))
    await store.add_run(_make_run("run2", identity="B"))

    assert await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30)) is not None
    assert await store.acquire_lease("run2", "a", T0, T0 + timedelta(seconds=30)) is not None


# -- release -------------------------------------------------------------------


async def test_release_records_outcome(store: TaskStore) -> None:
    await store.add_run(_make_run())
    leased = await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30))
    assert leased is not None

    finished = T0 + timedelta(seconds=2)
    released = await store.release(
        leased,
        "a",
        status=TaskStatus.SUCCEEDED,
        attempt=0,
        next_due_at=leased.next_due_at,
        last_error=None,
        finished_at=finished,
        duration_ms=2000,
        logs=[{"severity": "Info", "message": "done", "data": []}],
    )
    assert released is True

    row = await store.get_run("run1")
    assert row is not None
    assert row.status is TaskStatus.SUCCEEDED
    assert row.lease_owner is None
    assert row.lease_expires_at is None
    assert row.finished_at == finished
    assert row.duration_ms == 2000
    assert row.logs[0]["message"] == "done"


async def test_release_inserts_follow_up_atomically(store: TaskStore) -> None:
    await store.add_run(_make_run(interval_seconds=60))
    leased = await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30))
    assert leased is not None

    follow_up = leased.next_recurrence(T0, 60)
    await store.release(
        leased,
        "a",
        status=TaskStatus.SUCCEEDED,
        attempt=0,
        next_due_at=leased.next_due_at,
        last_error=None,
        finished_at=T0,
        follow_up=follow_up,
    )

    pending = await store.list_by_status(TaskStatus.PENDING)
    assert [r.instance_id for r in pending] == [follow_up.instance_id]
    assert pending[0].parent_id == "run1"


async def test_release_by_wrong_owner_is_rejected(store: TaskStore) -> None:
    await store.add_run(_make_run(interval_seconds=60))
    leased = await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30))
    assert leased is not None

    released = await store.release(
        leased,
        "intruder",
        status=TaskStatus.SUCCEEDED,
        attempt=0,
        next_due_at=T0,
        last_error=None,
        finished_at=T0,
        follow_up=leased.next_recurrence(T0, 60),
    )
    assert released is False

    row = await store.get_run("run1")
    assert row is not None
    assert row.status is TaskStatus.LEASED
    # No follow-up was written either
    assert await store.list_by_status(TaskStatus.PENDING) == []


async def test_release_with_expiry_requires_lapsed_lease(store: TaskStore) -> None:
    await store.add_run(_make_run())
    leased = await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30))
    assert leased is not None

    kwargs = {
        "status": TaskStatus.PENDING,
        "attempt": 1,
        "next_due_at": T0,
        "last_error": "Lease expired",
        "finished_at": T0,
    }
    assert await store.release(leased, "a", expired_before=T0 + timedelta(seconds=10), **kwargs) is False
    assert await store.release(leased, "a", expired_before=T0 + timedelta(seconds=30), **kwargs) is True


# -- list_expired_leases -------------------------------------------------------


async def test_list_expired_leases(store: TaskStore) -> None:
    await store.add_run(_make_run("run1", identity="A"))
    await store.add_run(_make_run("run2", identity="B"))
    await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=10))
    await store.acquire_lease("run2", "a", T0, T0 + timedelta(seconds=60))

    expired = await store.list_expired_leases(T0 + timedelta(seconds=30))
    assert [r.instance_id for r in expired] == ["run1"]


# -- abandon_pending -----------------------------------------------------------


async def test_abandon_pending(store: TaskStore) -> None:
    await store.add_run(_make_run())
    assert await store.abandon_pending("run1", "Cancelled", T0) is True

    row = await store.get_run("run1")
    assert row is not None
    assert row.status is TaskStatus.ABANDONED
    assert row.last_error == "Cancelled"


async def test_abandon_pending_ignores_leased(store: TaskStore) -> None:
    await store.add_run(_make_run())
    await store.acquire_lease("run1", "a", T0, T0 + timedelta(seconds=30))
    assert await store.abandon_pending("run1", "Cancelled", T0) is False


async def test_abandon_nonexistent_returns_false(store: TaskStore) -> None:
    assert await store.abandon_pending("nonexistent", "Cancelled", T0) is False


# -- add_run_if_idle -----------------------------------------------------------


async def test_add_run_if_idle(store: TaskStore) -> None:
    assert await store.add_run_if_idle(_make_run("run1", interval_seconds=60)) is True
    assert await store.add_run_if_idle(_make_run("run2", interval_seconds=60)) is False
    assert await store.get_run("run2") is None


async def test_add_run_if_idle_after_completion(store: TaskStore) -> None:
    await store.add_run(_make_run("done", status=TaskStatus.SUCCEEDED))
    assert await store.add_run_if_idle(_make_run("run2")) is True


# -- list_runs -----------------------------------------------------------------


async def test_list_runs_pagination(store: TaskStore) -> None:
    for i in range(5):
        await store.add_run(_make_run(f"r{i}", identity=f"T{i}", due_offset=i))

    first = await store.list_runs(limit=2)
    second = await store.list_runs(limit=2, offset=2)
    assert [r.instance_id for r in first] == ["r4", "r3"]
    assert [r.instance_id for r in second] == ["r2", "r1"]
    assert len(await store.list_runs()) == 5


# -- Singleton -----------------------------------------------------------------


def test_singleton_get() -> None:
    a = TaskStore.get()
    b = TaskStore.get()
    assert a is b


def test_singleton_reset() -> None:
    a = TaskStore.get()
    TaskStore._reset()
    b = TaskStore.get()
    assert a is not b


@pytest.mark.parametrize("status", list(TaskStatus))
async def test_status_roundtrip(store: TaskStore, status: TaskStatus) -> None:
    await store.add_run(_make_run(status=status))
    row = await store.get_run("run1")
    assert row is not None
    assert row.status is status
