"""Task descriptors, run state, and execution outcomes."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

Scalar = str | int | float | bool | None

_SCALAR_TYPES = (str, int, float, bool, type(None))


class TaskStatus(StrEnum):
    """Lifecycle states of a task instance."""

    PENDING = "pending"
    LEASED = "leased"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.ABANDONED)


# -- Schedules -----------------------------------------------------------------


@dataclass(frozen=True)
class RunOnce:
    """Run a single time, at or after *at*."""

    at: datetime

    def __post_init__(self) -> None:
        if self.at.tzinfo is None:
            msg = "RunOnce.at must be timezone-aware"
            raise ValueError(msg)


@dataclass(frozen=True)
class Recurring:
    """Run every *interval_seconds*, measured from the end of the previous run."""

    interval_seconds: int

    def __post_init__(self) -> None:
        if self.interval_seconds < 1:
            msg = f"interval_seconds must be >= 1, got {self.interval_seconds}"
            raise ValueError(msg)


Schedule = RunOnce | Recurring


@dataclass(frozen=True)
class TaskDescriptor:
    """Immutable description of one schedulable unit of work.

    Attributes:
        identity: Name of the task kind, must be known to the registry.
        parameters: Flat mapping of scalar values, handed to the task as-is.
        schedule: Either ``RunOnce`` or ``Recurring``.
    """

    identity: str
    schedule: Schedule
    parameters: dict[str, Scalar] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.identity:
            msg = "TaskDescriptor.identity must not be empty"
            raise ValueError(msg)
        for key, value in self.parameters.items():
            if not isinstance(key, str):
                msg = f"Parameter names must be strings, got {key!r}"
                raise ValueError(msg)
            if not isinstance(value, _SCALAR_TYPES):
                msg = f"Parameter '{key}' must be a scalar, got {type(value).__name__}"
                raise ValueError(msg)

    @property
    def interval_seconds(self) -> int | None:
        if isinstance(self.schedule, Recurring):
            return self.schedule.interval_seconds
        return None


# -- Outcomes ------------------------------------------------------------------


@dataclass(frozen=True)
class Success:
    """The task completed.

    Recurring tasks may adjust their own cadence: *interval_seconds* replaces
    the interval for the next recurrence, and *stop* ends the recurrence.
    """

    interval_seconds: int | None = None
    stop: bool = False

    def __post_init__(self) -> None:
        if self.interval_seconds is not None and self.interval_seconds < 1:
            msg = f"interval_seconds must be >= 1, got {self.interval_seconds}"
            raise ValueError(msg)


@dataclass(frozen=True)
class RetryableFailure:
    """Transient failure, the run will be retried with backoff."""

    reason: str


@dataclass(frozen=True)
class TerminalFailure:
    """The run can never succeed, no retry."""

    reason: str


Outcome = Success | RetryableFailure | TerminalFailure


def outcome_name(outcome: Outcome) -> str:
    """Short name for logs and reports: ``success``, ``retryable`` or ``terminal``."""
    if isinstance(outcome, Success):
        return "success"
    if isinstance(outcome, RetryableFailure):
        return "retryable"
    return "terminal"


# -- Timestamps ----------------------------------------------------------------


def to_iso(value: datetime) -> str:
    """Serialize a timezone-aware datetime as a sortable UTC ISO 8601 string."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _opt_iso(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


def _opt_dt(value: str | None) -> datetime | None:
    return from_iso(value) if value else None


# -- Run state -----------------------------------------------------------------


@dataclass
class TaskRun:
    """Durable state of one scheduled task instance.

    Attributes:
        instance_id: Unique identifier (UUID hex), stable across retries.
        identity: Task kind to execute.
        parameters: Parameters passed to the task implementation.
        interval_seconds: Recurrence interval, ``None`` for one-off runs.
        status: Current lifecycle state.
        next_due_at: Earliest moment the instance may run.
        attempt: Failed executions of this logical run so far.
        lease_owner: Token of the engine holding the lease, if any.
        lease_expires_at: When the current lease lapses.
        last_error: Reason of the most recent failure.
        parent_id: Instance this recurrence was spawned from.
        created_at: Creation timestamp.
        finished_at: When the last execution ended.
        duration_ms: Wall time of the last execution.
        logs: Task log entries captured during the last execution.
    """

    instance_id: str
    identity: str
    next_due_at: datetime
    parameters: dict[str, Any] = field(default_factory=dict)
    interval_seconds: int | None = None
    status: TaskStatus = TaskStatus.PENDING
    attempt: int = 0
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    parent_id: str | None = None
    created_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    logs: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = datetime.now(UTC)
        self.status = TaskStatus(self.status)

    @classmethod
    def from_descriptor(cls, descriptor: TaskDescriptor, now: datetime) -> TaskRun:
        """Create the first pending instance for *descriptor*."""
        schedule = descriptor.schedule
        due = schedule.at if isinstance(schedule, RunOnce) else now
        return cls(
            instance_id=make_instance_id(),
            identity=descriptor.identity,
            parameters=dict(descriptor.parameters),
            interval_seconds=descriptor.interval_seconds,
            next_due_at=due,
            created_at=now,
        )

    def next_recurrence(self, finished_at: datetime, interval_seconds: int) -> TaskRun:
        """Fresh pending instance following this one, with ``attempt`` reset."""
        return TaskRun(
            instance_id=make_instance_id(),
            identity=self.identity,
            parameters=dict(self.parameters),
            interval_seconds=interval_seconds,
            next_due_at=finished_at + timedelta(seconds=interval_seconds),
            parent_id=self.instance_id,
            created_at=finished_at,
        )

    # -- Convenience properties ------------------------------------------------

    @property
    def is_recurring(self) -> bool:
        return self.interval_seconds is not None

    @property
    def is_one_off(self) -> bool:
        return self.interval_seconds is None

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``task_runs`` column order."""
        return (
            self.instance_id,
            self.identity,
            json.dumps(self.parameters),
            self.interval_seconds,
            str(self.status),
            to_iso(self.next_due_at),
            self.attempt,
            self.lease_owner,
            _opt_iso(self.lease_expires_at),
            self.last_error,
            self.parent_id,
            _opt_iso(self.created_at),
            _opt_iso(self.finished_at),
            self.duration_ms,
            json.dumps(self.logs),
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskRun:
        """Deserialize from a SQLite row tuple."""
        return cls(
            instance_id=row[0],
            identity=row[1],
            parameters=json.loads(row[2] or "{}"),
            interval_seconds=row[3],
            status=TaskStatus(row[4]),
            next_due_at=from_iso(row[5]),
            attempt=row[6],
            lease_owner=row[7],
            lease_expires_at=_opt_dt(row[8]),
            last_error=row[9],
            parent_id=row[10],
            created_at=_opt_dt(row[11]),
            finished_at=_opt_dt(row[12]),
            duration_ms=row[13],
            logs=json.loads(row[14] or "[]"),
        )


def make_instance_id() -> str:
    """Generate a new task instance ID."""
    return uuid.uuid4().hex
