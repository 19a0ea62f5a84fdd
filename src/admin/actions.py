"""Scheduler admin actions — schedule, list, inspect, cancel, tick and outcome history.

These are the operator-facing entry points of the scheduler. Every action is
guarded by an access check supplied by the host application; the permission
model itself lives outside this package.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, ValidationError

from src.scheduler.errors import UnknownTask
from src.scheduler.models import Recurring, RunOnce, TaskDescriptor, TaskStatus, outcome_name

if TYPE_CHECKING:
    from src.scheduler.engine import SchedulerEngine
    from src.scheduler.models import TaskRun
    from src.scheduler.reporter import OutcomeEvent, RecordingReporter

logger = logging.getLogger(__name__)

AccessCheck = Callable[[str], bool]

# Set by init_admin_actions() during startup.
_engine: SchedulerEngine | None = None
_access_check: AccessCheck | None = None
_outcomes: RecordingReporter | None = None


@dataclass
class ActionResult:
    """Result of an admin action: either *data* or an *error* message."""

    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_content(self) -> str:
        """Serialize for an HTTP response body."""
        if self.error:
            return json.dumps({"success": False, "error": self.error})
        return json.dumps({"success": True, **(self.data or {})})


class ActionParams(BaseModel):
    """Base class for admin action parameter models."""


def init_admin_actions(
    engine: SchedulerEngine | None,
    access_check: AccessCheck | None,
    outcomes: RecordingReporter | None = None,
) -> None:
    """Wire the scheduler engine and the access check into the actions.

    *outcomes* is the in-memory reporter backing ``list_outcomes``.
    Called once during startup, after the engine is constructed.
    """
    global _engine, _access_check, _outcomes  # noqa: PLW0603
    _engine = engine
    _access_check = access_check
    _outcomes = outcomes


def _get_engine() -> SchedulerEngine:
    if _engine is None:
        msg = "Scheduler not initialised — call init_admin_actions() first"
        raise RuntimeError(msg)
    return _engine


def _authorize(action: str) -> ActionResult | None:
    if _access_check is None or not _access_check(action):
        logger.warning("Access denied for scheduler action: %s", action)
        return ActionResult(error="Access denied")
    return None


def _validate(model: type[ActionParams], **kwargs: Any) -> ActionParams | ActionResult:
    try:
        return model(**kwargs)
    except ValidationError as exc:
        return ActionResult(error=f"Invalid parameters: {exc}")


def _display_state(status: TaskStatus) -> str:
    if not status.is_terminal:
        return "pending"
    if status is TaskStatus.SUCCEEDED:
        return "success"
    return "failure"


def _row(engine: SchedulerEngine, run: TaskRun) -> dict[str, Any]:
    return {
        "id": run.instance_id,
        "parent_id": run.parent_id,
        "state": _display_state(run.status),
        "status": str(run.status),
        "date": run.next_due_at.isoformat(),
        "task": engine.registry.describe(run.identity, run.parameters),
        "identity": run.identity,
        "attempt": run.attempt,
        "execution_interval": run.interval_seconds,
        "execution_time": run.duration_ms,
        "last_error": run.last_error,
    }


# -- schedule_task -------------------------------------------------------------


class ScheduleTaskParams(ActionParams):
    task: str = Field(min_length=1, description="Identity of the task to schedule")
    task_type: Literal["one_off", "recurring"] = Field(
        description='Either "one_off" (runs once) or "recurring" (runs on an interval)'
    )
    run_at: datetime | None = Field(
        default=None,
        description="Timezone-aware ISO 8601 datetime, one-off tasks only. Defaults to now.",
    )
    interval_seconds: int | None = Field(
        default=None, ge=1, description="Interval for recurring tasks"
    )
    params: dict[str, str | int | float | bool | None] = Field(
        default_factory=dict, description="Parameters handed to the task"
    )


async def schedule_task(**kwargs: Any) -> ActionResult:
    denied = _authorize("scheduler.schedule")
    if denied:
        return denied
    params = _validate(ScheduleTaskParams, **kwargs)
    if isinstance(params, ActionResult):
        return params

    engine = _get_engine()
    if params.task_type == "recurring":
        if params.interval_seconds is None:
            return ActionResult(error="interval_seconds is required for recurring tasks")
        schedule = Recurring(params.interval_seconds)
    else:
        run_at = params.run_at or engine.now()
        if run_at.tzinfo is None:
            return ActionResult(error="run_at must include a timezone")
        schedule = RunOnce(run_at)

    try:
        run = await engine.schedule_task(TaskDescriptor(params.task, schedule, params.params))
    except (UnknownTask, ValueError) as exc:
        return ActionResult(error=str(exc))

    return ActionResult(
        data={
            "scheduled": True,
            "id": run.instance_id,
            "task": engine.registry.describe(run.identity, run.parameters),
            "task_type": params.task_type,
            "next_due_at": run.next_due_at.isoformat(),
        }
    )


# -- list_tasks ----------------------------------------------------------------


class ListTasksParams(ActionParams):
    page: int = Field(default=0, ge=0)
    page_size: int | None = Field(default=None, ge=1)


async def list_tasks(**kwargs: Any) -> ActionResult:
    denied = _authorize("scheduler.list")
    if denied:
        return denied
    params = _validate(ListTasksParams, **kwargs)
    if isinstance(params, ActionResult):
        return params

    engine = _get_engine()
    offset = params.page * params.page_size if params.page_size else 0
    runs = await engine.store.list_runs(limit=params.page_size, offset=offset)
    rows = [_row(engine, run) for run in runs]
    return ActionResult(data={"rows": rows, "count": len(rows)})


# -- get_task ------------------------------------------------------------------


class TaskIdParams(ActionParams):
    id: str = Field(description="Task instance ID")


async def get_task(**kwargs: Any) -> ActionResult:
    denied = _authorize("scheduler.list")
    if denied:
        return denied
    params = _validate(TaskIdParams, **kwargs)
    if isinstance(params, ActionResult):
        return params

    engine = _get_engine()
    run = await engine.store.get_run(params.id)
    if run is None:
        return ActionResult(error=f"Task not found: {params.id}")
    return ActionResult(
        data={
            **_row(engine, run),
            "params": run.parameters,
            "logs": run.logs,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        }
    )


# -- cancel_task ---------------------------------------------------------------


async def cancel_task(**kwargs: Any) -> ActionResult:
    denied = _authorize("scheduler.cancel")
    if denied:
        return denied
    params = _validate(TaskIdParams, **kwargs)
    if isinstance(params, ActionResult):
        return params

    cancelled = await _get_engine().cancel_task(params.id)
    if not cancelled:
        return ActionResult(error=f"Task {params.id} is not pending")
    return ActionResult(data={"cancelled": True, "id": params.id})


# -- trigger_tick --------------------------------------------------------------


async def trigger_tick() -> ActionResult:
    denied = _authorize("scheduler.tick")
    if denied:
        return denied
    executed = await _get_engine().trigger_tick()
    return ActionResult(data={"executed": executed})


# -- list_outcomes -------------------------------------------------------------


class ListOutcomesParams(ActionParams):
    limit: int = Field(default=50, ge=1, le=1000, description="Most recent events to return")


def _event_row(event: OutcomeEvent) -> dict[str, Any]:
    return {
        "id": event.instance_id,
        "identity": event.identity,
        "attempt": event.attempt,
        "outcome": outcome_name(event.outcome),
        "reason": getattr(event.outcome, "reason", None),
        "duration_ms": event.duration_ms,
        "alert": event.alert,
    }


async def list_outcomes(**kwargs: Any) -> ActionResult:
    denied = _authorize("scheduler.list")
    if denied:
        return denied
    params = _validate(ListOutcomesParams, **kwargs)
    if isinstance(params, ActionResult):
        return params

    if _outcomes is None:
        return ActionResult(error="Outcome history is not enabled")
    events = _outcomes.events[-params.limit :]
    rows = [_event_row(event) for event in reversed(events)]
    return ActionResult(data={"rows": rows, "count": len(rows)})
