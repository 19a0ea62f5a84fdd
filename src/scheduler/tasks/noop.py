"""No-op tasks for smoke-testing the scheduler from the admin area."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import Field

from src.scheduler.errors import TerminalTaskError
from src.scheduler.models import Success
from src.scheduler.tasks.base import BaseTask, TaskParams

if TYPE_CHECKING:
    from src.scheduler.executor import TaskLog
    from src.scheduler.models import Outcome


class NoopTask(BaseTask):
    """Does nothing, always succeeds."""

    async def run(self, params: dict[str, Any]) -> None:
        return None


class NoopComplexTaskParams(TaskParams):
    succeed: bool = Field(description="Whether the run should succeed")
    logs: bool = Field(default=False, description="Record the parameters in the task log")
    terminal: bool = Field(
        default=False, description="Fail terminally instead of retryably when not succeeding"
    )
    interval_seconds: int | None = Field(
        default=None, ge=1, description="Override the interval of the next recurrence"
    )
    stop: bool = Field(default=False, description="End the recurrence after this run")


class NoopComplexTask(BaseTask):
    """Parameterised no-op, lets operators exercise every outcome path."""

    params_model = NoopComplexTaskParams

    async def run(self, params: NoopComplexTaskParams, log: TaskLog) -> Outcome | bool:
        if params.logs:
            log.info("Parameters=", params.model_dump())
        if not params.succeed:
            if params.terminal:
                msg = "NoopComplexTask asked to fail terminally"
                raise TerminalTaskError(msg)
            return False
        return Success(interval_seconds=params.interval_seconds, stop=params.stop)

    def describe(self, label: str, params: dict[str, Any]) -> str:
        outcome = "succeed" if params.get("succeed") else "fail"
        return f"{label} ({outcome})"
