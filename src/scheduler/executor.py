"""TaskExecutor — runs one task implementation and classifies the outcome."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from src.scheduler.errors import TerminalTaskError
from src.scheduler.models import (
    RetryableFailure,
    Success,
    TerminalFailure,
    outcome_name,
)

if TYPE_CHECKING:
    from src.scheduler.models import Outcome
    from src.scheduler.tasks.base import BaseTask

logger = logging.getLogger(__name__)


class TaskLogSeverity(StrEnum):
    DEBUG = "Debug"
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"
    EXCEPTION = "Exception"


class TaskLog:
    """Log entries recorded by a task during one execution.

    The entries are stored on the task instance so operators can review what
    a run did, in chronological order.
    """

    def __init__(self) -> None:
        self._entries: list[dict[str, Any]] = []

    def _add(self, severity: TaskLogSeverity, message: str, data: tuple) -> None:
        self._entries.append(
            {
                "severity": str(severity),
                "time": datetime.now(UTC).isoformat(),
                "message": message,
                "data": [_jsonable(item) for item in data],
            }
        )

    def debug(self, message: str, *data: Any) -> None:
        self._add(TaskLogSeverity.DEBUG, message, data)

    def info(self, message: str, *data: Any) -> None:
        self._add(TaskLogSeverity.INFO, message, data)

    def warning(self, message: str, *data: Any) -> None:
        self._add(TaskLogSeverity.WARNING, message, data)

    def error(self, message: str, *data: Any) -> None:
        self._add(TaskLogSeverity.ERROR, message, data)

    def exception(self, message: str, *data: Any) -> None:
        self._add(TaskLogSeverity.EXCEPTION, message, data)

    @property
    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)


def _jsonable(value: Any) -> Any:
    if isinstance(value, str | int | float | bool) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    return repr(value)


def _accepts_log(fn: Any) -> bool:
    try:
        params = inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return False
    return "log" in params or any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values())


class TaskExecutor:
    """Invokes task implementations with a hard wall-clock timeout.

    Every error raised by an implementation is converted into an outcome:
    ``TerminalTaskError`` and invalid parameters become ``TerminalFailure``,
    timeouts and everything else become ``RetryableFailure``.
    """

    async def execute(
        self,
        implementation: BaseTask,
        parameters: dict[str, Any],
        timeout: float,
        log: TaskLog | None = None,
    ) -> Outcome:
        """Run *implementation* once and return its classified outcome."""
        name = type(implementation).__name__

        params: Any = parameters
        if implementation.params_model is not None:
            try:
                params = implementation.params_model(**parameters)
            except ValidationError as exc:
                logger.warning("Invalid parameters for %s: %s", name, exc)
                return TerminalFailure(f"Invalid parameters: {exc}")

        kwargs: dict[str, Any] = {}
        if _accepts_log(implementation.run):
            kwargs["log"] = log if log is not None else TaskLog()

        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(implementation.run(params, **kwargs), timeout)
        except TimeoutError:
            logger.warning("Task %s timed out after %.1fs", name, timeout)
            return RetryableFailure(f"Timed out after {timeout:g}s")
        except TerminalTaskError as exc:
            logger.warning("Task %s failed terminally: %s", name, exc)
            return TerminalFailure(str(exc) or type(exc).__name__)
        except Exception as exc:
            logger.exception("Task %s raised", name)
            return RetryableFailure(f"{type(exc).__name__}: {exc}")

        outcome = _to_outcome(result)
        logger.info(
            "Task %s finished: %s (%.0fms)",
            name,
            outcome_name(outcome),
            (time.monotonic() - t0) * 1000,
        )
        return outcome


def _to_outcome(result: Any) -> Outcome:
    if isinstance(result, Success | RetryableFailure | TerminalFailure):
        return result
    if result is None or result is True:
        return Success()
    if result is False:
        return RetryableFailure("Task reported failure")
    msg = f"Task returned unsupported result: {result!r}"
    return TerminalFailure(msg)
