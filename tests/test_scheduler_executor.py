"""Tests for TaskExecutor — outcome classification and task logs."""

import asyncio
from typing import Any

from pydantic import Field

from src.scheduler.errors import TerminalTaskError
from src.scheduler.executor import TaskExecutor, TaskLog
from src.scheduler.models import RetryableFailure, Success, TerminalFailure
from src.scheduler.tasks.base import BaseTask, TaskParams


class _Params(TaskParams):
    count: int = Field(ge=0)


class _ReturnTask(BaseTask):
    def __init__(self, result: Any) -> None:
        self.result = result
        self.seen: Any = None

    async def run(self, params: Any) -> Any:
        self.seen = params
        return self.result


class _ValidatedTask(_ReturnTask):
    params_model = _Params


class _RaisingTask(BaseTask):
    def __init__(self, exc: Exception) -> None:
        self.exc = exc

    async def run(self, params: Any) -> None:
        raise self.exc


class _SlowTask(BaseTask):
    async def run(self, params: Any) -> None:
        await asyncio.sleep(10)


class _LoggingTask(BaseTask):
    async def run(self, params: Any, log: TaskLog) -> None:
        log.info("Starting", {"festival": 3})
        log.warning("Odd value", object())


class _KwargsTask(BaseTask):
    def __init__(self) -> None:
        self.kwargs: dict[str, Any] = {}

    async def run(self, params: Any, **kwargs: Any) -> None:
        self.kwargs = kwargs


async def _execute(task: BaseTask, params: dict | None = None, **kwargs: Any):
    return await TaskExecutor().execute(task, params or {}, timeout=kwargs.pop("timeout", 5), **kwargs)


# -- Result mapping ------------------------------------------------------------


async def test_none_is_success() -> None:
    assert await _execute(_ReturnTask(None)) == Success()


async def test_true_is_success() -> None:
    assert await _execute(_ReturnTask(True)) == Success()


async def test_false_is_retryable() -> None:
    outcome = await _execute(_ReturnTask(False))
    assert isinstance(outcome, RetryableFailure)
    assert outcome.reason == "Task reported failure"


async def test_explicit_outcome_passes_through() -> None:
    outcome = Success(interval_seconds=30)
    assert await _execute(_ReturnTask(outcome)) is outcome


async def test_unsupported_result_is_terminal() -> None:
    outcome = await _execute(_ReturnTask("done"))
    assert isinstance(outcome, TerminalFailure)
    assert "unsupported result" in outcome.reason


# -- Errors --------------------------------------------------------------------


async def test_exception_is_retryable() -> None:
    outcome = await _execute(_RaisingTask(ConnectionError("upstream down")))
    assert isinstance(outcome, RetryableFailure)
    assert outcome.reason == "ConnectionError: upstream down"


async def test_terminal_error_is_terminal() -> None:
    outcome = await _execute(_RaisingTask(TerminalTaskError("bad festival")))
    assert outcome == TerminalFailure("bad festival")


async def test_timeout_is_retryable() -> None:
    outcome = await _execute(_SlowTask(), timeout=0.05)
    assert isinstance(outcome, RetryableFailure)
    assert outcome.reason == "Timed out after 0.05s"


# -- Parameters ----------------------------------------------------------------


async def test_params_model_is_validated() -> None:
    task = _ValidatedTask(None)
    assert await _execute(task, {"count": 2}) == Success()
    assert isinstance(task.seen, _Params)
    assert task.seen.count == 2


async def test_invalid_params_are_terminal_and_not_run() -> None:
    task = _ValidatedTask(None)
    outcome = await _execute(task, {"count": -1})
    assert isinstance(outcome, TerminalFailure)
    assert outcome.reason.startswith("Invalid parameters")
    assert task.seen is None


async def test_unknown_params_are_rejected() -> None:
    outcome = await _execute(_ValidatedTask(None), {"count": 1, "extra": "x"})
    assert isinstance(outcome, TerminalFailure)


async def test_raw_params_without_model() -> None:
    task = _ReturnTask(None)
    await _execute(task, {"a": 1})
    assert task.seen == {"a": 1}


# -- Task log ------------------------------------------------------------------


async def test_log_is_injected_and_recorded() -> None:
    log = TaskLog()
    assert await _execute(_LoggingTask(), log=log) == Success()

    entries = log.entries
    assert [e["severity"] for e in entries] == ["Info", "Warning"]
    assert entries[0]["message"] == "Starting"
    assert entries[0]["data"] == [{"festival": 3}]
    assert entries[1]["data"][0].startswith("<object object")


async def test_log_passed_through_kwargs() -> None:
    task = _KwargsTask()
    await _execute(task)
    assert isinstance(task.kwargs["log"], TaskLog)


async def test_log_not_passed_when_not_accepted() -> None:
    task = _ReturnTask(None)
    assert await _execute(task, log=TaskLog()) == Success()


def test_task_log_severities() -> None:
    log = TaskLog()
    log.debug("d")
    log.info("i")
    log.warning("w")
    log.error("e")
    log.exception("x")
    assert [e["severity"] for e in log.entries] == [
        "Debug",
        "Info",
        "Warning",
        "Error",
        "Exception",
    ]
