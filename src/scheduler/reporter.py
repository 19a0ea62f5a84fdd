"""Outcome reporting — observability sinks for task execution attempts."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from src.scheduler.models import Success, outcome_name

if TYPE_CHECKING:
    from src.scheduler.models import Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeEvent:
    """One execution attempt of a task instance.

    Attributes:
        instance_id: Task instance the attempt belongs to.
        identity: Task kind.
        attempt: 1-based ordinal of this attempt within the logical run.
        outcome: What the attempt produced.
        duration_ms: Wall time of the attempt, 0 when nothing was executed.
        alert: Whether the event needs operator attention (unknown tasks).
    """

    instance_id: str
    identity: str
    attempt: int
    outcome: Outcome
    duration_ms: int
    alert: bool = False

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Success)


@runtime_checkable
class Reporter(Protocol):
    """Sink for outcome events. Must never influence scheduling."""

    def report(self, event: OutcomeEvent) -> None: ...


class LoggingReporter:
    """Writes every outcome event to the log stream."""

    def __init__(self, name: str = "scheduler.outcomes") -> None:
        self._logger = logging.getLogger(name)

    def report(self, event: OutcomeEvent) -> None:
        if event.alert:
            level = logging.ERROR
        elif event.succeeded:
            level = logging.INFO
        else:
            level = logging.WARNING

        reason = getattr(event.outcome, "reason", "")
        self._logger.log(
            level,
            "%s (%s) attempt=%d outcome=%s duration=%dms%s",
            event.identity,
            event.instance_id,
            event.attempt,
            outcome_name(event.outcome),
            event.duration_ms,
            f" reason={reason}" if reason else "",
        )


class RecordingReporter:
    """Keeps the most recent outcome events in memory."""

    def __init__(self, maxlen: int | None = 1000) -> None:
        self._events: deque[OutcomeEvent] = deque(maxlen=maxlen)

    def report(self, event: OutcomeEvent) -> None:
        self._events.append(event)

    @property
    def events(self) -> list[OutcomeEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()


class CompositeReporter:
    """Fans each event out to several reporters."""

    def __init__(self, *reporters: Reporter) -> None:
        self._reporters = reporters

    def report(self, event: OutcomeEvent) -> None:
        for reporter in self._reporters:
            try:
                reporter.report(event)
            except Exception:
                logger.exception("Reporter %s failed", type(reporter).__name__)
