"""PopulateSchedulerTask — seeds the configured recurring tasks."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING

from src.scheduler.models import Recurring, Success, TaskDescriptor, TaskRun
from src.scheduler.tasks.base import BaseTask, TaskParams

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from src.scheduler.executor import TaskLog
    from src.scheduler.models import Outcome
    from src.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


class PopulateSchedulerTaskParams(TaskParams):
    """The populate task takes no parameters."""


class PopulateSchedulerTask(BaseTask):
    """Makes sure every configured recurring task has a live instance.

    Queued automatically when an engine starts. Identities that already have
    a pending or leased instance are left alone, so running it repeatedly or
    from several engines at once is harmless.

    Args:
        store: TaskStore to insert instances into.
        recurring: Task identity to interval (seconds) mapping.
        clock: Returns the current time; pass the engine clock so seeded
            instances fall due on the engine's timeline.
    """

    params_model = PopulateSchedulerTaskParams

    def __init__(
        self,
        store: TaskStore,
        recurring: Mapping[str, int],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._recurring = MappingProxyType(dict(recurring))
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def recurring(self) -> Mapping[str, int]:
        return self._recurring

    async def run(self, params: PopulateSchedulerTaskParams, log: TaskLog) -> Outcome:
        now = self._clock()
        created = 0
        for identity, interval in self._recurring.items():
            descriptor = TaskDescriptor(identity, Recurring(interval))
            run = TaskRun.from_descriptor(descriptor, now)
            if await self._store.add_run_if_idle(run):
                created += 1
                log.info("Scheduled recurring task", identity, interval)
            else:
                log.debug("Recurring task already live", identity)
        logger.info(
            "Populated scheduler: %d of %d recurring task(s) created",
            created,
            len(self._recurring),
        )
        return Success()
