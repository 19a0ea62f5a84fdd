"""Built-in task kinds and the process-wide task table."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.scheduler.errors import RegistryConfigError
from src.scheduler.registry import TaskRegistry
from src.scheduler.tasks.base import BaseTask, TaskParams
from src.scheduler.tasks.noop import NoopComplexTask, NoopTask
from src.scheduler.tasks.populate import PopulateSchedulerTask

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from datetime import datetime

    from src.scheduler.store import TaskStore

# Display labels, keyed by task identity. Every built-in task needs one.
TASK_LABELS: dict[str, str] = {
    "NoopTask": "No-op task",
    "NoopComplexTask": "No-op task (parameterised)",
    "PopulateSchedulerTask": "Populate the scheduler",
}


def create_registry(
    store: TaskStore,
    recurring: Mapping[str, int] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> TaskRegistry:
    """Build the static task table for this process.

    *recurring* lists the tasks that ``PopulateSchedulerTask`` keeps alive;
    each of them must itself be a registered task with an interval of at
    least one second. *clock* should be the clock of the engine that will
    dispatch the seeded instances.
    """
    recurring = dict(recurring or {})
    registry = TaskRegistry(
        implementations={
            "NoopTask": NoopTask(),
            "NoopComplexTask": NoopComplexTask(),
            "PopulateSchedulerTask": PopulateSchedulerTask(store, recurring, clock),
        },
        labels=TASK_LABELS,
    )

    unknown = sorted(identity for identity in recurring if identity not in registry)
    if unknown:
        msg = f"Recurring tasks are not registered: {', '.join(unknown)}"
        raise RegistryConfigError(msg)

    invalid = sorted(identity for identity, interval in recurring.items() if interval < 1)
    if invalid:
        msg = f"Recurring task intervals must be >= 1 second: {', '.join(invalid)}"
        raise RegistryConfigError(msg)
    return registry


__all__ = [
    "TASK_LABELS",
    "BaseTask",
    "NoopComplexTask",
    "NoopTask",
    "PopulateSchedulerTask",
    "TaskParams",
    "create_registry",
]
