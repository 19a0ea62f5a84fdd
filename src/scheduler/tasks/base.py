"""Base types for task implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from src.scheduler.models import Outcome


class TaskParams(BaseModel):
    """Base class for task parameter models.

    Subclass with Field() definitions. Unknown keys are rejected so that a
    typo in a stored descriptor fails loudly instead of being ignored.
    """

    model_config = ConfigDict(extra="forbid")


class BaseTask(ABC):
    """Abstract base for task implementations.

    The executor validates the stored parameters against *params_model*
    (when set) and passes the resulting model to :meth:`run`; otherwise
    :meth:`run` receives the raw parameter dict. Implementations that accept
    a ``log`` keyword also receive the execution's ``TaskLog``.

    Example::

        class MyTask(BaseTask):
            params_model = MyTaskParams

            async def run(self, params: MyTaskParams, log: TaskLog) -> Outcome | None:
                log.info("Doing the thing")
    """

    params_model: type[TaskParams] | None = None

    @abstractmethod
    async def run(self, params: Any, **kwargs: Any) -> Outcome | bool | None:
        """Execute one run of the task."""
        ...

    def describe(self, label: str, params: dict[str, Any]) -> str:
        """Human-readable description of a run, for display only."""
        return label
