"""Task registry — the closed catalog of task kinds the scheduler can dispatch."""

from __future__ import annotations

import inspect
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from src.scheduler.errors import RegistryConfigError, UnknownTask

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from src.scheduler.tasks.base import BaseTask

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Immutable mapping from task identity to implementation and label.

    The table is fixed at construction. Every implementation needs a label
    and every label needs an implementation; a mismatch is reported as a
    ``RegistryConfigError`` at startup rather than at dispatch time.

    Usage::

        registry = TaskRegistry(
            implementations={"NoopTask": NoopTask()},
            labels={"NoopTask": "No-op"},
        )
        task = registry.resolve("NoopTask")
    """

    def __init__(
        self,
        implementations: Mapping[str, BaseTask],
        labels: Mapping[str, str],
    ) -> None:
        missing_labels = sorted(set(implementations) - set(labels))
        missing_impls = sorted(set(labels) - set(implementations))
        if missing_labels or missing_impls:
            parts = []
            if missing_labels:
                parts.append(f"missing labels for {', '.join(missing_labels)}")
            if missing_impls:
                parts.append(f"missing implementations for {', '.join(missing_impls)}")
            msg = "Incomplete task registry: " + "; ".join(parts)
            raise RegistryConfigError(msg)

        for identity, implementation in implementations.items():
            run = getattr(implementation, "run", None)
            if run is None or not inspect.iscoroutinefunction(run):
                msg = f"Task '{identity}' must implement an async run() method"
                raise TypeError(msg)

        self._implementations = MappingProxyType(dict(implementations))
        self._labels = MappingProxyType(dict(labels))
        logger.debug("Task registry created with %d task(s)", len(self._implementations))

    def resolve(self, identity: str) -> BaseTask:
        """Return the implementation for *identity*, or raise ``UnknownTask``."""
        try:
            return self._implementations[identity]
        except KeyError:
            raise UnknownTask(identity) from None

    def label(self, identity: str) -> str:
        """Return the display label for *identity*, or raise ``UnknownTask``."""
        try:
            return self._labels[identity]
        except KeyError:
            raise UnknownTask(identity) from None

    def describe(self, identity: str, parameters: dict[str, Any]) -> str:
        """Display text for a run: the label, formatted by the task when it can.

        Unknown identities are shown as-is so that stale rows still render.
        """
        if identity not in self._implementations:
            return identity
        label = self._labels[identity]
        try:
            return self._implementations[identity].describe(label, parameters)
        except Exception:
            logger.debug("describe() failed for %s, using label", identity, exc_info=True)
            return label

    @property
    def identities(self) -> list[str]:
        """All registered task identities."""
        return list(self._implementations)

    def __contains__(self, identity: object) -> bool:
        return identity in self._implementations

    def __iter__(self) -> Iterator[str]:
        return iter(self._implementations)

    def __len__(self) -> int:
        return len(self._implementations)
