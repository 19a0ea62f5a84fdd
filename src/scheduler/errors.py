"""Scheduler error taxonomy."""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class UnknownTask(SchedulerError):
    """Raised when a task identity is not present in the registry.

    This is a configuration defect: it is never retried, and it is flagged
    for operator attention.
    """

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Unknown task: {identity}")


class RegistryConfigError(SchedulerError):
    """Raised at startup when the task registry is incomplete."""


class TerminalTaskError(SchedulerError):
    """Raised by a task implementation when the run can never succeed.

    Typical causes are malformed parameters or a permanently invalid upstream
    state. The executor turns this into a ``TerminalFailure``.
    """


class LeaseExpired(SchedulerError):
    """A lease passed its expiry before the owning engine released it."""

    def __init__(self, instance_id: str, owner: str | None) -> None:
        self.instance_id = instance_id
        self.owner = owner
        super().__init__(f"Lease expired for {instance_id} (owner={owner})")
