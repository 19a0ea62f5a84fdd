"""Background task scheduler — registry, run state, execution, and the tick loop."""

from src.scheduler.engine import RetryPolicy, SchedulerEngine
from src.scheduler.errors import (
    LeaseExpired,
    RegistryConfigError,
    SchedulerError,
    TerminalTaskError,
    UnknownTask,
)
from src.scheduler.executor import TaskExecutor, TaskLog
from src.scheduler.models import (
    Recurring,
    RetryableFailure,
    RunOnce,
    Success,
    TaskDescriptor,
    TaskRun,
    TaskStatus,
    TerminalFailure,
)
from src.scheduler.registry import TaskRegistry
from src.scheduler.reporter import (
    CompositeReporter,
    LoggingReporter,
    OutcomeEvent,
    RecordingReporter,
    Reporter,
)
from src.scheduler.store import TaskStore

__all__ = [
    "CompositeReporter",
    "LeaseExpired",
    "LoggingReporter",
    "OutcomeEvent",
    "RecordingReporter",
    "Recurring",
    "RegistryConfigError",
    "Reporter",
    "RetryPolicy",
    "RetryableFailure",
    "RunOnce",
    "SchedulerEngine",
    "SchedulerError",
    "Success",
    "TaskDescriptor",
    "TaskExecutor",
    "TaskLog",
    "TaskRegistry",
    "TaskRun",
    "TaskStatus",
    "TaskStore",
    "TerminalFailure",
    "TerminalTaskError",
    "UnknownTask",
]
