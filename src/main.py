"""Scheduler worker entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING

from src.config import settings

if TYPE_CHECKING:
    from src.admin.actions import AccessCheck
    from src.scheduler.engine import SchedulerEngine

logger = logging.getLogger(__name__)


def init_scheduler(access_check: AccessCheck | None = None) -> SchedulerEngine:
    """Create the scheduler engine and wire it into the admin actions."""
    from src.admin.actions import init_admin_actions
    from src.scheduler.engine import SchedulerEngine
    from src.scheduler.executor import TaskExecutor
    from src.scheduler.reporter import CompositeReporter, LoggingReporter, RecordingReporter
    from src.scheduler.store import TaskStore
    from src.scheduler.tasks import create_registry

    store = TaskStore.get()
    registry = create_registry(store, settings.get_recurring_tasks())
    outcomes = RecordingReporter()
    engine = SchedulerEngine(
        store=store,
        registry=registry,
        executor=TaskExecutor(),
        reporter=CompositeReporter(LoggingReporter(), outcomes),
    )

    # Give the admin actions access to the engine and the recent outcomes
    init_admin_actions(engine, access_check, outcomes)

    logger.info("Scheduler initialised with tasks: %s", ", ".join(registry.identities))
    return engine


async def run() -> None:
    """Start the engine and tick until SIGINT/SIGTERM."""
    engine = init_scheduler()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await engine.start()
    try:
        await stop.wait()
    finally:
        await engine.stop()


def main() -> None:
    """Run the scheduler worker."""
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level),
    )
    logger.info("Starting scheduler worker (database=%s)", settings.database_path)
    asyncio.run(run())


if __name__ == "__main__":
    main()
