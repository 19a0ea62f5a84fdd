"""SchedulerEngine — the tick loop that leases, dispatches and settles task instances."""

from __future__ import annotations

import logging
import os
import random
import socket
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings
from src.scheduler.errors import LeaseExpired, UnknownTask
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
from src.scheduler.reporter import OutcomeEvent

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.scheduler.models import Outcome, Scalar
    from src.scheduler.registry import TaskRegistry
    from src.scheduler.reporter import Reporter
    from src.scheduler.store import TaskStore

logger = logging.getLogger(__name__)

POPULATE_TASK = "PopulateSchedulerTask"

_TICK_JOB_ID = "scheduler-tick"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def make_owner_token() -> str:
    """Lease owner token unique to this engine instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, capped.

    ``backoff(attempt) = min(base * 2**attempt, cap) + uniform[0, base)``
    """

    max_attempts: int = 3
    base_seconds: float = 5.0
    cap_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.scheduler_max_attempts,
            base_seconds=settings.scheduler_backoff_base_seconds,
            cap_seconds=settings.scheduler_backoff_cap_seconds,
        )

    def backoff(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay in seconds before retry number *attempt*."""
        rng = rng or random
        delay = min(self.base_seconds * 2**attempt, self.cap_seconds)
        return delay + rng.random() * self.base_seconds


class SchedulerEngine:
    """Discovers due task instances and runs each under an exclusive lease.

    All cross-tick state lives in the store, so several engines (in this or
    other processes) can tick against the same database concurrently.

    Args:
        store: TaskStore holding the run state.
        registry: Closed TaskRegistry used to resolve task identities.
        executor: TaskExecutor that runs implementations.
        reporter: Optional sink that receives every outcome event.
        policy: Retry/backoff policy (default from settings).
        task_timeout: Seconds a single execution may take.
        lease_seconds: Lease duration, must exceed *task_timeout*.
        tick_seconds: Interval between ticks once started.
        batch_size: Maximum due instances considered per tick.
        clock: Returns the current time (timezone-aware).
        rng: Random source for backoff jitter.
        owner: Lease owner token (generated when omitted).
    """

    def __init__(
        self,
        store: TaskStore,
        registry: TaskRegistry,
        executor: TaskExecutor | None = None,
        reporter: Reporter | None = None,
        *,
        policy: RetryPolicy | None = None,
        task_timeout: float | None = None,
        lease_seconds: float | None = None,
        tick_seconds: float | None = None,
        batch_size: int | None = None,
        max_penalty_multiplier: int | None = None,
        populate_on_start: bool | None = None,
        timezone: str | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
        owner: str | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._executor = executor or TaskExecutor()
        self._reporter = reporter
        self._policy = policy or RetryPolicy.from_settings()
        self._task_timeout = task_timeout or settings.scheduler_task_timeout_seconds
        self._lease_seconds = lease_seconds or settings.scheduler_lease_seconds
        self._tick_seconds = tick_seconds or settings.scheduler_tick_seconds
        self._batch_size = batch_size or settings.scheduler_batch_size
        self._max_penalty = max_penalty_multiplier or settings.scheduler_max_penalty_multiplier
        self._populate_on_start = (
            settings.scheduler_populate_on_start if populate_on_start is None else populate_on_start
        )
        self._timezone = timezone or settings.scheduler_timezone
        self._clock = clock or _utcnow
        self._rng = rng or random.Random()
        self._owner = owner or make_owner_token()

        if self._lease_seconds <= self._task_timeout:
            msg = (
                f"lease_seconds ({self._lease_seconds}) must exceed "
                f"task_timeout ({self._task_timeout})"
            )
            raise ValueError(msg)

        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._penalty = 1
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def owner(self) -> str:
        return self._owner

    def now(self) -> datetime:
        """Current time according to the engine clock."""
        return self._clock()

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    @property
    def store(self) -> TaskStore:
        return self._store

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Queue the populate task, then start ticking on an interval."""
        overdue = await self._store.list_due(self._clock())
        if overdue:
            logger.info("Found %d overdue task instance(s) from a previous run", len(overdue))

        if self._populate_on_start and POPULATE_TASK in self._registry:
            populate = TaskRun.from_descriptor(
                TaskDescriptor(POPULATE_TASK, RunOnce(self._clock())), self._clock()
            )
            await self._store.add_run_if_idle(populate)

        self._scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self._tick_seconds, timezone=self._timezone),
            id=_TICK_JOB_ID,
            name="Scheduler tick",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started (owner=%s, tick=%.1fs, tz=%s)",
            self._owner,
            self._tick_seconds,
            self._timezone,
        )

    async def stop(self) -> None:
        """Shut down the tick loop. Leases held by running ticks expire naturally."""
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    # -- Trigger surface -------------------------------------------------------

    async def schedule_task(self, descriptor: TaskDescriptor) -> TaskRun:
        """Persist the first pending instance of *descriptor*.

        Raises ``UnknownTask`` when the identity is not registered.
        """
        self._registry.resolve(descriptor.identity)
        run = TaskRun.from_descriptor(descriptor, self._clock())
        await self._store.add_run(run)
        logger.info(
            "Scheduled task: %s (%s) due %s",
            descriptor.identity,
            run.instance_id,
            run.next_due_at.isoformat(),
        )
        return run

    async def ensure_recurring(
        self,
        identity: str,
        interval_seconds: int,
        parameters: dict[str, Scalar] | None = None,
    ) -> TaskRun | None:
        """Schedule a recurring task unless one is already pending or leased."""
        self._registry.resolve(identity)
        descriptor = TaskDescriptor(identity, Recurring(interval_seconds), parameters or {})
        run = TaskRun.from_descriptor(descriptor, self._clock())
        if await self._store.add_run_if_idle(run):
            return run
        return None

    async def cancel_task(self, instance_id: str) -> bool:
        """Abandon a pending instance. Leased instances cannot be cancelled."""
        return await self._store.abandon_pending(
            instance_id, "Cancelled by operator", self._clock()
        )

    async def trigger_tick(self) -> int:
        """Run one tick immediately, outside of the interval."""
        logger.info("Out-of-band tick requested")
        return await self.tick()

    # -- Tick ------------------------------------------------------------------

    async def tick(self) -> int:
        """Run every due instance once. Returns the number of executions."""
        now = self._clock()
        await self._recover_expired_leases(now)

        due = await self._store.list_due(now, limit=self._batch_size)
        executed = 0
        for run in due:
            if await self._process(run):
                executed += 1
        if executed:
            logger.debug("Tick executed %d of %d due instance(s)", executed, len(due))
        return executed

    async def _run_tick(self) -> None:
        """Callback invoked by APScheduler. Backs off while ticks keep failing."""
        try:
            await self.tick()
        except Exception:
            logger.exception("Scheduler tick failed")
            if self._penalty < self._max_penalty:
                self._penalty = min(self._penalty * 2, self._max_penalty)
                self._reschedule_tick()
            return

        if self._penalty != 1:
            self._penalty = 1
            self._reschedule_tick()

    def _reschedule_tick(self) -> None:
        seconds = self._tick_seconds * self._penalty
        if self._running:
            self._scheduler.reschedule_job(
                _TICK_JOB_ID,
                trigger=IntervalTrigger(seconds=seconds, timezone=self._timezone),
            )
        logger.info("Tick interval is now %.1fs (penalty x%d)", seconds, self._penalty)

    async def _recover_expired_leases(self, now: datetime) -> None:
        """Treat lapsed leases as retryable failures of the stalled instance."""
        for run in await self._store.list_expired_leases(now):
            error = LeaseExpired(run.instance_id, run.lease_owner)
            outcome = RetryableFailure(str(error))
            reclaimed = await self._settle(
                run,
                run.lease_owner or "",
                outcome,
                finished_at=now,
                duration_ms=None,
                logs=run.logs,
                expired_before=now,
            )
            if reclaimed:
                logger.warning("%s", error)
                self._report(
                    OutcomeEvent(
                        instance_id=run.instance_id,
                        identity=run.identity,
                        attempt=run.attempt + 1,
                        outcome=outcome,
                        duration_ms=0,
                    )
                )

    async def _process(self, run: TaskRun) -> bool:
        """Lease and execute one due instance. Returns True if it ran."""
        try:
            implementation = self._registry.resolve(run.identity)
        except UnknownTask as exc:
            await self._abandon_unknown(run, exc)
            return False

        now = self._clock()
        leased = await self._store.acquire_lease(
            run.instance_id,
            self._owner,
            now,
            now + timedelta(seconds=self._lease_seconds),
        )
        if leased is None:
            logger.debug("Skipping %s (%s): lease not acquired", run.identity, run.instance_id)
            return False

        logger.info(
            "Executing task: %s (%s) attempt %d",
            leased.identity,
            leased.instance_id,
            leased.attempt + 1,
        )
        log = TaskLog()
        t0 = time.monotonic()
        outcome = await self._executor.execute(
            implementation, leased.parameters, self._task_timeout, log=log
        )
        duration_ms = int((time.monotonic() - t0) * 1000)

        await self._settle(
            leased,
            self._owner,
            outcome,
            finished_at=self._clock(),
            duration_ms=duration_ms,
            logs=log.entries,
        )
        self._report(
            OutcomeEvent(
                instance_id=leased.instance_id,
                identity=leased.identity,
                attempt=leased.attempt + 1,
                outcome=outcome,
                duration_ms=duration_ms,
            )
        )
        return True

    async def _abandon_unknown(self, run: TaskRun, exc: UnknownTask) -> None:
        if not await self._store.abandon_pending(run.instance_id, str(exc), self._clock()):
            return
        logger.error(
            "Abandoned %s: task is not registered, needs operator attention",
            run.instance_id,
        )
        self._report(
            OutcomeEvent(
                instance_id=run.instance_id,
                identity=run.identity,
                attempt=run.attempt + 1,
                outcome=TerminalFailure(str(exc)),
                duration_ms=0,
                alert=True,
            )
        )

    async def _settle(
        self,
        run: TaskRun,
        owner: str,
        outcome: Outcome,
        *,
        finished_at: datetime,
        duration_ms: int | None,
        logs: list[dict],
        expired_before: datetime | None = None,
    ) -> bool:
        """Apply *outcome* to the leased *run* and release the lease."""
        common = {
            "finished_at": finished_at,
            "duration_ms": duration_ms,
            "logs": logs,
            "expired_before": expired_before,
        }

        if isinstance(outcome, Success):
            follow_up = None
            if run.is_recurring and not outcome.stop:
                interval = outcome.interval_seconds or run.interval_seconds
                follow_up = run.next_recurrence(finished_at, interval)
            return await self._store.release(
                run,
                owner,
                status=TaskStatus.SUCCEEDED,
                attempt=run.attempt,
                next_due_at=run.next_due_at,
                last_error=None,
                follow_up=follow_up,
                **common,
            )

        attempt = run.attempt + 1
        if isinstance(outcome, RetryableFailure) and attempt < self._policy.max_attempts:
            delay = self._policy.backoff(attempt, self._rng)
            logger.info(
                "Retrying %s (%s) in %.1fs (attempt %d/%d): %s",
                run.identity,
                run.instance_id,
                delay,
                attempt,
                self._policy.max_attempts,
                outcome.reason,
            )
            return await self._store.release(
                run,
                owner,
                status=TaskStatus.PENDING,
                attempt=attempt,
                next_due_at=finished_at + timedelta(seconds=delay),
                last_error=outcome.reason,
                **common,
            )

        if run.is_recurring:
            logger.warning(
                "Task %s (%s) failed, next recurrence in %ds: %s",
                run.identity,
                run.instance_id,
                run.interval_seconds,
                outcome.reason,
            )
            return await self._store.release(
                run,
                owner,
                status=TaskStatus.FAILED,
                attempt=attempt,
                next_due_at=run.next_due_at,
                last_error=outcome.reason,
                follow_up=run.next_recurrence(finished_at, run.interval_seconds),
                **common,
            )

        logger.warning(
            "Abandoned task %s (%s) after %d attempt(s): %s",
            run.identity,
            run.instance_id,
            attempt,
            outcome.reason,
        )
        return await self._store.release(
            run,
            owner,
            status=TaskStatus.ABANDONED,
            attempt=attempt,
            next_due_at=run.next_due_at,
            last_error=outcome.reason,
            **common,
        )

    def _report(self, event: OutcomeEvent) -> None:
        if self._reporter is None:
            return
        try:
            self._reporter.report(event)
        except Exception:
            logger.exception("Reporter failed for %s", event.instance_id)
