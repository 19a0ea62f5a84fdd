"""TaskStore — aiosqlite persistence for task run state."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import TYPE_CHECKING

import aiosqlite

from src.config import settings
from src.scheduler.models import TaskRun, TaskStatus, to_iso

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS task_runs (
    instance_id TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    parameters TEXT NOT NULL DEFAULT '{}',
    interval_seconds INTEGER,
    status TEXT NOT NULL,
    next_due_at TEXT NOT NULL,
    attempt INTEGER NOT NULL DEFAULT 0,
    lease_owner TEXT,
    lease_expires_at TEXT,
    last_error TEXT,
    parent_id TEXT,
    created_at TEXT NOT NULL,
    finished_at TEXT,
    duration_ms INTEGER,
    logs TEXT NOT NULL DEFAULT '[]'
)
"""

_CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_task_runs_due ON task_runs (status, next_due_at)",
    # Single-flight: at most one leased row per task identity.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_task_runs_single_flight
        ON task_runs (identity) WHERE status = 'leased'
    """,
)

_COLUMNS = (
    "instance_id, identity, parameters, interval_seconds, status, next_due_at, "
    "attempt, lease_owner, lease_expires_at, last_error, parent_id, created_at, "
    "finished_at, duration_ms, logs"
)

_INSERT = f"INSERT INTO task_runs ({_COLUMNS}) VALUES ({', '.join('?' * 15)})"


class TaskStore:
    """Persists task instances in SQLite.

    The table is the only coordination point between engines: leases are
    taken and released with single conditional ``UPDATE`` statements, so any
    number of engines may share one database file.

    Singleton accessed via ``TaskStore.get()``.  Pass an explicit *db_path*
    for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: TaskStore | None = None

    def __init__(self, db_path: Path | None = None, busy_timeout_ms: int = 5000) -> None:
        self._db_path = db_path or settings.database_path
        self._busy_timeout_ms = busy_timeout_ms
        self._initialised = False

    @classmethod
    def get(cls) -> TaskStore:
        """Return the shared TaskStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        await db.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        if not self._initialised:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(_CREATE_TABLE)
            for statement in _CREATE_INDEXES:
                await db.execute(statement)
            await db.commit()
            self._initialised = True
        return db

    async def _select(self, where: str, params: tuple) -> list[TaskRun]:
        db = await self._connect()
        try:
            cursor = await db.execute(f"SELECT {_COLUMNS} FROM task_runs {where}", params)
            rows = await cursor.fetchall()
            return [TaskRun.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- CRUD ------------------------------------------------------------------

    async def add_run(self, run: TaskRun) -> TaskRun:
        """Insert a new task instance. Returns the same object."""
        db = await self._connect()
        try:
            await db.execute(_INSERT, run.to_row())
            await db.commit()
            logger.info(
                "Added task instance: %s (%s) due %s",
                run.identity,
                run.instance_id,
                run.next_due_at.isoformat(),
            )
            return run
        finally:
            await db.close()

    async def get_run(self, instance_id: str) -> TaskRun | None:
        """Fetch an instance by ID, or None if not found."""
        runs = await self._select("WHERE instance_id = ?", (instance_id,))
        return runs[0] if runs else None

    async def list_runs(self, limit: int | None = None, offset: int = 0) -> list[TaskRun]:
        """Return instances, most recently due first."""
        return await self._select(
            "ORDER BY next_due_at DESC, instance_id LIMIT ? OFFSET ?",
            (limit if limit is not None else -1, offset),
        )

    async def list_by_status(self, status: TaskStatus, identity: str | None = None) -> list[TaskRun]:
        """Return instances in *status*, optionally limited to one identity."""
        if identity is None:
            return await self._select(
                "WHERE status = ? ORDER BY next_due_at, instance_id", (str(status),)
            )
        return await self._select(
            "WHERE status = ? AND identity = ? ORDER BY next_due_at, instance_id",
            (str(status), identity),
        )

    async def list_due(self, now: datetime, limit: int | None = None) -> list[TaskRun]:
        """Pending instances due at *now*, oldest first, ties broken by ID."""
        return await self._select(
            """
            WHERE status = ? AND next_due_at <= ?
            ORDER BY next_due_at, instance_id
            LIMIT ?
            """,
            (str(TaskStatus.PENDING), to_iso(now), limit if limit is not None else -1),
        )

    async def list_expired_leases(self, now: datetime) -> list[TaskRun]:
        """Leased instances whose lease has lapsed at *now*."""
        return await self._select(
            "WHERE status = ? AND lease_expires_at <= ? ORDER BY lease_expires_at, instance_id",
            (str(TaskStatus.LEASED), to_iso(now)),
        )

    # -- Leases ----------------------------------------------------------------

    async def acquire_lease(
        self,
        instance_id: str,
        owner: str,
        now: datetime,
        expires_at: datetime,
    ) -> TaskRun | None:
        """Claim a due pending instance for *owner*.

        A single conditional update: it succeeds only while the row is still
        pending and due, and no other instance of the same identity is leased.
        Returns the leased instance, or None when another engine got there
        first.
        """
        db = await self._connect()
        try:
            try:
                cursor = await db.execute(
                    """
                    UPDATE task_runs
                    SET status = ?, lease_owner = ?, lease_expires_at = ?
                    WHERE instance_id = ?
                      AND status = ?
                      AND next_due_at <= ?
                      AND NOT EXISTS (
                          SELECT 1 FROM task_runs AS other
                          WHERE other.identity = task_runs.identity
                            AND other.status = ?
                      )
                    """,
                    (
                        str(TaskStatus.LEASED),
                        owner,
                        to_iso(expires_at),
                        instance_id,
                        str(TaskStatus.PENDING),
                        to_iso(now),
                        str(TaskStatus.LEASED),
                    ),
                )
            except sqlite3.IntegrityError:
                await db.rollback()
                logger.debug("Lease for %s lost on single-flight index", instance_id)
                return None
            if cursor.rowcount == 0:
                await db.rollback()
                return None
            await db.commit()

            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM task_runs WHERE instance_id = ?", (instance_id,)
            )
            row = await cursor.fetchone()
            return TaskRun.from_row(row) if row else None
        finally:
            await db.close()

    async def release(
        self,
        run: TaskRun,
        owner: str,
        *,
        status: TaskStatus,
        attempt: int,
        next_due_at: datetime,
        last_error: str | None,
        finished_at: datetime,
        duration_ms: int | None = None,
        logs: list[dict] | None = None,
        follow_up: TaskRun | None = None,
        expired_before: datetime | None = None,
    ) -> bool:
        """Release *owner*'s lease on *run* and record the new state.

        The update only applies while the row is still leased by *owner*;
        with *expired_before* it additionally requires the lease to have
        lapsed, which is how a stalled lease is reclaimed by exactly one
        engine. *follow_up* (the next recurrence) is inserted in the same
        transaction. Returns False when the lease was no longer held.
        """
        params: list = [
            str(status),
            attempt,
            to_iso(next_due_at),
            last_error,
            to_iso(finished_at),
            duration_ms,
            json.dumps(logs or []),
            run.instance_id,
            str(TaskStatus.LEASED),
            owner,
        ]
        expiry_clause = ""
        if expired_before is not None:
            expiry_clause = "AND lease_expires_at <= ?"
            params.append(to_iso(expired_before))

        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                UPDATE task_runs
                SET status = ?, attempt = ?, next_due_at = ?,
                    lease_owner = NULL, lease_expires_at = NULL,
                    last_error = ?, finished_at = ?, duration_ms = ?, logs = ?
                WHERE instance_id = ? AND status = ? AND lease_owner = ?
                {expiry_clause}
                """,
                tuple(params),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                logger.warning(
                    "Lease on %s (%s) no longer held by %s",
                    run.identity,
                    run.instance_id,
                    owner,
                )
                return False
            if follow_up is not None:
                await db.execute(_INSERT, follow_up.to_row())
            await db.commit()
            return True
        finally:
            await db.close()

    # -- Operator actions ------------------------------------------------------

    async def abandon_pending(self, instance_id: str, reason: str, now: datetime) -> bool:
        """Move a pending instance straight to abandoned. True if a row changed."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                """
                UPDATE task_runs
                SET status = ?, last_error = ?, finished_at = ?
                WHERE instance_id = ? AND status = ?
                """,
                (
                    str(TaskStatus.ABANDONED),
                    reason,
                    to_iso(now),
                    instance_id,
                    str(TaskStatus.PENDING),
                ),
            )
            await db.commit()
            updated = cursor.rowcount > 0
            if updated:
                logger.info("Abandoned task instance %s: %s", instance_id, reason)
            return updated
        finally:
            await db.close()

    async def add_run_if_idle(self, run: TaskRun) -> bool:
        """Insert *run* unless its identity already has a pending or leased instance."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"""
                INSERT INTO task_runs ({_COLUMNS})
                SELECT {', '.join('?' * 15)}
                WHERE NOT EXISTS (
                    SELECT 1 FROM task_runs
                    WHERE identity = ? AND status IN (?, ?)
                )
                """,
                (
                    *run.to_row(),
                    run.identity,
                    str(TaskStatus.PENDING),
                    str(TaskStatus.LEASED),
                ),
            )
            await db.commit()
            inserted = cursor.rowcount > 0
            if inserted:
                logger.info("Added task instance: %s (%s)", run.identity, run.instance_id)
            return inserted
        finally:
            await db.close()
