from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Any

import aiosqlite

from clipbatch.models.run_state import RunState
from clipbatch.models.work_item import WorkItem

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/clipbatch.db")


class Database:
    """Async SQLite store for run history.

    Only finished runs and terminal items are written; in-flight state lives
    in memory and is never persisted. Holds a single persistent connection
    with WAL mode for concurrent reads.
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self._conn: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = resources.files("clipbatch.db").joinpath("schema.sql").read_text()

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

        logger.info("Database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Database not initialized, call initialize() first"
        return self._conn

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def record_run_started(self, state: RunState) -> None:
        assert state.run_id and state.started_at
        await self.conn.execute(
            """
            INSERT INTO runs (run_id, concurrency, phase, total, not_started, started_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                state.run_id,
                state.concurrency,
                state.phase.value,
                state.stats.total,
                state.stats.queued,
                state.started_at.isoformat(),
            ),
        )
        await self.conn.commit()

    async def record_run_finished(self, state: RunState) -> None:
        await self.conn.execute(
            """
            UPDATE runs
            SET phase = ?, halt_reason = ?, error = ?, completed = ?, failed = ?,
                skipped = ?, not_started = ?, remaining_credits = ?, finished_at = ?
            WHERE run_id = ?
            """,
            (
                state.phase.value,
                state.halt_reason.value if state.halt_reason else None,
                state.error,
                state.stats.completed,
                state.stats.failed,
                state.stats.skipped,
                state.stats.queued,
                state.remaining_credits,
                state.finished_at.isoformat() if state.finished_at else None,
                state.run_id,
            ),
        )
        await self.conn.commit()

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        cursor = await self.conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        cursor = await self.conn.execute(
            "SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (limit,)
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def record_item(self, run_id: str, item: WorkItem) -> None:
        """Insert the export row of a terminal item (idempotent per run and item)."""
        row = item.export_row()
        await self.conn.execute(
            """
            INSERT INTO run_items
                (run_id, item_id, kind, status, input, prompt, local_path, artifact_url,
                 error, retry_count, started_at, ended_at, duration_seconds)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, item_id) DO NOTHING
            """,
            (
                run_id,
                row["item_id"],
                row["kind"],
                row["status"],
                row["input"],
                row["prompt"],
                row["local_path"],
                row["artifact_url"],
                row["error"],
                row["retry_count"],
                row["started_at"],
                row["ended_at"],
                row["duration_seconds"],
            ),
        )
        await self.conn.commit()

    async def get_run_items(
        self, run_id: str, status: str | None = None
    ) -> list[dict[str, Any]]:
        if status:
            cursor = await self.conn.execute(
                """
                SELECT * FROM run_items WHERE run_id = ? AND status = ?
                ORDER BY recorded_at, rowid
                """,
                (run_id, status),
            )
        else:
            cursor = await self.conn.execute(
                "SELECT * FROM run_items WHERE run_id = ? ORDER BY recorded_at, rowid",
                (run_id,),
            )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
