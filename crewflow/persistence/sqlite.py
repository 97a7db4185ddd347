"""SQLite implementation of the run log."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .models import RunRecord, StepRecord
from .repository import RunLog

TERMINAL = ("completed", "failed")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunLog(RunLog):
    """Persist run records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                workflow_id TEXT PRIMARY KEY,
                crew_id TEXT NOT NULL,
                crew_name TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                input TEXT,
                definition TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                definition_index INTEGER NOT NULL,
                agent_id TEXT NOT NULL,
                agent_name TEXT NOT NULL,
                success INTEGER NOT NULL,
                output TEXT,
                error TEXT,
                duration REAL,
                recorded_at TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _replace_run(self, workflow_id: str, *values: Any) -> None:
        cur = self._conn.cursor()
        cur.execute("DELETE FROM run_steps WHERE workflow_id = ?", (workflow_id,))
        cur.execute(
            """
            INSERT OR REPLACE INTO runs
                (workflow_id, crew_id, crew_name, workflow_type, input, definition, status, started_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (workflow_id, *values),
        )
        self._conn.commit()

    @staticmethod
    def _run_from_row(row: sqlite3.Row, steps: list[StepRecord]) -> RunRecord:
        return RunRecord(
            workflow_id=row["workflow_id"],
            crew_id=row["crew_id"],
            crew_name=row["crew_name"],
            workflow_type=row["workflow_type"],
            input=row["input"] or "",
            definition=json.loads(row["definition"]),
            status=row["status"],
            error=row["error"],
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            steps=steps,
        )

    # ------------------------------------------------------------------
    # Run log API
    async def create_run(
        self,
        workflow_id: str,
        crew_id: str,
        crew_name: str,
        definition: dict[str, Any],
        input: str,
    ) -> None:
        await asyncio.to_thread(
            self._replace_run,
            workflow_id,
            crew_id,
            crew_name,
            definition.get("type", ""),
            input,
            json.dumps(definition),
            "running",
            _now(),
        )

    async def record_step(self, workflow_id: str, result: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO run_steps
                (workflow_id, step_index, definition_index, agent_id, agent_name,
                 success, output, error, duration, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            workflow_id,
            result["step_index"],
            result["definition_index"],
            result["agent_id"],
            result["agent_name"],
            int(bool(result["success"])),
            result.get("output", ""),
            result.get("error"),
            result.get("duration", 0.0),
            _now(),
        )

    async def update_status(
        self, workflow_id: str, status: str, error: Optional[str] = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = ?, error = ?, completed_at = ? WHERE workflow_id = ?",
            status,
            error,
            _now() if status in TERMINAL else None,
            workflow_id,
        )

    async def get_run(self, workflow_id: str) -> RunRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM runs WHERE workflow_id = ?", workflow_id
        )
        if not row:
            return None
        steps_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM run_steps WHERE workflow_id = ? ORDER BY id",
            workflow_id,
        )
        steps = [
            StepRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                step_index=r["step_index"],
                definition_index=r["definition_index"],
                agent_id=r["agent_id"],
                agent_name=r["agent_name"],
                success=bool(r["success"]),
                output=r["output"] or "",
                error=r["error"],
                duration=r["duration"] or 0.0,
                recorded_at=_parse_ts(r["recorded_at"]),
            )
            for r in steps_rows
        ]
        return self._run_from_row(row, steps)

    async def list_runs(self) -> list[RunRecord]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT * FROM runs")
        return [self._run_from_row(row, []) for row in rows]
