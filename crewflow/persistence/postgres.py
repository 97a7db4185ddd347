"""PostgreSQL implementation of the run log."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

import asyncpg

from .models import RunRecord, StepRecord
from .repository import RunLog

TERMINAL = ("completed", "failed")


class PostgresRunLog(RunLog):
    """Persist run records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                workflow_id TEXT PRIMARY KEY,
                crew_id TEXT NOT NULL,
                crew_name TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                input TEXT,
                definition JSONB NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_steps (
                id SERIAL PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                definition_index INTEGER NOT NULL,
                agent_id TEXT NOT NULL,
                agent_name TEXT NOT NULL,
                success BOOLEAN NOT NULL,
                output TEXT,
                error TEXT,
                duration DOUBLE PRECISION,
                recorded_at TIMESTAMPTZ
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_run(
        self,
        workflow_id: str,
        crew_id: str,
        crew_name: str,
        definition: dict[str, Any],
        input: str,
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute("DELETE FROM run_steps WHERE workflow_id = $1", workflow_id)
                await conn.execute(
                    """
                    INSERT INTO runs (workflow_id, crew_id, crew_name, workflow_type, input, definition, status, started_at)
                    VALUES ($1, $2, $3, $4, $5, $6, 'running', $7)
                    ON CONFLICT (workflow_id) DO UPDATE SET
                        crew_id = EXCLUDED.crew_id,
                        crew_name = EXCLUDED.crew_name,
                        workflow_type = EXCLUDED.workflow_type,
                        input = EXCLUDED.input,
                        definition = EXCLUDED.definition,
                        status = EXCLUDED.status,
                        error = NULL,
                        started_at = EXCLUDED.started_at,
                        completed_at = NULL
                    """,
                    workflow_id,
                    crew_id,
                    crew_name,
                    definition.get("type", ""),
                    input,
                    json.dumps(definition),
                    datetime.now(timezone.utc),
                )
        finally:
            await conn.close()

    async def record_step(self, workflow_id: str, result: dict[str, Any]) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO run_steps (workflow_id, step_index, definition_index, agent_id, agent_name,
                                       success, output, error, duration, recorded_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                workflow_id,
                result["step_index"],
                result["definition_index"],
                result["agent_id"],
                result["agent_name"],
                bool(result["success"]),
                result.get("output", ""),
                result.get("error"),
                result.get("duration", 0.0),
                datetime.now(timezone.utc),
            )
        finally:
            await conn.close()

    async def update_status(
        self, workflow_id: str, status: str, error: Optional[str] = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE runs SET status = $1, error = $2, completed_at = $3 WHERE workflow_id = $4",
                status,
                error,
                datetime.now(timezone.utc) if status in TERMINAL else None,
                workflow_id,
            )
        finally:
            await conn.close()

    @staticmethod
    def _run_from_row(row: Any, steps: list[StepRecord]) -> RunRecord:
        definition = row["definition"]
        return RunRecord(
            workflow_id=row["workflow_id"],
            crew_id=row["crew_id"],
            crew_name=row["crew_name"],
            workflow_type=row["workflow_type"],
            input=row["input"] or "",
            definition=json.loads(definition) if isinstance(definition, str) else definition,
            status=row["status"],
            error=row["error"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            steps=steps,
        )

    async def get_run(self, workflow_id: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM runs WHERE workflow_id = $1", workflow_id)
            if not row:
                return None
            steps_rows = await conn.fetch(
                "SELECT * FROM run_steps WHERE workflow_id = $1 ORDER BY id", workflow_id
            )
        finally:
            await conn.close()
        steps = [
            StepRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                step_index=r["step_index"],
                definition_index=r["definition_index"],
                agent_id=r["agent_id"],
                agent_name=r["agent_name"],
                success=r["success"],
                output=r["output"] or "",
                error=r["error"],
                duration=r["duration"] or 0.0,
                recorded_at=r["recorded_at"],
            )
            for r in steps_rows
        ]
        return self._run_from_row(row, steps)

    async def list_runs(self) -> list[RunRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT * FROM runs")
        finally:
            await conn.close()
        return [self._run_from_row(r, []) for r in rows]
