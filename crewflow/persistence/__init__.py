"""Run log backends for crewflow."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CrewflowConfig
from .inmemory import InMemoryRunLog
from .models import RunRecord, StepRecord
from .postgres import PostgresRunLog
from .repository import RunLog
from .sqlite import SQLiteRunLog


def get_run_log(
    database_url: Optional[str] = None, config: Optional[CrewflowConfig] = None
) -> RunLog:
    """Build a run log for ``database_url``.

    The URL can be provided explicitly, via environment variable
    ``CREWFLOW_DATABASE_URL`` or ``DATABASE_URL``, or from configuration. When
    no database is configured, an in-memory log is returned. Every call builds
    a new instance; the runtime owns the one it uses.
    """

    database_url = (
        database_url
        or os.getenv("CREWFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        return InMemoryRunLog()

    if database_url.startswith("sqlite://"):
        return SQLiteRunLog(database_url.replace("sqlite://", "", 1))
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresRunLog(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "InMemoryRunLog",
    "PostgresRunLog",
    "RunLog",
    "RunRecord",
    "SQLiteRunLog",
    "StepRecord",
    "get_run_log",
]
