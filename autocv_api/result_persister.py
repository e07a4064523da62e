"""Durable, best-effort record of analyses and their final results."""

import asyncio
import json
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import structlog

from autocv_api.models import OperationInputs

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS analyses (
    id TEXT PRIMARY KEY,
    file_name TEXT NOT NULL,
    original_content TEXT,
    generated_result TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class ResultPersister(Protocol):
    """Write-mostly sink for analysis records keyed by operation id."""

    async def save_initiated(self, operation_id: str, inputs: OperationInputs) -> None: ...

    async def save_final(self, operation_id: str, payload: dict[str, Any]) -> None: ...


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class SQLiteResultPersister:
    """Persists analyses to a local SQLite database.

    Blocking sqlite calls run in a worker thread; each call opens its own
    connection.
    """

    def __init__(self, db_path: str | Path):
        self._db_path = Path(db_path)
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self._db_path, timeout=15)
        connection.row_factory = sqlite3.Row
        if not self._schema_ready:
            connection.execute(SCHEMA)
            self._schema_ready = True
        return connection

    def _write_initiated(self, operation_id: str, inputs: OperationInputs) -> None:
        now = _utc_now()
        with closing(self._connect()) as connection, connection:
            connection.execute(
                "INSERT INTO analyses (id, file_name, original_content, status, created_at, updated_at) "
                "VALUES (?, ?, ?, 'initiated', ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET file_name = excluded.file_name, "
                "original_content = excluded.original_content, updated_at = excluded.updated_at",
                (operation_id, inputs.client_file_name, inputs.resume_text, now, now),
            )

    def _write_final(self, operation_id: str, payload: dict[str, Any]) -> None:
        result = json.dumps(payload, ensure_ascii=False)
        now = _utc_now()
        with closing(self._connect()) as connection, connection:
            connection.execute(
                "INSERT INTO analyses (id, file_name, generated_result, status, created_at, updated_at) "
                "VALUES (?, '', ?, 'completed', ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET generated_result = excluded.generated_result, "
                "status = 'completed', updated_at = excluded.updated_at",
                (operation_id, result, now, now),
            )

    def fetch(self, operation_id: str) -> dict[str, Any] | None:
        """Read one record back (diagnostics and tests)."""
        with closing(self._connect()) as connection:
            row = connection.execute("SELECT * FROM analyses WHERE id = ?", (operation_id,)).fetchone()
        return dict(row) if row else None

    async def save_initiated(self, operation_id: str, inputs: OperationInputs) -> None:
        """Record a newly initiated analysis."""
        await asyncio.to_thread(self._write_initiated, operation_id, inputs)
        logger.info("Initiated analysis persisted", operation_id=operation_id)

    async def save_final(self, operation_id: str, payload: dict[str, Any]) -> None:
        """Record the final structured result of a pass."""
        await asyncio.to_thread(self._write_final, operation_id, payload)
        logger.info("Final analysis persisted", operation_id=operation_id)
