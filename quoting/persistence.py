"""
Durable backends for the record store.

Each backend persists and restores the full record snapshot: a list of
JSON-ready dicts, one per WorkflowRecord.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from sqlalchemy import delete, select

from . import db
from .config import Settings, settings
from .errors import PersistenceError
from .models import WorkflowRecordRow
from .store import RecordBackend

logger = logging.getLogger(__name__)


class MemoryBackend:
    """Keeps the last snapshot in memory. Nothing survives the process."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []
        self.save_count = 0

    async def load(self) -> list[dict[str, Any]]:
        return list(self.records)

    async def save(self, records: list[dict[str, Any]]) -> None:
        self.records = list(records)
        self.save_count += 1


class JsonFileBackend:
    """Writes the snapshot as one JSON array, replacing the file atomically."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    async def load(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def save(self, records: list[dict[str, Any]]) -> None:
        await asyncio.to_thread(self._write, records)

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            logger.info("No data file at %s; starting with an empty store", self.path)
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Could not read workflow records from {self.path}: {exc}") from exc
        if not isinstance(data, list):
            raise PersistenceError(f"Expected a JSON array of records in {self.path}")
        return data

    def _write(self, records: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(records, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise


class SqlBackend:
    """Stores one row per record; a save replaces every row in one transaction."""

    async def load(self) -> list[dict[str, Any]]:
        async with db.get_session() as session:
            result = await session.execute(
                select(WorkflowRecordRow).order_by(WorkflowRecordRow.created_at)
            )
            return [row.payload for row in result.scalars().all()]

    async def save(self, records: list[dict[str, Any]]) -> None:
        async with db.get_session() as session:
            await session.execute(delete(WorkflowRecordRow))
            session.add_all([WorkflowRecordRow.from_payload(payload) for payload in records])


def backend_from_settings(config: Settings = settings) -> RecordBackend:
    if config.storage_backend == "sql":
        db.configure(config.database_url)
        return SqlBackend()
    return JsonFileBackend(config.data_file)
