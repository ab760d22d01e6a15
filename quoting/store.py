"""
In-memory workflow record store with debounced durable persistence.

Records live in a process-wide map and are replaced, never edited in place,
on every mutation. Each mutation takes a lock keyed by record id, validates
the requested stage path against the transition table, and swaps in a fully
validated new record. Durable writes are coalesced: every dirty mutation
restarts a short timer on the running event loop, and the whole record set
is written as one snapshot when it fires.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import pydantic
from pydantic import TypeAdapter

from .errors import (
    InvalidTransitionError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from .schemas import (
    ARTIFACT_FIELDS,
    PROTECTED_FIELDS,
    StageTransition,
    WorkflowRecord,
    parse_model,
    utc_now,
)
from .state_machine import Stage, Trigger, allowed_transitions, validate_path

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Changes = dict[str, Any] | Callable[[WorkflowRecord], dict[str, Any]]

_RECORD_LIST = TypeAdapter(list[WorkflowRecord])


class RecordBackend(Protocol):
    """Durable home for the full record snapshot."""

    async def load(self) -> list[dict[str, Any]]: ...

    async def save(self, records: list[dict[str, Any]]) -> None: ...


@dataclass(frozen=True)
class TransitionStep:
    stage: Stage
    trigger: Trigger
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordFilter:
    stage: Stage | None = None
    client_id: str | None = None
    counterparty_id: str | None = None
    party: str | None = None
    requires_human_review: bool | None = None
    limit: int | None = None

    def matches(self, record: WorkflowRecord) -> bool:
        if self.stage is not None and record.current_stage != self.stage:
            return False
        if self.client_id is not None and record.client_id != self.client_id:
            return False
        if self.counterparty_id is not None and record.counterparty_id != self.counterparty_id:
            return False
        if self.party is not None and self.party not in (record.client_id, record.counterparty_id):
            return False
        if (
            self.requires_human_review is not None
            and record.requires_human_review != self.requires_human_review
        ):
            return False
        return True


def generate_slug(title: str) -> str:
    slug = title.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:50] or "task"


class RecordStore:
    """Owns every WorkflowRecord and the only path to change one."""

    def __init__(
        self,
        backend: RecordBackend | None = None,
        *,
        debounce_seconds: float = 1.0,
        record_ttl: timedelta = timedelta(days=7),
        clock: Clock = utc_now,
    ) -> None:
        if backend is None:
            from .persistence import MemoryBackend

            backend = MemoryBackend()
        self._backend = backend
        self._debounce_seconds = debounce_seconds
        self._record_ttl = record_ttl
        self._clock = clock

        self._records: dict[str, WorkflowRecord] = {}
        self._guard = threading.Lock()
        self._record_locks: dict[str, threading.Lock] = {}

        self._dirty = False
        self._flush_handle: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task[bool] | None = None
        self._flush_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Replace in-memory state with the backend snapshot."""
        raw = await self._backend.load()
        try:
            records = _RECORD_LIST.validate_python(raw)
        except pydantic.ValidationError as exc:
            raise PersistenceError(f"Stored workflow records are invalid: {exc}") from exc

        with self._guard:
            self._records = {r.id: r for r in records}
            self._record_locks.clear()
        logger.info("Loaded %d workflow records", len(records))
        return len(records)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: str) -> WorkflowRecord:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record.model_copy(deep=True)

    def find_by_funding_ref(self, funding_ref: str) -> WorkflowRecord | None:
        with self._guard:
            records = list(self._records.values())
        for record in records:
            if record.funding_ref == funding_ref:
                return record.model_copy(deep=True)
        return None

    def list(self, filters: RecordFilter | None = None) -> list[WorkflowRecord]:
        """Matching records, most recently updated first."""
        filters = filters or RecordFilter()
        with self._guard:
            records = list(self._records.values())
        matched = sorted(
            (r for r in records if filters.matches(r)),
            key=lambda r: r.updated_at,
            reverse=True,
        )
        if filters.limit is not None:
            matched = matched[: filters.limit]
        return [r.model_copy(deep=True) for r in matched]

    def __len__(self) -> int:
        return len(self._records)

    @property
    def dirty(self) -> bool:
        return self._dirty

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        title: str,
        brief: str,
        client_id: str,
        counterparty_id: str,
        counterparty_name: str = "",
    ) -> WorkflowRecord:
        now = self._clock()
        record_id = str(uuid.uuid4())
        record = parse_model(
            WorkflowRecord,
            {
                "id": record_id,
                "task_slug": f"{generate_slug(title)}-{record_id[:8]}",
                "current_stage": Stage.INIT,
                "stage_history": [
                    StageTransition(
                        stage=Stage.INIT,
                        entered_at=now,
                        trigger=Trigger.USER,
                        metadata={"action": "create_record"},
                    )
                ],
                "title": title,
                "brief": brief,
                "client_id": client_id,
                "counterparty_id": counterparty_id,
                "counterparty_name": counterparty_name,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self._record_ttl,
            },
        )
        with self._guard:
            self._records[record.id] = record
        self._mark_dirty()
        return record.model_copy(deep=True)

    def update(self, record_id: str, changes: Changes) -> WorkflowRecord:
        """Merge field changes without touching the stage."""
        return self.transition_path(record_id, [], changes=changes)

    def transition(
        self,
        record_id: str,
        to_stage: Stage,
        trigger: Trigger,
        metadata: dict[str, Any] | None = None,
        *,
        changes: Changes | None = None,
    ) -> WorkflowRecord:
        step = TransitionStep(Stage(to_stage), Trigger(trigger), dict(metadata or {}))
        return self.transition_path(record_id, [step], changes=changes)

    def transition_path(
        self,
        record_id: str,
        steps: Sequence[TransitionStep],
        *,
        changes: Changes | None = None,
        from_stages: Sequence[Stage] | None = None,
    ) -> WorkflowRecord:
        """Apply field changes and zero or more stage steps as one mutation.

        Either everything is applied or nothing is: the path is validated
        against the true current stage under the record lock, and the merged
        record is fully validated before it replaces the old one.
        ``changes`` may be a callable receiving the current record.
        """
        with self._record_lock(record_id):
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFoundError(record_id)

            if steps and from_stages is not None and current.current_stage not in from_stages:
                raise InvalidTransitionError(
                    current.current_stage, steps[0].stage, allowed_transitions(current.current_stage)
                )
            validate_path(current.current_stage, [s.stage for s in steps])

            resolved = changes(current) if callable(changes) else dict(changes or {})
            self._check_changes(current, resolved)

            now = max(self._clock(), current.updated_at, current.stage_history[-1].entered_at)
            data = current.model_dump()
            data.update(resolved)
            history = list(current.stage_history)
            history.extend(
                StageTransition(stage=s.stage, entered_at=now, trigger=s.trigger, metadata=s.metadata)
                for s in steps
            )
            data["stage_history"] = history
            data["current_stage"] = history[-1].stage
            data["updated_at"] = now
            updated = parse_model(WorkflowRecord, data)

            with self._guard:
                self._records[record_id] = updated

        if steps:
            logger.debug(
                "Record %s: %s -> %s",
                record_id,
                current.current_stage,
                " -> ".join(s.stage for s in steps),
            )
        self._mark_dirty()
        return updated.model_copy(deep=True)

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Drop records whose TTL has passed. Returns how many were removed."""
        now = now or self._clock()
        with self._guard:
            expired = [rid for rid, r in self._records.items() if r.expires_at < now]
            for rid in expired:
                del self._records[rid]
                self._record_locks.pop(rid, None)
        if expired:
            logger.info("Swept %d expired workflow records", len(expired))
            self._mark_dirty()
        return len(expired)

    def archive(self, record_id: str) -> WorkflowRecord:
        """Remove a cancelled record from the store."""
        with self._record_lock(record_id):
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            if record.current_stage != Stage.CANCELLED:
                raise ValidationError(
                    f"Only cancelled records can be archived (record is {record.current_stage})"
                )
            with self._guard:
                del self._records[record_id]
        self._mark_dirty()
        return record

    def _check_changes(self, current: WorkflowRecord, changes: dict[str, Any]) -> None:
        for name, value in changes.items():
            if name in PROTECTED_FIELDS:
                raise ValidationError(f"Field '{name}' cannot be changed directly")
            if name not in WorkflowRecord.model_fields:
                raise ValidationError(f"Unknown workflow record field '{name}'")
            if name in ARTIFACT_FIELDS and value is None and getattr(current, name) is not None:
                raise ValidationError(f"Field '{name}' is populated and cannot be cleared")

    @contextmanager
    def _record_lock(self, record_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._record_locks.setdefault(record_id, threading.Lock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> list[dict[str, Any]]:
        with self._guard:
            records = sorted(self._records.values(), key=lambda r: r.created_at)
        return [r.model_dump(mode="json") for r in records]

    def _mark_dirty(self) -> None:
        self._dirty = True
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread; the owner flushes explicitly.
            return
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = loop.call_later(self._debounce_seconds, self._start_flush)

    def _start_flush(self) -> None:
        self._flush_handle = None
        self._flush_task = asyncio.ensure_future(self.flush())

    async def flush(self) -> bool:
        """Write the snapshot now if anything changed. Returns False on failure."""
        async with self._flush_lock:
            if not self._dirty:
                return True
            self._dirty = False
            snapshot = self.snapshot()
            try:
                await self._backend.save(snapshot)
            except Exception:
                self._dirty = True
                logger.warning(
                    "Failed to flush %d workflow records; will retry on next change",
                    len(snapshot),
                    exc_info=True,
                )
                return False
        logger.debug("Flushed %d workflow records", len(snapshot))
        return True

    async def close(self) -> bool:
        """Cancel the pending timer and write any outstanding changes."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        return await self.flush()
