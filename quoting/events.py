"""
Workflow events emitted by the orchestration layer.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    RECORD_CREATED = "record.created"
    RECORD_CANCELLED = "record.cancelled"
    RECORD_FUNDED = "record.funded"

    STAGE_CHANGED = "stage.changed"
    UPSTREAM_FAILED = "upstream.failed"

    CLARIFICATION_REQUESTED = "clarification.requested"
    CLARIFICATION_RECEIVED = "clarification.received"
    SCOPE_READY = "scope.ready"

    QUOTE_GENERATED = "quote.generated"
    QUOTE_REQUOTED = "quote.requoted"
    QUOTE_CONFIRMED = "quote.confirmed"

    REVIEW_REQUIRED = "review.required"
    REVIEW_RECORDED = "review.recorded"


@dataclass
class WorkflowEvent:
    """Standardized event for the quoting workflow."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.STAGE_CHANGED
    record_id: str | None = None
    stage: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "record_id": self.record_id,
            "stage": self.stage,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[WorkflowEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: WorkflowEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.warning("Event handler %r failed for %s", handler, event.type.value, exc_info=True)


event_bus = EventEmitter()


def log_event_handler(event: WorkflowEvent) -> None:
    """Handler that writes every event to the module logger."""
    logger.info("[%s] %s %s", event.type.value, event.record_id or "-", event.message)


event_bus.on_event(log_event_handler)


async def publish_event_handler(event: WorkflowEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not settings.redis_events_enabled or not event.record_id:
        return

    from .redis_client import get_redis_client

    redis = get_redis_client()
    channel = f"channel:record:{event.record_id}"
    await redis.publish(channel, json.dumps(event.to_dict()))


event_bus.on_event(publish_event_handler)
