"""SQLAlchemy models for the durable record snapshot."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
    }


class WorkflowRecordRow(Base):
    """One workflow record, stored whole as JSON with a few indexed columns."""

    __tablename__ = "workflow_records"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    task_slug: Mapped[str] = mapped_column(String, nullable=False)
    current_stage: Mapped[str] = mapped_column(String, index=True, nullable=False)
    client_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    counterparty_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(nullable=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WorkflowRecordRow":
        return cls(
            id=payload["id"],
            task_slug=payload["task_slug"],
            current_stage=payload["current_stage"],
            client_id=payload["client_id"],
            counterparty_id=payload["counterparty_id"],
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            payload=payload,
        )
