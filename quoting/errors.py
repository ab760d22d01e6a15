"""Error types and helpers for the quoting engine."""

from __future__ import annotations

import re
from collections.abc import Iterable

import click


class QuotingError(click.ClickException):
    """Base class for every error the engine raises on purpose."""

    code = "quoting_error"


class RecordNotFoundError(QuotingError):
    """Unknown record id. Retrying will not help."""

    code = "not_found"

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Workflow record not found: {record_id}")
        self.record_id = record_id


class InvalidTransitionError(QuotingError):
    """A stage change that the transition table does not allow."""

    code = "invalid_transition"

    def __init__(self, from_stage: str, to_stage: str, allowed: Iterable[str]) -> None:
        self.from_stage = str(from_stage)
        self.to_stage = str(to_stage)
        self.allowed = [str(s) for s in allowed]
        allowed_text = ", ".join(self.allowed) if self.allowed else "none (terminal stage)"
        super().__init__(
            f"Invalid transition from {self.from_stage} to {self.to_stage}. "
            f"Allowed: {allowed_text}"
        )


class ValidationError(QuotingError):
    """Malformed input, rejected before any state mutation."""

    code = "validation_error"


class UpstreamError(QuotingError):
    """The external extractor or model call failed."""

    code = "upstream_failure"


class QuoteExpiredError(QuotingError):
    """The quote's validity window has passed; a requote is required."""

    code = "quote_expired"


class ReviewRequiredError(QuotingError):
    """The record carries critical risk flags and has no approving review."""

    code = "review_required"


class PersistenceError(QuotingError):
    """The durable snapshot could not be read."""

    code = "persistence_error"


class SchemaNotInitializedError(QuotingError):
    """Raised when the database schema has not been created."""

    code = "schema_not_initialized"


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""
    return "\n".join(
        [
            f"Database schema is not initialized{table_hint}.",
            "Run: `quoting init-db`",
        ]
    )
