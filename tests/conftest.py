"""Shared test fixtures and configuration for pytest."""

from datetime import UTC, datetime, timedelta

import pytest

from quoting.config import Settings
from quoting.events import EventEmitter, WorkflowEvent
from quoting.extractor import HeuristicExtractor
from quoting.orchestrate import QuoteOrchestrator
from quoting.persistence import MemoryBackend
from quoting.schemas import (
    AcceptanceCriterion,
    ClarificationResponse,
    Deliverable,
    PhaseEstimate,
    ScopeStructured,
)
from quoting.store import RecordStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

NFT_TITLE = "NFT marketplace on Solana"
NFT_BRIEF = (
    "Build an NFT marketplace where artists can mint and list collections, with a web "
    "frontend for buyers and royalties paid to creators."
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEmitter(EventEmitter):
    """Emitter that keeps every event it sees."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[WorkflowEvent] = []
        self.on_event(self.events.append)

    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        data_file=tmp_path / "records.json",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'quoting.db'}",
        redis_events_enabled=False,
    )


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def store(backend: MemoryBackend, clock: FakeClock) -> RecordStore:
    # Long debounce: tests flush explicitly.
    return RecordStore(backend, debounce_seconds=3600, clock=clock)


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def orchestrator(
    store: RecordStore, test_settings: Settings, emitter: RecordingEmitter, clock: FakeClock
) -> QuoteOrchestrator:
    return QuoteOrchestrator(
        store,
        HeuristicExtractor(),
        config=test_settings,
        events=emitter,
        clock=clock,
    )


@pytest.fixture
def simple_scope() -> ScopeStructured:
    """Two code deliverables, 40 hours, relaxed timeline."""
    return ScopeStructured(
        objective="Deliver a REST API for order tracking",
        deliverables=[
            Deliverable(
                deliverable_id="D1",
                name="Order API",
                description="Order tracking endpoints",
                category="code",
                estimated_hours=24,
            ),
            Deliverable(
                deliverable_id="D2",
                name="Admin screens",
                description="Order list and detail views",
                category="code",
                estimated_hours=16,
            ),
        ],
        acceptance_criteria=[
            AcceptanceCriterion(
                criterion_id="AC1",
                description="Automated tests pass",
                verification_method="automated_test",
            )
        ],
        estimated_hours_by_phase=[
            PhaseEstimate(phase_name="Build", estimated_hours=30, deliverable_ids=["D1", "D2"]),
            PhaseEstimate(phase_name="Handover", estimated_hours=10),
        ],
        timeline_estimate_days=10,
        confidence_score=0.8,
    )


@pytest.fixture
def no_clarification() -> ClarificationResponse:
    return ClarificationResponse()
