import pytest

from quoting.errors import (
    InvalidTransitionError,
    QuoteExpiredError,
    ReviewRequiredError,
    UpstreamError,
    ValidationError,
)
from quoting.extractor import HeuristicExtractor
from quoting.orchestrate import QuoteOrchestrator
from quoting.schemas import WorkflowRecord
from quoting.state_machine import Stage, Trigger

NFT_TITLE = "NFT marketplace on Solana"
NFT_BRIEF = (
    "Build an NFT marketplace where artists can mint and list collections, with a web "
    "frontend for buyers and royalties paid to creators."
)
NFT_ANSWERS = {"tech_stack": "Anchor (Rust)", "token_standard": "Metaplex NFT standard"}


class BrokenScopeExtractor(HeuristicExtractor):
    async def generate_scope(self, title, brief, extraction, clarification):
        raise UpstreamError("model timed out")


class BrokenExtractor(HeuristicExtractor):
    async def extract(self, title, brief):
        raise UpstreamError("model unavailable")


async def _create(orchestrator: QuoteOrchestrator, title: str = NFT_TITLE, brief: str = NFT_BRIEF):
    return await orchestrator.create_record(title, brief, "client-1", "dev-1", "Ada")


async def _to_quote_ready(orchestrator: QuoteOrchestrator) -> WorkflowRecord:
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)
    await orchestrator.submit_clarification(record.id, NFT_ANSWERS)
    await orchestrator.generate_scope(record.id)
    return await orchestrator.approve_scope(record.id)


def _stages(record: WorkflowRecord) -> list[str]:
    return [h.stage.value for h in record.stage_history]


@pytest.mark.asyncio
async def test_nft_brief_end_to_end(orchestrator: QuoteOrchestrator, emitter) -> None:
    record = await _create(orchestrator)

    record = await orchestrator.analyze(record.id)
    assert record.current_stage == Stage.CLARIFY_PENDING
    assert record.stage_history[-1].trigger == Trigger.MODEL
    assert record.stage_history[-1].metadata == {"question_count": 3}

    record = await orchestrator.submit_clarification(record.id, NFT_ANSWERS)
    clarification = record.clarification_response
    assert record.current_stage == Stage.CLARIFY_COMPLETE
    assert clarification.skipped_fields == ["timeline_preference"]
    assert clarification.applied_defaults == {"timeline_preference": "2-4 weeks"}
    assert clarification.confidence_adjustment == -0.05

    record = await orchestrator.generate_scope(record.id)
    assert record.current_stage == Stage.SCOPE_READY
    assert record.scope_structured.total_estimated_hours == pytest.approx(67.5)
    assert record.scope_structured.confidence_score == 0.5
    assert record.risk_flags == []
    assert not record.requires_human_review

    record = await orchestrator.approve_scope(record.id)
    assert record.current_stage == Stage.QUOTE_READY
    assert record.complexity_result.complexity_score == 19
    assert record.complexity_result.explanation == "Uncertainty penalty (+4 pts) -> Total: 19/100"
    pricing = record.pricing_result
    assert pricing.labour_cost_lamports == 4_625_999_954
    assert pricing.contingency_lamports == 693_899_993
    assert pricing.fixed_fees_lamports == 265_994_997
    assert pricing.total_lamports == 5_585_894_944
    assert pricing.breakdown.contingency_percent == 15
    assert pricing.breakdown.complexity_multiplier == 1.03

    record = await orchestrator.confirm_quote(record.id)
    record = await orchestrator.record_funding(record.id, "escrow-tx-1")

    assert record.current_stage == Stage.FUNDED
    assert record.funding_ref == "escrow-tx-1"
    assert _stages(record) == [
        "init",
        "analyzing",
        "clarify_pending",
        "clarify_complete",
        "scope_draft",
        "scope_ready",
        "complexity_calc",
        "quote_ready",
        "confirmed",
        "funded",
    ]
    assert emitter.types() == [
        "record.created",
        "stage.changed",
        "clarification.requested",
        "clarification.received",
        "stage.changed",
        "scope.ready",
        "quote.generated",
        "quote.confirmed",
        "record.funded",
    ]


@pytest.mark.asyncio
async def test_analyze_without_questions_goes_straight_to_scope(orchestrator: QuoteOrchestrator) -> None:
    record = await _create(
        orchestrator,
        "Stripe checkout API",
        "Build a FastAPI service with Python that creates Stripe checkout sessions within two weeks.",
    )

    record = await orchestrator.analyze(record.id)

    assert record.current_stage == Stage.SCOPE_READY
    assert _stages(record) == ["init", "analyzing", "scope_draft", "scope_ready"]
    assert record.scope_structured.dependencies == ["Stripe API integration"]


@pytest.mark.asyncio
async def test_extraction_failure_returns_to_init(store, test_settings, emitter, clock) -> None:
    orchestrator = QuoteOrchestrator(
        store, BrokenExtractor(), config=test_settings, events=emitter, clock=clock
    )
    record = await _create(orchestrator)

    with pytest.raises(UpstreamError):
        await orchestrator.analyze(record.id)

    record = store.get(record.id)
    assert record.current_stage == Stage.INIT
    assert record.stage_history[-1].trigger == Trigger.ERROR
    assert record.stage_history[-1].metadata == {"error": "model unavailable"}
    assert record.extraction_result is None
    assert "upstream.failed" in emitter.types()

    # The record can be analyzed again once the extractor recovers.
    orchestrator.extractor = HeuristicExtractor()
    assert (await orchestrator.analyze(record.id)).current_stage == Stage.CLARIFY_PENDING


@pytest.mark.asyncio
async def test_scope_failure_returns_to_clarify_pending(store, test_settings, emitter, clock) -> None:
    orchestrator = QuoteOrchestrator(
        store, BrokenScopeExtractor(), config=test_settings, events=emitter, clock=clock
    )
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)
    await orchestrator.submit_clarification(record.id, NFT_ANSWERS)

    with pytest.raises(UpstreamError):
        await orchestrator.generate_scope(record.id)

    record = store.get(record.id)
    assert record.current_stage == Stage.CLARIFY_PENDING
    assert record.stage_history[-1].trigger == Trigger.ERROR
    assert _stages(record)[-3:] == ["clarify_complete", "scope_draft", "clarify_pending"]
    assert record.scope_structured is None


@pytest.mark.asyncio
async def test_invalid_answer_is_rejected(orchestrator: QuoteOrchestrator) -> None:
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)

    with pytest.raises(ValidationError):
        await orchestrator.submit_clarification(record.id, {"tech_stack": "COBOL"})

    assert orchestrator.store.get(record.id).current_stage == Stage.CLARIFY_PENDING


@pytest.mark.asyncio
async def test_skipped_questions_use_defaults(orchestrator: QuoteOrchestrator) -> None:
    record = await _create(orchestrator, "Website", "Need a website")
    record = await orchestrator.analyze(record.id)
    assert record.extraction_result.model_used == "fallback"

    record = await orchestrator.skip_clarification(record.id)
    clarification = record.clarification_response
    assert clarification.skipped_fields == ["project_scope", "deliverable_count", "timeline_preference"]
    assert clarification.applied_defaults == {
        "project_scope": "",
        "deliverable_count": 3,
        "timeline_preference": "2-4 weeks",
    }
    assert clarification.confidence_adjustment == -0.15

    record = await orchestrator.generate_scope(record.id)
    assert [d.name for d in record.scope_structured.deliverables] == [
        "Website",
        "Additional deliverable 2",
        "Additional deliverable 3",
    ]
    assert record.scope_structured.confidence_score == 0.3


@pytest.mark.asyncio
async def test_skip_penalty_is_capped(orchestrator: QuoteOrchestrator) -> None:
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)

    record = await orchestrator.submit_clarification(record.id, {}, skipped=["a", "b", "c", "d"])

    assert len(record.clarification_response.skipped_fields) == 7
    assert record.clarification_response.confidence_adjustment == -0.3


@pytest.mark.asyncio
async def test_number_answers_are_coerced(orchestrator: QuoteOrchestrator) -> None:
    record = await _create(orchestrator, "Website", "Need a website")
    await orchestrator.analyze(record.id)

    record = await orchestrator.submit_clarification(record.id, {"deliverable_count": "5"})
    assert record.clarification_response.answers == {"deliverable_count": 5}

    with pytest.raises(InvalidTransitionError):
        await orchestrator.request_more_clarity(record.id)


@pytest.mark.asyncio
async def test_more_clarity_merges_answers(orchestrator: QuoteOrchestrator) -> None:
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)
    await orchestrator.submit_clarification(record.id, NFT_ANSWERS)
    await orchestrator.generate_scope(record.id)

    record = await orchestrator.request_more_clarity(record.id)
    assert record.current_stage == Stage.CLARIFY_PENDING

    record = await orchestrator.submit_clarification(record.id, {"timeline_preference": "1-2 weeks"})
    assert record.clarification_response.answers == {**NFT_ANSWERS, "timeline_preference": "1-2 weeks"}
    assert record.clarification_response.skipped_fields == []

    record = await orchestrator.generate_scope(record.id)
    assert record.scope_structured.timeline_estimate_days == 10


@pytest.mark.asyncio
async def test_requote_keeps_history_without_compounding(orchestrator: QuoteOrchestrator, emitter) -> None:
    record = await _to_quote_ready(orchestrator)
    original_total = record.pricing_result.total_lamports

    record = await orchestrator.begin_edit(record.id)
    assert record.current_stage == Stage.QUOTE_EDITING
    assert record.scope_drivers.estimated_hours == pytest.approx(67.5)

    record = await orchestrator.requote(record.id, {"urgency_level": "urgent"})
    assert record.current_stage == Stage.QUOTE_READY
    assert record.complexity_result.complexity_score == 29
    assert len(record.quote_history) == 1
    assert record.quote_history[0].pricing.total_lamports == original_total
    assert record.pricing_result.total_lamports > original_total

    await orchestrator.begin_edit(record.id)
    record = await orchestrator.requote(record.id, {"estimated_hours": 80})

    assert record.scope_drivers.urgency_level == "urgent"
    assert record.complexity_result.complexity_score == 29
    assert record.scope_structured.total_estimated_hours == pytest.approx(80)
    assert len(record.quote_history) == 2
    assert emitter.types().count("quote.requoted") == 2


@pytest.mark.asyncio
async def test_requote_outside_editing_is_rejected(orchestrator: QuoteOrchestrator) -> None:
    record = await _to_quote_ready(orchestrator)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.requote(record.id, {"urgency_level": "urgent"})


@pytest.mark.asyncio
async def test_revert_to_scope_then_reapprove(orchestrator: QuoteOrchestrator) -> None:
    record = await _to_quote_ready(orchestrator)
    await orchestrator.begin_edit(record.id)

    record = await orchestrator.revert_to_scope(record.id)
    assert record.current_stage == Stage.SCOPE_READY

    record = await orchestrator.approve_scope(record.id, base_rate_lamports=100_000_000)
    assert record.current_stage == Stage.QUOTE_READY
    assert record.pricing_result.base_rate_lamports == 100_000_000


@pytest.mark.asyncio
async def test_expired_quote_cannot_be_confirmed(orchestrator: QuoteOrchestrator, clock) -> None:
    record = await _to_quote_ready(orchestrator)
    clock.advance(days=8)

    with pytest.raises(QuoteExpiredError):
        await orchestrator.confirm_quote(record.id)

    status = await orchestrator.describe(record.id)
    assert status.stage == Stage.QUOTE_READY
    assert status.quote_expired

    await orchestrator.begin_edit(record.id)
    await orchestrator.requote(record.id, {})
    record = await orchestrator.confirm_quote(record.id)
    assert record.current_stage == Stage.CONFIRMED


@pytest.mark.asyncio
async def test_risky_task_requires_review(orchestrator: QuoteOrchestrator, emitter) -> None:
    record = await _create(
        orchestrator,
        "Crypto trading dashboard for UK investors",
        "Build a dashboard showing token prices and portfolio history for investors, live in four weeks.",
    )
    await orchestrator.analyze(record.id)
    await orchestrator.skip_clarification(record.id)
    record = await orchestrator.generate_scope(record.id)

    assert "financial_promotion_regulated_region" in record.risk_flags
    assert record.requires_human_review
    assert "review.required" in emitter.types()

    await orchestrator.approve_scope(record.id)
    with pytest.raises(ReviewRequiredError):
        await orchestrator.confirm_quote(record.id)

    await orchestrator.record_review(record.id, "compliance@example.com", approved=False, notes="needs FCA wording")
    with pytest.raises(ReviewRequiredError):
        await orchestrator.confirm_quote(record.id)

    await orchestrator.record_review(record.id, "compliance@example.com", approved=True)
    record = await orchestrator.confirm_quote(record.id)
    assert record.current_stage == Stage.CONFIRMED
    assert record.review.approved


@pytest.mark.asyncio
async def test_review_gate_can_be_disabled(store, test_settings, emitter, clock) -> None:
    config = test_settings.model_copy(update={"enforce_human_review": False})
    orchestrator = QuoteOrchestrator(store, config=config, events=emitter, clock=clock)
    record = await _create(orchestrator, "Patient intake portal", "Build a patient intake portal for a clinic.")
    await orchestrator.analyze(record.id)
    await orchestrator.skip_clarification(record.id)
    record = await orchestrator.generate_scope(record.id)
    assert record.requires_human_review

    await orchestrator.approve_scope(record.id)
    record = await orchestrator.confirm_quote(record.id)
    assert record.current_stage == Stage.CONFIRMED


@pytest.mark.asyncio
async def test_cancel(orchestrator: QuoteOrchestrator) -> None:
    record = await _to_quote_ready(orchestrator)

    record = await orchestrator.cancel(record.id, "client went with another vendor")
    assert record.current_stage == Stage.CANCELLED
    assert record.cancellation_reason == "client went with another vendor"

    with pytest.raises(InvalidTransitionError):
        await orchestrator.cancel(record.id)
    with pytest.raises(ValidationError):
        await orchestrator.record_review(record.id, "ops", approved=True)

    await orchestrator.archive(record.id)
    assert await orchestrator.list_records() == []


@pytest.mark.asyncio
async def test_funding_reference_is_unique(orchestrator: QuoteOrchestrator) -> None:
    first = await _to_quote_ready(orchestrator)
    second = await _to_quote_ready(orchestrator)
    await orchestrator.confirm_quote(first.id)
    await orchestrator.confirm_quote(second.id)

    await orchestrator.record_funding(first.id, "escrow-tx-1")
    with pytest.raises(ValidationError):
        await orchestrator.record_funding(second.id, "escrow-tx-1")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("title", "brief"),
    [
        ("", "A brief"),
        ("A title", "   "),
        ("x" * 101, "A brief"),
        ("A title", "y" * 501),
    ],
)
async def test_create_record_validation(orchestrator: QuoteOrchestrator, title: str, brief: str) -> None:
    with pytest.raises(ValidationError):
        await orchestrator.create_record(title, brief, "client-1", "dev-1")
    assert len(orchestrator.store) == 0


@pytest.mark.asyncio
async def test_describe_clarify_pending(orchestrator: QuoteOrchestrator) -> None:
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)

    status = await orchestrator.describe(record.id)

    assert status.description == "Waiting for answers to clarifying questions"
    assert status.next_actions == ["submit_answers", "skip_clarification", "cancel"]
    assert not status.waiting
    assert [q.field_key for q in status.open_questions] == [
        "tech_stack",
        "token_standard",
        "timeline_preference",
    ]


@pytest.mark.asyncio
async def test_advance_after_extraction_checks_stage(orchestrator: QuoteOrchestrator) -> None:
    record = await _to_quote_ready(orchestrator)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.advance_after_extraction(record.id, record.extraction_result)


@pytest.mark.asyncio
async def test_sweep_expired(orchestrator: QuoteOrchestrator, clock) -> None:
    await _create(orchestrator)
    clock.advance(days=8)

    assert await orchestrator.sweep_expired() == 1
    assert len(orchestrator.store) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "answers",
    [
        {"integration_count": float("inf")},
        {"user_roles": [1, float("nan")]},
        {"deliverable_count": "inf"},
        {"deliverable_count": float("-inf")},
    ],
)
async def test_non_finite_answers_are_rejected(orchestrator: QuoteOrchestrator, answers: dict) -> None:
    record = await _create(orchestrator, "Website", "Need a website")
    record = await orchestrator.analyze(record.id)

    with pytest.raises(ValidationError):
        await orchestrator.submit_clarification(record.id, answers)

    assert orchestrator.store.get(record.id) == record


@pytest.mark.asyncio
async def test_advance_after_scope_generation_accepts_risk_mapping(
    orchestrator: QuoteOrchestrator, simple_scope
) -> None:
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)
    await orchestrator.submit_clarification(record.id, NFT_ANSWERS)

    record = await orchestrator.advance_after_scope_generation(
        record.id,
        simple_scope.model_dump(mode="json"),
        {"risk_flags": ["gambling_content"], "explanations": ["licensing"], "requires_human_review": True},
    )

    assert record.current_stage == Stage.SCOPE_READY
    assert record.risk_flags == ["gambling_content"]
    assert record.requires_human_review


@pytest.mark.asyncio
async def test_advance_after_scope_generation_rejects_bad_risk(
    orchestrator: QuoteOrchestrator, simple_scope
) -> None:
    record = await _create(orchestrator)
    await orchestrator.analyze(record.id)
    record = await orchestrator.submit_clarification(record.id, NFT_ANSWERS)

    with pytest.raises(ValidationError):
        await orchestrator.advance_after_scope_generation(
            record.id, simple_scope, {"risk_flags": "gambling_content"}
        )

    assert orchestrator.store.get(record.id) == record
