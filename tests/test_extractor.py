import json

import httpx
import pytest

from quoting.config import Settings
from quoting.errors import UpstreamError
from quoting.extractor import (
    HeuristicExtractor,
    ModelExtractor,
    adjusted_confidence,
    build_extractor,
    fallback_extraction,
)
from quoting.schemas import ClarificationResponse, ExtractionResult

NFT_TITLE = "NFT marketplace on Solana"
NFT_BRIEF = (
    "Build an NFT marketplace where artists can mint and list collections, with a web "
    "frontend for buyers and royalties paid to creators."
)

EXTRACTION_PAYLOAD = {
    "inferred_category": "api",
    "inferred_deliverables": ["Order API"],
    "confidence_score": 0.8,
    "model_used": "remote-model",
}


@pytest.mark.asyncio
async def test_heuristic_extraction_for_nft_brief() -> None:
    result = await HeuristicExtractor().extract(NFT_TITLE, NFT_BRIEF)

    assert result.inferred_category == "smart-contract"
    assert result.inferred_deliverables == [
        "On-chain program",
        "Program test suite",
        "Deployment scripts",
        "Web client",
    ]
    assert [f.field_key for f in result.open_questions()] == [
        "tech_stack",
        "token_standard",
        "timeline_preference",
    ]
    assert [f.field_key for f in result.optional_missing_fields] == ["design_assets"]
    assert result.confidence_score == 0.55
    assert result.integration_points == []


@pytest.mark.asyncio
async def test_heuristic_extraction_skips_questions_the_brief_answers() -> None:
    result = await HeuristicExtractor().extract(
        "Stripe checkout API",
        "Build a FastAPI service with Python that creates Stripe checkout sessions within two weeks.",
    )

    assert result.inferred_category == "api"
    assert result.open_questions() == []
    assert result.technical_components == ["python", "fastapi"]
    assert result.integration_points == ["Stripe"]


@pytest.mark.asyncio
async def test_thin_brief_falls_back() -> None:
    result = await HeuristicExtractor().extract("Website", "Need a website")

    assert result == fallback_extraction("Website").model_copy(
        update={"extracted_at": result.extracted_at}
    )
    assert result.model_used == "fallback"
    assert [f.field_key for f in result.required_missing_fields] == [
        "project_scope",
        "deliverable_count",
        "timeline_preference",
    ]


@pytest.mark.asyncio
async def test_heuristic_scope_uses_answers_and_defaults() -> None:
    extractor = HeuristicExtractor()
    extraction = await extractor.extract(NFT_TITLE, NFT_BRIEF)
    clarification = ClarificationResponse(
        answers={"tech_stack": "Anchor (Rust)", "token_standard": "Metaplex NFT standard"},
        skipped_fields=["timeline_preference"],
        applied_defaults={"timeline_preference": "2-4 weeks"},
        confidence_adjustment=-0.05,
    )

    scope = await extractor.generate_scope(NFT_TITLE, NFT_BRIEF, extraction, clarification)

    assert scope.objective == "Deliver NFT marketplace on Solana"
    assert [(d.deliverable_id, d.category, d.estimated_hours) for d in scope.deliverables] == [
        ("D1", "code", 16),
        ("D2", "code", 16),
        ("D3", "infrastructure", 6),
        ("D4", "code", 16),
    ]
    assert "Anchor (Rust)" in scope.deliverables[0].description
    assert [p.estimated_hours for p in scope.estimated_hours_by_phase] == [5.4, 54, 8.1]
    assert scope.total_estimated_hours == pytest.approx(67.5)
    assert scope.timeline_estimate_days == 21
    assert scope.confidence_score == 0.5
    assert "Timeline preference defaults to 2-4 weeks" in scope.assumptions
    assert len(scope.acceptance_criteria) == 4


@pytest.mark.asyncio
async def test_heuristic_scope_is_deterministic() -> None:
    extractor = HeuristicExtractor()
    extraction = await extractor.extract(NFT_TITLE, NFT_BRIEF)
    first = await extractor.generate_scope(NFT_TITLE, NFT_BRIEF, extraction, None)
    second = await extractor.generate_scope(NFT_TITLE, NFT_BRIEF, extraction, None)

    assert first.model_dump(exclude={"generated_at"}) == second.model_dump(exclude={"generated_at"})


def test_adjusted_confidence_is_clamped() -> None:
    extraction = fallback_extraction("x")
    penalty = ClarificationResponse(confidence_adjustment=-0.3)

    assert adjusted_confidence(extraction, None) == 0.3
    assert adjusted_confidence(extraction, penalty) == 0.3


def _model_extractor(handler, retries: int = 1) -> ModelExtractor:
    return ModelExtractor(
        base_url="http://model.test",
        max_retries=retries,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_model_extractor_parses_response() -> None:
    calls: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        assert request.url.path == "/extract"
        return httpx.Response(200, json=EXTRACTION_PAYLOAD)

    extractor = _model_extractor(handler)
    try:
        result = await extractor.extract("Order API", "Build an order API")
        again = await extractor.extract("Order API", "Build an order API")
    finally:
        await extractor.aclose()

    assert isinstance(result, ExtractionResult)
    assert result.model_used == "remote-model"
    assert again == result
    assert calls == [{"title": "Order API", "brief": "Build an order API"}]


@pytest.mark.asyncio
async def test_model_extractor_strips_code_fences() -> None:
    fenced = "```json\n" + json.dumps(EXTRACTION_PAYLOAD) + "\n```"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"output": fenced})

    extractor = _model_extractor(handler)
    try:
        result = await extractor.extract("Order API", "Build an order API")
    finally:
        await extractor.aclose()

    assert result.inferred_deliverables == ["Order API"]


@pytest.mark.asyncio
async def test_model_extractor_retries_then_succeeds() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, json=EXTRACTION_PAYLOAD)

    extractor = _model_extractor(handler)
    try:
        await extractor.extract("Order API", "Build an order API")
    finally:
        await extractor.aclose()

    assert attempts == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "body"),
    [
        (500, {"text": "boom"}),
        (200, {"text": "not json"}),
        (200, {"json": {"inferred_category": "spaceships"}}),
    ],
)
async def test_model_extractor_gives_up(status: int, body: dict) -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(status, **body)

    extractor = _model_extractor(handler, retries=1)
    try:
        with pytest.raises(UpstreamError):
            await extractor.extract("Order API", "Build an order API")
    finally:
        await extractor.aclose()

    assert attempts == 2


@pytest.mark.asyncio
async def test_model_extractor_connection_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    extractor = _model_extractor(handler, retries=0)
    try:
        with pytest.raises(UpstreamError) as exc_info:
            await extractor.extract("Order API", "Build an order API")
    finally:
        await extractor.aclose()

    assert "after 1 attempt(s)" in exc_info.value.message


def test_build_extractor() -> None:
    assert isinstance(build_extractor(Settings(_env_file=None)), HeuristicExtractor)
    remote = build_extractor(Settings(_env_file=None, extractor_url="http://model.test"))
    assert isinstance(remote, ModelExtractor)


SCOPE_PAYLOAD = {
    "objective": "Deliver an order API",
    "deliverables": [
        {
            "deliverable_id": "D1",
            "name": "Order API",
            "description": "Order endpoints",
            "category": "code",
            "estimated_hours": 20,
        }
    ],
    "acceptance_criteria": [
        {"criterion_id": "AC1", "description": "Tests pass", "verification_method": "automated_test"}
    ],
    "estimated_hours_by_phase": [{"phase_name": "Build", "estimated_hours": 20}],
    "timeline_estimate_days": 5,
    "confidence_score": 0.9,
}


@pytest.mark.asyncio
async def test_scope_cache_keys_on_skipped_fields() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json=SCOPE_PAYLOAD)

    extraction = ExtractionResult.model_validate({**EXTRACTION_PAYLOAD, "confidence_score": 0.8})
    answered = ClarificationResponse(answers={"tech_stack": "Go"})
    skipped = ClarificationResponse(
        answers={"tech_stack": "Go"},
        skipped_fields=["timeline_preference", "design_assets"],
        applied_defaults={"timeline_preference": "2-4 weeks"},
        confidence_adjustment=-0.1,
    )

    extractor = _model_extractor(handler)
    try:
        first = await extractor.generate_scope("Order API", "Build an order API", extraction, answered)
        second = await extractor.generate_scope("Order API", "Build an order API", extraction, skipped)
        again = await extractor.generate_scope("Order API", "Build an order API", extraction, skipped)
    finally:
        await extractor.aclose()

    assert calls == 2
    assert first.confidence_score == 0.8
    assert second.confidence_score == 0.7
    assert again == second


@pytest.mark.asyncio
async def test_cache_is_bounded() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content)["title"])
        return httpx.Response(200, json=EXTRACTION_PAYLOAD)

    extractor = ModelExtractor(
        base_url="http://model.test", transport=httpx.MockTransport(handler), cache_size=2
    )
    try:
        for title in ["A", "B", "C", "A"]:
            await extractor.extract(title, "Build an order API")
    finally:
        await extractor.aclose()

    # "A" was evicted when "C" arrived.
    assert calls == ["A", "B", "C", "A"]
