"""
Extractor boundary: brief -> structured facts -> structured scope.

The engine only depends on the ``Extractor`` protocol. Two implementations
ship with it: a deterministic keyword extractor that needs no network, and
an HTTP client for a model service that speaks the same JSON shapes.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from collections import OrderedDict
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel

from .complexity import round1
from .config import Settings
from .errors import UpstreamError, ValidationError
from .keywords import matched, matches_any
from .schemas import (
    AcceptanceCriterion,
    ClarificationResponse,
    Deliverable,
    ExtractionResult,
    Milestone,
    MissingField,
    PhaseEstimate,
    ScopeStructured,
    parse_model,
    utc_now,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MIN_SCOPE_CONFIDENCE = 0.3
MAX_SCOPE_CONFIDENCE = 1.0


class Extractor(Protocol):
    async def extract(self, title: str, brief: str) -> ExtractionResult: ...

    async def generate_scope(
        self,
        title: str,
        brief: str,
        extraction: ExtractionResult,
        clarification: ClarificationResponse | None,
    ) -> ScopeStructured: ...


def adjusted_confidence(
    extraction: ExtractionResult, clarification: ClarificationResponse | None
) -> float:
    adjustment = clarification.confidence_adjustment if clarification else 0.0
    value = extraction.confidence_score + adjustment
    return round(max(MIN_SCOPE_CONFIDENCE, min(MAX_SCOPE_CONFIDENCE, value)), 2)


TIMELINE_OPTIONS = ["1-2 weeks", "2-4 weeks", "1-2 months", "2+ months"]
TIMELINE_DAYS = {"1-2 weeks": 10, "2-4 weeks": 21, "1-2 months": 45, "2+ months": 75}


def fallback_extraction(title: str) -> ExtractionResult:
    """Safe default when the brief is too thin to infer anything."""
    return ExtractionResult(
        inferred_category="other",
        inferred_deliverables=[title[:100]],
        required_missing_fields=[
            MissingField(
                field_key="project_scope",
                question="Please describe the project scope in detail",
                answer_type="text",
                default_value="",
                impact="critical",
                category="technical",
            ),
            MissingField(
                field_key="deliverable_count",
                question="How many main deliverables are expected?",
                answer_type="number",
                default_value=3,
                impact="high",
                category="business",
            ),
            MissingField(
                field_key="timeline_preference",
                question="What is your preferred timeline?",
                answer_type="radio",
                options=TIMELINE_OPTIONS,
                default_value="2-4 weeks",
                impact="high",
                category="business",
            ),
        ],
        confidence_score=0.3,
        extraction_version="v2-fallback",
        model_used="fallback",
    )


class HeuristicExtractor:
    """Keyword-driven extractor. Same input always gives the same output."""

    MIN_BRIEF_WORDS = 6

    CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
        ("audit", ("audit", "security review")),
        ("smart-contract", ("smart contract", "nft", "token", "defi", "solana", "on-chain", "mint")),
        ("bot", ("bot", "telegram", "discord")),
        ("frontend", ("frontend", "landing page", "website", "web app", "ui")),
        ("api", ("api", "endpoint", "rest", "graphql")),
        ("devops", ("deploy", "ci/cd", "kubernetes", "docker", "infrastructure")),
        ("integration", ("integrate", "integration", "webhook")),
        ("analysis", ("analysis", "analytics", "report", "data pipeline")),
        ("backend", ("backend", "server", "database")),
    )

    TECH_STACK_KEYWORDS = (
        "react",
        "next.js",
        "vue",
        "svelte",
        "angular",
        "anchor",
        "rust",
        "solidity",
        "python",
        "django",
        "fastapi",
        "flask",
        "node",
        "typescript",
        "javascript",
        "go",
        "postgres",
        "mongodb",
        "web3.js",
        "hardhat",
        "foundry",
        "terraform",
    )

    TOKEN_STANDARD_KEYWORDS = (
        "spl",
        "token-2022",
        "metaplex",
        "erc-721",
        "erc721",
        "erc-20",
        "erc20",
        "erc-1155",
    )

    TIMELINE_KEYWORDS = ("day", "days", "week", "weeks", "month", "months", "deadline", "asap", "urgent")

    STACK_OPTIONS: dict[str, list[str]] = {
        "smart-contract": ["Anchor (Rust)", "Native Rust program", "Solidity (EVM)"],
        "frontend": ["React", "Next.js", "Vue"],
        "backend": ["Python (FastAPI)", "Node.js (Express)", "Go"],
        "api": ["Python (FastAPI)", "Node.js (Express)", "Go"],
        "bot": ["Python", "Node.js"],
    }

    DELIVERABLE_TEMPLATES: dict[str, list[str]] = {
        "smart-contract": ["On-chain program", "Program test suite", "Deployment scripts"],
        "frontend": ["Web application UI", "Responsive page layouts"],
        "backend": ["Backend service", "Database schema"],
        "api": ["API service", "API documentation"],
        "bot": ["Bot application", "Command handlers"],
        "audit": ["Security audit report"],
        "devops": ["Infrastructure configuration", "CI/CD pipeline"],
        "integration": ["Integration service", "Integration documentation"],
        "analysis": ["Data processing scripts", "Analysis report"],
    }

    INTEGRATIONS = {
        "stripe": "Stripe",
        "metaplex": "Metaplex",
        "arweave": "Arweave",
        "ipfs": "IPFS",
        "aws s3": "AWS S3",
        "twilio": "Twilio",
        "sendgrid": "SendGrid",
        "shopify": "Shopify",
        "slack": "Slack",
        "jupiter": "Jupiter",
        "pyth": "Pyth",
        "openai": "OpenAI",
        "google maps": "Google Maps",
        "firebase": "Firebase",
        "coingecko": "CoinGecko",
    }

    HOURS_BY_CATEGORY = {
        "code": 16.0,
        "design": 8.0,
        "documentation": 4.0,
        "infrastructure": 6.0,
        "audit": 12.0,
    }

    model_name = "heuristic"

    async def extract(self, title: str, brief: str) -> ExtractionResult:
        text = f"{title} {brief}".lower()
        if len(brief.split()) < self.MIN_BRIEF_WORDS:
            logger.info("Brief too short for keyword extraction; using fallback questions")
            return fallback_extraction(title)

        category = self._infer_category(text)
        deliverables = list(self.DELIVERABLE_TEMPLATES.get(category, [title[:100]]))
        if category == "smart-contract" and matches_any(text, ("marketplace", "frontend", "ui", "web")):
            deliverables.append("Web client")

        required: list[MissingField] = []
        pricing_sensitive: list[MissingField] = []
        optional: list[MissingField] = []

        stack = matched(text, self.TECH_STACK_KEYWORDS)
        if not stack and category in self.STACK_OPTIONS:
            options = self.STACK_OPTIONS[category]
            required.append(
                MissingField(
                    field_key="tech_stack",
                    question="Which technology stack should be used?",
                    answer_type="radio",
                    options=options,
                    default_value=options[0],
                    impact="high",
                    category="technical",
                )
            )

        if (
            category == "smart-contract"
            and matches_any(text, ("nft", "token"))
            and not matches_any(text, self.TOKEN_STANDARD_KEYWORDS)
        ):
            standard = MissingField(
                field_key="token_standard",
                question="Which token standard should the contracts use?",
                answer_type="radio",
                options=["Metaplex NFT standard", "SPL Token", "Token-2022"],
                default_value="Metaplex NFT standard",
                impact="critical",
                category="technical",
            )
            required.append(standard)
            pricing_sensitive.append(standard)

        if not matches_any(text, self.TIMELINE_KEYWORDS):
            pricing_sensitive.append(
                MissingField(
                    field_key="timeline_preference",
                    question="What is your preferred timeline?",
                    answer_type="radio",
                    options=TIMELINE_OPTIONS,
                    default_value="2-4 weeks",
                    impact="high",
                    category="business",
                )
            )

        if category in ("frontend", "smart-contract") and "design" not in text:
            optional.append(
                MissingField(
                    field_key="design_assets",
                    question="Do you have design files or brand assets to share?",
                    answer_type="file",
                    impact="low",
                    category="asset",
                )
            )

        integrations = [name for kw, name in self.INTEGRATIONS.items() if matches_any(text, (kw,))]
        only_pricing = [f for f in pricing_sensitive if f not in required]
        confidence = 0.9 - 0.15 * len(required) - 0.05 * len(only_pricing)
        if len(brief.split()) < 20:
            confidence -= 0.1

        return ExtractionResult(
            inferred_category=category,
            inferred_deliverables=deliverables[:10],
            required_missing_fields=required,
            optional_missing_fields=optional,
            pricing_sensitive_fields=pricing_sensitive,
            integration_points=integrations,
            technical_components=stack,
            confidence_score=round(max(0.3, min(0.95, confidence)), 2),
            extraction_version="v2-heuristic",
            model_used=self.model_name,
        )

    async def generate_scope(
        self,
        title: str,
        brief: str,
        extraction: ExtractionResult,
        clarification: ClarificationResponse | None,
    ) -> ScopeStructured:
        answers = clarification.effective_answers() if clarification else {}
        names = list(extraction.inferred_deliverables)
        wanted = answers.get("deliverable_count")
        if isinstance(wanted, int | float) and not isinstance(wanted, bool):
            for n in range(len(names) + 1, min(int(wanted), 10) + 1):
                names.append(f"Additional deliverable {n}")

        stack = answers.get("tech_stack") or ", ".join(extraction.technical_components)
        stack_suffix = f" using {stack}" if stack else ""

        deliverables: list[Deliverable] = []
        for i, name in enumerate(names, start=1):
            category = self._deliverable_category(name)
            deliverables.append(
                Deliverable(
                    deliverable_id=f"D{i}",
                    name=name,
                    description=f"{name} for {title}{stack_suffix if category == 'code' else ''}",
                    category=category,
                    estimated_hours=self.HOURS_BY_CATEGORY[category],
                )
            )

        build_hours = sum(d.estimated_hours for d in deliverables)
        build_ids = [d.deliverable_id for d in deliverables if d.category in ("code", "design", "infrastructure")]
        review_ids = [d.deliverable_id for d in deliverables if d.category in ("documentation", "audit")]
        phases = [
            PhaseEstimate(phase_name="Setup & Architecture", estimated_hours=max(2.0, round1(build_hours * 0.1))),
            PhaseEstimate(
                phase_name="Implementation",
                estimated_hours=sum(d.estimated_hours for d in deliverables if d.deliverable_id in build_ids),
                deliverable_ids=build_ids,
            ),
            PhaseEstimate(
                phase_name="Testing & Handover",
                estimated_hours=sum(d.estimated_hours for d in deliverables if d.deliverable_id in review_ids)
                + max(2.0, round1(build_hours * 0.15)),
                deliverable_ids=review_ids,
            ),
        ]
        total_hours = sum(p.estimated_hours for p in phases)

        criteria = [self._criterion(i, d) for i, d in enumerate(deliverables, start=1)]
        preference = answers.get("timeline_preference")
        if isinstance(preference, str) and preference in TIMELINE_DAYS:
            timeline_days = TIMELINE_DAYS[preference]
        else:
            timeline_days = math.ceil(total_hours / 8 * 1.25)

        implementation_days = math.ceil((phases[0].estimated_hours + phases[1].estimated_hours) / 8)
        milestones = [
            Milestone(
                milestone_id="M1",
                name="Implementation complete",
                deliverable_ids=build_ids,
                deadline_offset_days=implementation_days,
                acceptance_criteria_ids=[
                    c.criterion_id for c, d in zip(criteria, deliverables) if d.deliverable_id in build_ids
                ],
            ),
            Milestone(
                milestone_id="M2",
                name="Handover",
                deliverable_ids=review_ids,
                deadline_offset_days=math.ceil(total_hours / 8),
                acceptance_criteria_ids=[
                    c.criterion_id for c, d in zip(criteria, deliverables) if d.deliverable_id in review_ids
                ],
            ),
        ]

        assumptions: list[str] = []
        if clarification is not None:
            assumptions.extend(
                f"{key.replace('_', ' ').capitalize()} defaults to {value}"
                for key, value in clarification.applied_defaults.items()
                if value not in (None, "")
            )
            assumptions.extend(
                f"Client specified {key.replace('_', ' ')}: {value}"
                for key, value in clarification.answers.items()
                if value not in (None, "")
            )
        if extraction.integration_points:
            assumptions.append("Client provides access to the required third-party accounts")

        return ScopeStructured(
            objective=f"Deliver {title}"[:200],
            deliverables=deliverables,
            milestones=milestones,
            acceptance_criteria=criteria,
            dependencies=[f"{name} API integration" for name in extraction.integration_points],
            out_of_scope=["Ongoing maintenance after handover", "Hosting and third-party service fees"],
            assumptions=assumptions,
            estimated_hours_by_phase=phases,
            timeline_estimate_days=timeline_days,
            confidence_score=adjusted_confidence(extraction, clarification),
            scope_version="v2-heuristic",
        )

    def _infer_category(self, text: str) -> str:
        for category, keywords in self.CATEGORY_KEYWORDS:
            if matches_any(text, keywords):
                return category
        return "other"

    def _deliverable_category(self, name: str) -> str:
        lowered = name.lower()
        if "audit" in lowered:
            return "audit"
        if matches_any(lowered, ("documentation", "docs", "report", "guide")):
            return "documentation"
        if matches_any(lowered, ("design", "mockup", "wireframe")):
            return "design"
        if matches_any(lowered, ("deployment", "infrastructure", "ci/cd", "pipeline")):
            return "infrastructure"
        return "code"

    def _criterion(self, index: int, deliverable: Deliverable) -> AcceptanceCriterion:
        criterion_id = f"AC{index}"
        if deliverable.category == "code":
            return AcceptanceCriterion(
                criterion_id=criterion_id,
                description=f"Automated tests for {deliverable.name} pass",
                verification_method="automated_test",
            )
        if deliverable.category == "design":
            return AcceptanceCriterion(
                criterion_id=criterion_id,
                description=f"{deliverable.name} approved by the client",
                verification_method="client_approval",
            )
        if deliverable.category == "infrastructure":
            return AcceptanceCriterion(
                criterion_id=criterion_id,
                description=f"{deliverable.name} runs cleanly from a fresh environment",
                verification_method="automated_test",
            )
        return AcceptanceCriterion(
            criterion_id=criterion_id,
            description=f"{deliverable.name} reviewed and accepted",
            verification_method="manual_review",
        )


# =============================================================================
# Model service client
# =============================================================================


_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def _cache_key(*parts: Any) -> str:
    blob = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class ModelExtractor:
    """Async client for a model service exposing ``/extract`` and ``/scope``."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 60.0,
        max_retries: int = 1,
        transport: httpx.AsyncBaseTransport | None = None,
        cache_size: int = 128,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._cache: OrderedDict[str, BaseModel] = OrderedDict()
        self._cache_size = cache_size

    async def aclose(self) -> None:
        await self._client.aclose()

    def clear_cache(self) -> None:
        self._cache.clear()

    def _cached(self, key: str, model: type[ModelT]) -> ModelT | None:
        cached = self._cache.get(key)
        if not isinstance(cached, model):
            return None
        self._cache.move_to_end(key)
        return cached

    def _remember(self, key: str, value: BaseModel) -> None:
        self._cache[key] = value
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    async def _request(self, path: str, body: dict[str, Any]) -> httpx.Response:
        try:
            resp = await self._client.post(path, json=body)
            resp.raise_for_status()
            return resp
        except httpx.RequestError as e:
            raise UpstreamError(f"Model request failed (POST {path}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise UpstreamError(f"Model API error {status} (POST {path}): {e.response.text}") from e

    def _parse_payload(self, resp: httpx.Response) -> Any:
        try:
            payload = resp.json()
            # Some deployments wrap the raw model text, possibly fenced.
            if isinstance(payload, dict) and isinstance(payload.get("output"), str):
                payload = json.loads(_strip_fences(payload["output"]))
        except ValueError as e:
            raise UpstreamError(f"Model returned invalid JSON: {e}") from e
        return payload

    async def _call(self, path: str, body: dict[str, Any], model: type[ModelT]) -> ModelT:
        attempts = self._max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                resp = await self._request(path, body)
                return parse_model(model, self._parse_payload(resp))
            except (UpstreamError, ValidationError) as exc:
                last_error = exc
                logger.warning("Model call %s attempt %d/%d failed: %s", path, attempt, attempts, exc.message)
        raise UpstreamError(
            f"Model call {path} failed after {attempts} attempt(s): {last_error.message}"  # type: ignore[union-attr]
        ) from last_error

    async def extract(self, title: str, brief: str) -> ExtractionResult:
        key = _cache_key("extract", title, brief)
        cached = self._cached(key, ExtractionResult)
        if cached is not None:
            return cached
        result = await self._call("/extract", {"title": title, "brief": brief}, ExtractionResult)
        self._remember(key, result)
        return result

    async def generate_scope(
        self,
        title: str,
        brief: str,
        extraction: ExtractionResult,
        clarification: ClarificationResponse | None,
    ) -> ScopeStructured:
        body = {
            "title": title,
            "brief": brief,
            "extraction": extraction.model_dump(mode="json"),
            "clarification": clarification.model_dump(mode="json") if clarification else None,
        }
        key = _cache_key(
            "scope",
            title,
            brief,
            extraction.model_dump(mode="json", exclude={"extracted_at"}),
            clarification.model_dump(mode="json", exclude={"answered_at"}) if clarification else None,
        )
        cached = self._cached(key, ScopeStructured)
        if cached is not None:
            return cached
        scope = await self._call("/scope", body, ScopeStructured)
        scope = scope.model_copy(
            update={
                "confidence_score": adjusted_confidence(extraction, clarification),
                "generated_at": utc_now(),
            }
        )
        self._remember(key, scope)
        return scope


def build_extractor(config: Settings) -> Extractor:
    if config.extractor_url:
        return ModelExtractor(
            base_url=config.extractor_url,
            timeout_seconds=config.extractor_timeout_seconds,
            max_retries=config.extractor_max_retries,
        )
    return HeuristicExtractor()
