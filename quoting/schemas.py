"""
Typed records for the quoting pipeline.

Every artifact that crosses into the engine (extractor output, clarification
answers, scope, scoring and pricing inputs) is parsed once through
``parse_model``; after that the typed value flows through the pipeline
without re-validation.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ValidationError
from .state_machine import Stage, Trigger

ModelT = TypeVar("ModelT", bound=BaseModel)

AnswerType = Literal["radio", "multiselect", "number", "file", "text"]
Impact = Literal["critical", "high", "medium", "low"]
FieldCategory = Literal["technical", "business", "legal", "asset"]
TaskCategory = Literal[
    "smart-contract",
    "frontend",
    "backend",
    "api",
    "bot",
    "analysis",
    "audit",
    "devops",
    "integration",
    "other",
]
DeliverableCategory = Literal["code", "design", "documentation", "infrastructure", "audit"]
VerificationMethod = Literal["automated_test", "manual_review", "client_approval", "metric_threshold"]
SecurityLevel = Literal["none", "basic", "advanced", "critical"]
DeadlinePressure = Literal["low", "medium", "high"]
Urgency = Literal["standard", "priority", "urgent"]
QualityTier = Literal["standard", "premium"]

COMPLEXITY_MODEL_VERSION = "v2.0"
PRICING_CONFIG_VERSION = "v2.0"


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_model(model: type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` as ``model``, raising the engine's ValidationError on failure."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or model.__name__}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from exc


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Extraction & clarification
# =============================================================================


class MissingField(_Schema):
    """A question the extractor could not answer from the brief alone."""

    field_key: str = Field(min_length=1)
    question: str = Field(min_length=1)
    answer_type: AnswerType
    options: list[str] | None = None
    default_value: Any = None
    impact: Impact
    category: FieldCategory

    @model_validator(mode="after")
    def _options_for_choices(self) -> MissingField:
        if self.answer_type in ("radio", "multiselect") and not self.options:
            raise ValueError(f"{self.answer_type} answer_type requires options")
        return self


class ExtractionResult(_Schema):
    inferred_category: TaskCategory
    inferred_deliverables: list[str] = Field(max_length=10)
    required_missing_fields: list[MissingField] = Field(default_factory=list)
    optional_missing_fields: list[MissingField] = Field(default_factory=list)
    pricing_sensitive_fields: list[MissingField] = Field(default_factory=list)
    integration_points: list[str] = Field(default_factory=list)
    technical_components: list[str] = Field(default_factory=list)
    confidence_score: float = Field(ge=0, le=1)
    extraction_version: str = "v1.0"
    extracted_at: datetime = Field(default_factory=utc_now)
    model_used: str = "heuristic"

    def open_questions(self, limit: int | None = None) -> list[MissingField]:
        """Required and pricing-sensitive questions, first occurrence of each key wins."""
        seen: set[str] = set()
        questions: list[MissingField] = []
        for field in [*self.required_missing_fields, *self.pricing_sensitive_fields]:
            if field.field_key in seen:
                continue
            seen.add(field.field_key)
            questions.append(field)
        return questions[:limit] if limit is not None else questions

    def all_fields(self) -> list[MissingField]:
        seen: set[str] = set()
        fields: list[MissingField] = []
        for field in [
            *self.required_missing_fields,
            *self.pricing_sensitive_fields,
            *self.optional_missing_fields,
        ]:
            if field.field_key not in seen:
                seen.add(field.field_key)
                fields.append(field)
        return fields


class ClarificationResponse(_Schema):
    answers: dict[str, Any] = Field(default_factory=dict)
    skipped_fields: list[str] = Field(default_factory=list)
    applied_defaults: dict[str, Any] = Field(default_factory=dict)
    confidence_adjustment: float = Field(default=0.0, ge=-0.3, le=0)
    answered_at: datetime = Field(default_factory=utc_now)

    def effective_answers(self) -> dict[str, Any]:
        """Answers with applied defaults filled in for skipped fields."""
        return {**self.applied_defaults, **self.answers}


# =============================================================================
# Scope
# =============================================================================


class Deliverable(_Schema):
    deliverable_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: DeliverableCategory
    estimated_hours: float = Field(gt=0)
    dependencies: list[str] = Field(default_factory=list)


class Milestone(_Schema):
    milestone_id: str
    name: str
    deliverable_ids: list[str] = Field(default_factory=list)
    deadline_offset_days: int = Field(ge=0)
    acceptance_criteria_ids: list[str] = Field(default_factory=list)


class AcceptanceCriterion(_Schema):
    criterion_id: str = Field(min_length=1)
    description: str = Field(min_length=1)
    verification_method: VerificationMethod
    threshold: str | None = None
    blocking: bool = True


class PhaseEstimate(_Schema):
    phase_name: str = Field(min_length=1)
    estimated_hours: float = Field(ge=0)
    deliverable_ids: list[str] = Field(default_factory=list)


class ScopeStructured(_Schema):
    objective: str = Field(min_length=1, max_length=200)
    deliverables: list[Deliverable] = Field(min_length=1)
    milestones: list[Milestone] = Field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = Field(min_length=1)
    dependencies: list[str] = Field(default_factory=list)
    out_of_scope: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    estimated_hours_by_phase: list[PhaseEstimate] = Field(default_factory=list)
    timeline_estimate_days: float = Field(gt=0)
    confidence_score: float = Field(ge=0, le=1)
    scope_version: str = "v1.0"
    generated_at: datetime = Field(default_factory=utc_now)

    @property
    def total_estimated_hours(self) -> float:
        if self.estimated_hours_by_phase:
            return sum(p.estimated_hours for p in self.estimated_hours_by_phase)
        return sum(d.estimated_hours for d in self.deliverables)

    def text_corpus(self) -> str:
        """Free text of the scope, used by keyword heuristics."""
        parts = [self.objective]
        for d in self.deliverables:
            parts.extend([d.name, d.description])
        parts.extend(c.description for c in self.acceptance_criteria)
        parts.extend(self.assumptions)
        parts.extend(self.dependencies)
        return " ".join(parts)


class ScopeDrivers(_Schema):
    """Knobs a client can turn before asking for a requote.

    Only ``estimated_hours`` and ``urgency_level`` change the price; the other
    drivers are recorded with the quote for the counterparty.
    """

    estimated_hours: float | None = Field(default=None, gt=0)
    urgency_level: Urgency = "standard"
    quality_tier: QualityTier = "standard"
    page_count: int | None = Field(default=None, ge=0)
    integration_count: int | None = Field(default=None, ge=0)
    revision_rounds: int | None = Field(default=None, ge=0)


# =============================================================================
# Complexity & pricing
# =============================================================================


class ComplexityInputs(_Schema):
    feature_count: int = Field(ge=0)
    integration_count: int = Field(ge=0)
    user_roles: int = Field(default=1, ge=0)
    security_level: SecurityLevel
    compliance_flags: list[str] = Field(default_factory=list)
    custom_logic_flags: list[str] = Field(default_factory=list)
    asset_missing_count: int = Field(ge=0)
    deadline_pressure: DeadlinePressure
    total_deliverables: int = Field(default=0, ge=0)
    total_estimated_hours: float = Field(default=0, ge=0)
    confidence_score: float = Field(ge=0, le=1)
    complexity_model_version: str = COMPLEXITY_MODEL_VERSION


class ComplexityBreakdown(_Schema):
    feature_score: float = Field(ge=0, le=25)
    integration_score: float = Field(ge=0, le=20)
    security_score: float = Field(ge=0, le=15)
    compliance_score: float = Field(ge=0, le=15)
    custom_logic_score: float = Field(ge=0, le=15)
    timeline_pressure_score: float = Field(ge=0, le=10)
    uncertainty_penalty: float = Field(ge=0, le=10)

    def total(self) -> float:
        return sum(self.model_dump().values())


class ComplexityResult(_Schema):
    complexity_score: float = Field(ge=0, le=100)
    complexity_breakdown: ComplexityBreakdown
    urgency_adjustment: float = Field(default=0, ge=0, le=10)
    model_version: str = COMPLEXITY_MODEL_VERSION
    explanation: str
    inputs: ComplexityInputs | None = None
    computed_at: datetime = Field(default_factory=utc_now)

    @property
    def base_score(self) -> float:
        """Score before any urgency bump."""
        return round(self.complexity_score - self.urgency_adjustment, 1)


class PricingInputs(_Schema):
    complexity_score: float = Field(ge=0, le=100)
    estimated_hours: float = Field(ge=0)
    base_rate_lamports: int = Field(ge=0)
    confidence: float = Field(ge=0, le=1)


class PricingBreakdown(_Schema):
    base_rate_sol_per_hour: float = Field(ge=0)
    estimated_hours: float = Field(ge=0)
    complexity_multiplier: float = Field(ge=0.8, le=2.0)
    contingency_percent: int = Field(ge=0, le=100)
    fixed_fee_sol: float = Field(ge=0)
    discount_reason: str | None = None


class PricingResult(_Schema):
    labour_cost_lamports: int = Field(ge=0)
    contingency_lamports: int = Field(ge=0)
    fixed_fees_lamports: int = Field(ge=0)
    discount_lamports: int = Field(default=0, ge=0)
    total_lamports: int = Field(ge=0)
    total_sol: float = Field(ge=0)
    total_usd: float = Field(ge=0)
    base_rate_lamports: int = Field(ge=0)
    breakdown: PricingBreakdown
    valid_until: datetime
    pricing_config_version: str = PRICING_CONFIG_VERSION
    computed_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _total_adds_up(self) -> PricingResult:
        expected = (
            self.labour_cost_lamports
            + self.contingency_lamports
            + self.fixed_fees_lamports
            - self.discount_lamports
        )
        if self.total_lamports != expected:
            raise ValueError(
                f"total_lamports {self.total_lamports} != labour + contingency + fee - discount ({expected})"
            )
        return self


class QuoteRevision(_Schema):
    """A quote superseded by a requote, kept for the audit trail."""

    pricing: PricingResult
    complexity: ComplexityResult
    scope_drivers: ScopeDrivers | None = None
    superseded_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Risk
# =============================================================================


class RiskAssessment(_Schema):
    risk_flags: list[str] = Field(default_factory=list)
    explanations: list[str] = Field(default_factory=list)
    requires_human_review: bool = False


class HumanReview(_Schema):
    reviewer: str = Field(min_length=1)
    approved: bool
    notes: str = ""
    reviewed_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Workflow record
# =============================================================================


class StageTransition(_Schema):
    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: Stage
    entered_at: datetime
    trigger: Trigger
    metadata: dict[str, Any] = Field(default_factory=dict)


class WorkflowRecord(_Schema):
    """Aggregate root for one task moving through the quoting pipeline."""

    id: str
    task_slug: str
    current_stage: Stage
    stage_history: list[StageTransition] = Field(min_length=1)

    title: str
    brief: str
    client_id: str
    counterparty_id: str
    counterparty_name: str = ""

    extraction_result: ExtractionResult | None = None
    clarification_response: ClarificationResponse | None = None
    scope_structured: ScopeStructured | None = None
    complexity_result: ComplexityResult | None = None
    pricing_result: PricingResult | None = None
    scope_drivers: ScopeDrivers | None = None
    quote_history: list[QuoteRevision] = Field(default_factory=list)

    risk_flags: list[str] = Field(default_factory=list)
    risk_explanations: list[str] = Field(default_factory=list)
    requires_human_review: bool = False
    review: HumanReview | None = None

    funding_ref: str | None = None
    cancellation_reason: str | None = None

    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @field_validator("stage_history")
    @classmethod
    def _history_in_order(cls, history: list[StageTransition]) -> list[StageTransition]:
        for previous, entry in zip(history, history[1:]):
            if entry.entered_at < previous.entered_at:
                raise ValueError("stage_history timestamps must be non-decreasing")
        return history

    @model_validator(mode="after")
    def _stage_matches_history(self) -> WorkflowRecord:
        if self.current_stage != self.stage_history[-1].stage:
            raise ValueError(
                f"current_stage {self.current_stage} does not match last history entry "
                f"{self.stage_history[-1].stage}"
            )
        return self

    @property
    def review_cleared(self) -> bool:
        return self.review is not None and self.review.approved


ARTIFACT_FIELDS = (
    "extraction_result",
    "clarification_response",
    "scope_structured",
    "complexity_result",
    "pricing_result",
    "scope_drivers",
)
PROTECTED_FIELDS = ("id", "current_stage", "stage_history", "created_at")
