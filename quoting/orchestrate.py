"""Orchestrator - drives a workflow record from brief to funded quote."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .complexity import calculate_complexity, inputs_from_scope
from .config import Settings, settings
from .errors import (
    InvalidTransitionError,
    QuoteExpiredError,
    ReviewRequiredError,
    UpstreamError,
    ValidationError,
)
from .events import EventEmitter, EventType, WorkflowEvent, event_bus
from .extractor import Extractor, HeuristicExtractor
from .pricing import PricingConfig, is_expired, price_scope
from .pricing import requote as compute_requote
from .risk import RiskDetector
from .schemas import (
    ClarificationResponse,
    ExtractionResult,
    HumanReview,
    MissingField,
    QuoteRevision,
    RiskAssessment,
    ScopeDrivers,
    ScopeStructured,
    WorkflowRecord,
    parse_model,
    utc_now,
)
from .state_machine import (
    Stage,
    Trigger,
    allowed_transitions,
    is_terminal,
    is_waiting,
    next_actions,
)
from .state_machine import describe as describe_stage
from .store import Clock, RecordFilter, RecordStore, TransitionStep

logger = logging.getLogger(__name__)

SKIP_PENALTY = 0.05
MAX_SKIP_PENALTY = 0.3


@dataclass
class RecordStatus:
    """Read model returned by ``describe``."""

    record: WorkflowRecord
    description: str
    next_actions: list[str]
    waiting: bool
    quote_expired: bool
    open_questions: list[MissingField] = field(default_factory=list)

    @property
    def stage(self) -> Stage:
        return self.record.current_stage


def build_store(config: Settings = settings, *, clock: Clock = utc_now) -> RecordStore:
    """Record store wired to the configured durable backend."""
    from .persistence import backend_from_settings

    return RecordStore(
        backend_from_settings(config),
        debounce_seconds=config.flush_debounce_seconds,
        record_ttl=timedelta(days=config.record_ttl_days),
        clock=clock,
    )


class QuoteOrchestrator:
    """Entry point for every workflow operation.

    Each mutating call validates its input and computes every artifact
    before committing fields and stage steps in one store mutation.
    """

    def __init__(
        self,
        store: RecordStore,
        extractor: Extractor | None = None,
        *,
        config: Settings = settings,
        pricing_config: PricingConfig | None = None,
        risk_detector: RiskDetector | None = None,
        events: EventEmitter = event_bus,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.extractor = extractor or HeuristicExtractor()
        self.config = config
        self.pricing_config = pricing_config or PricingConfig.from_settings(config)
        self.risk_detector = risk_detector or RiskDetector()
        self.events = events
        self.clock = clock

    async def _emit(
        self, event_type: EventType, record: WorkflowRecord, message: str = "", **data: Any
    ) -> None:
        await self.events.emit(
            WorkflowEvent(
                type=event_type,
                record_id=record.id,
                stage=record.current_stage.value,
                message=message,
                data=data,
                timestamp=self.clock(),
            )
        )

    def _require_stage(self, record: WorkflowRecord, target: Stage, *stages: Stage) -> None:
        if record.current_stage not in stages:
            raise InvalidTransitionError(
                record.current_stage, target, allowed_transitions(record.current_stage)
            )

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def create_record(
        self,
        title: str,
        brief: str,
        client_id: str,
        counterparty_id: str,
        counterparty_name: str = "",
    ) -> WorkflowRecord:
        title = (title or "").strip()
        brief = (brief or "").strip()
        if not title:
            raise ValidationError("Title is required")
        if len(title) > self.config.max_title_length:
            raise ValidationError(f"Title must be at most {self.config.max_title_length} characters")
        if not brief:
            raise ValidationError("Brief is required")
        if len(brief) > self.config.max_brief_length:
            raise ValidationError(f"Brief must be at most {self.config.max_brief_length} characters")
        if not (client_id or "").strip() or not (counterparty_id or "").strip():
            raise ValidationError("Both client_id and counterparty_id are required")

        record = self.store.create(
            title=title,
            brief=brief,
            client_id=client_id.strip(),
            counterparty_id=counterparty_id.strip(),
            counterparty_name=counterparty_name.strip(),
        )
        await self._emit(EventType.RECORD_CREATED, record, f"Created {record.task_slug}")
        return record

    async def analyze(self, record_id: str) -> WorkflowRecord:
        """Run extraction on the brief.

        Without open questions the record goes straight on to scope
        generation. On extractor failure the record returns to ``init``.
        """
        record = self.store.transition(
            record_id, Stage.ANALYZING, Trigger.SYSTEM, {"action": "analyze"}
        )
        await self._emit(EventType.STAGE_CHANGED, record, "Analyzing brief")

        try:
            extraction = parse_model(
                ExtractionResult, await self.extractor.extract(record.title, record.brief)
            )
        except Exception as exc:
            reason = getattr(exc, "message", None) or str(exc)
            failed = self.store.transition(
                record_id, Stage.INIT, Trigger.ERROR, {"error": reason}
            )
            await self._emit(EventType.UPSTREAM_FAILED, failed, reason, operation="extract")
            raise UpstreamError(f"Extraction failed: {reason}") from exc

        record = await self.advance_after_extraction(record_id, extraction)
        if record.current_stage == Stage.SCOPE_DRAFT:
            return await self.generate_scope(record_id)
        return record

    async def advance_after_extraction(
        self, record_id: str, extraction: ExtractionResult | dict[str, Any]
    ) -> WorkflowRecord:
        extraction = parse_model(ExtractionResult, extraction)
        questions = extraction.open_questions(self.config.max_clarifying_questions)

        record = self.store.get(record_id)
        self._require_stage(record, Stage.CLARIFY_PENDING, Stage.INIT, Stage.ANALYZING)

        steps: list[TransitionStep] = []
        if record.current_stage == Stage.INIT:
            steps.append(TransitionStep(Stage.ANALYZING, Trigger.AUTOMATIC))
        if questions:
            steps.append(
                TransitionStep(
                    Stage.CLARIFY_PENDING, Trigger.MODEL, {"question_count": len(questions)}
                )
            )
        else:
            steps.append(TransitionStep(Stage.SCOPE_DRAFT, Trigger.MODEL, {"question_count": 0}))

        record = self.store.transition_path(
            record_id,
            steps,
            changes={"extraction_result": extraction},
            from_stages=(Stage.INIT, Stage.ANALYZING),
        )
        if questions:
            await self._emit(
                EventType.CLARIFICATION_REQUESTED,
                record,
                f"{len(questions)} clarifying question(s)",
                fields=[q.field_key for q in questions],
            )
        else:
            await self._emit(EventType.STAGE_CHANGED, record, "No clarification needed")
        return record

    # ------------------------------------------------------------------
    # Clarification
    # ------------------------------------------------------------------

    def open_questions(self, record: WorkflowRecord) -> list[MissingField]:
        if record.extraction_result is None:
            return []
        return record.extraction_result.open_questions(self.config.max_clarifying_questions)

    async def submit_clarification(
        self,
        record_id: str,
        answers: dict[str, Any],
        skipped: list[str] | None = None,
    ) -> WorkflowRecord:
        record = self.store.get(record_id)
        self._require_stage(record, Stage.CLARIFY_COMPLETE, Stage.CLARIFY_PENDING)
        if record.extraction_result is None:
            raise ValidationError("Record has no extraction result to clarify")
        if not isinstance(answers, dict):
            raise ValidationError("Answers must be a mapping of field key to value")

        fields = {f.field_key: f for f in record.extraction_result.all_fields()}
        cleaned = {key: _check_answer(fields.get(key), key, value) for key, value in answers.items()}

        previous = record.clarification_response
        merged = {**(previous.answers if previous else {}), **cleaned}

        skip_order = [*(skipped or []), *(q.field_key for q in self.open_questions(record))]
        skipped_keys: list[str] = []
        for key in skip_order:
            if key not in merged and key not in skipped_keys:
                skipped_keys.append(key)

        clarification = ClarificationResponse(
            answers=merged,
            skipped_fields=skipped_keys,
            applied_defaults={
                key: fields[key].default_value
                for key in skipped_keys
                if key in fields and fields[key].default_value is not None
            },
            confidence_adjustment=max(-MAX_SKIP_PENALTY, round(-SKIP_PENALTY * len(skipped_keys), 2)),
            answered_at=self.clock(),
        )

        record = self.store.transition(
            record_id,
            Stage.CLARIFY_COMPLETE,
            Trigger.USER,
            {"answered": len(merged), "skipped": len(skipped_keys)},
            changes={"clarification_response": clarification},
        )
        await self._emit(
            EventType.CLARIFICATION_RECEIVED,
            record,
            f"{len(merged)} answered, {len(skipped_keys)} skipped",
        )
        return record

    async def skip_clarification(self, record_id: str) -> WorkflowRecord:
        """Accept defaults for every open question."""
        return await self.submit_clarification(record_id, {})

    async def request_more_clarity(self, record_id: str) -> WorkflowRecord:
        record = self.store.transition(
            record_id,
            Stage.CLARIFY_PENDING,
            Trigger.USER,
            {"action": "request_more_clarity"},
        )
        await self._emit(EventType.CLARIFICATION_REQUESTED, record, "More clarity requested")
        return record

    # ------------------------------------------------------------------
    # Scope
    # ------------------------------------------------------------------

    async def generate_scope(self, record_id: str) -> WorkflowRecord:
        record = self.store.get(record_id)
        self._require_stage(record, Stage.SCOPE_DRAFT, Stage.CLARIFY_COMPLETE, Stage.SCOPE_DRAFT)
        if record.extraction_result is None:
            raise ValidationError("Record has no extraction result to build a scope from")

        if record.current_stage == Stage.CLARIFY_COMPLETE:
            record = self.store.transition(
                record_id, Stage.SCOPE_DRAFT, Trigger.AUTOMATIC, {"action": "generate_scope"}
            )
            await self._emit(EventType.STAGE_CHANGED, record, "Generating scope")

        try:
            scope = parse_model(
                ScopeStructured,
                await self.extractor.generate_scope(
                    record.title,
                    record.brief,
                    record.extraction_result,
                    record.clarification_response,
                ),
            )
        except Exception as exc:
            reason = getattr(exc, "message", None) or str(exc)
            failed = self.store.transition(
                record_id, Stage.CLARIFY_PENDING, Trigger.ERROR, {"error": reason}
            )
            await self._emit(EventType.UPSTREAM_FAILED, failed, reason, operation="generate_scope")
            raise UpstreamError(f"Scope generation failed: {reason}") from exc

        risk = self.risk_detector.assess(scope, record.clarification_response)
        return await self.advance_after_scope_generation(record_id, scope, risk)

    async def advance_after_scope_generation(
        self,
        record_id: str,
        scope: ScopeStructured | dict[str, Any],
        risk: RiskAssessment | dict[str, Any] | None = None,
    ) -> WorkflowRecord:
        scope = parse_model(ScopeStructured, scope)
        record = self.store.get(record_id)
        self._require_stage(record, Stage.SCOPE_READY, Stage.CLARIFY_COMPLETE, Stage.SCOPE_DRAFT)
        if risk is None:
            risk = self.risk_detector.assess(scope, record.clarification_response)
        else:
            risk = parse_model(RiskAssessment, risk)

        steps: list[TransitionStep] = []
        if record.current_stage == Stage.CLARIFY_COMPLETE:
            steps.append(TransitionStep(Stage.SCOPE_DRAFT, Trigger.AUTOMATIC))
        steps.append(
            TransitionStep(
                Stage.SCOPE_READY,
                Trigger.MODEL,
                {"risk_flags": list(risk.risk_flags), "deliverables": len(scope.deliverables)},
            )
        )

        record = self.store.transition_path(
            record_id,
            steps,
            changes={
                "scope_structured": scope,
                "risk_flags": list(risk.risk_flags),
                "risk_explanations": list(risk.explanations),
                "requires_human_review": risk.requires_human_review,
            },
            from_stages=(Stage.CLARIFY_COMPLETE, Stage.SCOPE_DRAFT),
        )
        await self._emit(
            EventType.SCOPE_READY,
            record,
            f"{len(scope.deliverables)} deliverable(s), {scope.total_estimated_hours:g}h",
        )
        if risk.requires_human_review:
            await self._emit(
                EventType.REVIEW_REQUIRED, record, "Manual review required", flags=risk.risk_flags
            )
        return record

    # ------------------------------------------------------------------
    # Quote
    # ------------------------------------------------------------------

    async def approve_scope(self, record_id: str, base_rate_lamports: int | None = None) -> WorkflowRecord:
        record = self.store.get(record_id)
        self._require_stage(record, Stage.COMPLEXITY_CALC, Stage.SCOPE_READY)
        scope = record.scope_structured
        if scope is None:
            raise ValidationError("Record has no scope to approve")

        rate = self.config.default_base_rate if base_rate_lamports is None else base_rate_lamports
        now = self.clock()
        complexity = calculate_complexity(
            inputs_from_scope(scope, record.clarification_response), now=now
        )
        pricing = price_scope(complexity, scope, rate, config=self.pricing_config, now=now)

        record = self.store.transition_path(
            record_id,
            [
                TransitionStep(Stage.COMPLEXITY_CALC, Trigger.USER, {"action": "approve_scope"}),
                TransitionStep(
                    Stage.QUOTE_READY,
                    Trigger.AUTOMATIC,
                    {
                        "complexity_score": complexity.complexity_score,
                        "total_lamports": pricing.total_lamports,
                    },
                ),
            ],
            changes={"complexity_result": complexity, "pricing_result": pricing},
            from_stages=(Stage.SCOPE_READY,),
        )
        await self._emit(
            EventType.QUOTE_GENERATED,
            record,
            f"{pricing.total_sol:g} SOL (complexity {complexity.complexity_score:g})",
            total_lamports=pricing.total_lamports,
        )
        return record

    async def begin_edit(self, record_id: str) -> WorkflowRecord:
        record = self.store.get(record_id)
        self._require_stage(record, Stage.QUOTE_EDITING, Stage.QUOTE_READY)
        if record.scope_structured is None:
            raise ValidationError("Record has no scope to edit")

        seeded = (record.scope_drivers or ScopeDrivers()).model_copy(
            update={"estimated_hours": record.scope_structured.total_estimated_hours}
        )
        record = self.store.transition(
            record_id,
            Stage.QUOTE_EDITING,
            Trigger.USER,
            {"action": "edit_scope"},
            changes={"scope_drivers": seeded},
        )
        await self._emit(EventType.STAGE_CHANGED, record, "Editing scope drivers")
        return record

    async def revert_to_scope(self, record_id: str) -> WorkflowRecord:
        record = self.store.transition(
            record_id, Stage.SCOPE_READY, Trigger.USER, {"action": "revert_to_scope"}
        )
        await self._emit(EventType.STAGE_CHANGED, record, "Returned to scope review")
        return record

    async def requote(
        self,
        record_id: str,
        drivers: ScopeDrivers | dict[str, Any],
        base_rate_lamports: int | None = None,
    ) -> WorkflowRecord:
        record = self.store.get(record_id)
        self._require_stage(record, Stage.COMPLEXITY_CALC, Stage.QUOTE_EDITING)
        if record.scope_structured is None or record.complexity_result is None:
            raise ValidationError("Record has no priced scope to requote")

        if isinstance(drivers, dict):
            base = record.scope_drivers.model_dump() if record.scope_drivers else {}
            drivers = {**base, **drivers}
        drivers = parse_model(ScopeDrivers, drivers)

        if base_rate_lamports is None:
            base_rate_lamports = (
                record.pricing_result.base_rate_lamports
                if record.pricing_result
                else self.config.default_base_rate
            )

        now = self.clock()
        result = compute_requote(
            record.scope_structured,
            record.complexity_result,
            drivers,
            base_rate_lamports,
            config=self.pricing_config,
            now=now,
        )

        def changes(current: WorkflowRecord) -> dict[str, Any]:
            history = list(current.quote_history)
            if current.pricing_result is not None and current.complexity_result is not None:
                history.append(
                    QuoteRevision(
                        pricing=current.pricing_result,
                        complexity=current.complexity_result,
                        scope_drivers=current.scope_drivers,
                        superseded_at=now,
                    )
                )
            return {
                "scope_structured": result.scope,
                "complexity_result": result.complexity,
                "pricing_result": result.pricing,
                "scope_drivers": drivers,
                "quote_history": history,
            }

        record = self.store.transition_path(
            record_id,
            [
                TransitionStep(Stage.COMPLEXITY_CALC, Trigger.USER, {"action": "requote"}),
                TransitionStep(
                    Stage.QUOTE_READY,
                    Trigger.AUTOMATIC,
                    {
                        "complexity_score": result.complexity.complexity_score,
                        "total_lamports": result.pricing.total_lamports,
                    },
                ),
            ],
            changes=changes,
            from_stages=(Stage.QUOTE_EDITING,),
        )
        await self._emit(
            EventType.QUOTE_REQUOTED,
            record,
            f"{result.pricing.total_sol:g} SOL",
            total_lamports=result.pricing.total_lamports,
            revision=len(record.quote_history),
        )
        return record

    async def record_review(
        self, record_id: str, reviewer: str, approved: bool, notes: str = ""
    ) -> WorkflowRecord:
        review = parse_model(
            HumanReview,
            {"reviewer": (reviewer or "").strip(), "approved": approved, "notes": notes, "reviewed_at": self.clock()},
        )

        def changes(current: WorkflowRecord) -> dict[str, Any]:
            if is_terminal(current.current_stage):
                raise ValidationError(f"Cannot review a record in terminal stage {current.current_stage}")
            return {"review": review}

        record = self.store.update(record_id, changes)
        await self._emit(
            EventType.REVIEW_RECORDED,
            record,
            f"{'Approved' if approved else 'Rejected'} by {review.reviewer}",
            approved=approved,
        )
        return record

    async def confirm_quote(self, record_id: str) -> WorkflowRecord:
        now = self.clock()

        def changes(current: WorkflowRecord) -> dict[str, Any]:
            if current.pricing_result is None:
                raise ValidationError("Record has no quote to confirm")
            if is_expired(current.pricing_result, now):
                raise QuoteExpiredError(
                    f"Quote expired at {current.pricing_result.valid_until.isoformat()}; edit and requote"
                )
            if (
                self.config.enforce_human_review
                and current.requires_human_review
                and not current.review_cleared
            ):
                raise ReviewRequiredError(
                    "Quote requires an approving human review before confirmation "
                    f"(flags: {', '.join(current.risk_flags)})"
                )
            return {}

        record = self.store.transition(
            record_id,
            Stage.CONFIRMED,
            Trigger.USER,
            {"action": "accept_quote"},
            changes=changes,
        )
        await self._emit(
            EventType.QUOTE_CONFIRMED,
            record,
            "Quote accepted",
            total_lamports=record.pricing_result.total_lamports if record.pricing_result else None,
        )
        return record

    async def record_funding(self, record_id: str, external_ref: str) -> WorkflowRecord:
        external_ref = (external_ref or "").strip()
        if not external_ref:
            raise ValidationError("Funding reference is required")
        existing = self.store.find_by_funding_ref(external_ref)
        if existing is not None and existing.id != record_id:
            raise ValidationError(f"Funding reference {external_ref} is already used by {existing.id}")

        record = self.store.transition(
            record_id,
            Stage.FUNDED,
            Trigger.SYSTEM,
            {"funding_ref": external_ref},
            changes={"funding_ref": external_ref},
        )
        await self._emit(EventType.RECORD_FUNDED, record, f"Escrow funded ({external_ref})")
        return record

    async def cancel(self, record_id: str, reason: str = "") -> WorkflowRecord:
        reason = (reason or "").strip()
        record = self.store.transition(
            record_id,
            Stage.CANCELLED,
            Trigger.USER,
            {"reason": reason} if reason else {},
            changes={"cancellation_reason": reason or None},
        )
        await self._emit(EventType.RECORD_CANCELLED, record, reason or "Cancelled")
        return record

    # ------------------------------------------------------------------
    # Reads & housekeeping
    # ------------------------------------------------------------------

    async def get_record(self, record_id: str) -> WorkflowRecord:
        return self.store.get(record_id)

    async def list_records(self, filters: RecordFilter | None = None) -> list[WorkflowRecord]:
        return self.store.list(filters)

    async def describe(self, record_id: str) -> RecordStatus:
        record = self.store.get(record_id)
        stage = record.current_stage
        return RecordStatus(
            record=record,
            description=describe_stage(stage),
            next_actions=next_actions(stage),
            waiting=is_waiting(stage),
            quote_expired=(
                record.pricing_result is not None
                and stage == Stage.QUOTE_READY
                and is_expired(record.pricing_result, self.clock())
            ),
            open_questions=self.open_questions(record) if stage == Stage.CLARIFY_PENDING else [],
        )

    async def sweep_expired(self) -> int:
        return self.store.sweep_expired(self.clock())

    async def archive(self, record_id: str) -> WorkflowRecord:
        return self.store.archive(record_id)


def _check_finite(key: str, value: Any) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"Answer for '{key}' must be a finite number")
    if isinstance(value, list | tuple):
        for item in value:
            _check_finite(key, item)
    elif isinstance(value, dict):
        for item in value.values():
            _check_finite(key, item)


def _check_answer(spec: MissingField | None, key: str, value: Any) -> Any:
    """Validate one answer against its question; unknown keys pass through."""
    _check_finite(key, value)
    if spec is None:
        return value
    if spec.answer_type == "radio":
        if value not in (spec.options or []):
            raise ValidationError(f"Answer for '{key}' must be one of: {', '.join(spec.options or [])}")
    elif spec.answer_type == "multiselect":
        values = value if isinstance(value, list) else [value]
        unknown = [v for v in values if v not in (spec.options or [])]
        if unknown:
            raise ValidationError(f"Answer for '{key}' has unknown option(s): {', '.join(map(str, unknown))}")
        return values
    elif spec.answer_type == "number":
        if isinstance(value, bool):
            raise ValidationError(f"Answer for '{key}' must be a number")
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Answer for '{key}' must be a number") from exc
        if not math.isfinite(number):
            raise ValidationError(f"Answer for '{key}' must be a finite number")
        return int(number) if number.is_integer() else number
    return value
