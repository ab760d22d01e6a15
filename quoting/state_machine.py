"""
Workflow stage transition table.

Pure lookups only. The record store calls ``validate_transition`` before
every stage change; the orchestration layer uses ``next_actions`` and
``is_waiting`` to decide what a caller may do next.
"""

from __future__ import annotations

from enum import StrEnum

from .errors import InvalidTransitionError


class Stage(StrEnum):
    INIT = "init"
    ANALYZING = "analyzing"
    CLARIFY_PENDING = "clarify_pending"
    CLARIFY_COMPLETE = "clarify_complete"
    SCOPE_DRAFT = "scope_draft"
    SCOPE_READY = "scope_ready"
    COMPLEXITY_CALC = "complexity_calc"
    QUOTE_READY = "quote_ready"
    QUOTE_EDITING = "quote_editing"
    CONFIRMED = "confirmed"
    FUNDED = "funded"
    CANCELLED = "cancelled"


class Trigger(StrEnum):
    AUTOMATIC = "automatic"
    USER = "user"
    SYSTEM = "system"
    MODEL = "model"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.INIT: frozenset({Stage.ANALYZING, Stage.CANCELLED}),
    Stage.ANALYZING: frozenset(
        {Stage.CLARIFY_PENDING, Stage.SCOPE_DRAFT, Stage.INIT, Stage.CANCELLED}
    ),
    Stage.CLARIFY_PENDING: frozenset({Stage.CLARIFY_COMPLETE, Stage.CANCELLED}),
    Stage.CLARIFY_COMPLETE: frozenset({Stage.SCOPE_DRAFT, Stage.CANCELLED}),
    Stage.SCOPE_DRAFT: frozenset({Stage.SCOPE_READY, Stage.CLARIFY_PENDING, Stage.CANCELLED}),
    Stage.SCOPE_READY: frozenset(
        {Stage.COMPLEXITY_CALC, Stage.CLARIFY_PENDING, Stage.CANCELLED}
    ),
    Stage.COMPLEXITY_CALC: frozenset(
        {Stage.QUOTE_READY, Stage.SCOPE_READY, Stage.QUOTE_EDITING, Stage.CANCELLED}
    ),
    Stage.QUOTE_READY: frozenset({Stage.QUOTE_EDITING, Stage.CONFIRMED, Stage.CANCELLED}),
    Stage.QUOTE_EDITING: frozenset(
        {Stage.COMPLEXITY_CALC, Stage.SCOPE_READY, Stage.CANCELLED}
    ),
    Stage.CONFIRMED: frozenset({Stage.FUNDED, Stage.CANCELLED}),
    Stage.FUNDED: frozenset(),
    Stage.CANCELLED: frozenset(),
}

WAITING_STAGES = frozenset({Stage.ANALYZING, Stage.SCOPE_DRAFT, Stage.COMPLEXITY_CALC})

STAGE_DESCRIPTIONS: dict[Stage, str] = {
    Stage.INIT: "Task created, ready for analysis",
    Stage.ANALYZING: "Analyzing the brief and extracting requirements",
    Stage.CLARIFY_PENDING: "Waiting for answers to clarifying questions",
    Stage.CLARIFY_COMPLETE: "Clarification received, ready to generate scope",
    Stage.SCOPE_DRAFT: "Generating the structured scope",
    Stage.SCOPE_READY: "Scope ready for review",
    Stage.COMPLEXITY_CALC: "Calculating complexity and pricing",
    Stage.QUOTE_READY: "Quote ready for review",
    Stage.QUOTE_EDITING: "Adjusting scope drivers for a new quote",
    Stage.CONFIRMED: "Quote accepted, awaiting escrow funding",
    Stage.FUNDED: "Escrow funded, task is live",
    Stage.CANCELLED: "Workflow cancelled",
}

_NEXT_ACTIONS: dict[Stage, tuple[str, ...]] = {
    Stage.INIT: ("analyze",),
    Stage.ANALYZING: ("wait",),
    Stage.CLARIFY_PENDING: ("submit_answers", "skip_clarification"),
    Stage.CLARIFY_COMPLETE: ("generate_scope",),
    Stage.SCOPE_DRAFT: ("wait",),
    Stage.SCOPE_READY: ("approve_scope", "request_more_clarity"),
    Stage.COMPLEXITY_CALC: ("wait",),
    Stage.QUOTE_READY: ("accept_quote", "edit_scope"),
    Stage.QUOTE_EDITING: ("requote", "revert_to_scope"),
    Stage.CONFIRMED: ("fund_escrow",),
    Stage.FUNDED: ("view_task",),
    Stage.CANCELLED: (),
}


def allowed_transitions(from_stage: Stage | str) -> list[Stage]:
    """Destinations reachable from ``from_stage``, in declaration order."""
    allowed = ALLOWED_TRANSITIONS[Stage(from_stage)]
    return [stage for stage in Stage if stage in allowed]


def can_transition(from_stage: Stage | str, to_stage: Stage | str) -> bool:
    try:
        return Stage(to_stage) in ALLOWED_TRANSITIONS[Stage(from_stage)]
    except ValueError:
        return False


def validate_transition(from_stage: Stage | str, to_stage: Stage | str) -> None:
    """Raise InvalidTransitionError naming the allowed set if the move is illegal."""
    if not can_transition(from_stage, to_stage):
        try:
            allowed = allowed_transitions(from_stage)
        except ValueError:
            allowed = []
        raise InvalidTransitionError(str(from_stage), str(to_stage), allowed)


def validate_path(from_stage: Stage | str, path: list[Stage]) -> None:
    """Validate each hop of a multi-step advance against the table."""
    current = Stage(from_stage)
    for step in path:
        validate_transition(current, step)
        current = step


def is_terminal(stage: Stage | str) -> bool:
    return not ALLOWED_TRANSITIONS[Stage(stage)]


def is_waiting(stage: Stage | str) -> bool:
    return Stage(stage) in WAITING_STAGES


def next_actions(stage: Stage | str) -> list[str]:
    """Caller-facing verbs for a stage. ``cancel`` is offered everywhere it is legal."""
    stage = Stage(stage)
    actions = list(_NEXT_ACTIONS[stage])
    if Stage.CANCELLED in ALLOWED_TRANSITIONS[stage]:
        actions.append("cancel")
    return actions


def describe(stage: Stage | str) -> str:
    return STAGE_DESCRIPTIONS[Stage(stage)]
