"""
Deterministic task complexity scoring.

Seven additive components, each bounded on its own, summed and clamped to
0-100. The breakdown is returned alongside the total so downstream
consumers can explain a score, not just read it.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from .keywords import matches_any
from .schemas import (
    COMPLEXITY_MODEL_VERSION,
    ClarificationResponse,
    ComplexityBreakdown,
    ComplexityInputs,
    ComplexityResult,
    ScopeStructured,
    parse_model,
    utc_now,
)

FEATURE_CAP = 25.0
INTEGRATION_CAP = 20.0
COMPLIANCE_CAP = 15.0
CUSTOM_LOGIC_CAP = 15.0
UNCERTAINTY_ASSET_CAP = 5.0

SECURITY_SCORES = {"none": 0.0, "basic": 5.0, "advanced": 10.0, "critical": 15.0}
DEADLINE_SCORES = {"low": 0.0, "medium": 5.0, "high": 10.0}

COMPLIANCE_WEIGHTS = {"GDPR": 5.0, "HIPAA": 8.0, "SOC2": 7.0, "PCI": 8.0}
CUSTOM_LOGIC_WEIGHTS = {
    "ML": 10.0,
    "blockchain": 8.0,
    "crypto": 8.0,
    "custom-algorithm": 7.0,
    "realtime": 5.0,
}
UNKNOWN_FLAG_WEIGHT = 3.0

HOURS_PER_DAY = 8


def round1(value: float) -> float:
    """Half-up rounding to one decimal place."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _flag_weight(flag: str, weights: dict[str, float]) -> float:
    lowered = flag.lower()
    for name, weight in weights.items():
        if name.lower() == lowered:
            return weight
    return UNKNOWN_FLAG_WEIGHT


def score_features(count: int) -> float:
    if count <= 0:
        return 0.0
    if count <= 5:
        return count * 5.0
    return min(FEATURE_CAP, round1(25 + 10 * math.log10(count - 4)))


def score_integrations(count: int) -> float:
    return min(INTEGRATION_CAP, count * 4.0)


def score_security(level: str) -> float:
    return SECURITY_SCORES[level]


def score_compliance(flags: list[str]) -> float:
    return min(COMPLIANCE_CAP, sum(_flag_weight(f, COMPLIANCE_WEIGHTS) for f in flags))


def score_custom_logic(flags: list[str]) -> float:
    return min(CUSTOM_LOGIC_CAP, sum(_flag_weight(f, CUSTOM_LOGIC_WEIGHTS) for f in flags))


def score_deadline(pressure: str) -> float:
    return DEADLINE_SCORES[pressure]


def score_uncertainty(asset_missing_count: int, confidence: float) -> float:
    asset_penalty = min(UNCERTAINTY_ASSET_CAP, asset_missing_count * 1.5)
    return round1(asset_penalty + (1 - confidence) * 5)


def calculate_complexity(
    inputs: ComplexityInputs | dict[str, Any], *, now: datetime | None = None
) -> ComplexityResult:
    """Score a task. Raises ValidationError for malformed inputs."""
    inputs = parse_model(ComplexityInputs, inputs)

    breakdown = ComplexityBreakdown(
        feature_score=score_features(inputs.feature_count),
        integration_score=score_integrations(inputs.integration_count),
        security_score=score_security(inputs.security_level),
        compliance_score=score_compliance(inputs.compliance_flags),
        custom_logic_score=score_custom_logic(inputs.custom_logic_flags),
        timeline_pressure_score=score_deadline(inputs.deadline_pressure),
        uncertainty_penalty=score_uncertainty(inputs.asset_missing_count, inputs.confidence_score),
    )
    total = max(0.0, min(100.0, round1(breakdown.total())))

    return ComplexityResult(
        complexity_score=total,
        complexity_breakdown=breakdown,
        model_version=COMPLEXITY_MODEL_VERSION,
        explanation=explain(breakdown, total),
        inputs=inputs,
        computed_at=now or utc_now(),
    )


def _pts(value: float) -> str:
    return f"{value:g}"


def explain(breakdown: ComplexityBreakdown, total: float) -> str:
    lines: list[str] = []
    if breakdown.feature_score > 15:
        lines.append(f"High feature count (+{_pts(breakdown.feature_score)} pts)")
    if breakdown.integration_score > 10:
        lines.append(f"Multiple integrations (+{_pts(breakdown.integration_score)} pts)")
    if breakdown.security_score > 5:
        lines.append(f"Advanced security required (+{_pts(breakdown.security_score)} pts)")
    if breakdown.compliance_score > 0:
        lines.append(f"Compliance requirements (+{_pts(breakdown.compliance_score)} pts)")
    if breakdown.custom_logic_score > 0:
        lines.append(f"Custom logic needed (+{_pts(breakdown.custom_logic_score)} pts)")
    if breakdown.timeline_pressure_score > 5:
        lines.append(f"Tight deadline (+{_pts(breakdown.timeline_pressure_score)} pts)")
    if breakdown.uncertainty_penalty > 3:
        lines.append(f"Uncertainty penalty (+{_pts(breakdown.uncertainty_penalty)} pts)")

    if not lines:
        return f"Low complexity project ({_pts(total)}/100)"
    return "; ".join(lines) + f" -> Total: {_pts(total)}/100"


# =============================================================================
# Scope -> inputs
# =============================================================================


_SECURITY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("critical", ("critical", "finance", "health", "banking")),
    ("advanced", ("authentication", "encryption", "security audit")),
    ("basic", ("login", "password", "user auth")),
)

_COMPLIANCE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("GDPR", ("gdpr", "eu data", "european")),
    ("HIPAA", ("hipaa", "health data", "medical")),
    ("SOC2", ("soc2", "enterprise security")),
    ("PCI", ("pci", "payment card", "credit card")),
)

_CUSTOM_LOGIC_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("ML", ("machine learning", "ml model", "ai")),
    ("blockchain", ("blockchain", "smart contract", "web3")),
    ("realtime", ("realtime", "real-time", "websocket", "streaming", "live")),
    ("crypto", ("crypto", "encryption algorithm", "cryptography")),
    ("custom-algorithm", ("custom algorithm", "proprietary logic")),
)


def _answers_text(clarification: ClarificationResponse | None) -> str:
    if clarification is None:
        return ""
    return " ".join(f"{k} {v}" for k, v in clarification.effective_answers().items())


def count_integrations(scope: ScopeStructured, clarification: ClarificationResponse | None) -> int:
    count = sum(
        1 for d in scope.dependencies if "api" in d.lower() or "integration" in d.lower()
    )
    if clarification is not None:
        answer = clarification.effective_answers().get("integration_count")
        if isinstance(answer, int | float) and not isinstance(answer, bool):
            count = max(count, int(answer))
    return count


def infer_user_roles(scope: ScopeStructured, clarification: ClarificationResponse | None) -> int:
    if clarification is not None:
        answer = clarification.effective_answers().get("user_roles")
        if isinstance(answer, int) and not isinstance(answer, bool):
            return max(0, answer)
        if isinstance(answer, list):
            return len(answer)

    text = " ".join([scope.objective, *(d.description for d in scope.deliverables)]).lower()
    if "admin" in text and "user" in text:
        return 2
    if "multi-role" in text or "permissions" in text:
        return 3
    return 1


def infer_security_level(scope: ScopeStructured) -> str:
    text = " ".join([scope.objective, *(d.description for d in scope.deliverables)]).lower()
    for level, keywords in _SECURITY_KEYWORDS:
        if matches_any(text, keywords):
            return level
    return "none"


def extract_compliance_flags(
    scope: ScopeStructured, clarification: ClarificationResponse | None
) -> list[str]:
    text = " ".join([scope.objective, *scope.assumptions, _answers_text(clarification)]).lower()
    return [flag for flag, keywords in _COMPLIANCE_KEYWORDS if matches_any(text, keywords)]


def extract_custom_logic_flags(scope: ScopeStructured) -> list[str]:
    text = " ".join(d.description for d in scope.deliverables).lower()
    return [flag for flag, keywords in _CUSTOM_LOGIC_KEYWORDS if matches_any(text, keywords)]


def infer_deadline_pressure(scope: ScopeStructured) -> str:
    required_days = scope.total_estimated_hours / HOURS_PER_DAY
    if scope.timeline_estimate_days < required_days * 0.7:
        return "high"
    if scope.timeline_estimate_days < required_days * 1.2:
        return "medium"
    return "low"


def inputs_from_scope(
    scope: ScopeStructured, clarification: ClarificationResponse | None = None
) -> ComplexityInputs:
    """Derive scoring inputs from a structured scope and the clarification answers."""
    return ComplexityInputs(
        feature_count=sum(1 for d in scope.deliverables if d.category == "code"),
        integration_count=count_integrations(scope, clarification),
        user_roles=infer_user_roles(scope, clarification),
        security_level=infer_security_level(scope),
        compliance_flags=extract_compliance_flags(scope, clarification),
        custom_logic_flags=extract_custom_logic_flags(scope),
        asset_missing_count=len(clarification.skipped_fields) if clarification else 0,
        deadline_pressure=infer_deadline_pressure(scope),
        total_deliverables=len(scope.deliverables),
        total_estimated_hours=scope.total_estimated_hours,
        confidence_score=scope.confidence_score,
    )
