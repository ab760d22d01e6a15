"""
Quote pricing and requoting.

All money is computed in integer lamports with ``Decimal`` arithmetic and
half-up rounding, so a quote can be reproduced exactly from its breakdown.
SOL and USD figures are display values only.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from .complexity import explain, round1
from .errors import ValidationError
from .schemas import (
    PRICING_CONFIG_VERSION,
    ComplexityResult,
    PricingBreakdown,
    PricingInputs,
    PricingResult,
    ScopeDrivers,
    ScopeStructured,
    parse_model,
    utc_now,
)

if TYPE_CHECKING:
    from .config import Settings

MULTIPLIER_FLOOR = Decimal("0.8")
MULTIPLIER_SPAN = Decimal("1.2")
HOURS_PER_DAY = 8

URGENCY_BUMPS: dict[str, float] = {"standard": 0.0, "priority": 5.0, "urgent": 10.0}


@dataclass(frozen=True)
class PricingConfig:
    """Rates and constants that shape a quote."""

    platform_fee_rate: Decimal = Decimal("0.05")
    contingency_floor: Decimal = Decimal("0.05")
    contingency_scale: Decimal = Decimal("0.30")
    lamports_per_sol: int = 1_000_000_000
    sol_usd_rate: Decimal = Decimal("150")
    validity: timedelta = timedelta(days=7)
    version: str = PRICING_CONFIG_VERSION

    @classmethod
    def from_settings(cls, settings: Settings) -> PricingConfig:
        return cls(
            platform_fee_rate=Decimal(str(settings.platform_fee_rate)),
            lamports_per_sol=settings.lamports_per_sol,
            sol_usd_rate=Decimal(str(settings.sol_usd_rate)),
            validity=timedelta(days=settings.quote_validity_days),
        )

    def to_sol(self, lamports: int | Decimal) -> Decimal:
        return Decimal(lamports) / Decimal(self.lamports_per_sol)


DEFAULT_PRICING = PricingConfig()


def _lamports(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _places(amount: Decimal, exponent: str) -> float:
    return float(amount.quantize(Decimal(exponent), rounding=ROUND_HALF_UP))


def complexity_multiplier(complexity_score: float) -> Decimal:
    """0.8x at score 0 up to 2.0x at score 100."""
    return MULTIPLIER_FLOOR + Decimal(str(complexity_score)) / 100 * MULTIPLIER_SPAN


def calculate_price(
    complexity_score: float,
    estimated_hours: float,
    base_rate_lamports: int,
    confidence: float,
    *,
    config: PricingConfig = DEFAULT_PRICING,
    now: datetime | None = None,
) -> PricingResult:
    """Price a task from its complexity, effort and the counterparty's hourly rate."""
    inputs = parse_model(
        PricingInputs,
        {
            "complexity_score": complexity_score,
            "estimated_hours": estimated_hours,
            "base_rate_lamports": base_rate_lamports,
            "confidence": confidence,
        },
    )
    now = now or utc_now()

    multiplier = complexity_multiplier(inputs.complexity_score)
    hours = Decimal(str(inputs.estimated_hours))
    labour = _lamports(hours * inputs.base_rate_lamports * multiplier)

    contingency_rate = max(
        config.contingency_floor,
        (1 - Decimal(str(inputs.confidence))) * config.contingency_scale,
    )
    contingency = _lamports(labour * contingency_rate)
    fee = _lamports((labour + contingency) * config.platform_fee_rate)
    discount = 0
    total = labour + contingency + fee - discount

    total_sol = config.to_sol(total)
    return PricingResult(
        labour_cost_lamports=labour,
        contingency_lamports=contingency,
        fixed_fees_lamports=fee,
        discount_lamports=discount,
        total_lamports=total,
        total_sol=_places(total_sol, "0.0001"),
        total_usd=_places(total_sol * config.sol_usd_rate, "0.01"),
        base_rate_lamports=inputs.base_rate_lamports,
        breakdown=PricingBreakdown(
            base_rate_sol_per_hour=_places(config.to_sol(inputs.base_rate_lamports), "0.00001"),
            estimated_hours=inputs.estimated_hours,
            complexity_multiplier=_places(multiplier, "0.01"),
            contingency_percent=int(_places(contingency_rate * 100, "1")),
            fixed_fee_sol=_places(config.to_sol(fee), "0.0001"),
        ),
        valid_until=now + config.validity,
        pricing_config_version=config.version,
        computed_at=now,
    )


def price_scope(
    complexity: ComplexityResult,
    scope: ScopeStructured,
    base_rate_lamports: int,
    *,
    config: PricingConfig = DEFAULT_PRICING,
    now: datetime | None = None,
) -> PricingResult:
    return calculate_price(
        complexity.complexity_score,
        scope.total_estimated_hours,
        base_rate_lamports,
        scope.confidence_score,
        config=config,
        now=now,
    )


def is_expired(pricing: PricingResult, now: datetime | None = None) -> bool:
    return (now or utc_now()) > pricing.valid_until


def breakdown_text(pricing: PricingResult, config: PricingConfig = DEFAULT_PRICING) -> str:
    """Human-readable itemisation of a quote."""
    b = pricing.breakdown
    labour_sol = config.to_sol(pricing.labour_cost_lamports)
    contingency_sol = config.to_sol(pricing.contingency_lamports)
    fee_percent = _places(config.platform_fee_rate * 100, "1")

    lines = [
        f"Base Rate: {b.base_rate_sol_per_hour:g} SOL/hour",
        f"Estimated Hours: {b.estimated_hours:g}h",
        f"Complexity Multiplier: {b.complexity_multiplier:g}x",
        f"Labour Cost: {labour_sol:.4f} SOL",
        f"Contingency ({b.contingency_percent}%): {contingency_sol:.4f} SOL",
        f"Platform Fee ({fee_percent:g}%): {b.fixed_fee_sol:g} SOL",
    ]
    if pricing.discount_lamports > 0:
        discount_sol = config.to_sol(pricing.discount_lamports)
        reason = f" ({b.discount_reason})" if b.discount_reason else ""
        lines.append(f"Discount{reason}: -{discount_sol:.4f} SOL")
    lines.append(f"Total: {pricing.total_sol:g} SOL (~${pricing.total_usd:.2f})")
    return "\n".join(lines)


# =============================================================================
# Requote
# =============================================================================


@dataclass
class RequoteResult:
    scope: ScopeStructured
    complexity: ComplexityResult
    pricing: PricingResult


def rescale_scope(scope: ScopeStructured, new_hours: float) -> ScopeStructured:
    """Scale phase hours by new/old total and recompute the timeline."""
    old_hours = scope.total_estimated_hours
    if old_hours <= 0:
        raise ValidationError("Cannot rescale a scope with no estimated hours")
    ratio = new_hours / old_hours

    update: dict[str, Any] = {"timeline_estimate_days": math.ceil(new_hours / HOURS_PER_DAY * 10) / 10}
    if scope.estimated_hours_by_phase:
        update["estimated_hours_by_phase"] = [
            phase.model_copy(update={"estimated_hours": round1(phase.estimated_hours * ratio)})
            for phase in scope.estimated_hours_by_phase
        ]
    else:
        update["deliverables"] = [
            d.model_copy(update={"estimated_hours": max(0.1, round1(d.estimated_hours * ratio))})
            for d in scope.deliverables
        ]
    return scope.model_copy(update=update, deep=True)


def apply_urgency(
    complexity: ComplexityResult, urgency: str, *, now: datetime | None = None
) -> ComplexityResult:
    """Bump the un-adjusted score for urgency; repeated requotes do not compound."""
    base = complexity.base_score
    bumped = min(100.0, round1(base + URGENCY_BUMPS[urgency]))
    explanation = (
        f"{explain(complexity.complexity_breakdown, base)} (adjusted for {urgency} urgency)"
    )
    return complexity.model_copy(
        update={
            "complexity_score": bumped,
            "urgency_adjustment": round1(bumped - base),
            "explanation": explanation,
            "computed_at": now or utc_now(),
        },
        deep=True,
    )


def requote(
    scope: ScopeStructured,
    complexity: ComplexityResult,
    drivers: ScopeDrivers | dict[str, Any],
    base_rate_lamports: int,
    *,
    config: PricingConfig = DEFAULT_PRICING,
    now: datetime | None = None,
) -> RequoteResult:
    """Produce a fresh scope, complexity and quote from revised drivers.

    Inputs are never mutated; the caller keeps the prior quote for history.
    """
    drivers = parse_model(ScopeDrivers, drivers)
    now = now or utc_now()

    adjusted_scope = scope.model_copy(deep=True)
    if drivers.estimated_hours is not None:
        adjusted_scope = rescale_scope(scope, drivers.estimated_hours)

    adjusted_complexity = apply_urgency(complexity, drivers.urgency_level, now=now)
    pricing = price_scope(
        adjusted_complexity, adjusted_scope, base_rate_lamports, config=config, now=now
    )
    return RequoteResult(scope=adjusted_scope, complexity=adjusted_complexity, pricing=pricing)
