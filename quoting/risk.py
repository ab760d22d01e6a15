"""
Compliance risk flagging.

Keyword heuristics over the scope and the client's answers. Deliberately
over-flags: a missed compliance issue costs far more than a false alarm, and
a flagged task only needs a human to look at it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

from .keywords import matches_any
from .schemas import ClarificationResponse, RiskAssessment, ScopeStructured


@dataclass(frozen=True)
class RiskRule:
    flag: str
    keywords: frozenset[str]
    explanation: str
    needs_regulated_region: bool = False


class RiskDetector:
    """Detects compliance risks that should gate a task behind human review."""

    REGULATED_REGION_KEYWORDS = frozenset(
        {"uk", "united kingdom", "eu", "europe", "european"}
    )

    FINANCIAL_KEYWORDS = frozenset(
        {
            "crypto",
            "token",
            "nft",
            "defi",
            "blockchain",
            "financial services",
            "investment",
            "securities",
            "lending",
            "trading",
        }
    )

    RULES: tuple[RiskRule, ...] = (
        RiskRule(
            flag="financial_promotion_regulated_region",
            keywords=FINANCIAL_KEYWORDS,
            explanation=(
                "Financial or crypto promotion in the UK/EU may require FCA approval "
                "and compliance warnings"
            ),
            needs_regulated_region=True,
        ),
        RiskRule(
            flag="health_data_hipaa",
            keywords=frozenset({"health", "medical", "patient", "hipaa", "healthcare"}),
            explanation="Health data processing may require HIPAA compliance, BAA, and security controls",
        ),
        RiskRule(
            flag="financial_data_pci",
            keywords=frozenset({"payment", "credit card", "banking", "pci"}),
            explanation="Payment card data requires PCI-DSS compliance and secure processing",
        ),
        RiskRule(
            flag="adult_content",
            keywords=frozenset({"adult", "nsfw", "18+", "mature content"}),
            explanation="Adult content requires age verification and content warnings",
        ),
        RiskRule(
            flag="gambling_content",
            keywords=frozenset({"gambling", "betting", "casino", "wagering"}),
            explanation="Gambling services require gaming licenses and regulatory compliance",
        ),
        RiskRule(
            flag="gdpr_personal_data",
            keywords=frozenset({"personal data", "user data", "gdpr"}),
            explanation="EU personal data processing requires GDPR compliance and a DPA",
            needs_regulated_region=True,
        ),
        RiskRule(
            flag="ai_regulation_eu",
            keywords=frozenset({"machine learning", "artificial intelligence", "ai model"}),
            explanation="AI systems in the EU may be subject to EU AI Act classification",
            needs_regulated_region=True,
        ),
    )

    CRITICAL_FLAGS = frozenset(
        {
            "financial_promotion_regulated_region",
            "health_data_hipaa",
            "financial_data_pci",
            "gambling_content",
        }
    )

    def assess(
        self, scope: ScopeStructured, clarification: ClarificationResponse | None = None
    ) -> RiskAssessment:
        return self.assess_text(self._extract_full_text(scope, clarification))

    def assess_text(self, text: str) -> RiskAssessment:
        text = text.lower()
        in_regulated_region = matches_any(text, self.REGULATED_REGION_KEYWORDS)

        flags: list[str] = []
        explanations: list[str] = []
        for rule in self.RULES:
            if rule.needs_regulated_region and not in_regulated_region:
                continue
            if matches_any(text, rule.keywords):
                flags.append(rule.flag)
                explanations.append(rule.explanation)

        return RiskAssessment(
            risk_flags=flags,
            explanations=explanations,
            requires_human_review=any(f in self.CRITICAL_FLAGS for f in flags),
        )

    def _extract_full_text(
        self, scope: ScopeStructured, clarification: ClarificationResponse | None
    ) -> str:
        parts = [scope.text_corpus()]
        if clarification is not None:
            parts.append(json.dumps(clarification.effective_answers(), default=str))
        return " ".join(parts).lower()


def risk_summary(assessment: RiskAssessment) -> str:
    if not assessment.risk_flags:
        return "No significant compliance risks detected."

    lines = [f"{len(assessment.risk_flags)} risk(s) detected:"]
    lines.extend(f"{i}. {text}" for i, text in enumerate(assessment.explanations, start=1))
    if assessment.requires_human_review:
        lines.append("")
        lines.append("This task requires manual review before proceeding.")
    return "\n".join(lines)
