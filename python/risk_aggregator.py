"""
Risk Aggregator

Folds a list of Findings into a numeric score, a risk level and a
prioritized list of remediation steps.

Scoring: each finding contributes the points of its severity
(critical 40, high 25, warning 25, medium 10, low 2, info 2), the total is
capped at 100. Advisory findings (data-unavailable notices) carry no points.
Risk level thresholds: >=70 critical, >=40 high, >=15 medium, >=5 low,
otherwise clear.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config_manager import ScoringConfig
from models import (
    Finding, FindingCategory, Priority, Recommendation, RecommendedAction,
    RiskLevel, Severity,
)

logger = logging.getLogger(__name__)

LEGAL_DISCLAIMER = (
    "LEGAL DISCLAIMER: This analysis is provided for informational purposes only and does "
    "not constitute legal advice. Export control compliance is complex and highly "
    "fact-specific. This automated analysis should be verified by qualified export "
    "compliance counsel before making any business decisions. The analysis is based on "
    "publicly available information and may not reflect the most current regulatory "
    "updates or all relevant facts. Users are solely responsible for ensuring compliance "
    "with all applicable export control regulations."
)

EAR_ENTITY_LIST = "15 CFR Part 744 - Export Administration Regulations"
OFAC_50_PERCENT = "OFAC 50% Rule - sanctions apply to 50%+ owned entities"
EAR_COUNTRY_CONTROLS = "Export Administration Regulations - Country-based controls"


def _template(level: RiskLevel) -> Recommendation:
    if level is RiskLevel.CRITICAL:
        return Recommendation(
            action=RecommendedAction.IMMEDIATE_HALT,
            priority=Priority.URGENT,
            rationale="Restricted-entity exposure triggers immediate export control requirements",
            steps=[
                "STOP all pending transactions immediately",
                "Review all existing relationships with this entity",
                "Consult with export control counsel",
                "File voluntary self-disclosure if violations occurred",
                "Implement enhanced screening procedures",
            ],
            timeline="Immediate action required within 24 hours",
            legal_basis=EAR_ENTITY_LIST,
        )
    if level is RiskLevel.HIGH:
        return Recommendation(
            action=RecommendedAction.ENHANCED_DUE_DILIGENCE,
            priority=Priority.HIGH,
            rationale="High-risk indicators require enhanced due diligence before proceeding",
            steps=[
                "Verify end-user and end-use",
                "Screen against all denied parties lists",
                "Obtain beneficial ownership documentation",
                "Escalate to the compliance officer for sign-off",
            ],
            timeline="Within 72 hours",
            legal_basis=EAR_ENTITY_LIST,
        )
    if level is RiskLevel.MEDIUM:
        return Recommendation(
            action=RecommendedAction.MONITOR,
            priority=Priority.MEDIUM,
            rationale="Moderate risk indicators warrant enhanced monitoring",
            steps=[
                "Add supplier to the enhanced monitoring list",
                "Re-screen on every restricted-list update",
                "Document legitimate business purpose",
            ],
            timeline="Within 2 weeks",
            legal_basis="15 CFR Part 732 Supplement No. 3 - Know Your Customer guidance",
        )
    return Recommendation(
        action=RecommendedAction.PROCEED_WITH_CAUTION,
        priority=Priority.LOW,
        rationale="No immediate compliance red flags identified",
        steps=[
            "Implement standard screening procedures",
            "Document transaction rationale",
            "Monitor for any regulatory changes",
            "Maintain records for audit purposes",
        ],
        timeline="Standard business process",
        legal_basis="Best practices for compliance programs",
    )


_RESTRICTED_OWNER = Recommendation(
    action=RecommendedAction.ENHANCED_DUE_DILIGENCE,
    priority=Priority.URGENT,
    rationale="Ownership by a restricted entity creates compliance risk",
    steps=[
        "Conduct full beneficial ownership analysis",
        "Verify ultimate beneficial owner (UBO)",
        "Document decision-making authority and control",
        "Assess reputational risk",
        "Consider transaction suspension pending review",
    ],
    timeline="48-72 hours for initial assessment",
    legal_basis=OFAC_50_PERCENT,
)

_OWNERSHIP_DOCUMENTATION = Recommendation(
    action=RecommendedAction.ENHANCED_DUE_DILIGENCE,
    priority=Priority.HIGH,
    rationale="Ownership link to a restricted entity must be documented",
    steps=[
        "Request certified ownership documentation from the supplier",
        "Confirm ownership percentages against corporate registries",
        "Record the relationship in the compliance file",
    ],
    timeline="Within 2 weeks",
    legal_basis=OFAC_50_PERCENT,
)

_JURISDICTION = Recommendation(
    action=RecommendedAction.ENHANCED_DUE_DILIGENCE,
    priority=Priority.HIGH,
    rationale="High-risk jurisdiction requires enhanced compliance measures",
    steps=[
        "Verify end-user and end-use",
        "Screen against denied parties lists",
        "Document legitimate business purpose",
        "Implement enhanced transaction monitoring",
        "Consider requiring compliance certifications",
    ],
    timeline="1-2 weeks",
    legal_basis=EAR_COUNTRY_CONTROLS,
)

_DATA_UNAVAILABLE = Recommendation(
    action=RecommendedAction.MONITOR,
    priority=Priority.MEDIUM,
    rationale="Assessment is incomplete because a data source was unavailable",
    steps=[
        "Re-screen when data sources recover",
        "Do not treat this result as a clearance",
    ],
    timeline="Upon data source recovery",
)


def _copy(recommendation: Recommendation) -> Recommendation:
    return Recommendation(
        action=recommendation.action,
        priority=recommendation.priority,
        rationale=recommendation.rationale,
        steps=list(recommendation.steps),
        timeline=recommendation.timeline,
        legal_basis=recommendation.legal_basis,
    )


@dataclass
class ScoreCard:
    """Aggregation result for one supplier"""
    risk_score: int
    overall_risk: RiskLevel
    findings: List[Finding] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)
    summary: str = ""
    counts: Dict[str, int] = field(default_factory=dict)


class RiskAggregator:
    """Scores findings and derives recommendations"""

    def __init__(self, scoring_config: Optional[ScoringConfig] = None):
        self.config = scoring_config or ScoringConfig()
        thresholds = self.config.risk_thresholds
        self._levels = [
            (thresholds['critical'], RiskLevel.CRITICAL),
            (thresholds['high'], RiskLevel.HIGH),
            (thresholds['medium'], RiskLevel.MEDIUM),
            (thresholds['low'], RiskLevel.LOW),
        ]

    def score(self, findings: List[Finding]) -> int:
        total = sum(self.config.severity_points.get(f.severity.value, 0)
                    for f in findings if not f.advisory)
        return min(self.config.max_score, total)

    def classify(self, score: float) -> RiskLevel:
        for threshold, level in self._levels:
            if score >= threshold:
                return level
        return RiskLevel.CLEAR

    def recommend(self, level: RiskLevel, findings: List[Finding]) -> List[Recommendation]:
        recommendations = [_template(level)]
        scored = [f for f in findings if not f.advisory]

        if any(f.category is FindingCategory.OWNERSHIP and f.severity is Severity.CRITICAL
               for f in scored):
            recommendations.append(_copy(_RESTRICTED_OWNER))
        if any(f.category is FindingCategory.OWNERSHIP for f in scored):
            recommendations.append(_copy(_OWNERSHIP_DOCUMENTATION))
        if any(f.category is FindingCategory.GEOGRAPHIC and f.severity is not Severity.INFO
               for f in scored):
            recommendations.append(_copy(_JURISDICTION))
        if any(f.advisory for f in findings):
            recommendations.append(_copy(_DATA_UNAVAILABLE))

        # sorted() is stable: equal priorities keep insertion order
        return sorted(recommendations, key=lambda r: r.priority.rank)

    def summarize(self, entity_name: str, level: RiskLevel, counts: Dict[str, int],
                  recommendations: List[Recommendation], advisory_count: int) -> str:
        critical = counts.get(Severity.CRITICAL.value, 0)
        high = counts.get(Severity.HIGH.value, 0) + counts.get(Severity.WARNING.value, 0)

        summary = f'Risk Assessment for "{entity_name}": '
        if level is RiskLevel.CRITICAL:
            summary += "CRITICAL RISK IDENTIFIED. "
            summary += f"{critical} critical and {high} high-risk factors detected. "
            summary += "Immediate action required. "
        elif level is RiskLevel.HIGH:
            summary += "HIGH RISK. "
            summary += f"{high + critical} high-risk factors identified. "
            summary += "Enhanced due diligence required before proceeding. "
        elif level is RiskLevel.MEDIUM:
            summary += "MEDIUM RISK. Proceed with caution and enhanced monitoring. "
        else:
            summary += "LOW/CLEAR RISK. Standard compliance procedures apply. "

        urgent = sum(1 for r in recommendations if r.priority is Priority.URGENT)
        if urgent:
            summary += f"{urgent} urgent action items identified. "
        if advisory_count:
            summary += (f"Assessment incomplete: {advisory_count} data source notice(s); "
                        f"result is not a verified clearance.")
        return summary.strip()

    def aggregate(self, findings: List[Finding], entity_name: str = "") -> ScoreCard:
        ordered = sorted(findings, key=lambda f: -f.severity.rank)
        counts: Dict[str, int] = {}
        for finding in ordered:
            if not finding.advisory:
                counts[finding.severity.value] = counts.get(finding.severity.value, 0) + 1

        risk_score = self.score(ordered)
        level = self.classify(risk_score)
        recommendations = self.recommend(level, ordered)
        advisory_count = sum(1 for f in ordered if f.advisory)
        summary = self.summarize(entity_name, level, counts, recommendations, advisory_count)

        logger.debug("Aggregated %d findings: score=%d level=%s", len(ordered), risk_score, level.value)
        return ScoreCard(
            risk_score=risk_score,
            overall_risk=level,
            findings=ordered,
            recommendations=recommendations,
            summary=summary,
            counts=counts,
        )
