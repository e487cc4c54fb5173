"""
Data model for the Restricted-Party Resolution Engine

Every object here is created fresh per resolution call. Restricted-entity
records and ownership edges are frozen: they come from external
collaborators and are only read by the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional


class Relation(str, Enum):
    """Ownership relation tier, from the queried subject's point of view"""
    PARENT = "parent"
    SUBSIDIARY = "subsidiary"
    AFFILIATE = "affiliate"


class MatchMethod(str, Enum):
    """Which name-matching rule produced a MatchResult"""
    DIRECT = "direct"
    ALTERNATE_NAME = "alternate_name"
    FUZZY = "fuzzy"
    CONTAINMENT = "containment"


class MatchType(str, Enum):
    """How a resolved entity relates to the queried supplier"""
    DIRECT = "direct"
    PARENT = "parent"
    SUBSIDIARY = "subsidiary"
    AFFILIATE = "affiliate"
    INFERRED = "inferred"

    @property
    def is_ownership(self) -> bool:
        return self in (MatchType.PARENT, MatchType.SUBSIDIARY, MatchType.AFFILIATE)


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    WARNING = "warning"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.WARNING: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


class FindingCategory(str, Enum):
    DIRECT_MATCH = "direct_match"
    OWNERSHIP = "ownership"
    GEOGRAPHIC = "geographic"
    NAMING = "naming"
    REGULATORY = "regulatory"


class RiskLevel(str, Enum):
    """Overall verdict, ordered from CLEAR to CRITICAL"""
    CLEAR = "clear"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(RiskLevel).index(self)


class RecommendedAction(str, Enum):
    IMMEDIATE_HALT = "immediate_halt"
    ENHANCED_DUE_DILIGENCE = "enhanced_due_diligence"
    MONITOR = "monitor"
    PROCEED_WITH_CAUTION = "proceed_with_caution"
    CLEAR = "clear"


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"urgent": 0, "high": 1, "medium": 2, "low": 3}[self.value]


class InvariantViolationError(AssertionError):
    """Raised when an object would break a data-model invariant

    This always indicates a programming defect, never bad user input.
    """
    pass


def _check_confidence(value: float, owner: str) -> None:
    if not 0.0 <= value <= 1.0:
        raise InvariantViolationError(f"{owner} confidence must be within [0, 1], got {value}")


@dataclass(frozen=True)
class RestrictedEntityRecord:
    """One entry of the restricted-entity list snapshot"""
    id: str
    canonical_name: str
    alternate_names: FrozenSet[str] = frozenset()
    country: Optional[str] = None
    city: Optional[str] = None
    effective_date: Optional[str] = None
    citation: Optional[str] = None
    license_policy: Optional[str] = None
    license_requirement: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'canonical_name': self.canonical_name,
            'alternate_names': sorted(self.alternate_names),
            'country': self.country,
            'city': self.city,
            'effective_date': self.effective_date,
            'citation': self.citation,
            'license_policy': self.license_policy,
            'license_requirement': self.license_requirement,
        }


@dataclass(frozen=True)
class OwnershipEdge:
    """Directed subject -> related ownership edge

    Use the per-tier subclasses; each carries only the fields its tier uses.
    """
    relation: ClassVar[Relation]

    subject_name: str
    related_name: str
    evidence_source: str = "unknown"

    def describe(self) -> str:
        return f"{self.related_name} ({self.relation.value})"


@dataclass(frozen=True)
class ParentEdge(OwnershipEdge):
    """related_name owns (part of) subject_name"""
    relation: ClassVar[Relation] = Relation.PARENT
    ownership_percentage: Optional[float] = None

    def describe(self) -> str:
        return f"{self.related_name} owns {_percent(self.ownership_percentage)} of {self.subject_name}"


@dataclass(frozen=True)
class SubsidiaryEdge(OwnershipEdge):
    """subject_name owns (part of) related_name"""
    relation: ClassVar[Relation] = Relation.SUBSIDIARY
    ownership_percentage: Optional[float] = None

    def describe(self) -> str:
        return f"{self.subject_name} owns {_percent(self.ownership_percentage)} of {self.related_name}"


@dataclass(frozen=True)
class AffiliateEdge(OwnershipEdge):
    """Non-ownership affiliation (joint venture, common control, ...)"""
    relation: ClassVar[Relation] = Relation.AFFILIATE
    affiliation: str = "affiliate"

    def describe(self) -> str:
        return f"{self.related_name} has {self.affiliation} relationship with {self.subject_name}"


EDGE_TYPES = {
    Relation.PARENT: ParentEdge,
    Relation.SUBSIDIARY: SubsidiaryEdge,
    Relation.AFFILIATE: AffiliateEdge,
}


def _percent(value: Optional[float]) -> str:
    if value is None:
        return "?%"
    return f"{value:g}%"


@dataclass
class OwnershipStructure:
    """Ownership data returned by an ownership lookup provider"""
    subject_name: str
    parents: List[ParentEdge] = field(default_factory=list)
    subsidiaries: List[SubsidiaryEdge] = field(default_factory=list)
    affiliates: List[AffiliateEdge] = field(default_factory=list)
    siblings: List[str] = field(default_factory=list)
    source: str = "unknown"
    confidence_ceiling: float = 1.0

    @property
    def edges(self) -> List[OwnershipEdge]:
        return [*self.parents, *self.subsidiaries, *self.affiliates]

    @classmethod
    def from_edges(cls, subject_name: str, edges: List[OwnershipEdge],
                   source: str = "prefetched", confidence_ceiling: float = 1.0) -> 'OwnershipStructure':
        structure = cls(subject_name=subject_name, source=source,
                        confidence_ceiling=confidence_ceiling)
        for edge in edges:
            if edge.relation is Relation.PARENT:
                structure.parents.append(edge)
            elif edge.relation is Relation.SUBSIDIARY:
                structure.subsidiaries.append(edge)
            else:
                structure.affiliates.append(edge)
        return structure


@dataclass
class MatchResult:
    """Score of one query name against one restricted-entity record"""
    record: RestrictedEntityRecord
    method: MatchMethod
    confidence: float
    evidence: List[str] = field(default_factory=list)

    def __post_init__(self):
        _check_confidence(self.confidence, "MatchResult")


@dataclass
class ResolvedEntity:
    """A restricted entity linked to the queried supplier

    An empty relationship_path means a direct match.
    """
    matched_name: str
    match_type: MatchType
    record: RestrictedEntityRecord
    confidence: float
    evidence_points: List[str] = field(default_factory=list)
    relationship_path: List[str] = field(default_factory=list)
    method: Optional[MatchMethod] = None

    def __post_init__(self):
        _check_confidence(self.confidence, "ResolvedEntity")
        if (self.match_type.is_ownership or self.match_type is MatchType.INFERRED) \
                and len(self.relationship_path) < 2:
            raise InvariantViolationError(
                f"{self.match_type.value} match for '{self.matched_name}' "
                f"requires a relationship path"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'matched_name': self.matched_name,
            'match_type': self.match_type.value,
            'method': self.method.value if self.method else None,
            'confidence': round(self.confidence, 4),
            'evidence_points': list(self.evidence_points),
            'relationship_path': list(self.relationship_path),
            'record': self.record.to_dict(),
        }


@dataclass
class Finding:
    """One discrete, typed signal contributing to the risk score"""
    severity: Severity
    category: FindingCategory
    description: str
    evidence: List[str] = field(default_factory=list)
    confidence: float = 1.0
    source: str = "risk_engine"
    rule: str = ""
    advisory: bool = False

    def __post_init__(self):
        _check_confidence(self.confidence, "Finding")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'severity': self.severity.value,
            'category': self.category.value,
            'description': self.description,
            'evidence': list(self.evidence),
            'confidence': round(self.confidence, 4),
            'source': self.source,
            'rule': self.rule,
            'advisory': self.advisory,
        }


@dataclass
class Recommendation:
    """Actionable remediation step with its legal/procedural rationale"""
    action: RecommendedAction
    priority: Priority
    rationale: str
    steps: List[str] = field(default_factory=list)
    timeline: str = ""
    legal_basis: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'priority': self.priority.value,
            'rationale': self.rationale,
            'steps': list(self.steps),
            'timeline': self.timeline,
            'legal_basis': self.legal_basis,
        }


@dataclass
class RiskAssessment:
    """Terminal output of one resolution run"""
    entity_name: str
    overall_risk: RiskLevel
    risk_score: float
    confidence: float
    risk_factors: List[Finding] = field(default_factory=list)
    resolved_entities: List[ResolvedEntity] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)
    evidence_trail: List[str] = field(default_factory=list)
    data_gaps: List[str] = field(default_factory=list)
    summary: str = ""
    legal_disclaimer: str = ""
    list_version: str = ""
    algorithm_version: str = ""
    generated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        _check_confidence(self.confidence, "RiskAssessment")
        if not 0.0 <= self.risk_score <= 100.0:
            raise InvariantViolationError(f"risk_score must be within [0, 100], got {self.risk_score}")

    @property
    def is_verified(self) -> bool:
        """False when any upstream data source was unavailable"""
        return not self.data_gaps

    def to_dict(self, include_timestamp: bool = True) -> Dict[str, Any]:
        result = {
            'entity_name': self.entity_name,
            'overall_risk': self.overall_risk.value,
            'risk_score': self.risk_score,
            'confidence': round(self.confidence, 4),
            'risk_factors': [f.to_dict() for f in self.risk_factors],
            'resolved_entities': [e.to_dict() for e in self.resolved_entities],
            'recommendations': [r.to_dict() for r in self.recommendations],
            'evidence_trail': list(self.evidence_trail),
            'data_gaps': list(self.data_gaps),
            'summary': self.summary,
            'legal_disclaimer': self.legal_disclaimer,
            'list_version': self.list_version,
            'algorithm_version': self.algorithm_version,
        }
        if include_timestamp:
            result['generated_at'] = self.generated_at.isoformat()
        return result


@dataclass
class SupplierRecord:
    """Flat supplier row handed over by the ingestion layer"""
    original_name: str
    location: Optional[str] = None
    siblings: List[str] = field(default_factory=list)
    ownership_edges: Optional[List[OwnershipEdge]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
