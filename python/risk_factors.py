"""
Risk Factor Detector

Each rule inspects the resolved entities and the raw supplier name and
emits zero or more typed Findings. Rules are independent and pure: they
never see each other's output and never touch external state.

Keyword tables (jurisdictions, sectors) come from the versioned
risk_tables section of config.yaml.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from config_manager import RiskTablesConfig, ScoringConfig
from models import (
    Finding, FindingCategory, MatchResult, MatchType, ResolvedEntity, Severity,
)

logger = logging.getLogger(__name__)


@dataclass
class SiblingMatch:
    """A sibling company of the supplier that matched the restricted list"""
    sibling_name: str
    match: MatchResult


@dataclass
class RuleContext:
    """Everything a rule may look at for one supplier"""
    raw_name: str
    resolved_entities: List[ResolvedEntity] = field(default_factory=list)
    sibling_matches: List[SiblingMatch] = field(default_factory=list)
    near_misses: List[MatchResult] = field(default_factory=list)

    @property
    def direct_entities(self) -> List[ResolvedEntity]:
        return [e for e in self.resolved_entities if e.match_type is MatchType.DIRECT]

    @property
    def ownership_entities(self) -> List[ResolvedEntity]:
        return [e for e in self.resolved_entities if e.match_type.is_ownership]


class RiskRule:
    """Base class for risk rules"""
    name = ''

    def run(self, context: RuleContext) -> List[Finding]:
        raise NotImplementedError

    def finding(self, severity: Severity, category: FindingCategory, description: str,
                evidence: Optional[List[str]] = None, confidence: float = 1.0) -> Finding:
        return Finding(
            severity=severity,
            category=category,
            description=description,
            evidence=evidence or [],
            confidence=max(0.0, min(1.0, confidence)),
            source=self.name,
            rule=self.name,
        )


def _listing_evidence(entity: ResolvedEntity) -> List[str]:
    record = entity.record
    evidence = []
    if record.effective_date:
        evidence.append(f"Listed since {record.effective_date}")
    if record.citation:
        evidence.append(f"Federal Register: {record.citation}")
    if record.country:
        evidence.append(f"Listing country: {record.country}")
    return evidence


class DirectListRule(RiskRule):
    """Supplier name itself matches a restricted entity"""
    name = 'direct_list'

    def __init__(self, critical_confidence: float = 0.9):
        self.critical_confidence = critical_confidence

    def run(self, context: RuleContext) -> List[Finding]:
        findings = []
        for entity in context.direct_entities:
            record = entity.record
            evidence = [*entity.evidence_points, *_listing_evidence(entity)]

            if entity.confidence >= self.critical_confidence:
                findings.append(self.finding(
                    Severity.CRITICAL, FindingCategory.DIRECT_MATCH,
                    f"Direct match to restricted entity: {record.canonical_name}",
                    evidence, entity.confidence,
                ))
                findings.append(self.finding(
                    Severity.CRITICAL, FindingCategory.REGULATORY,
                    f"Entity appears on the restricted-entity list: "
                    f"{record.license_requirement or 'license required for all items subject to the EAR'}",
                    [f"License review policy: {record.license_policy or 'presumption of denial'}",
                     *([f"Federal Register: {record.citation}"] if record.citation else []),
                     "Direct transactions likely prohibited without license"],
                    entity.confidence,
                ))
            else:
                findings.append(self.finding(
                    Severity.WARNING, FindingCategory.DIRECT_MATCH,
                    f"Probable match to restricted entity: {record.canonical_name}",
                    [*evidence, "Recommend manual verification"],
                    entity.confidence,
                ))
        return findings


class OwnershipRule(RiskRule):
    """Parent, subsidiary or affiliate of the supplier is listed"""
    name = 'ownership'

    _SEVERITY = {
        MatchType.PARENT: Severity.CRITICAL,
        MatchType.SUBSIDIARY: Severity.WARNING,
        MatchType.AFFILIATE: Severity.WARNING,
    }
    _DESCRIPTION = {
        MatchType.PARENT: "Owned by restricted entity: {}",
        MatchType.SUBSIDIARY: "Owns restricted entity: {}",
        MatchType.AFFILIATE: "Affiliated with restricted entity: {}",
    }

    def run(self, context: RuleContext) -> List[Finding]:
        findings = []
        for entity in context.ownership_entities:
            evidence = [
                f"Relationship path: {' -> '.join(entity.relationship_path)}",
                *entity.evidence_points,
            ]
            if entity.record.effective_date and \
                    f"Listed since {entity.record.effective_date}" not in evidence:
                evidence.append(f"Listed since {entity.record.effective_date}")
            findings.append(self.finding(
                self._SEVERITY[entity.match_type], FindingCategory.OWNERSHIP,
                self._DESCRIPTION[entity.match_type].format(entity.record.canonical_name),
                evidence, entity.confidence,
            ))
        return findings


def _keyword_pattern(keyword: str) -> re.Pattern:
    # Left word boundary only: "Iranian" matches, "incubator" does not match "cuba"
    return re.compile(r'(?<![a-z0-9])' + re.escape(keyword.lower()))


class JurisdictionRule(RiskRule):
    """Sanctioned countries and high-risk hubs named in the supplier name"""
    name = 'jurisdiction'

    _TIER_CONFIDENCE = {'critical': 0.8, 'high': 0.8, 'info': 0.6}

    def __init__(self, jurisdictions: Dict[str, Dict[str, str]]):
        self.entries: List[Tuple[str, str, str, re.Pattern]] = []
        for tier, keywords in jurisdictions.items():
            for keyword, regime in keywords.items():
                self.entries.append((tier, keyword, regime, _keyword_pattern(keyword)))

    def run(self, context: RuleContext) -> List[Finding]:
        name = context.raw_name.lower()
        findings = []
        for tier, keyword, regime, pattern in self.entries:
            if not pattern.search(name):
                continue
            if tier == 'info':
                description = "Supplier located in high-risk location"
                evidence = [f'Company name contains "{keyword}"', regime,
                            "Recommend additional due diligence"]
            else:
                description = f"Entity associated with {keyword.title()}"
                evidence = [f'Company name contains "{keyword}"', f"Regime: {regime}"]
            findings.append(self.finding(
                Severity(tier), FindingCategory.GEOGRAPHIC, description, evidence,
                self._TIER_CONFIDENCE.get(tier, 0.8),
            ))
        return findings


class SectorRule(RiskRule):
    """Controlled-technology sector keywords in the supplier name"""
    name = 'sector'

    def __init__(self, sectors: Sequence[Dict[str, str]]):
        self.entries = [
            (re.compile(str(entry['pattern']), re.IGNORECASE), Severity(entry['severity']),
             entry.get('description', entry['pattern']))
            for entry in sectors
        ]

    def run(self, context: RuleContext) -> List[Finding]:
        findings = []
        for pattern, severity, description in self.entries:
            match = pattern.search(context.raw_name)
            if match:
                findings.append(self.finding(
                    severity, FindingCategory.REGULATORY,
                    f"High-risk sector: {description}",
                    [f'Company name contains "{match.group(0)}"',
                     "Enhanced export control scrutiny, potential license requirements"],
                    0.7,
                ))
        return findings


class SiblingRule(RiskRule):
    """Sibling companies (shared parent) on the restricted list"""
    name = 'sibling'

    def run(self, context: RuleContext) -> List[Finding]:
        if not context.sibling_matches:
            return []
        names = []
        for sibling in context.sibling_matches:
            if sibling.sibling_name not in names:
                names.append(sibling.sibling_name)
        evidence = [
            f"Sibling entity: {s.sibling_name} matches {s.match.record.canonical_name} "
            f"({s.match.confidence * 100:.0f}%)"
            for s in context.sibling_matches
        ]
        confidence = max(s.match.confidence for s in context.sibling_matches)
        return [self.finding(
            Severity.HIGH, FindingCategory.OWNERSHIP,
            f"Affiliated with {len(names)} restricted sibling "
            f"{'entity' if len(names) == 1 else 'entities'}: {', '.join(names)}",
            evidence, confidence,
        )]


class LocationOverlapRule(RiskRule):
    """Supplier name mentions the city of a matched restricted entity"""
    name = 'location_overlap'

    def run(self, context: RuleContext) -> List[Finding]:
        name = context.raw_name.lower()
        findings = []
        seen = set()
        for entity in context.resolved_entities:
            city = entity.record.city
            if not city or entity.record.id in seen:
                continue
            if _keyword_pattern(city).search(name):
                seen.add(entity.record.id)
                findings.append(self.finding(
                    Severity.WARNING, FindingCategory.GEOGRAPHIC,
                    f"Geographic overlap with restricted entity {entity.record.canonical_name}",
                    [f"Both located in {city}", "Possible operational relationship"],
                    0.5,
                ))
        return findings


class NearMissNameRule(RiskRule):
    """Partial similarity with a listed name, below the match floor"""
    name = 'near_miss_name'

    def run(self, context: RuleContext) -> List[Finding]:
        return [
            self.finding(
                Severity.INFO, FindingCategory.NAMING,
                f"Partial name similarity with restricted entity {miss.record.canonical_name}",
                [f"Similarity score: {miss.confidence * 100:.0f}%",
                 "May indicate related entity or naming variation",
                 "Recommend manual verification"],
                miss.confidence,
            )
            for miss in context.near_misses
        ]


def default_rules(risk_tables: Optional[RiskTablesConfig] = None,
                  scoring: Optional[ScoringConfig] = None) -> List[RiskRule]:
    """Rules in their evaluation order"""
    risk_tables = risk_tables or RiskTablesConfig()
    scoring = scoring or ScoringConfig()
    return [
        DirectListRule(scoring.direct_critical_confidence),
        OwnershipRule(),
        JurisdictionRule(risk_tables.jurisdictions),
        SectorRule(risk_tables.sectors),
        SiblingRule(),
        LocationOverlapRule(),
        NearMissNameRule(),
    ]


DEFAULT_RULES = default_rules()


class RiskFactorDetector:
    """Runs every rule over a context and concatenates the findings"""

    def __init__(self, rules: Optional[Sequence[RiskRule]] = None):
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    def detect(self, context: RuleContext) -> List[Finding]:
        findings: List[Finding] = []
        for rule in self.rules:
            produced = rule.run(context)
            if produced:
                logger.debug("Rule %s produced %d finding(s)", rule.name, len(produced))
            findings.extend(produced)
        return findings
