"""
Restricted-Party Resolution Engine - orchestrator

Resolves one supplier name into a RiskAssessment:

1. Validate the name
2. Match it against the restricted-entity snapshot (fuzzy matcher)
3. Fetch its ownership structure and resolve parents/subsidiaries/affiliates
4. Match sibling companies (guilt by association)
5. Run the risk rules and aggregate the findings

Missing data never fails a resolution. An empty restricted list or an
unavailable ownership source produces an advisory finding, a data gap and
a capped confidence, so a "clear" result is never mistaken for a verified
clearance.
"""

import logging
import unicodedata
from typing import Iterable, List, Optional, Sequence, Union

from config_manager import ConfigManager, get_config
from entity_list import (
    EntityListSnapshot, EntityListUnavailableError, RestrictedListSource,
)
from fuzzy_matcher import FuzzyMatcher
from models import (
    Finding, FindingCategory, InvariantViolationError, MatchType, OwnershipEdge,
    OwnershipStructure, ResolvedEntity, RestrictedEntityRecord, RiskAssessment,
    Severity,
)
from name_normalizer import NameNormalizer
from ownership_resolver import (
    OwnershipGraphResolver, OwnershipUnavailableError, resolve_ownership_matches,
)
from risk_aggregator import LEGAL_DISCLAIMER, RiskAggregator
from risk_factors import RiskFactorDetector, RuleContext, SiblingMatch, default_rules
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

GAP_RESTRICTED_LIST = "restricted_entity_list"
GAP_STALE_LIST = "stale_restricted_list"
GAP_OWNERSHIP = "ownership"


class InputValidationError(ValueError):
    """Raised when a supplier name fails validation

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
        suggestion: Optional suggestion for fixing the error
    """
    def __init__(self, message: str, field: str = "supplier_name", code: str = "VALIDATION_ERROR",
                 suggestion: str = ""):
        self.field = field
        self.code = code
        self.suggestion = suggestion
        super().__init__(message)


def validate_supplier_name(name: Optional[str], config: Optional[ConfigManager] = None) -> str:
    """Validate a supplier name and return it stripped

    Raises:
        InputValidationError: If the name is empty, too long, or contains
            blocked or control characters
    """
    if config is None:
        config = get_config()
    iv_config = config.input_validation

    if name is None or not isinstance(name, str):
        raise InputValidationError(
            "Supplier name is required",
            code="NAME_REQUIRED",
            suggestion="Provide the supplier's legal or trading name"
        )

    stripped = name.strip()
    if len(stripped) < iv_config.name_min_length:
        raise InputValidationError(
            "Supplier name is empty or whitespace only" if not stripped else
            f"Supplier name too short ({len(stripped)} chars, minimum {iv_config.name_min_length})",
            code="NAME_EMPTY" if not stripped else "NAME_TOO_SHORT",
            suggestion="Provide the supplier's legal or trading name"
        )

    if len(stripped) > iv_config.name_max_length:
        raise InputValidationError(
            f"Supplier name too long ({len(stripped)} chars, maximum {iv_config.name_max_length})",
            code="NAME_TOO_LONG",
            suggestion=f"Shorten the name to {iv_config.name_max_length} characters or less"
        )

    found_blocked = [c for c in stripped if c in iv_config.blocked_characters]
    if found_blocked:
        logger.warning("SECURITY: Blocked characters detected in supplier name: %s",
                       sanitize_for_logging(stripped))
        raise InputValidationError(
            f"Supplier name contains blocked characters: {found_blocked}",
            code="BLOCKED_CHARACTERS",
            suggestion="Remove special characters like < > { } [ ] | \\ ; ` $"
        )

    for char in stripped:
        if unicodedata.category(char).startswith('C'):
            logger.warning("SECURITY: Control character detected in supplier name: %s",
                           sanitize_for_logging(stripped))
            raise InputValidationError(
                f"Supplier name contains invalid control character (code: {ord(char)})",
                code="CONTROL_CHARACTER",
                suggestion="Remove invisible or control characters from the name"
            )

    return stripped


def _advisory(category: FindingCategory, description: str, evidence: List[str],
              source: str) -> Finding:
    return Finding(
        severity=Severity.INFO,
        category=category,
        description=description,
        evidence=evidence,
        confidence=1.0,
        source=source,
        rule="data_availability",
        advisory=True,
    )


class EntityResolver:
    """Resolves supplier names against a restricted-entity snapshot"""

    def __init__(self,
                 restricted_list: Union[EntityListSnapshot, Sequence[RestrictedEntityRecord]],
                 ownership_resolver: Optional[OwnershipGraphResolver] = None,
                 config: Optional[ConfigManager] = None,
                 audit_logger=None,
                 detector: Optional[RiskFactorDetector] = None):
        self.config = config or get_config()
        if isinstance(restricted_list, EntityListSnapshot):
            self.snapshot = restricted_list
        else:
            self.snapshot = EntityListSnapshot(records=tuple(restricted_list), source="in-memory")
        self.ownership_resolver = ownership_resolver
        self.audit_logger = audit_logger

        self.normalizer = NameNormalizer(self.config.matching)
        self.matcher = FuzzyMatcher(self.normalizer, self.config.matching)
        self.detector = detector or RiskFactorDetector(
            default_rules(self.config.risk_tables, self.config.scoring)
        )
        self.aggregator = RiskAggregator(self.config.scoring)

        if self.snapshot.is_empty:
            logger.warning("⚠ Restricted-entity list is empty; every assessment will be unverified")
        else:
            logger.info(f"✓ Resolver ready: {len(self.snapshot)} restricted entities "
                        f"(list version {self.snapshot.version})")

    @classmethod
    def from_source(cls, source: RestrictedListSource,
                    ownership_resolver: Optional[OwnershipGraphResolver] = None,
                    config: Optional[ConfigManager] = None,
                    audit_logger=None) -> 'EntityResolver':
        """Load the snapshot once from source; an unavailable source yields an empty list"""
        try:
            snapshot = source.load()
        except EntityListUnavailableError as e:
            logger.error(f"Restricted-entity list unavailable: {e}")
            if audit_logger is not None:
                audit_logger.log_data_unavailable(GAP_RESTRICTED_LIST, str(e))
            snapshot = EntityListSnapshot(version="unavailable", source=type(source).__name__)
        return cls(snapshot, ownership_resolver=ownership_resolver, config=config,
                   audit_logger=audit_logger)

    @property
    def records(self) -> Sequence[RestrictedEntityRecord]:
        return self.snapshot.records

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_entity(self, supplier_name: str,
                       ownership_edges: Optional[Iterable[OwnershipEdge]] = None,
                       sibling_names: Optional[Iterable[str]] = None,
                       request_id: str = "") -> RiskAssessment:
        """Resolve one supplier name into a RiskAssessment

        Args:
            supplier_name: Raw supplier name
            ownership_edges: Pre-fetched ownership edges; when given (even
                empty) no ownership lookup is made
            sibling_names: Companies known to share a parent with the supplier
            request_id: Correlation ID for audit events

        Raises:
            InputValidationError: If the supplier name is malformed
            InvariantViolationError: On an internal consistency defect
        """
        try:
            name = validate_supplier_name(supplier_name, self.config)
        except InputValidationError as e:
            if self.audit_logger is not None:
                self.audit_logger.log_validation_failure(e.field, e.code, supplier_name or "",
                                                         request_id=request_id)
            raise

        records = self.records
        list_available = not self.snapshot.is_empty
        advisories: List[Finding] = []
        data_gaps: List[str] = []
        confidence_caps: List[float] = []
        trail: List[str] = [
            f"Restricted-entity list: version {self.snapshot.version}, "
            f"{len(records)} records, source {self.snapshot.source}",
            f"Normalized name: '{self.normalizer.normalize(name)}'",
        ]

        if not list_available:
            advisories.append(_advisory(
                FindingCategory.REGULATORY,
                "Restricted-entity list unavailable: screening could not be performed",
                ["The restricted-entity snapshot is empty",
                 "Result is not a verified clearance"],
                source="entity_list",
            ))
            data_gaps.append(GAP_RESTRICTED_LIST)
            confidence_caps.append(self.config.confidence.list_unavailable_cap)
            self._audit_unavailable(GAP_RESTRICTED_LIST, "restricted-entity list is empty",
                                    name, request_id)
        else:
            age = self.snapshot.age_days()
            max_age = self.config.reporting.data_freshness_warning_days
            if age is not None and age > max_age:
                advisories.append(_advisory(
                    FindingCategory.REGULATORY,
                    f"Restricted-entity list snapshot is {age} days old",
                    [f"Published {self.snapshot.published.isoformat()}",
                     f"Freshness threshold: {max_age} days",
                     "Refresh the list and re-screen"],
                    source="entity_list",
                ))
                data_gaps.append(GAP_STALE_LIST)

        # Direct matching
        resolved: List[ResolvedEntity] = []
        near_misses = []
        if list_available:
            for match in self.matcher.match_all(name, records):
                resolved.append(ResolvedEntity(
                    matched_name=match.record.canonical_name,
                    match_type=MatchType.DIRECT,
                    record=match.record,
                    confidence=match.confidence,
                    evidence_points=list(match.evidence),
                    method=match.method,
                ))
            near_misses = self.matcher.near_misses(
                name, records, self.config.matching.near_miss_floor
            )

        # Ownership
        structure: Optional[OwnershipStructure] = None
        if ownership_edges is not None:
            structure = OwnershipStructure.from_edges(
                name, list(ownership_edges),
                confidence_ceiling=self.config.confidence.prefetched_ownership_ceiling,
            )
        elif list_available:
            structure = self._fetch_ownership(name, advisories, data_gaps, confidence_caps,
                                              request_id)

        if structure is not None:
            trail.append(f"Ownership data: {len(structure.edges)} edge(s) from {structure.source}")
            if list_available:
                resolved.extend(resolve_ownership_matches(
                    name, structure.edges, records, self.normalizer,
                    self.config.ownership.tier_confidence,
                ))
            confidence_caps.append(structure.confidence_ceiling)
        elif GAP_OWNERSHIP in data_gaps:
            trail.append("Ownership data: unavailable")
        else:
            trail.append("Ownership data: skipped")

        # Siblings
        siblings = self._merge_siblings(name, sibling_names, structure)
        sibling_matches: List[SiblingMatch] = []
        if list_available:
            for sibling in siblings:
                for match in self.matcher.match_all(sibling, records):
                    sibling_matches.append(SiblingMatch(sibling, match))
                    resolved.append(ResolvedEntity(
                        matched_name=match.record.canonical_name,
                        match_type=MatchType.INFERRED,
                        record=match.record,
                        confidence=match.confidence,
                        evidence_points=[f"Sibling entity {sibling}", *match.evidence],
                        relationship_path=[name, sibling, match.record.canonical_name],
                        method=match.method,
                    ))

        self._check_paths(name, resolved)

        findings: List[Finding] = []
        if list_available:
            findings = self.detector.detect(RuleContext(
                raw_name=name,
                resolved_entities=resolved,
                sibling_matches=sibling_matches,
                near_misses=near_misses,
            ))
        else:
            # Without a list the verdict stays Clear and rests on the advisory alone
            trail.append("Risk rules skipped: restricted-entity list unavailable")
        card = self.aggregator.aggregate(findings + advisories, entity_name=name)

        if resolved:
            confidence = sum(e.confidence for e in resolved) / len(resolved)
        else:
            confidence = self.config.confidence.default_clear
        confidence = min([confidence, *confidence_caps])

        for entity in resolved:
            if entity.relationship_path:
                trail.append(f"{entity.match_type.value}: {entity.matched_name} "
                             f"(confidence {entity.confidence:.2f}) via "
                             f"{' -> '.join(entity.relationship_path)}")
            else:
                trail.append(f"{entity.match_type.value}: {entity.matched_name} "
                             f"(confidence {entity.confidence:.2f}, {entity.method.value})")
        for finding in card.findings:
            trail.append(f"[{finding.severity.value}] {finding.rule}: {finding.description}")
        for gap in data_gaps:
            trail.append(f"Data gap: {gap}")
        trail.append(f"Risk score {card.risk_score} -> {card.overall_risk.value}")
        trail.append(f"Algorithm {self.config.algorithm.version}, "
                     f"risk tables {self.config.risk_tables.version}")

        assessment = RiskAssessment(
            entity_name=name,
            overall_risk=card.overall_risk,
            risk_score=card.risk_score,
            confidence=confidence,
            risk_factors=card.findings,
            resolved_entities=resolved,
            recommendations=card.recommendations,
            evidence_trail=trail,
            data_gaps=data_gaps,
            summary=card.summary,
            legal_disclaimer=LEGAL_DISCLAIMER if self.config.reporting.include_legal_disclaimer else "",
            list_version=self.snapshot.version,
            algorithm_version=self.config.algorithm.version,
        )

        logger.info("Resolved %s: %s (score %s, confidence %.2f)",
                    sanitize_for_logging(name, 100), card.overall_risk.value,
                    card.risk_score, confidence)
        if self.audit_logger is not None:
            self.audit_logger.log_resolution(assessment, request_id=request_id)
        return assessment

    def _fetch_ownership(self, name: str, advisories: List[Finding], data_gaps: List[str],
                         confidence_caps: List[float], request_id: str) -> Optional[OwnershipStructure]:
        if self.ownership_resolver is None:
            reason = "no ownership source configured"
        else:
            try:
                return self.ownership_resolver.fetch(name)
            except OwnershipUnavailableError as e:
                reason = e.reason

        advisories.append(_advisory(
            FindingCategory.OWNERSHIP,
            "Ownership analysis unavailable",
            [f"Reason: {reason}",
             "Parent, subsidiary and affiliate exposure was not checked"],
            source="ownership_resolver",
        ))
        data_gaps.append(GAP_OWNERSHIP)
        confidence_caps.append(self.config.confidence.ownership_unavailable_cap)
        self._audit_unavailable(GAP_OWNERSHIP, reason, name, request_id)
        return None

    @staticmethod
    def _merge_siblings(name: str, sibling_names: Optional[Iterable[str]],
                        structure: Optional[OwnershipStructure]) -> List[str]:
        merged: List[str] = []
        for sibling in [*(sibling_names or []), *(structure.siblings if structure else [])]:
            sibling = (sibling or "").strip()
            if sibling and sibling != name and sibling not in merged:
                merged.append(sibling)
        return merged

    @staticmethod
    def _check_paths(name: str, resolved: List[ResolvedEntity]) -> None:
        for entity in resolved:
            if entity.match_type is MatchType.DIRECT:
                if entity.relationship_path:
                    raise InvariantViolationError(
                        f"Direct match {entity.matched_name} must not carry a relationship path")
                continue
            path = entity.relationship_path
            if path[0] != name or path[-1] != entity.record.canonical_name:
                raise InvariantViolationError(
                    f"Relationship path {path} must start with '{name}' and end with "
                    f"'{entity.record.canonical_name}'")

    def _audit_unavailable(self, source: str, reason: str, name: str, request_id: str) -> None:
        logger.warning("⚠ %s unavailable for %s: %s", source,
                       sanitize_for_logging(name, 100), reason)
        if self.audit_logger is not None:
            self.audit_logger.log_data_unavailable(source, reason, entity_name=name,
                                                   request_id=request_id)
