"""
Fuzzy matching of supplier names against restricted-entity records

Rules are tried in priority order on normalized names, first success wins:

1. Exact canonical name            -> confidence 1.0
2. Exact alternate name            -> confidence 0.95
3. Levenshtein similarity > floor  -> confidence = similarity
4. Containment                     -> min(len(shorter)/len(longer), 1) * 0.85,
                                      kept only when it beats rule 3

Only results strictly above the direct-match floor (0.7) count as matches.
"""

import logging
from functools import lru_cache
from typing import Iterable, List, Optional

from rapidfuzz.distance import Levenshtein

from config_manager import MatchingConfig
from models import MatchMethod, MatchResult, RestrictedEntityRecord
from name_normalizer import NameNormalizer

logger = logging.getLogger(__name__)


class FuzzyMatcher:
    """Scores query names against restricted-entity records"""

    def __init__(self, normalizer: Optional[NameNormalizer] = None,
                 matching_config: Optional[MatchingConfig] = None):
        self.config = matching_config or MatchingConfig()
        self.normalizer = normalizer or NameNormalizer(self.config)
        self.floor = self.config.direct_match_floor
        # Records are shared across a batch; memoize their normalized forms
        self._normalize = lru_cache(maxsize=65536)(self.normalizer.normalize)

    @staticmethod
    def levenshtein_similarity(a: str, b: str) -> float:
        """1 - levenshtein(a, b) / max(len(a), len(b)) on already-normalized strings"""
        if a == b:
            return 1.0
        longest = max(len(a), len(b))
        if longest == 0:
            return 0.0
        return 1.0 - Levenshtein.distance(a, b) / longest

    def similarity(self, name1: str, name2: str) -> float:
        """Similarity of two raw names after normalization"""
        return self.levenshtein_similarity(self._normalize(name1), self._normalize(name2))

    def score(self, query: str, record: RestrictedEntityRecord) -> Optional[MatchResult]:
        """Best-scoring rule for query vs record, ignoring the floor

        Returns None when either side normalizes to an empty string.
        """
        normalized_query = self._normalize(query)
        normalized_name = self._normalize(record.canonical_name)
        if not normalized_query or not normalized_name:
            return None

        if normalized_query == normalized_name:
            return MatchResult(record=record, method=MatchMethod.DIRECT, confidence=1.0,
                               evidence=['Exact name match'])

        for alternate in sorted(record.alternate_names):
            if normalized_query == self._normalize(alternate):
                return MatchResult(
                    record=record,
                    method=MatchMethod.ALTERNATE_NAME,
                    confidence=self.config.alternate_name_confidence,
                    evidence=[f'Matches alternate name: {alternate}']
                )

        similarity = self.levenshtein_similarity(normalized_query, normalized_name)
        confidence = 0.0
        method = MatchMethod.FUZZY
        evidence: List[str] = []
        if similarity > self.floor:
            confidence = similarity
            evidence.append(f'High name similarity: {similarity * 100:.0f}%')

        if normalized_query in normalized_name or normalized_name in normalized_query:
            shorter, longer = sorted((normalized_query, normalized_name), key=len)
            containment = min(len(shorter) / len(longer), 1.0) * self.config.containment_factor
            if containment > confidence:
                confidence = containment
                method = MatchMethod.CONTAINMENT
                evidence.append(
                    f"Name containment match: '{shorter}' within '{longer}'"
                )

        if confidence == 0.0:
            return MatchResult(record=record, method=MatchMethod.FUZZY, confidence=similarity,
                               evidence=[f'Name similarity: {similarity * 100:.0f}%'])

        return MatchResult(record=record, method=method, confidence=confidence, evidence=evidence)

    def match(self, query: str, record: RestrictedEntityRecord) -> Optional[MatchResult]:
        """score() filtered by the direct-match floor"""
        result = self.score(query, record)
        if result is None or result.confidence <= self.floor:
            return None
        return result

    def match_all(self, query: str, records: Iterable[RestrictedEntityRecord]) -> List[MatchResult]:
        """Every record scoring above the floor, in list order

        A supplier may plausibly match several records; all are kept.
        """
        matches = []
        for record in records:
            result = self.match(query, record)
            if result is not None:
                matches.append(result)
        if matches:
            logger.debug("%d restricted records above floor for query", len(matches))
        return matches

    def near_misses(self, query: str, records: Iterable[RestrictedEntityRecord],
                    lower: float) -> List[MatchResult]:
        """Records whose score falls in (lower, floor]: partial similarity only"""
        results = []
        for record in records:
            result = self.score(query, record)
            if result is not None and lower < result.confidence <= self.floor:
                results.append(result)
        return results
