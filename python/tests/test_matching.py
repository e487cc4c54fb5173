"""
Tests for name normalization and fuzzy matching

Covers:
- Normalization (case, accents, punctuation, legal suffixes, synonyms)
- Matching rule precedence (exact, alternate name, similarity, containment)
- Direct-match floor and near misses
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import MatchingConfig
from fuzzy_matcher import FuzzyMatcher
from models import MatchMethod, RestrictedEntityRecord
from name_normalizer import NameNormalizer, normalize


def make_record(name, alternates=(), record_id=None, **kwargs):
    return RestrictedEntityRecord(
        id=record_id or name,
        canonical_name=name,
        alternate_names=frozenset(alternates),
        **kwargs
    )


@pytest.fixture
def matcher():
    return FuzzyMatcher()


# ============================================
# NORMALIZATION
# ============================================


class TestNameNormalizer:
    """Tests for company name normalization"""

    @pytest.mark.parametrize("name", [
        "Huawei Technologies Co., Ltd.",
        "Huawei Tech Co Ltd",
        "HUAWEI TECHNOLOGIES",
        "  huawei   technology  ",
    ])
    def test_huawei_variants_normalize_identically(self, name):
        assert normalize(name) == "huawei tech"

    def test_legal_suffixes_removed(self):
        assert normalize("ZTE Corporation") == "zte"
        assert normalize("Acme Widgets, Inc.") == "acme widgets"
        assert normalize("Foo Bar LLC") == "foo bar"

    def test_accents_stripped(self):
        assert normalize("Société Générale") == "societe generale"

    def test_ampersand_and_hyphen_kept(self):
        assert normalize("AT&T Inc.") == "at&t"
        assert normalize("Rolls-Royce Holdings") == "rolls-royce holdings"

    def test_other_punctuation_becomes_space(self):
        assert normalize("Foo/Bar (Shenzhen)") == "foo bar shenzhen"

    def test_total_on_empty_input(self):
        assert normalize(None) == ""
        assert normalize("") == ""
        assert normalize("   ") == ""

    def test_suffix_only_name_normalizes_to_empty(self):
        assert normalize("Co., Ltd.") == ""

    def test_custom_tables(self):
        config = MatchingConfig(legal_suffixes=['gmbh'], synonyms={'systeme': 'systems'})
        normalizer = NameNormalizer(config)

        assert normalizer.normalize("Siemens Systeme GmbH") == "siemens systems"
        # default suffixes no longer apply
        assert normalizer.normalize("Acme Ltd") == "acme ltd"

    def test_normalize_all_drops_empty(self):
        normalizer = NameNormalizer()
        assert normalizer.normalize_all(["ZTE Corp", "Ltd", "ZTE Corporation"]) == {"zte"}


# ============================================
# MATCHING
# ============================================


class TestFuzzyMatcher:
    """Tests for matching rules and their precedence"""

    def test_exact_match_confidence_one(self, matcher):
        record = make_record("Huawei Technologies Co., Ltd.")

        result = matcher.match("HUAWEI TECHNOLOGIES", record)

        assert result is not None
        assert result.confidence == 1.0
        assert result.method == MatchMethod.DIRECT
        assert result.evidence == ['Exact name match']

    def test_alternate_name_match(self, matcher):
        record = make_record("Semiconductor Manufacturing International Corporation", ["SMIC"])

        result = matcher.match("smic", record)

        assert result.method == MatchMethod.ALTERNATE_NAME
        assert result.confidence == 0.95
        assert "SMIC" in result.evidence[0]

    def test_canonical_beats_alternate(self, matcher):
        record = make_record("ZTE Corporation", ["ZTE"])

        result = matcher.match("ZTE", record)

        assert result.method == MatchMethod.DIRECT
        assert result.confidence == 1.0

    def test_similarity_match_above_floor(self, matcher):
        record = make_record("Hikvision Digital")

        result = matcher.match("Hikvison Digital", record)

        assert result.method == MatchMethod.FUZZY
        assert result.confidence == pytest.approx(1 - 1 / 17)
        assert "High name similarity" in result.evidence[0]

    def test_below_floor_is_not_a_match(self, matcher):
        record = make_record("ZTE Corporation")

        assert matcher.match("Generic Parts Inc", record) is None

    def test_containment_is_asymmetric_and_capped(self, matcher):
        record = make_record("ABC")

        contained = matcher.score("ABC Semiconductor", record)
        identical = matcher.score("ABC", record)

        assert contained.method == MatchMethod.CONTAINMENT
        assert contained.confidence == pytest.approx(3 / 17 * 0.85)
        assert contained.confidence < identical.confidence
        assert contained.confidence <= 0.85
        assert matcher.match("ABC Semiconductor", record) is None

    def test_score_none_for_empty_normalized_names(self, matcher):
        record = make_record("Co., Ltd.")

        assert matcher.score("Limited", record) is None
        assert matcher.score("Acme", record) is None

    def test_match_all_keeps_every_record_in_order(self, matcher):
        first = make_record("Huawei Technologies Co., Ltd.", record_id="bis-1")
        second = make_record("Huawei Technologies", record_id="bis-2")
        other = make_record("ZTE Corporation", record_id="bis-3")

        results = matcher.match_all("Huawei Technologies", [first, other, second])

        assert [r.record.id for r in results] == ["bis-1", "bis-2"]
        assert all(r.confidence == 1.0 for r in results)

    def test_near_misses_between_floors(self, matcher):
        record = make_record("Huawei Technologies Co., Ltd.")

        misses = matcher.near_misses("Huawei Technologies Europe", [record], lower=0.5)

        assert len(misses) == 1
        assert misses[0].method == MatchMethod.CONTAINMENT
        assert 0.5 < misses[0].confidence <= 0.7

    def test_exact_match_not_a_near_miss(self, matcher):
        record = make_record("ZTE Corporation")

        assert matcher.near_misses("ZTE", [record], lower=0.5) == []

    def test_similarity_is_symmetric(self, matcher):
        assert matcher.similarity("Hikvision", "Hikvison") == matcher.similarity("Hikvison", "Hikvision")
        assert matcher.similarity("Huawei Technologies", "HUAWEI TECH") == 1.0
