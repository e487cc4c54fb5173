"""
Tests for ownership lookup and resolution

Covers:
- Pure single-hop resolution with fixed tier confidences
- Curated, HTTP and callable providers
- Provider chain ordering and unavailability reporting
- Lookup timeouts and per-batch memoization
"""

import threading
import pytest
from pathlib import Path
from unittest.mock import MagicMock

import requests

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import OwnershipConfig
from models import (
    AffiliateEdge, MatchType, OwnershipStructure, ParentEdge, RestrictedEntityRecord,
    SubsidiaryEdge,
)
from name_normalizer import NameNormalizer
from ownership_resolver import (
    CallableOwnershipProvider, HttpOwnershipProvider, OwnershipCache,
    OwnershipGraphResolver, OwnershipLookupError, OwnershipProviderChain,
    OwnershipUnavailableError, ProviderResult, StaticOwnershipProvider,
    create_ownership_resolver, resolve_ownership_matches,
)

TIERS = {'parent': 0.95, 'subsidiary': 0.85, 'affiliate': 0.75}


@pytest.fixture
def restricted_list():
    return [
        RestrictedEntityRecord(id="bis-zte", canonical_name="ZTE Corporation", country="China",
                               effective_date="2016-03-08", citation="81 FR 12004"),
        RestrictedEntityRecord(id="bis-hw", canonical_name="Huawei Technologies Co., Ltd.",
                               country="China", city="Shenzhen"),
        RestrictedEntityRecord(id="bis-hik", canonical_name="Hangzhou Hikvision Digital Technology Co., Ltd.",
                               country="China", city="Hangzhou"),
    ]


@pytest.fixture
def normalizer():
    return NameNormalizer()


class FoundProvider:
    """Provider returning a fixed structure and counting calls"""

    def __init__(self, edges, name="fixed", siblings=()):
        self.edges = edges
        self.name = name
        self.confidence_ceiling = 0.9
        self.siblings = list(siblings)
        self.calls = 0

    def lookup(self, company_name):
        self.calls += 1
        structure = OwnershipStructure.from_edges(company_name, self.edges, source=self.name,
                                                  confidence_ceiling=self.confidence_ceiling)
        structure.siblings = list(self.siblings)
        return ProviderResult.found(structure)


class NotFoundProvider:
    def __init__(self, name="empty"):
        self.name = name
        self.confidence_ceiling = 1.0
        self.calls = 0

    def lookup(self, company_name):
        self.calls += 1
        return ProviderResult.not_found()


# ============================================
# PURE RESOLUTION
# ============================================


class TestResolveOwnershipMatches:
    """Tests for single-hop resolution against the restricted list"""

    def test_tier_confidences_are_exact(self, restricted_list, normalizer):
        edges = [
            ParentEdge("Acme", "ZTE Corporation", ownership_percentage=60),
            SubsidiaryEdge("Acme", "Huawei Technologies Co., Ltd.", ownership_percentage=30),
            AffiliateEdge("Acme", "Hangzhou Hikvision Digital Technology Co., Ltd."),
        ]

        resolved = resolve_ownership_matches("Acme", edges, restricted_list, normalizer, TIERS)

        assert [(e.match_type, e.confidence) for e in resolved] == [
            (MatchType.PARENT, 0.95),
            (MatchType.SUBSIDIARY, 0.85),
            (MatchType.AFFILIATE, 0.75),
        ]

    def test_relationship_path_runs_subject_to_record(self, restricted_list, normalizer):
        edges = [ParentEdge("Generic Parts Inc", "ZTE Corp.", ownership_percentage=100)]

        resolved = resolve_ownership_matches("Generic Parts Inc", edges, restricted_list,
                                             normalizer, TIERS)

        assert len(resolved) == 1
        assert resolved[0].relationship_path == ["Generic Parts Inc", "ZTE Corp.", "ZTE Corporation"]
        assert resolved[0].matched_name == "ZTE Corporation"
        assert "Ownership: 100%" in resolved[0].evidence_points
        assert "Listed since 2016-03-08" in resolved[0].evidence_points

    def test_related_names_compared_exactly(self, restricted_list, normalizer):
        edges = [ParentEdge("Acme", "ZTE Corpration")]

        assert resolve_ownership_matches("Acme", edges, restricted_list, normalizer, TIERS) == []

    def test_unlisted_related_entity_ignored(self, restricted_list, normalizer):
        edges = [ParentEdge("Acme", "Acme Holdings")]

        assert resolve_ownership_matches("Acme", edges, restricted_list, normalizer, TIERS) == []

    def test_edges_of_other_subjects_ignored(self, restricted_list, normalizer):
        edges = [
            ParentEdge("Other Company", "ZTE Corporation"),
            SubsidiaryEdge("Acme", "Huawei Technologies Co., Ltd."),
        ]

        resolved = resolve_ownership_matches("Acme", edges, restricted_list, normalizer, TIERS)

        assert [e.match_type for e in resolved] == [MatchType.SUBSIDIARY]

    def test_subject_compared_after_normalization(self, restricted_list, normalizer):
        edges = [ParentEdge("Generic Parts Inc", "ZTE Corporation")]

        resolved = resolve_ownership_matches("GENERIC PARTS, INC.", edges, restricted_list,
                                             normalizer, TIERS)

        assert len(resolved) == 1
        assert resolved[0].relationship_path[0] == "GENERIC PARTS, INC."


# ============================================
# PROVIDERS
# ============================================


class TestStaticOwnershipProvider:
    """Tests for the curated relationship table"""

    @pytest.fixture
    def provider(self):
        return StaticOwnershipProvider(
            subsidiaries={
                "Huawei Technologies Co., Ltd.": [
                    "HiSilicon Technologies Co., Ltd.",
                    "Huawei Device Co., Ltd.",
                ],
            },
            affiliates={"Huawei Technologies Co., Ltd.": ["Honor Device Co., Ltd."]},
        )

    def test_subsidiary_lookup_yields_parent_and_siblings(self, provider):
        result = provider.lookup("HiSilicon Technologies")

        assert result.is_found
        structure = result.structure
        assert [p.related_name for p in structure.parents] == ["Huawei Technologies Co., Ltd."]
        assert structure.parents[0].ownership_percentage == 100.0
        assert structure.siblings == ["Huawei Device Co., Ltd."]
        assert structure.confidence_ceiling == 0.95

    def test_parent_lookup_yields_subsidiaries_and_affiliates(self, provider):
        structure = provider.lookup("HUAWEI TECHNOLOGIES").structure

        assert len(structure.subsidiaries) == 2
        assert [a.related_name for a in structure.affiliates] == ["Honor Device Co., Ltd."]
        assert structure.parents == []

    def test_unknown_company_not_found(self, provider):
        assert provider.lookup("Generic Parts Inc").status == 'not_found'

    def test_from_file(self, tmp_path):
        table = tmp_path / "ownership.yaml"
        table.write_text("""
subsidiaries:
  "ZTE Corporation":
    - "ZTE USA Inc."
""")
        provider = StaticOwnershipProvider.from_file(table)

        structure = provider.lookup("ZTE USA").structure
        assert structure.parents[0].related_name == "ZTE Corporation"

    def test_shipped_table_loads(self):
        table = Path(__file__).parent.parent / "known_ownership.yaml"
        provider = StaticOwnershipProvider.from_file(table)

        assert provider.lookup("ZTE Kangxun Telecom Co., Ltd.").is_found


class TestHttpOwnershipProvider:
    """Tests for the ownership service client"""

    def _session(self, status_code=200, payload=None, error=None):
        session = MagicMock()
        if error is not None:
            session.get.side_effect = error
            return session
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = payload or {}
        if status_code >= 400:
            response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
        session.get.return_value = response
        return session

    def test_found(self):
        session = self._session(payload={
            'parents': [{'name': 'ZTE Corporation', 'ownership_percentage': 51}],
            'affiliates': [{'name': 'Some JV', 'affiliation': 'joint venture'}],
        })
        provider = HttpOwnershipProvider("https://ownership.example/lookup", timeout=3,
                                         session=session)

        result = provider.lookup("Generic Parts Inc")

        assert result.is_found
        assert result.structure.parents[0].ownership_percentage == 51
        assert result.structure.affiliates[0].affiliation == 'joint venture'
        assert result.structure.confidence_ceiling == 0.8
        session.get.assert_called_once_with("https://ownership.example/lookup",
                                            params={'name': 'Generic Parts Inc'}, timeout=3)

    def test_404_is_not_found(self):
        provider = HttpOwnershipProvider("https://x", session=self._session(status_code=404))

        assert provider.lookup("Acme").status == 'not_found'

    def test_server_error_is_failed(self):
        provider = HttpOwnershipProvider("https://x", session=self._session(status_code=503))

        result = provider.lookup("Acme")
        assert result.status == 'failed'
        assert "503" in result.error

    def test_connection_error_is_failed(self):
        session = self._session(error=requests.ConnectionError("connection refused"))
        provider = HttpOwnershipProvider("https://x", session=session)

        result = provider.lookup("Acme")
        assert result.status == 'failed'
        assert "connection refused" in result.error

    @pytest.mark.parametrize("payload", [
        {'parents': [{'company': 'ZTE Corporation'}]},
        {'parents': 'ZTE Corporation'},
        {'subsidiaries': [{'name': 'Acme Labs', 'ownership_percentage': 'most'}]},
        {'parents': [{'name': 'ZTE Corporation', 'ownership_percentage': 150}]},
        ['ZTE Corporation'],
    ])
    def test_malformed_payload_is_failed(self, payload):
        provider = HttpOwnershipProvider("https://x", session=self._session(payload=payload))

        result = provider.lookup("Acme")

        assert result.status == 'failed'
        assert "Malformed ownership payload" in result.error

    def test_unknown_keys_ignored(self):
        session = self._session(payload={
            'parents': [{'name': 'ZTE Corporation', 'country': 'China'}],
            'siblings': [' ZTE Microelectronics ', ''],
            'retrieved_at': '2025-11-01',
        })
        provider = HttpOwnershipProvider("https://x", session=session)

        result = provider.lookup("Acme")

        assert result.is_found
        assert result.structure.parents[0].related_name == 'ZTE Corporation'
        assert result.structure.siblings == ['ZTE Microelectronics']


class TestProviderChain:
    """Tests for ordered fallback across providers"""

    def test_first_found_wins(self):
        empty = NotFoundProvider()
        first = FoundProvider([ParentEdge("Acme", "ZTE Corporation")], name="first")
        second = FoundProvider([], name="second")
        chain = OwnershipProviderChain([empty, first, second])

        structure = chain.lookup("Acme")

        assert structure.source == "first"
        assert empty.calls == 1
        assert second.calls == 0

    def test_all_failing_raises_unavailable_with_reasons(self):
        def broken(name):
            raise OwnershipLookupError("registry down")

        chain = OwnershipProviderChain([
            NotFoundProvider("curated"),
            CallableOwnershipProvider(broken, name="registry"),
        ])

        with pytest.raises(OwnershipUnavailableError) as exc_info:
            chain.lookup("Acme")
        assert "curated: not_found" in exc_info.value.reason
        assert "registry: registry down" in exc_info.value.reason

    def test_empty_chain_unavailable(self):
        with pytest.raises(OwnershipUnavailableError) as exc_info:
            OwnershipProviderChain([]).lookup("Acme")
        assert "no ownership providers" in exc_info.value.reason

    def test_raising_provider_treated_as_failed(self):
        class ExplodingProvider:
            name = "exploding"
            confidence_ceiling = 1.0

            def lookup(self, company_name):
                raise RuntimeError("socket closed")

        fallback = FoundProvider([ParentEdge("Acme", "ZTE Corporation")], name="fallback")
        chain = OwnershipProviderChain([ExplodingProvider(), fallback])

        structure = chain.lookup("Acme")

        assert structure.source == "fallback"
        assert fallback.calls == 1

    def test_raising_provider_reason_reported(self):
        class ExplodingProvider:
            name = "exploding"
            confidence_ceiling = 1.0

            def lookup(self, company_name):
                raise KeyError("parents")

        with pytest.raises(OwnershipUnavailableError) as exc_info:
            OwnershipProviderChain([ExplodingProvider()]).lookup("Acme")
        assert "exploding: KeyError" in exc_info.value.reason

    def test_callable_unexpected_error_is_failed(self):
        def broken(name):
            raise ValueError("bad registry response")

        result = CallableOwnershipProvider(broken, name="registry").lookup("Acme")

        assert result.status == 'failed'
        assert "ValueError: bad registry response" in result.error

    def test_callable_returning_garbage_is_failed(self):
        result = CallableOwnershipProvider(lambda name: ["ZTE Corporation"]).lookup("Acme")

        assert result.status == 'failed'

    def test_callable_returning_none_is_not_found(self):
        provider = CallableOwnershipProvider(lambda name: None)

        assert provider.lookup("Acme").status == 'not_found'

    def test_from_config_builds_curated_then_service(self, tmp_path):
        table = tmp_path / "known.yaml"
        table.write_text("subsidiaries: {}\n")
        config = OwnershipConfig(known_relationships_file=str(table),
                                 service_url="https://ownership.example/lookup")

        chain = OwnershipProviderChain.from_config(config)

        assert [p.name for p in chain.providers] == ["curated", "ownership_service"]


# ============================================
# RESOLVER
# ============================================


class TestOwnershipGraphResolver:
    """Tests for timeouts and memoization"""

    def test_fetch_returns_structure(self):
        provider = FoundProvider([ParentEdge("Acme", "ZTE Corporation")])
        with OwnershipGraphResolver(OwnershipProviderChain([provider])) as resolver:
            structure = resolver.fetch("Acme")

        assert structure.parents[0].related_name == "ZTE Corporation"

    def test_timeout_raises_unavailable(self):
        release = threading.Event()

        def slow(name):
            release.wait(5)
            return []

        chain = OwnershipProviderChain([CallableOwnershipProvider(slow)])
        resolver = OwnershipGraphResolver(chain, config=OwnershipConfig(timeout_seconds=0.05))
        try:
            with pytest.raises(OwnershipUnavailableError) as exc_info:
                resolver.fetch("Acme")
            assert "timed out" in exc_info.value.reason
        finally:
            release.set()
            resolver.close()

    def test_cache_memoizes_by_normalized_name(self):
        provider = FoundProvider([ParentEdge("ZTE USA", "ZTE Corporation")])
        cache = OwnershipCache()
        resolver = OwnershipGraphResolver(OwnershipProviderChain([provider]), cache=cache)
        try:
            resolver.fetch("ZTE USA Inc.")
            resolver.fetch("zte usa")
        finally:
            resolver.close()

        assert provider.calls == 1
        assert cache.hits == 1
        assert len(cache) == 1

    def test_cache_remembers_unavailability(self):
        provider = NotFoundProvider()
        resolver = OwnershipGraphResolver(OwnershipProviderChain([provider]), cache=OwnershipCache())
        try:
            for _ in range(3):
                with pytest.raises(OwnershipUnavailableError):
                    resolver.fetch("Acme")
        finally:
            resolver.close()

        assert provider.calls == 1

    def test_resolve_uses_queried_spelling(self, restricted_list):
        provider = FoundProvider([ParentEdge("ZTE USA Inc.", "ZTE Corporation")])
        resolver = OwnershipGraphResolver(OwnershipProviderChain([provider]), cache=OwnershipCache())
        try:
            resolver.fetch("ZTE USA Inc.")
            structure = resolver.fetch("ZTE USA")
            resolved = resolver.resolve("ZTE USA", structure, restricted_list)
        finally:
            resolver.close()

        assert resolved[0].relationship_path[0] == "ZTE USA"

    def test_created_from_shipped_config(self):
        resolver = create_ownership_resolver(OwnershipConfig(known_relationships_file="known_ownership.yaml"))
        try:
            structure = resolver.fetch("ZTE USA Inc.")
        finally:
            resolver.close()

        assert [e.related_name for e in structure.parents] == ["ZTE Corporation"]
        assert structure.source == "curated"
        assert structure.confidence_ceiling == 0.95

    def test_missing_table_leaves_chain_empty(self, tmp_path):
        config = OwnershipConfig(known_relationships_file=str(tmp_path / "absent.yaml"))

        assert OwnershipProviderChain.from_config(config).providers == []
