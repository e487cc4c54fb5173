"""
Ownership Graph Resolver

Surfaces indirect exposure: a supplier whose parent, subsidiary or
affiliate appears on the restricted-entity list. Resolution is single hop.

Ownership data comes from an ordered chain of lookup providers (curated
table, HTTP ownership service, arbitrary callables). Each provider returns a
ProviderResult instead of raising, so the chain can tell "nothing known"
from "provider broken" and report both.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

import requests
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config_manager import OwnershipConfig
from models import (
    AffiliateEdge, MatchType, OwnershipEdge, OwnershipStructure, ParentEdge,
    ResolvedEntity, RestrictedEntityRecord, SubsidiaryEdge,
)
from name_normalizer import NameNormalizer
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


class OwnershipLookupError(Exception):
    """A single ownership provider failed"""
    pass


class OwnershipUnavailableError(OwnershipLookupError):
    """No provider could supply ownership data for a name"""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Ownership data unavailable for '{name}': {reason}")


# ============================================
# PURE RESOLUTION
# ============================================

def resolve_ownership_matches(
    subject_name: str,
    edges: Iterable[OwnershipEdge],
    restricted_list: Sequence[RestrictedEntityRecord],
    normalizer: NameNormalizer,
    tier_confidence: Dict[str, float],
) -> List[ResolvedEntity]:
    """Match the related side of each ownership edge against the list

    Only edges out of subject_name count; the subject side is compared on
    normalized names, so a cached structure fetched under another spelling
    still applies. Related names are compared exactly on normalized names;
    fuzzy matching is reserved for the supplier's own name. Each hit yields
    one ResolvedEntity with the fixed confidence of its relation tier and
    the path [subject, related, record canonical name].
    """
    index: Dict[str, List[RestrictedEntityRecord]] = {}
    for record in restricted_list:
        key = normalizer.normalize(record.canonical_name)
        if key:
            index.setdefault(key, []).append(record)

    subject_key = normalizer.normalize(subject_name)
    resolved = []
    for edge in edges:
        if normalizer.normalize(edge.subject_name) != subject_key:
            logger.debug("Ignoring ownership edge of %s while resolving %s",
                         sanitize_for_logging(edge.subject_name, 100),
                         sanitize_for_logging(subject_name, 100))
            continue
        related_key = normalizer.normalize(edge.related_name)
        if not related_key:
            continue
        for record in index.get(related_key, []):
            evidence = [edge.describe(), f"Source: {edge.evidence_source}"]
            percentage = getattr(edge, 'ownership_percentage', None)
            if percentage is not None:
                evidence.append(f"Ownership: {percentage:g}%")
            if record.effective_date:
                evidence.append(f"Listed since {record.effective_date}")
            if record.citation:
                evidence.append(f"Federal Register: {record.citation}")

            resolved.append(ResolvedEntity(
                matched_name=record.canonical_name,
                match_type=MatchType(edge.relation.value),
                record=record,
                confidence=tier_confidence[edge.relation.value],
                evidence_points=evidence,
                relationship_path=[subject_name, edge.related_name, record.canonical_name],
            ))
    return resolved


# ============================================
# LOOKUP PROVIDERS
# ============================================

@dataclass
class ProviderResult:
    """Outcome of one provider lookup: found, not_found or failed"""
    status: str
    structure: Optional[OwnershipStructure] = None
    error: Optional[str] = None

    @classmethod
    def found(cls, structure: OwnershipStructure) -> 'ProviderResult':
        return cls(status='found', structure=structure)

    @classmethod
    def not_found(cls) -> 'ProviderResult':
        return cls(status='not_found')

    @classmethod
    def failed(cls, error: str) -> 'ProviderResult':
        return cls(status='failed', error=error)

    @property
    def is_found(self) -> bool:
        return self.status == 'found'


class OwnershipProvider:
    """Base class for ownership lookup providers"""

    name = "provider"
    confidence_ceiling = 1.0

    def lookup(self, company_name: str) -> ProviderResult:
        raise NotImplementedError


class StaticOwnershipProvider(OwnershipProvider):
    """Curated table of known ownership relationships

    The table maps a parent to its wholly-owned subsidiaries and a company to
    its affiliates. Looking up a listed subsidiary yields its parent and its
    co-subsidiaries as siblings.
    """

    name = "curated"
    confidence_ceiling = 0.95

    def __init__(self, subsidiaries: Optional[Dict[str, List[str]]] = None,
                 affiliates: Optional[Dict[str, List[str]]] = None,
                 normalizer: Optional[NameNormalizer] = None):
        self.subsidiaries = subsidiaries or {}
        self.affiliates = affiliates or {}
        self.normalizer = normalizer or NameNormalizer()

        self._children: Dict[str, List[str]] = {}
        self._parents: Dict[str, List[str]] = {}
        for parent, subs in self.subsidiaries.items():
            self._children.setdefault(self.normalizer.normalize(parent), []).extend(subs)
            for sub in subs:
                self._parents.setdefault(self.normalizer.normalize(sub), []).append(parent)
        self._affiliates: Dict[str, List[str]] = {}
        for company, affs in self.affiliates.items():
            self._affiliates.setdefault(self.normalizer.normalize(company), []).extend(affs)

    @classmethod
    def from_file(cls, path: Union[str, Path],
                  normalizer: Optional[NameNormalizer] = None) -> 'StaticOwnershipProvider':
        """Load the table from a YAML file with 'subsidiaries' and 'affiliates' maps"""
        path = Path(path)
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        provider = cls(subsidiaries=data.get('subsidiaries', {}),
                       affiliates=data.get('affiliates', {}),
                       normalizer=normalizer)
        logger.info(f"✓ Loaded known ownership relationships from {path.name}: "
                    f"{len(provider.subsidiaries)} groups, {len(provider.affiliates)} affiliations")
        return provider

    def lookup(self, company_name: str) -> ProviderResult:
        key = self.normalizer.normalize(company_name)
        if not key:
            return ProviderResult.not_found()

        structure = OwnershipStructure(subject_name=company_name, source=self.name,
                                       confidence_ceiling=self.confidence_ceiling)
        for parent in self._parents.get(key, []):
            structure.parents.append(ParentEdge(company_name, parent, evidence_source=self.name,
                                                ownership_percentage=100.0))
            for sibling in self._children.get(self.normalizer.normalize(parent), []):
                if self.normalizer.normalize(sibling) != key and sibling not in structure.siblings:
                    structure.siblings.append(sibling)
        for sub in self._children.get(key, []):
            structure.subsidiaries.append(SubsidiaryEdge(company_name, sub, evidence_source=self.name,
                                                         ownership_percentage=100.0))
        for aff in self._affiliates.get(key, []):
            structure.affiliates.append(AffiliateEdge(company_name, aff, evidence_source=self.name))

        if not structure.edges and not structure.siblings:
            return ProviderResult.not_found()
        return ProviderResult.found(structure)


class RelatedCompanySchema(BaseModel):
    """One related company in an ownership service answer"""
    model_config = ConfigDict(extra='ignore')

    name: str = Field(..., min_length=1)
    ownership_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    affiliation: Optional[str] = None


class OwnershipPayloadSchema(BaseModel):
    """Validation schema for an ownership service answer"""
    model_config = ConfigDict(extra='ignore')

    parents: List[RelatedCompanySchema] = Field(default_factory=list)
    subsidiaries: List[RelatedCompanySchema] = Field(default_factory=list)
    affiliates: List[RelatedCompanySchema] = Field(default_factory=list)
    siblings: List[str] = Field(default_factory=list)


class HttpOwnershipProvider(OwnershipProvider):
    """JSON ownership service

    Expects GET <url>?name=<company> to answer
    {"parents": [{"name", "ownership_percentage"}], "subsidiaries": [...],
     "affiliates": [{"name", "affiliation"}], "siblings": [...]}; 404 means unknown.
    """

    name = "ownership_service"
    confidence_ceiling = 0.8

    def __init__(self, url: str, timeout: float = 8.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def lookup(self, company_name: str) -> ProviderResult:
        try:
            response = self.session.get(self.url, params={'name': company_name}, timeout=self.timeout)
            if response.status_code == 404:
                return ProviderResult.not_found()
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            logger.warning(f"⚠ Ownership service lookup failed: {e}")
            return ProviderResult.failed(str(e))
        except ValueError as e:
            return ProviderResult.failed(f"Invalid JSON from ownership service: {e}")

        try:
            parsed = OwnershipPayloadSchema.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"⚠ Malformed ownership payload for "
                           f"{sanitize_for_logging(company_name, 100)}: {e.error_count()} error(s)")
            return ProviderResult.failed(
                f"Malformed ownership payload: {e.error_count()} validation error(s)")

        structure = self._build(company_name, parsed)
        if not structure.edges and not structure.siblings:
            return ProviderResult.not_found()
        return ProviderResult.found(structure)

    def _build(self, company_name: str, payload: OwnershipPayloadSchema) -> OwnershipStructure:
        structure = OwnershipStructure(subject_name=company_name, source=self.name,
                                       confidence_ceiling=self.confidence_ceiling)
        for entry in payload.parents:
            structure.parents.append(ParentEdge(
                company_name, entry.name, evidence_source=self.name,
                ownership_percentage=entry.ownership_percentage))
        for entry in payload.subsidiaries:
            structure.subsidiaries.append(SubsidiaryEdge(
                company_name, entry.name, evidence_source=self.name,
                ownership_percentage=entry.ownership_percentage))
        for entry in payload.affiliates:
            structure.affiliates.append(AffiliateEdge(
                company_name, entry.name, evidence_source=self.name,
                affiliation=entry.affiliation or 'affiliate'))
        structure.siblings = [s.strip() for s in payload.siblings if s.strip()]
        return structure


class CallableOwnershipProvider(OwnershipProvider):
    """Adapts a function name -> list of edges (or None when unknown)"""

    def __init__(self, func: Callable[[str], Optional[List[OwnershipEdge]]],
                 name: str = "callable", confidence_ceiling: float = 1.0):
        self.func = func
        self.name = name
        self.confidence_ceiling = confidence_ceiling

    def lookup(self, company_name: str) -> ProviderResult:
        try:
            edges = self.func(company_name)
            if edges is None:
                return ProviderResult.not_found()
            structure = OwnershipStructure.from_edges(
                company_name, list(edges), source=self.name,
                confidence_ceiling=self.confidence_ceiling)
        except OwnershipLookupError as e:
            return ProviderResult.failed(str(e))
        except Exception as e:
            logger.warning(f"⚠ Ownership provider '{self.name}' raised {type(e).__name__}: {e}")
            return ProviderResult.failed(f"{type(e).__name__}: {e}")
        return ProviderResult.found(structure)


class OwnershipProviderChain:
    """Tries providers in order; the first found result wins"""

    def __init__(self, providers: Sequence[OwnershipProvider]):
        self.providers = list(providers)

    def lookup(self, company_name: str) -> OwnershipStructure:
        outcomes = []
        for provider in self.providers:
            try:
                result = provider.lookup(company_name)
            except Exception as e:
                logger.warning(f"⚠ Ownership provider '{provider.name}' raised "
                               f"{type(e).__name__}: {e}")
                result = ProviderResult.failed(f"{type(e).__name__}: {e}")
            if result.is_found:
                logger.debug("Ownership for %s supplied by %s",
                             sanitize_for_logging(company_name, 100), provider.name)
                return result.structure
            outcomes.append(f"{provider.name}: {result.error or result.status}")
        raise OwnershipUnavailableError(
            company_name, "; ".join(outcomes) if outcomes else "no ownership providers configured"
        )

    @classmethod
    def from_config(cls, config: OwnershipConfig,
                    normalizer: Optional[NameNormalizer] = None) -> 'OwnershipProviderChain':
        """Chain built from the ownership config section (curated table, then service)"""
        providers: List[OwnershipProvider] = []
        if config.known_relationships_file:
            path = Path(config.known_relationships_file)
            if not path.is_absolute():
                path = Path(__file__).parent / path
            if path.exists():
                providers.append(StaticOwnershipProvider.from_file(path, normalizer))
            else:
                logger.warning(f"⚠ Known ownership file not found: {path}")
        if config.service_url:
            providers.append(HttpOwnershipProvider(config.service_url,
                                                   timeout=config.service_timeout_seconds))
        return cls(providers)


# ============================================
# CACHE AND RESOLVER
# ============================================

class OwnershipCache:
    """Thread-safe memo of ownership lookups, keyed by normalized name

    Unavailability is cached too so a failing provider is hit once per name.
    """

    def __init__(self, normalizer: Optional[NameNormalizer] = None):
        self.normalizer = normalizer or NameNormalizer()
        self._entries: Dict[str, Union[OwnershipStructure, OwnershipUnavailableError]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, name: str):
        with self._lock:
            entry = self._entries.get(self.normalizer.normalize(name))
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    def put(self, name: str, entry: Union[OwnershipStructure, OwnershipUnavailableError]) -> None:
        with self._lock:
            self._entries[self.normalizer.normalize(name)] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class OwnershipGraphResolver:
    """Fetches ownership structures with a timeout and resolves them against the list"""

    def __init__(self, chain: OwnershipProviderChain,
                 normalizer: Optional[NameNormalizer] = None,
                 config: Optional[OwnershipConfig] = None,
                 cache: Optional[OwnershipCache] = None):
        self.chain = chain
        self.normalizer = normalizer or NameNormalizer()
        self.config = config or OwnershipConfig()
        self.cache = cache
        self._executor = ThreadPoolExecutor(max_workers=self.config.max_concurrent_lookups,
                                            thread_name_prefix="ownership-lookup")

    def fetch(self, company_name: str) -> OwnershipStructure:
        """Ownership structure for company_name

        Raises:
            OwnershipUnavailableError: On timeout or when no provider knows the name
        """
        cache = self.cache
        if cache is not None:
            cached = cache.get(company_name)
            if isinstance(cached, OwnershipUnavailableError):
                raise cached
            if cached is not None:
                return cached

        future = self._executor.submit(self.chain.lookup, company_name)
        try:
            structure = future.result(timeout=self.config.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            error = OwnershipUnavailableError(
                company_name, f"lookup timed out after {self.config.timeout_seconds:g}s")
            logger.warning(f"⚠ {error}")
            self._remember(cache, company_name, error)
            raise error
        except OwnershipUnavailableError as e:
            logger.info("Ownership unavailable for %s: %s",
                        sanitize_for_logging(company_name, 100), e.reason)
            self._remember(cache, company_name, e)
            raise

        self._remember(cache, company_name, structure)
        return structure

    @staticmethod
    def _remember(cache: Optional[OwnershipCache], name: str, entry) -> None:
        if cache is not None:
            cache.put(name, entry)

    def resolve(self, subject_name: str, structure: OwnershipStructure,
                restricted_list: Sequence[RestrictedEntityRecord]) -> List[ResolvedEntity]:
        # Cached structures may carry another spelling of the subject
        return resolve_ownership_matches(
            subject_name, structure.edges, restricted_list,
            self.normalizer, self.config.tier_confidence,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def create_ownership_resolver(config: OwnershipConfig,
                              normalizer: Optional[NameNormalizer] = None) -> OwnershipGraphResolver:
    """Resolver over the provider chain described by the ownership config section"""
    normalizer = normalizer or NameNormalizer()
    chain = OwnershipProviderChain.from_config(config, normalizer)
    logger.info(f"Ownership providers: {[p.name for p in chain.providers] or 'none'}")
    return OwnershipGraphResolver(chain, normalizer, config)
