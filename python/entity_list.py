"""
Restricted-entity list sources

The engine never synchronizes the list itself: it consumes a versioned
snapshot handed over by a source. Snapshot files are JSON
({"version", "published", "source", "entities": [...]}) or CSV with one
entity per row (alternate names separated by ';').

Entity keys are accepted in snake_case or camelCase, e.g.
canonical_name / canonicalName / name, alternate_names / alternateNames.
"""

import csv
import json
import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from models import RestrictedEntityRecord

logger = logging.getLogger(__name__)


class EntityListUnavailableError(Exception):
    """Raised when a restricted-entity source cannot supply a snapshot"""
    pass


class EntityRecordSchema(BaseModel):
    """Validation schema for one restricted-entity entry"""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: Optional[str] = None
    canonical_name: str = Field(..., min_length=1, alias='canonicalName')
    alternate_names: List[str] = Field(default_factory=list, alias='alternateNames')
    country: Optional[str] = None
    city: Optional[str] = None
    effective_date: Optional[str] = Field(default=None, alias='effectiveDate')
    citation: Optional[str] = Field(default=None, alias='federalRegisterCitation')
    license_policy: Optional[str] = Field(default=None, alias='licenseReviewPolicy')
    license_requirement: Optional[str] = Field(default=None, alias='licenseRequirement')

    @field_validator('alternate_names', mode='before')
    @classmethod
    def split_alternate_names(cls, v: Any) -> List[str]:
        """Accept a ';'-separated string as well as a list"""
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(';') if part.strip()]
        return [str(part).strip() for part in v if str(part).strip()]

    @field_validator('canonical_name')
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("canonical_name must not be blank")
        return v


def record_from_dict(data: Dict[str, Any], default_id: Optional[str] = None) -> RestrictedEntityRecord:
    """Build a RestrictedEntityRecord from a loosely-keyed dictionary

    Raises:
        pydantic.ValidationError: If the entry has no usable name
    """
    data = dict(data)
    if 'canonical_name' not in data and 'canonicalName' not in data and 'name' in data:
        data['canonical_name'] = data.pop('name')
    for snake, camel in (('citation', 'federalRegisterCitation'),
                         ('license_policy', 'licensePolicy')):
        if camel in data and snake not in data:
            data[snake] = data.pop(camel)
    schema = EntityRecordSchema.model_validate(data)
    return RestrictedEntityRecord(
        id=schema.id or default_id or schema.canonical_name,
        canonical_name=schema.canonical_name,
        alternate_names=frozenset(schema.alternate_names),
        country=schema.country,
        city=schema.city,
        effective_date=schema.effective_date,
        citation=schema.citation,
        license_policy=schema.license_policy,
        license_requirement=schema.license_requirement,
    )


@dataclass(frozen=True)
class EntityListSnapshot:
    """Immutable, versioned restricted-entity list"""
    records: Tuple[RestrictedEntityRecord, ...] = ()
    version: str = "unversioned"
    published: Optional[date] = None
    source: str = "unknown"

    @property
    def is_empty(self) -> bool:
        return len(self.records) == 0

    def age_days(self, today: Optional[date] = None) -> Optional[int]:
        if self.published is None:
            return None
        return ((today or date.today()) - self.published).days

    def __len__(self) -> int:
        return len(self.records)


class RestrictedListSource(Protocol):
    """Anything able to supply a restricted-entity snapshot on demand"""

    def load(self) -> EntityListSnapshot:
        ...


class StaticListSource:
    """In-memory source, mostly for tests and embedding"""

    def __init__(self, records: Iterable[Union[RestrictedEntityRecord, Dict[str, Any]]],
                 version: str = "static", published: Optional[date] = None):
        self.records = tuple(
            r if isinstance(r, RestrictedEntityRecord) else record_from_dict(r, default_id=f"static-{i}")
            for i, r in enumerate(records)
        )
        self.version = version
        self.published = published

    def load(self) -> EntityListSnapshot:
        return EntityListSnapshot(records=self.records, version=self.version,
                                  published=self.published, source="static")


class SnapshotFileSource:
    """Loads a snapshot from a JSON or CSV file"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> EntityListSnapshot:
        if not self.path.exists():
            raise EntityListUnavailableError(f"Restricted-entity snapshot not found: {self.path}")

        try:
            if self.path.suffix.lower() == '.csv':
                snapshot = self._load_csv()
            else:
                snapshot = self._load_json()
        except (OSError, ValueError) as e:
            raise EntityListUnavailableError(f"Could not read snapshot {self.path}: {e}") from e

        logger.info(f"✓ Loaded {len(snapshot)} restricted entities from {self.path.name} "
                    f"(version {snapshot.version})")
        return snapshot

    def _load_json(self) -> EntityListSnapshot:
        with open(self.path, 'r', encoding='utf-8') as f:
            payload = json.load(f)

        if isinstance(payload, list):
            payload = {'entities': payload}
        if not isinstance(payload, dict) or not isinstance(payload.get('entities', []), list):
            raise ValueError("expected a list of entities or an object with an 'entities' list")
        records = self._parse_entries(payload.get('entities', []))
        return EntityListSnapshot(
            records=records,
            version=str(payload.get('version', 'unversioned')),
            published=_parse_date(payload.get('published')),
            source=payload.get('source', self.path.name),
        )

    def _load_csv(self) -> EntityListSnapshot:
        with open(self.path, 'r', encoding='utf-8', newline='') as f:
            rows = list(csv.DictReader(f))
        records = self._parse_entries(rows)
        return EntityListSnapshot(records=records, version=self.path.stem, source=self.path.name)

    def _parse_entries(self, entries: List[Dict[str, Any]]) -> Tuple[RestrictedEntityRecord, ...]:
        records = []
        skipped = 0
        for index, entry in enumerate(entries):
            try:
                records.append(record_from_dict(entry, default_id=f"{self.path.stem}-{index}"))
            except ValidationError as e:
                skipped += 1
                logger.warning(f"⚠ Skipping malformed entity #{index} in {self.path.name}: "
                               f"{e.error_count()} validation error(s)")
            except (TypeError, ValueError) as e:
                skipped += 1
                logger.warning(f"⚠ Skipping malformed entity #{index} in {self.path.name}: "
                               f"{type(e).__name__}: {e}")
        if skipped:
            logger.warning(f"⚠ {skipped} malformed entities skipped in {self.path.name}")
        return tuple(records)


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == '':
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        logger.warning(f"⚠ Unparseable snapshot date: {value!r}")
        return None
