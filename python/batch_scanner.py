"""
Batch supplier scanning

Runs the resolver over many suppliers with a bounded worker pool. The
restricted-entity snapshot is shared read-only by every worker; ownership
lookups are memoized for the duration of one batch.

A failure on one supplier never aborts the batch: it is recorded in
BatchScanReport.errors and the remaining suppliers are still scanned.
Cancelling keeps every assessment completed so far.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config_manager import BatchConfig
from entity_resolver import EntityResolver, InputValidationError
from models import EDGE_TYPES, InvariantViolationError, Relation, RiskAssessment, RiskLevel, SupplierRecord
from ownership_resolver import OwnershipCache
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


# ============================================
# SUPPLIER ROWS
# ============================================

class OwnershipEdgeSchema(BaseModel):
    """One ownership edge as handed over by the ingestion layer"""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    relation: Relation
    related_name: str = Field(..., min_length=1, alias='relatedName')
    ownership_percentage: Optional[float] = Field(default=None, ge=0, le=100,
                                                  alias='ownershipPercentage')
    evidence_source: str = Field(default="supplier_record", alias='evidenceSource')
    affiliation: Optional[str] = None


class SupplierRowSchema(BaseModel):
    """Validation schema for one supplier row"""
    model_config = ConfigDict(populate_by_name=True, extra='allow')

    original_name: str = Field(..., alias='originalName')
    location: Optional[str] = None
    siblings: List[str] = Field(default_factory=list)
    ownership: Optional[List[OwnershipEdgeSchema]] = None

    @field_validator('siblings', mode='before')
    @classmethod
    def split_siblings(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(';') if part.strip()]
        return v


def supplier_from_dict(data: Dict[str, Any]) -> SupplierRecord:
    """Build a SupplierRecord from a loosely-keyed row

    Raises:
        pydantic.ValidationError: If the row has no name or a malformed edge
    """
    data = dict(data)
    if 'original_name' not in data and 'originalName' not in data and 'name' in data:
        data['original_name'] = data.pop('name')
    if 'ownership' not in data and 'ownership_edges' in data:
        data['ownership'] = data.pop('ownership_edges')
    row = SupplierRowSchema.model_validate(data)

    edges = None
    if row.ownership is not None:
        edges = []
        for edge in row.ownership:
            kwargs = {'evidence_source': edge.evidence_source}
            if edge.relation is Relation.AFFILIATE:
                kwargs['affiliation'] = edge.affiliation or 'affiliate'
            else:
                kwargs['ownership_percentage'] = edge.ownership_percentage
            edges.append(EDGE_TYPES[edge.relation](row.original_name, edge.related_name, **kwargs))

    return SupplierRecord(
        original_name=row.original_name,
        location=row.location,
        siblings=row.siblings,
        ownership_edges=edges,
        metadata=dict(row.model_extra or {}),
    )


# ============================================
# REPORT
# ============================================

def format_exposure(total: float) -> str:
    """Dollar amount as $X.XM, $XK or $X"""
    if total >= 1_000_000:
        return f"${total / 1_000_000:.1f}M"
    if total >= 1_000:
        return f"${total / 1_000:.0f}K"
    return f"${total:.0f}"


@dataclass
class BatchSummary:
    """Aggregate view of a batch"""
    total_suppliers: int = 0
    clear_suppliers: int = 0
    low_risk_suppliers: int = 0
    medium_risk_suppliers: int = 0
    high_risk_suppliers: int = 0
    critical_suppliers: int = 0
    unverified_suppliers: int = 0
    failed_suppliers: int = 0
    skipped_suppliers: int = 0
    overall_risk_score: float = 0.0
    overall_risk_level: str = "low"
    estimated_exposure: str = "$0"

    @classmethod
    def from_assessments(cls, assessments: List[RiskAssessment], failed: int = 0,
                         skipped: int = 0,
                         config: Optional[BatchConfig] = None) -> 'BatchSummary':
        config = config or BatchConfig()
        levels = [a.overall_risk for a in assessments]
        total = len(assessments)
        counts = {level: levels.count(level) for level in RiskLevel}
        critical = counts[RiskLevel.CRITICAL]
        high = counts[RiskLevel.HIGH]
        medium = counts[RiskLevel.MEDIUM]
        low = counts[RiskLevel.LOW]

        if critical > 0 or high > total * 0.15:
            overall = 'critical'
        elif high > 0 or medium > total * 0.25:
            overall = 'high'
        elif medium > 0 or low > total * 0.3:
            overall = 'medium'
        else:
            overall = 'low'

        exposure = config.exposure_per_supplier
        total_exposure = (critical * exposure.get('critical', 0)
                          + high * exposure.get('high', 0)
                          + medium * exposure.get('medium', 0))

        average = sum(a.risk_score for a in assessments) / total if total else 0.0

        return cls(
            total_suppliers=total,
            clear_suppliers=counts[RiskLevel.CLEAR],
            low_risk_suppliers=low,
            medium_risk_suppliers=medium,
            high_risk_suppliers=high,
            critical_suppliers=critical,
            unverified_suppliers=sum(1 for a in assessments if not a.is_verified),
            failed_suppliers=failed,
            skipped_suppliers=skipped,
            overall_risk_score=round(average, 1),
            overall_risk_level=overall,
            estimated_exposure=format_exposure(total_exposure),
        )

    def recommendations(self) -> List[str]:
        """Strategic, batch-level recommendations"""
        def plural(n: int) -> str:
            return 's' if n > 1 else ''

        recommendations = []
        if self.critical_suppliers:
            recommendations.append(
                f"URGENT: Replace {self.critical_suppliers} critical-risk "
                f"supplier{plural(self.critical_suppliers)} within 30-60 days")
        if self.high_risk_suppliers:
            recommendations.append(
                f"Establish backup suppliers for {self.high_risk_suppliers} high-risk "
                f"supplier{plural(self.high_risk_suppliers)} within 90 days")
        if self.medium_risk_suppliers:
            recommendations.append(
                f"Conduct ownership structure review for {self.medium_risk_suppliers} "
                f"medium-risk supplier{plural(self.medium_risk_suppliers)}")
        if self.critical_suppliers or self.high_risk_suppliers:
            recommendations.append("Implement continuous entity list monitoring with automated alerts")
        if self.overall_risk_level in ('critical', 'high'):
            recommendations.append("Consider geographic diversification strategy to reduce concentration risk")
            recommendations.append("Engage legal counsel specializing in export controls")
        if self.unverified_suppliers:
            recommendations.append(
                f"Re-screen {self.unverified_suppliers} unverified supplier"
                f"{plural(self.unverified_suppliers)} once data sources recover")
        recommendations.append("Schedule quarterly compliance reviews for all suppliers")
        recommendations.append("Establish entity list screening process for all new suppliers")
        return recommendations

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_suppliers': self.total_suppliers,
            'clear_suppliers': self.clear_suppliers,
            'low_risk_suppliers': self.low_risk_suppliers,
            'medium_risk_suppliers': self.medium_risk_suppliers,
            'high_risk_suppliers': self.high_risk_suppliers,
            'critical_suppliers': self.critical_suppliers,
            'unverified_suppliers': self.unverified_suppliers,
            'failed_suppliers': self.failed_suppliers,
            'skipped_suppliers': self.skipped_suppliers,
            'overall_risk_score': self.overall_risk_score,
            'overall_risk_level': self.overall_risk_level,
            'estimated_exposure': self.estimated_exposure,
        }


@dataclass
class SupplierError:
    """A supplier the batch could not assess"""
    index: int
    supplier_name: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'supplier_name': self.supplier_name,
            'code': self.code,
            'message': self.message,
        }


@dataclass
class BatchScanReport:
    """Result of one batch scan; assessments are in input order"""
    batch_id: str
    assessments: List[RiskAssessment] = field(default_factory=list)
    errors: List[SupplierError] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    cancelled: bool = False
    summary: BatchSummary = field(default_factory=BatchSummary)
    recommendations: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_id': self.batch_id,
            'cancelled': self.cancelled,
            'summary': self.summary.to_dict(),
            'recommendations': list(self.recommendations),
            'assessments': [a.to_dict() for a in self.assessments],
            'errors': [e.to_dict() for e in self.errors],
            'skipped': list(self.skipped),
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


# ============================================
# SCANNER
# ============================================

class BatchScanner:
    """Scans many suppliers concurrently against one resolver"""

    def __init__(self, resolver: EntityResolver, config: Optional[BatchConfig] = None,
                 max_workers: Optional[int] = None, audit_logger=None):
        self.resolver = resolver
        self.config = config or resolver.config.batch
        self.max_workers = max_workers or self.config.max_workers
        self.audit_logger = audit_logger if audit_logger is not None else resolver.audit_logger
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling new suppliers; completed assessments are kept"""
        logger.warning("⚠ Batch scan cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def scan(self, suppliers: Iterable[Union[SupplierRecord, Dict[str, Any], str]],
             batch_id: Optional[str] = None) -> BatchScanReport:
        """Assess every supplier and summarize the batch"""
        self._cancel_event.clear()
        report = BatchScanReport(batch_id=batch_id or f"BATCH-{uuid.uuid4().hex[:8]}")
        if self.audit_logger is not None:
            self.audit_logger.start_batch(report.batch_id)

        rows: List[Tuple[int, SupplierRecord]] = []
        for index, supplier in enumerate(suppliers):
            try:
                rows.append((index, self._coerce(supplier)))
            except ValidationError as e:
                report.errors.append(SupplierError(
                    index=index,
                    supplier_name=sanitize_for_logging(str(supplier), 100),
                    code="INVALID_SUPPLIER_ROW",
                    message=f"{e.error_count()} validation error(s)",
                ))
            except (TypeError, ValueError) as e:
                report.errors.append(SupplierError(
                    index=index,
                    supplier_name=sanitize_for_logging(str(supplier), 100),
                    code="INVALID_SUPPLIER_ROW",
                    message=f"{type(e).__name__}: {e}",
                ))

        logger.info(f"Scanning {len(rows)} suppliers with {self.max_workers} workers "
                    f"(batch {report.batch_id})")

        ownership_resolver = self.resolver.ownership_resolver
        previous_cache = None
        if ownership_resolver is not None:
            previous_cache = ownership_resolver.cache
            ownership_resolver.cache = OwnershipCache(self.resolver.normalizer)

        results: Dict[int, RiskAssessment] = {}
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers,
                                    thread_name_prefix="batch-scan") as executor:
                futures = {
                    executor.submit(self._scan_one, index, record, report.batch_id): (index, record)
                    for index, record in rows
                }
                for future in as_completed(futures):
                    index, record = futures[future]
                    try:
                        assessment = future.result()
                    except InvariantViolationError:
                        raise
                    except InputValidationError as e:
                        report.errors.append(SupplierError(
                            index, sanitize_for_logging(record.original_name, 100), e.code, str(e)))
                        continue
                    except Exception as e:
                        logger.error(f"Supplier #{index} failed: {type(e).__name__}: {e}")
                        report.errors.append(SupplierError(
                            index, sanitize_for_logging(record.original_name, 100),
                            "RESOLUTION_FAILED", str(e)))
                        continue

                    if assessment is None:
                        report.skipped.append(record.original_name)
                    else:
                        results[index] = assessment
        finally:
            if ownership_resolver is not None:
                logger.debug("Ownership cache: %d hits, %d misses",
                             ownership_resolver.cache.hits, ownership_resolver.cache.misses)
                ownership_resolver.cache = previous_cache
            if self.audit_logger is not None:
                self.audit_logger.end_batch()

        report.assessments = [results[index] for index in sorted(results)]
        report.errors.sort(key=lambda e: e.index)
        report.cancelled = self.cancelled
        report.summary = BatchSummary.from_assessments(
            report.assessments, failed=len(report.errors), skipped=len(report.skipped),
            config=self.config,
        )
        report.recommendations = report.summary.recommendations()
        report.completed_at = datetime.now()

        logger.info(f"✓ Batch {report.batch_id}: {len(report.assessments)} assessed, "
                    f"{len(report.errors)} failed, {len(report.skipped)} skipped, "
                    f"overall {report.summary.overall_risk_level}")
        if self.audit_logger is not None:
            self.audit_logger.log_batch(report.summary.to_dict(), batch_id=report.batch_id)
        return report

    def _scan_one(self, index: int, record: SupplierRecord, batch_id: str) -> Optional[RiskAssessment]:
        if self._cancel_event.is_set():
            return None
        return self.resolver.resolve_entity(
            record.original_name,
            ownership_edges=record.ownership_edges,
            sibling_names=record.siblings,
            request_id=f"{batch_id}-{index}",
        )

    @staticmethod
    def _coerce(supplier: Union[SupplierRecord, Dict[str, Any], str]) -> SupplierRecord:
        if isinstance(supplier, SupplierRecord):
            return supplier
        if isinstance(supplier, str):
            return SupplierRecord(original_name=supplier)
        return supplier_from_dict(supplier)
