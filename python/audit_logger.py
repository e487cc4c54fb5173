"""
Audit Event Logging Module

Structured, append-only record of screening activity:
- Completed resolutions (verdict, score, confidence, list version)
- Rejected supplier names
- Degraded runs (restricted list or ownership data unavailable)
- Completed batches

Every event is one JSON object per line in <log_dir>/audit.log.
Supplier names are sanitized before they are written.
"""

import logging
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from text_utils import sanitize_for_logging, truncate


@dataclass
class AuditEvent:
    """Structured audit event"""
    event_type: str  # RESOLUTION_COMPLETED, VALIDATION_FAILED, DATA_UNAVAILABLE, BATCH_COMPLETED
    severity: str  # INFO, WARNING
    entity_name: str = ""  # sanitized, first 100 chars
    outcome: str = ""
    request_id: str = ""
    batch_id: str = ""
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'entity_name': self.entity_name,
            'outcome': self.outcome,
            'request_id': self.request_id,
            'batch_id': self.batch_id,
            'context': self.context
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class AuditLogger:
    """Writes audit events to a dedicated log file"""

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = self.log_dir / "audit.log"

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(log_level)
        self.logger.propagate = False
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter('%(message)s')

        file_handler = logging.FileHandler(self.log_path, encoding='utf-8')
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        self._batch_id: str = ""

    def start_batch(self, batch_id: Optional[str] = None) -> str:
        """Correlate subsequent events with a batch

        Returns:
            The batch ID being used
        """
        self._batch_id = batch_id or f"BATCH-{uuid.uuid4().hex[:8]}"
        return self._batch_id

    def end_batch(self) -> None:
        self._batch_id = ""

    @staticmethod
    def new_request_id() -> str:
        return f"REQ-{uuid.uuid4().hex[:8]}"

    def _sanitize_name(self, name: str) -> str:
        return truncate(sanitize_for_logging(name), 100) if name else ""

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize context values so they cannot break the JSON line format"""
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = sanitize_for_logging(str(key), max_length=100) or "unknown"
            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else sanitize_for_logging(str(item), max_length=200)
                    for item in value
                ]
            else:
                sanitized[safe_key] = sanitize_for_logging(str(value), max_length=200)
        return sanitized

    def _emit(self, event: AuditEvent) -> None:
        if event.severity == "WARNING":
            self.logger.warning(event.to_json())
        else:
            self.logger.info(event.to_json())

    def log_resolution(self, assessment, request_id: str = "") -> None:
        """Log a completed RiskAssessment"""
        self._emit(AuditEvent(
            event_type="RESOLUTION_COMPLETED",
            severity="INFO",
            entity_name=self._sanitize_name(assessment.entity_name),
            outcome=assessment.overall_risk.value,
            request_id=request_id,
            batch_id=self._batch_id,
            context=self._sanitize_context({
                'risk_score': assessment.risk_score,
                'confidence': round(assessment.confidence, 4),
                'resolved_entities': [e.matched_name for e in assessment.resolved_entities],
                'data_gaps': assessment.data_gaps,
                'list_version': assessment.list_version,
                'algorithm_version': assessment.algorithm_version,
            })
        ))

    def log_validation_failure(self, field: str, error_code: str, input_value: str,
                               request_id: str = "") -> None:
        """Log a rejected supplier name"""
        self._emit(AuditEvent(
            event_type="VALIDATION_FAILED",
            severity="WARNING",
            entity_name=self._sanitize_name(input_value),
            outcome=error_code,
            request_id=request_id,
            batch_id=self._batch_id,
            context={'field': field}
        ))

    def log_data_unavailable(self, source: str, reason: str, entity_name: str = "",
                             request_id: str = "") -> None:
        """Log a degraded run caused by an unavailable data source"""
        self._emit(AuditEvent(
            event_type="DATA_UNAVAILABLE",
            severity="WARNING",
            entity_name=self._sanitize_name(entity_name),
            outcome=source,
            request_id=request_id,
            batch_id=self._batch_id,
            context=self._sanitize_context({'reason': reason})
        ))

    def log_batch(self, summary: Dict[str, Any], batch_id: str = "") -> None:
        """Log a completed batch summary"""
        self._emit(AuditEvent(
            event_type="BATCH_COMPLETED",
            severity="INFO",
            outcome=str(summary.get('overall_risk_level', '')),
            batch_id=batch_id or self._batch_id,
            context=self._sanitize_context(summary)
        ))


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(log_dir: str = "logs", enable_console: bool = False) -> AuditLogger:
    """Get or create the global audit logger instance"""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(log_dir=log_dir, enable_console=enable_console)
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)"""
    global _audit_logger
    _audit_logger = None


def create_audit_logger(audit_config) -> Optional[AuditLogger]:
    """Audit logger described by the audit config section, or None when disabled"""
    if not audit_config.enabled:
        return None
    return AuditLogger(log_dir=audit_config.log_dir)
