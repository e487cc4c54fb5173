"""
Configuration Management Module
Loads and validates configuration from config.yaml

Scoring tables (severity points, risk thresholds, jurisdiction and sector
keyword lists) live in config.yaml so compliance teams can update them
without a code change. The dataclass defaults below mirror the shipped file.
"""

import re
import sys
import yaml
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

SEVERITY_NAMES = ('critical', 'high', 'warning', 'medium', 'low', 'info')
RISK_LEVEL_NAMES = ('low', 'medium', 'high', 'critical')


def _default_jurisdictions() -> Dict[str, Dict[str, str]]:
    return {
        'critical': {
            'iran': 'Comprehensive sanctions regime',
            'north korea': 'Comprehensive sanctions regime',
            'dprk': 'Comprehensive sanctions regime',
            'syria': 'Comprehensive sanctions regime',
            'russia': 'Comprehensive sanctions, military support restrictions',
        },
        'high': {
            'china': 'Technology export restrictions, military end-use concerns',
            'cuba': 'Trade embargo',
            'venezuela': 'Sectoral sanctions',
            'belarus': 'Export restrictions, military end-use concerns',
        },
        'info': {
            'shenzhen': 'Location associated with restricted entities',
            'beijing': 'Location associated with restricted entities',
            'shanghai': 'Location associated with restricted entities',
            'guangzhou': 'Location associated with restricted entities',
            'wuhan': 'Location associated with restricted entities',
            'chengdu': 'Location associated with restricted entities',
            'moscow': 'Location associated with restricted entities',
            'tehran': 'Location associated with restricted entities',
            'pyongyang': 'Location associated with restricted entities',
        },
    }


def _default_sectors() -> List[Dict[str, str]]:
    return [
        {'pattern': r'military|defen[cs]e|missile|weapon', 'severity': 'critical',
         'description': 'Military/Defense sector'},
        {'pattern': r'nuclear|atomic', 'severity': 'critical',
         'description': 'Nuclear technology'},
        {'pattern': r'surveillance|facial recognition|monitoring', 'severity': 'high',
         'description': 'Surveillance technology'},
        {'pattern': r'aerospace|aviation|aircraft', 'severity': 'high',
         'description': 'Aerospace/Aviation'},
        {'pattern': r'semiconductor|microchip|integrated circuit', 'severity': 'medium',
         'description': 'Semiconductor/Advanced tech'},
    ]


@dataclass
class MatchingConfig:
    """Name matching parameters"""
    direct_match_floor: float = 0.7
    alternate_name_confidence: float = 0.95
    containment_factor: float = 0.85
    near_miss_floor: float = 0.5
    legal_suffixes: List[str] = field(default_factory=lambda: [
        'ltd', 'inc', 'corp', 'llc', 'co', 'company', 'limited', 'incorporated'
    ])
    synonyms: Dict[str, str] = field(default_factory=lambda: {
        'technologies': 'tech',
        'technology': 'tech',
        'corporation': 'corp',
        'incorporated': 'inc',
        'limited': 'ltd',
        'company': 'co',
    })


@dataclass
class OwnershipConfig:
    """Ownership lookup and propagation parameters"""
    tier_confidence: Dict[str, float] = field(default_factory=lambda: {
        'parent': 0.95,
        'subsidiary': 0.85,
        'affiliate': 0.75,
    })
    timeout_seconds: float = 10.0
    max_concurrent_lookups: int = 4
    known_relationships_file: Optional[str] = None
    service_url: Optional[str] = None
    service_timeout_seconds: float = 8.0


@dataclass
class ScoringConfig:
    """Severity points and risk level thresholds"""
    severity_points: Dict[str, int] = field(default_factory=lambda: {
        'critical': 40,
        'high': 25,
        'warning': 25,
        'medium': 10,
        'low': 2,
        'info': 2,
    })
    risk_thresholds: Dict[str, int] = field(default_factory=lambda: {
        'low': 5,
        'medium': 15,
        'high': 40,
        'critical': 70,
    })
    direct_critical_confidence: float = 0.9
    max_score: int = 100


@dataclass
class RiskTablesConfig:
    """Versioned heuristic tables for the jurisdiction and sector rules"""
    version: str = "2025.11"
    jurisdictions: Dict[str, Dict[str, str]] = field(default_factory=_default_jurisdictions)
    sectors: List[Dict[str, str]] = field(default_factory=_default_sectors)


@dataclass
class ConfidenceConfig:
    """Assessment confidence caps for degraded data paths"""
    default_clear: float = 0.85
    list_unavailable_cap: float = 0.2
    ownership_unavailable_cap: float = 0.5
    prefetched_ownership_ceiling: float = 1.0


@dataclass
class BatchConfig:
    """Batch scanning configuration"""
    max_workers: int = 4
    exposure_per_supplier: Dict[str, int] = field(default_factory=lambda: {
        'critical': 2500000,
        'high': 800000,
        'medium': 200000,
    })


@dataclass
class ReportingConfig:
    """Assessment reporting configuration"""
    data_freshness_warning_days: int = 30
    include_legal_disclaimer: bool = True


@dataclass
class InputValidationConfig:
    """Input validation configuration for supplier names"""
    name_min_length: int = 1
    name_max_length: int = 300
    blocked_characters: str = "<>{}[]|\\;`$"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AuditConfig:
    """Audit trail logging configuration"""
    enabled: bool = False
    log_dir: str = "logs"


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Restricted-Party Resolution Engine"
    last_updated: str = "2025-11-08"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.ownership: OwnershipConfig = OwnershipConfig()
        self.scoring: ScoringConfig = ScoringConfig()
        self.risk_tables: RiskTablesConfig = RiskTablesConfig()
        self.confidence: ConfidenceConfig = ConfidenceConfig()
        self.batch: BatchConfig = BatchConfig()
        self.reporting: ReportingConfig = ReportingConfig()
        self.input_validation: InputValidationConfig = InputValidationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.audit: AuditConfig = AuditConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        self._parse_matching()
        self._parse_ownership()
        self._parse_scoring()
        self._parse_risk_tables()
        self._parse_confidence()
        self._parse_batch()
        self._parse_reporting()
        self._parse_input_validation()
        self._parse_logging()
        self._parse_audit()
        self._parse_algorithm()
        self._validate()

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})
        self.matching = MatchingConfig(
            direct_match_floor=cfg.get('direct_match_floor', 0.7),
            alternate_name_confidence=cfg.get('alternate_name_confidence', 0.95),
            containment_factor=cfg.get('containment_factor', 0.85),
            near_miss_floor=cfg.get('near_miss_floor', 0.5),
            legal_suffixes=cfg.get('legal_suffixes', self.matching.legal_suffixes),
            synonyms=cfg.get('synonyms', self.matching.synonyms)
        )

    def _parse_ownership(self) -> None:
        """Parse ownership configuration"""
        cfg = self._raw_config.get('ownership', {})
        tiers = dict(self.ownership.tier_confidence)
        tiers.update(cfg.get('tier_confidence', {}))
        self.ownership = OwnershipConfig(
            tier_confidence=tiers,
            timeout_seconds=cfg.get('timeout_seconds', 10.0),
            max_concurrent_lookups=cfg.get('max_concurrent_lookups', 4),
            known_relationships_file=cfg.get('known_relationships_file'),
            service_url=cfg.get('service_url'),
            service_timeout_seconds=cfg.get('service_timeout_seconds', 8.0)
        )

    def _parse_scoring(self) -> None:
        """Parse scoring configuration"""
        cfg = self._raw_config.get('scoring', {})
        points = dict(self.scoring.severity_points)
        points.update(cfg.get('severity_points', {}))
        self.scoring = ScoringConfig(
            severity_points=points,
            risk_thresholds=cfg.get('risk_thresholds', self.scoring.risk_thresholds),
            direct_critical_confidence=cfg.get('direct_critical_confidence', 0.9),
            max_score=cfg.get('max_score', 100)
        )

    def _parse_risk_tables(self) -> None:
        """Parse jurisdiction and sector tables"""
        cfg = self._raw_config.get('risk_tables', {})
        self.risk_tables = RiskTablesConfig(
            version=str(cfg.get('version', self.risk_tables.version)),
            jurisdictions=cfg.get('jurisdictions', self.risk_tables.jurisdictions),
            sectors=cfg.get('sectors', self.risk_tables.sectors)
        )

    def _parse_confidence(self) -> None:
        """Parse confidence caps"""
        cfg = self._raw_config.get('confidence', {})
        self.confidence = ConfidenceConfig(
            default_clear=cfg.get('default_clear', 0.85),
            list_unavailable_cap=cfg.get('list_unavailable_cap', 0.2),
            ownership_unavailable_cap=cfg.get('ownership_unavailable_cap', 0.5),
            prefetched_ownership_ceiling=cfg.get('prefetched_ownership_ceiling', 1.0)
        )

    def _parse_batch(self) -> None:
        """Parse batch configuration"""
        cfg = self._raw_config.get('batch', {})
        self.batch = BatchConfig(
            max_workers=cfg.get('max_workers', 4),
            exposure_per_supplier=cfg.get('exposure_per_supplier',
                                          self.batch.exposure_per_supplier)
        )

    def _parse_reporting(self) -> None:
        """Parse reporting configuration"""
        cfg = self._raw_config.get('reporting', {})
        self.reporting = ReportingConfig(
            data_freshness_warning_days=cfg.get('data_freshness_warning_days', 30),
            include_legal_disclaimer=cfg.get('include_legal_disclaimer', True)
        )

    def _parse_input_validation(self) -> None:
        """Parse input validation configuration"""
        cfg = self._raw_config.get('input_validation', {})
        self.input_validation = InputValidationConfig(
            name_min_length=cfg.get('name_min_length', 1),
            name_max_length=cfg.get('name_max_length', 300),
            blocked_characters=cfg.get('blocked_characters', "<>{}[]|\\;`$")
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_audit(self) -> None:
        """Parse audit configuration"""
        cfg = self._raw_config.get('audit', {})
        self.audit = AuditConfig(
            enabled=cfg.get('enabled', False),
            log_dir=cfg.get('log_dir', 'logs')
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=str(cfg.get('version', '1.0.0')),
            name=cfg.get('name', 'Restricted-Party Resolution Engine'),
            last_updated=str(cfg.get('last_updated', '2025-11-08'))
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get shared instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset shared instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'matching': {
                'direct_match_floor': self.matching.direct_match_floor,
                'alternate_name_confidence': self.matching.alternate_name_confidence,
                'containment_factor': self.matching.containment_factor,
                'legal_suffixes': self.matching.legal_suffixes,
                'synonyms': self.matching.synonyms
            },
            'ownership': {
                'tier_confidence': self.ownership.tier_confidence,
                'timeout_seconds': self.ownership.timeout_seconds,
                'max_concurrent_lookups': self.ownership.max_concurrent_lookups
            },
            'scoring': {
                'severity_points': self.scoring.severity_points,
                'risk_thresholds': self.scoring.risk_thresholds
            },
            'risk_tables': {
                'version': self.risk_tables.version,
                'jurisdictions': self.risk_tables.jurisdictions,
                'sectors': self.risk_tables.sectors
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name,
                'last_updated': self.algorithm.last_updated
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []

        for name in ('direct_match_floor', 'alternate_name_confidence',
                     'containment_factor', 'near_miss_floor'):
            value = getattr(self.matching, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"matching.{name} must be between 0 and 1 (got {value})")
        if self.matching.near_miss_floor >= self.matching.direct_match_floor:
            errors.append("matching.near_miss_floor must be below direct_match_floor")

        for tier in ('parent', 'subsidiary', 'affiliate'):
            value = self.ownership.tier_confidence.get(tier)
            if value is None or not 0.0 <= value <= 1.0:
                errors.append(f"ownership.tier_confidence.{tier} must be between 0 and 1")
        if self.ownership.timeout_seconds <= 0:
            errors.append("ownership.timeout_seconds must be positive")
        if self.ownership.max_concurrent_lookups < 1:
            errors.append("ownership.max_concurrent_lookups must be at least 1")

        for severity, points in self.scoring.severity_points.items():
            if severity not in SEVERITY_NAMES:
                errors.append(f"scoring.severity_points has unknown severity '{severity}'")
            elif not isinstance(points, (int, float)) or points < 0:
                errors.append(f"scoring.severity_points.{severity} must be non-negative")

        thresholds = self.scoring.risk_thresholds
        missing = [level for level in RISK_LEVEL_NAMES if level not in thresholds]
        if missing:
            errors.append(f"scoring.risk_thresholds missing levels: {missing}")
        else:
            ordered = [thresholds[level] for level in RISK_LEVEL_NAMES]
            if ordered != sorted(ordered) or len(set(ordered)) != len(ordered):
                errors.append(
                    "scoring.risk_thresholds must be strictly ascending: low < medium < high < critical"
                )

        for tier in self.risk_tables.jurisdictions:
            if tier not in SEVERITY_NAMES:
                errors.append(f"risk_tables.jurisdictions has unknown tier '{tier}'")
        for entry in self.risk_tables.sectors:
            if (not isinstance(entry, dict) or 'pattern' not in entry
                    or entry.get('severity') not in SEVERITY_NAMES):
                errors.append(f"risk_tables.sectors entry is invalid: {entry}")
                continue
            try:
                re.compile(str(entry['pattern']), re.IGNORECASE)
            except re.error as e:
                errors.append(f"risk_tables.sectors pattern {entry['pattern']!r} is not a valid regex: {e}")

        for name in ('default_clear', 'list_unavailable_cap',
                     'ownership_unavailable_cap', 'prefetched_ownership_ceiling'):
            value = getattr(self.confidence, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"confidence.{name} must be between 0 and 1 (got {value})")

        if self.batch.max_workers < 1:
            errors.append("batch.max_workers must be at least 1")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def configure_logging(logging_config: Optional[LoggingConfig] = None) -> logging.Logger:
    """Configure the root logger from a LoggingConfig section

    Returns:
        The configured root logger
    """
    logging_config = logging_config or LoggingConfig()
    root = logging.getLogger()
    root.setLevel(getattr(logging, logging_config.level.upper(), logging.INFO))
    formatter = logging.Formatter(logging_config.format)

    for handler in list(root.handlers):
        if getattr(handler, '_configured_by_resolver', False):
            root.removeHandler(handler)
            handler.close()

    if logging_config.console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        console_handler._configured_by_resolver = True
        root.addHandler(console_handler)

    if logging_config.file:
        log_path = Path(logging_config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        file_handler._configured_by_resolver = True
        root.addHandler(file_handler)

    return root
