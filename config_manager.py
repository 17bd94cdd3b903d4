"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class EncryptionConfig:
    """Key provider, cache and retry settings for field encryption"""
    provider: str = "aws_kms"  # aws_kms, fernet
    key_id: str = ""
    region: str = "af-south-1"
    fernet_keys: Dict[str, str] = field(default_factory=dict)
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 1000
    cache_on_encrypt: bool = True
    cache_sweep_interval_seconds: float = 60.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0
    call_timeout_seconds: Optional[float] = None


@dataclass
class HashingConfig:
    """Identifier hashing settings"""
    normalize: bool = False


@dataclass
class RiskScoringConfig:
    """Duplicate risk scoring policy"""
    curve: str = "flat"  # flat, proportional
    caps: Dict[str, int] = field(default_factory=lambda: {
        'cross_owner': 40,
        'biometric_mismatch': 30,
        'recent_duplicate': 15,
        'multiple_duplicates': 10,
        'status_mismatch': 5
    })
    points_per_occurrence: Dict[str, int] = field(default_factory=lambda: {
        'cross_owner': 20,
        'biometric_mismatch': 15,
        'recent_duplicate': 5,
        'status_mismatch': 5
    })
    multiple_duplicates_threshold: int = 1
    biometric_tolerance: float = 20.0
    recent_window_days: int = 30
    level_thresholds: Dict[str, int] = field(default_factory=lambda: {
        'low': 25,
        'medium': 50,
        'high': 75
    })
    flagged_statuses: List[str] = field(default_factory=lambda: ['rejected', 'auto_rejected'])


@dataclass
class DuplicateDetectionConfig:
    """Duplicate detection query bounds"""
    max_candidates: int = 100
    query_timeout_seconds: Optional[float] = None


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: str = ""
    host: str = "localhost"
    port: int = 5432
    user: str = "kyc_user"
    password: str = "kyc_password"
    name: str = "kyc_database"
    pool_size: int = 5
    max_overflow: int = 10
    echo: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/pii_guard.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    audit_log_dir: str = "logs"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


VALID_PROVIDERS = ('aws_kms', 'fernet')
VALID_CURVES = ('flat', 'proportional')
RISK_FACTOR_NAMES = (
    'cross_owner',
    'biometric_mismatch',
    'recent_duplicate',
    'multiple_duplicates',
    'status_mismatch',
)


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
        self.encryption: EncryptionConfig = EncryptionConfig()
        self.hashing: HashingConfig = HashingConfig()
        self.risk_scoring: RiskScoringConfig = RiskScoringConfig()
        self.duplicate_detection: DuplicateDetectionConfig = DuplicateDetectionConfig()
        self.database: DatabaseConfig = DatabaseConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
        self._apply_env_overrides()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
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

        self._parse_encryption()
        self._parse_hashing()
        self._parse_risk_scoring()
        self._parse_duplicate_detection()
        self._parse_database()
        self._parse_logging()
        self._validate()

    def _parse_encryption(self) -> None:
        """Parse encryption configuration"""
        cfg = self._raw_config.get('encryption', {})
        defaults = EncryptionConfig()
        self.encryption = EncryptionConfig(
            provider=cfg.get('provider', defaults.provider),
            key_id=cfg.get('key_id', defaults.key_id),
            region=cfg.get('region', defaults.region),
            fernet_keys=cfg.get('fernet_keys', {}) or {},
            cache_ttl_seconds=cfg.get('cache_ttl_seconds', defaults.cache_ttl_seconds),
            cache_max_entries=cfg.get('cache_max_entries', defaults.cache_max_entries),
            cache_on_encrypt=cfg.get('cache_on_encrypt', defaults.cache_on_encrypt),
            cache_sweep_interval_seconds=cfg.get('cache_sweep_interval_seconds', defaults.cache_sweep_interval_seconds),
            max_retries=cfg.get('max_retries', defaults.max_retries),
            retry_base_delay_seconds=cfg.get('retry_base_delay_seconds', defaults.retry_base_delay_seconds),
            retry_max_delay_seconds=cfg.get('retry_max_delay_seconds', defaults.retry_max_delay_seconds),
            call_timeout_seconds=cfg.get('call_timeout_seconds')
        )

    def _parse_hashing(self) -> None:
        """Parse hashing configuration"""
        cfg = self._raw_config.get('hashing', {})
        self.hashing = HashingConfig(normalize=cfg.get('normalize', False))

    def _parse_risk_scoring(self) -> None:
        """Parse risk scoring configuration"""
        cfg = self._raw_config.get('risk_scoring', {})
        defaults = RiskScoringConfig()

        # Partial overrides merge over the defaults
        caps = dict(defaults.caps)
        caps.update(cfg.get('caps', {}) or {})
        points = dict(defaults.points_per_occurrence)
        points.update(cfg.get('points_per_occurrence', {}) or {})
        thresholds = dict(defaults.level_thresholds)
        thresholds.update(cfg.get('level_thresholds', {}) or {})

        self.risk_scoring = RiskScoringConfig(
            curve=cfg.get('curve', defaults.curve),
            caps=caps,
            points_per_occurrence=points,
            multiple_duplicates_threshold=cfg.get(
                'multiple_duplicates_threshold', defaults.multiple_duplicates_threshold
            ),
            biometric_tolerance=cfg.get('biometric_tolerance', defaults.biometric_tolerance),
            recent_window_days=cfg.get('recent_window_days', defaults.recent_window_days),
            level_thresholds=thresholds,
            flagged_statuses=cfg.get('flagged_statuses', defaults.flagged_statuses)
        )

    def _parse_duplicate_detection(self) -> None:
        """Parse duplicate detection configuration"""
        cfg = self._raw_config.get('duplicate_detection', {})
        self.duplicate_detection = DuplicateDetectionConfig(
            max_candidates=cfg.get('max_candidates', 100),
            query_timeout_seconds=cfg.get('query_timeout_seconds')
        )

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            url=cfg.get('url', self.database.url),
            host=cfg.get('host', self.database.host),
            port=cfg.get('port', self.database.port),
            user=cfg.get('user', self.database.user),
            password=cfg.get('password', self.database.password),
            name=cfg.get('name', self.database.name),
            pool_size=cfg.get('pool_size', self.database.pool_size),
            max_overflow=cfg.get('max_overflow', self.database.max_overflow),
            echo=cfg.get('echo', self.database.echo)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file', 'logs/pii_guard.log'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            audit_log_dir=cfg.get('audit_log_dir', 'logs')
        )

    def _apply_env_overrides(self) -> None:
        """Environment variables win over the YAML file"""
        key_id = os.getenv("DATA_ENCRYPTION_KEY_ID")
        if key_id:
            self.encryption.key_id = key_id
        region = os.getenv("AWS_REGION")
        if region:
            self.encryption.region = region
        database_url = os.getenv("DATABASE_URL")
        if database_url:
            self.database.url = database_url
        for env_name, attr in (("DB_HOST", "host"), ("DB_NAME", "name"),
                               ("DB_USER", "user"), ("DB_PASSWORD", "password")):
            value = os.getenv(env_name)
            if value:
                setattr(self.database, attr, value)
        port = os.getenv("DB_PORT")
        if port:
            try:
                self.database.port = int(port)
            except ValueError:
                raise ConfigurationError("DB_PORT must be an integer")

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'encryption': {
                'provider': self.encryption.provider,
                'key_id': self.encryption.key_id,
                'region': self.encryption.region,
                'cache_ttl_seconds': self.encryption.cache_ttl_seconds,
                'cache_max_entries': self.encryption.cache_max_entries,
                'cache_on_encrypt': self.encryption.cache_on_encrypt,
                'cache_sweep_interval_seconds': self.encryption.cache_sweep_interval_seconds,
                'max_retries': self.encryption.max_retries,
                'retry_base_delay_seconds': self.encryption.retry_base_delay_seconds,
                'retry_max_delay_seconds': self.encryption.retry_max_delay_seconds
            },
            'hashing': {
                'normalize': self.hashing.normalize
            },
            'risk_scoring': {
                'curve': self.risk_scoring.curve,
                'caps': self.risk_scoring.caps,
                'points_per_occurrence': self.risk_scoring.points_per_occurrence,
                'multiple_duplicates_threshold': self.risk_scoring.multiple_duplicates_threshold,
                'biometric_tolerance': self.risk_scoring.biometric_tolerance,
                'recent_window_days': self.risk_scoring.recent_window_days,
                'level_thresholds': self.risk_scoring.level_thresholds,
                'flagged_statuses': self.risk_scoring.flagged_statuses
            },
            'duplicate_detection': {
                'max_candidates': self.duplicate_detection.max_candidates,
                'query_timeout_seconds': self.duplicate_detection.query_timeout_seconds
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors = []

        enc = self.encryption
        if enc.provider not in VALID_PROVIDERS:
            errors.append(f"encryption.provider must be one of {VALID_PROVIDERS}, got {enc.provider!r}")
        if enc.cache_ttl_seconds <= 0:
            errors.append("encryption.cache_ttl_seconds must be positive")
        if enc.cache_max_entries < 1:
            errors.append("encryption.cache_max_entries must be at least 1")
        if enc.cache_sweep_interval_seconds < 0:
            errors.append("encryption.cache_sweep_interval_seconds must not be negative")
        if enc.max_retries < 0:
            errors.append("encryption.max_retries must not be negative")
        if enc.retry_base_delay_seconds < 0 or enc.retry_max_delay_seconds < 0:
            errors.append("encryption retry delays must not be negative")

        risk = self.risk_scoring
        if risk.curve not in VALID_CURVES:
            errors.append(f"risk_scoring.curve must be one of {VALID_CURVES}, got {risk.curve!r}")
        for name in RISK_FACTOR_NAMES:
            if risk.caps.get(name, 0) < 0:
                errors.append(f"risk_scoring.caps.{name} must not be negative")
        thresholds = risk.level_thresholds
        if not (0 <= thresholds['low'] < thresholds['medium'] < thresholds['high'] <= 100):
            errors.append("risk_scoring.level_thresholds must satisfy 0 <= low < medium < high <= 100")
        if risk.recent_window_days < 0:
            errors.append("risk_scoring.recent_window_days must not be negative")

        if self.duplicate_detection.max_candidates < 1:
            errors.append("duplicate_detection.max_candidates must be at least 1")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
