"""
Configuration Management Module
Loads and validates configuration from config.yaml

API keys are never stored in the YAML file. Each source names the
environment variable holding its key (``api_key_env``) and the key is
resolved at lookup time.
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class MatchingConfig:
    """Name and wallet matching parameters"""
    name_floor: float = 0.75
    surname_discount: float = 0.85
    alias_exact: float = 0.95
    name_substring: float = 0.90
    alias_substring: float = 0.85
    remarks_mention: float = 0.95
    max_candidates: int = 25
    # 0 disables the length guard on substring containment
    min_substring_length: int = 0


@dataclass
class ListsConfig:
    """Reference list download and cache settings"""
    sdn_urls: List[str] = field(default_factory=lambda: [
        "https://sanctionslistservice.ofac.treas.gov/api/PublicationPreview/exports/SDN.CSV",
        "https://sanctionslistservice.ofac.treas.gov/api/PublicationPreview/exports/CONS_PRIM.CSV",
        "https://www.treasury.gov/ofac/downloads/sdn.csv",
    ])
    sdn_ttl_hours: float = 6
    sdn_download_timeout: float = 60
    wallet_list_url: str = (
        "https://raw.githubusercontent.com/0xB10C/ofac-sanctioned-digital-currency-addresses/"
        "lists/sanctioned_addresses_{chain}.txt"
    )
    wallet_chains: List[str] = field(default_factory=lambda: [
        'ETH', 'XBT', 'USDT', 'USDC', 'TRX', 'ARB', 'BSC', 'XMR', 'ZEC', 'LTC', 'DASH', 'XRP'
    ])
    wallet_ttl_hours: float = 24
    wallet_download_timeout: float = 15


@dataclass
class SourceConfig:
    """Settings for a single external source adapter"""
    enabled: bool = True
    base_url: str = ""
    timeout: float = 15
    api_key_env: Optional[str] = None
    requires_api_key: bool = False

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment, if one is configured"""
        if not self.api_key_env:
            return None
        return os.getenv(self.api_key_env) or None


def _default_sources() -> Dict[str, SourceConfig]:
    return {
        'ofac': SourceConfig(timeout=10),
        'wallet': SourceConfig(
            base_url="https://api.opensanctions.org",
            timeout=10,
            api_key_env="OPENSANCTIONS_API_KEY",
        ),
        'pep': SourceConfig(
            base_url="https://api.opensanctions.org",
            timeout=15,
            api_key_env="OPENSANCTIONS_API_KEY",
        ),
        'court_records': SourceConfig(
            base_url="https://www.courtlistener.com/api/rest/v4",
            timeout=15,
            api_key_env="COURTLISTENER_API_KEY",
            requires_api_key=True,
        ),
        'aleph': SourceConfig(
            base_url="https://aleph.occrp.org/api/2",
            timeout=20,
            api_key_env="OCCRP_API_KEY",
        ),
        'corporate': SourceConfig(
            base_url="https://api.opencorporates.com/v0.4",
            timeout=15,
            api_key_env="OPENCORPORATES_API_KEY",
        ),
        'uk_companies': SourceConfig(
            base_url="https://api.company-information.service.gov.uk",
            timeout=15,
            api_key_env="COMPANIES_HOUSE_API_KEY",
            requires_api_key=True,
        ),
        'announcements': SourceConfig(
            base_url="https://ofac.treasury.gov/recent-actions/rss.xml",
            timeout=8,
            api_key_env="OPENSANCTIONS_API_KEY",
        ),
        'regulatory': SourceConfig(timeout=20),
        'adverse_media': SourceConfig(timeout=15),
        'shipping': SourceConfig(
            timeout=20,
            api_key_env="MARINETRAFFIC_API_KEY",
        ),
        'finreg': SourceConfig(timeout=15),
        'data_sources': SourceConfig(timeout=20),
        'blockchain': SourceConfig(
            timeout=15,
            api_key_env="ETHERSCAN_API_KEY",
        ),
    }


@dataclass
class ScoringConfig:
    """Risk aggregation constants

    Level thresholds must be descending. Point values and caps keep their
    relative ordering; the literal numbers are tunable.
    """
    entity_levels: Dict[str, int] = field(default_factory=lambda: {
        'CRITICAL': 80, 'HIGH': 50, 'MEDIUM': 25
    })
    wallet_levels: Dict[str, int] = field(default_factory=lambda: {
        'CRITICAL': 80, 'HIGH': 50, 'MEDIUM': 25
    })
    ofac: Dict[str, float] = field(default_factory=lambda: {
        'match_confidence': 0.85,
        'match_points': 80,
        'possible_confidence': 0.75,
        'possible_points': 40,
        'cap': 100,
    })
    pep: Dict[str, float] = field(default_factory=lambda: {
        'match_points': 30,
        'match_cap': 80,
        'possible_points': 15,
        'possible_cap': 60,
    })
    weights: Dict[str, float] = field(default_factory=lambda: {
        'court_records': 0.3,
        'aleph': 0.4,
        'corporate': 0.2,
        'uk_companies': 0.2,
        'regulatory': 0.5,
        'adverse_media': 0.4,
        'shipping': 0.3,
        'finreg': 0.4,
        'data_sources': 0.4,
    })
    caps: Dict[str, int] = field(default_factory=lambda: {
        'court_records': 70,
        'aleph': 80,
        'corporate': 50,
        'announcements': 70,
        'uk_companies': 50,
        'regulatory': 90,
        'adverse_media': 85,
        'shipping': 70,
        'finreg': 70,
        'data_sources': 70,
    })
    blockchain_floor_above: int = 50
    announcement_points: int = 5
    announcement_direct_points: int = 90


@dataclass
class FanoutConfig:
    """Fan-out orchestration settings"""
    global_timeout_seconds: float = 45


@dataclass
class WatcherConfig:
    """Change-stream watcher settings"""
    base_url: str = "https://stream.companieshouse.gov.uk"
    streams: List[str] = field(default_factory=lambda: [
        'companies',
        'officers',
        'persons-with-significant-control',
        'disqualified-officers',
        'insolvency-cases',
        'charges',
        'filings',
    ])
    api_key_env: str = "COMPANIES_HOUSE_STREAM_KEY"
    reconnect_backoff_seconds: float = 5
    alert_capacity: int = 10000
    default_page_size: int = 50

    @property
    def api_key(self) -> Optional[str]:
        return os.getenv(self.api_key_env) or None


@dataclass
class InputValidationConfig:
    """Input validation configuration for user-provided data"""
    name_min_length: int = 2
    name_max_length: int = 200
    address_max_length: int = 128
    allow_unicode_names: bool = True
    blocked_characters: str = "<>{}[]|\\;`$"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    security_log_dir: str = "logs/security"


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: str = "sqlite:///screening.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    connect_retries: int = 3


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


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
        self.lists: ListsConfig = ListsConfig()
        self.sources: Dict[str, SourceConfig] = _default_sources()
        self.scoring: ScoringConfig = ScoringConfig()
        self.fanout: FanoutConfig = FanoutConfig()
        self.watcher: WatcherConfig = WatcherConfig()
        self.input_validation: InputValidationConfig = InputValidationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.database: DatabaseConfig = DatabaseConfig()

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

        self._parse_matching()
        self._parse_lists()
        self._parse_sources()
        self._parse_scoring()
        self._parse_fanout()
        self._parse_watcher()
        self._parse_input_validation()
        self._parse_logging()
        self._parse_database()
        self._validate()

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})
        self.matching = MatchingConfig(
            name_floor=cfg.get('name_floor', 0.75),
            surname_discount=cfg.get('surname_discount', 0.85),
            alias_exact=cfg.get('alias_exact', 0.95),
            name_substring=cfg.get('name_substring', 0.90),
            alias_substring=cfg.get('alias_substring', 0.85),
            remarks_mention=cfg.get('remarks_mention', 0.95),
            max_candidates=cfg.get('max_candidates', 25),
            min_substring_length=cfg.get('min_substring_length', 0)
        )

    def _parse_lists(self) -> None:
        """Parse reference list configuration"""
        cfg = self._raw_config.get('lists', {})
        self.lists = ListsConfig(
            sdn_urls=cfg.get('sdn_urls', self.lists.sdn_urls),
            sdn_ttl_hours=cfg.get('sdn_ttl_hours', 6),
            sdn_download_timeout=cfg.get('sdn_download_timeout', 60),
            wallet_list_url=cfg.get('wallet_list_url', self.lists.wallet_list_url),
            wallet_chains=cfg.get('wallet_chains', self.lists.wallet_chains),
            wallet_ttl_hours=cfg.get('wallet_ttl_hours', 24),
            wallet_download_timeout=cfg.get('wallet_download_timeout', 15)
        )

    def _parse_sources(self) -> None:
        """Parse per-source adapter configuration

        Unknown source ids are kept so that the registry can report them,
        but only known ids have an adapter implementation.
        """
        cfg = self._raw_config.get('sources', {}) or {}
        sources = _default_sources()
        for source_id, source_cfg in cfg.items():
            base = sources.get(source_id, SourceConfig())
            source_cfg = source_cfg or {}
            sources[source_id] = SourceConfig(
                enabled=source_cfg.get('enabled', base.enabled),
                base_url=source_cfg.get('base_url', base.base_url),
                timeout=source_cfg.get('timeout', base.timeout),
                api_key_env=source_cfg.get('api_key_env', base.api_key_env),
                requires_api_key=source_cfg.get('requires_api_key', base.requires_api_key)
            )
        self.sources = sources

    def _parse_scoring(self) -> None:
        """Parse scoring configuration"""
        cfg = self._raw_config.get('scoring', {})
        defaults = ScoringConfig()
        self.scoring = ScoringConfig(
            entity_levels=cfg.get('entity_levels', defaults.entity_levels),
            wallet_levels=cfg.get('wallet_levels', defaults.wallet_levels),
            ofac={**defaults.ofac, **cfg.get('ofac', {})},
            pep={**defaults.pep, **cfg.get('pep', {})},
            weights={**defaults.weights, **cfg.get('weights', {})},
            caps={**defaults.caps, **cfg.get('caps', {})},
            announcement_points=cfg.get('announcement_points', 5),
            announcement_direct_points=cfg.get('announcement_direct_points', 90),
            blockchain_floor_above=cfg.get('blockchain_floor_above', 50)
        )

    def _parse_fanout(self) -> None:
        """Parse fan-out configuration"""
        cfg = self._raw_config.get('fanout', {})
        self.fanout = FanoutConfig(
            global_timeout_seconds=cfg.get('global_timeout_seconds', 45)
        )

    def _parse_watcher(self) -> None:
        """Parse change-stream watcher configuration"""
        cfg = self._raw_config.get('watcher', {})
        self.watcher = WatcherConfig(
            base_url=cfg.get('base_url', self.watcher.base_url),
            streams=cfg.get('streams', self.watcher.streams),
            api_key_env=cfg.get('api_key_env', self.watcher.api_key_env),
            reconnect_backoff_seconds=cfg.get('reconnect_backoff_seconds', 5),
            alert_capacity=cfg.get('alert_capacity', 10000),
            default_page_size=cfg.get('default_page_size', 50)
        )

    def _parse_input_validation(self) -> None:
        """Parse input validation configuration"""
        cfg = self._raw_config.get('input_validation', {})
        self.input_validation = InputValidationConfig(
            name_min_length=cfg.get('name_min_length', 2),
            name_max_length=cfg.get('name_max_length', 200),
            address_max_length=cfg.get('address_max_length', 128),
            allow_unicode_names=cfg.get('allow_unicode_names', True),
            blocked_characters=cfg.get('blocked_characters', "<>{}[]|\\;`$")
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=str(cfg.get('level', 'INFO')).upper(),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format),
            security_log_dir=cfg.get('security_log_dir', self.logging.security_log_dir)
        )

    def _parse_database(self) -> None:
        """Parse database configuration

        DATABASE_URL in the environment takes precedence over the file.
        """
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            url=os.getenv('DATABASE_URL') or cfg.get('url', self.database.url),
            echo=cfg.get('echo', False),
            pool_size=cfg.get('pool_size', 5),
            max_overflow=cfg.get('max_overflow', 10),
            connect_retries=cfg.get('connect_retries', 3)
        )

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
        """Export configuration as dictionary (API keys are reported as set/unset only)"""
        return {
            'matching': {
                'name_floor': self.matching.name_floor,
                'surname_discount': self.matching.surname_discount,
                'max_candidates': self.matching.max_candidates
            },
            'lists': {
                'sdn_urls': self.lists.sdn_urls,
                'sdn_ttl_hours': self.lists.sdn_ttl_hours,
                'wallet_chains': self.lists.wallet_chains,
                'wallet_ttl_hours': self.lists.wallet_ttl_hours
            },
            'sources': {
                source_id: {
                    'enabled': source.enabled,
                    'base_url': source.base_url,
                    'timeout': source.timeout,
                    'api_key_configured': source.api_key is not None
                }
                for source_id, source in self.sources.items()
            },
            'scoring': {
                'entity_levels': self.scoring.entity_levels,
                'wallet_levels': self.scoring.wallet_levels
            },
            'fanout': {
                'global_timeout_seconds': self.fanout.global_timeout_seconds
            },
            'watcher': {
                'streams': self.watcher.streams,
                'reconnect_backoff_seconds': self.watcher.reconnect_backoff_seconds,
                'alert_capacity': self.watcher.alert_capacity,
                'api_key_configured': self.watcher.api_key is not None
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: On the first invalid value found
        """
        if not 0.0 < self.matching.name_floor <= 1.0:
            raise ConfigurationError(
                f"matching.name_floor must be in (0, 1], got {self.matching.name_floor}"
            )

        for name, levels in (('entity_levels', self.scoring.entity_levels),
                             ('wallet_levels', self.scoring.wallet_levels)):
            missing = {'CRITICAL', 'HIGH', 'MEDIUM'} - set(levels)
            if missing:
                raise ConfigurationError(f"scoring.{name} missing levels: {sorted(missing)}")
            if not levels['CRITICAL'] > levels['HIGH'] > levels['MEDIUM'] > 0:
                raise ConfigurationError(
                    f"scoring.{name} thresholds must be strictly descending: {levels}"
                )

        for source_id, source in self.sources.items():
            if source.timeout <= 0:
                raise ConfigurationError(
                    f"sources.{source_id}.timeout must be positive, got {source.timeout}"
                )

        if self.fanout.global_timeout_seconds <= 0:
            raise ConfigurationError("fanout.global_timeout_seconds must be positive")

        if not self.lists.sdn_urls:
            raise ConfigurationError("lists.sdn_urls must contain at least one URL")

        if self.watcher.reconnect_backoff_seconds < 0:
            raise ConfigurationError("watcher.reconnect_backoff_seconds must not be negative")
        if self.watcher.alert_capacity < 1:
            raise ConfigurationError("watcher.alert_capacity must be at least 1")

        if self.logging.level not in VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"logging.level must be one of {VALID_LOG_LEVELS}, got {self.logging.level}"
            )


def configure_logging(config: Optional[ConfigManager] = None) -> None:
    """Apply logging settings from configuration to the root logger"""
    config = config or get_config()
    log_cfg = config.logging

    handlers: List[logging.Handler] = []
    if log_cfg.console:
        handlers.append(logging.StreamHandler())
    if log_cfg.file:
        Path(log_cfg.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_cfg.file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, log_cfg.level, logging.INFO),
        format=log_cfg.format,
        handlers=handlers or None,
        force=True
    )


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
