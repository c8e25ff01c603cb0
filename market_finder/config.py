"""
Centralized configuration management with validation and type conversion.

Values come from environment variables (optionally loaded from a `.env`
file) and are grouped into small dataclasses per concern so that each
component can be constructed from the section it needs.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum

from dotenv import load_dotenv

load_dotenv()


class Environment(Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


DEFAULT_CHAIN_DENYLIST = [
    "whole foods", "trader joe", "walmart", "target", "costco", "bj's",
    "kroger", "safeway", "albertsons", "publix", "stop & shop", "shoprite",
    "wegmans", "aldi", "lidl", "cvs", "walgreens", "7-eleven", "amazon",
    "sprouts", "harris teeter", "giant", "food lion", "wawa", "sheetz",
    "acme", "pathmark", "a&p", "food emporium", "key food", "c-town",
    "fairway", "gristedes", "d'agostino", "morton williams",
]

DEFAULT_PLACES_KEYWORDS = [
    "farmers market",
    "farm stand produce",
    "organic grocery",
    "local bakery",
    "health food store",
    "greenmarket",
    "food co-op",
    "farm shop",
]


@dataclass
class TimeoutConfig:
    """Timeout configuration for outbound calls, in seconds."""
    overpass: float = 8.0
    places: float = 10.0
    photo: float = 10.0
    refresh: float = 15.0


@dataclass
class CacheConfig:
    """Cache configuration."""
    ttl_provider: int = 43200  # 12 hours
    ttl_query: int = 300  # 5 minutes
    key_precision: int = 2


@dataclass
class AggregatorConfig:
    """Aggregation thresholds."""
    max_radius_m: int = 50000
    sparse_community_threshold: int = 6
    sparse_total_threshold: int = 3
    radius_expansion: float = 1.25
    min_confidence: int = 2
    duplicate_distance_m: float = 100.0
    first_party_distance_m: float = 160.0
    result_limit: int = 150
    default_radius_m: int = 8000


@dataclass
class ProviderConfig:
    """Provider-specific configuration."""
    overpass_url: str = "https://overpass-api.de/api/interpreter"
    places_url: str = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
    google_places_api_key: Optional[str] = None
    places_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_PLACES_KEYWORDS))
    chain_denylist: List[str] = field(default_factory=lambda: list(DEFAULT_CHAIN_DENYLIST))


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None
    max_bytes: int = 10485760  # 10MB
    backup_count: int = 5


class Config:
    """Centralized configuration with validation and type conversion."""

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.environment = self._get_environment()
        self.debug = self._get_bool("DEBUG", False)

        self.redis_url: Optional[str] = self._get_optional("REDIS_URL")

        self.timeout_config = TimeoutConfig(
            overpass=self._get_float("TIMEOUT_OVERPASS", 8.0),
            places=self._get_float("TIMEOUT_PLACES", 10.0),
            photo=self._get_float("TIMEOUT_PHOTO", 10.0),
            refresh=self._get_float("TIMEOUT_REFRESH", 15.0),
        )

        self.cache_config = CacheConfig(
            ttl_provider=self._get_int("CACHE_TTL_PROVIDER", 43200),
            ttl_query=self._get_int("CACHE_TTL_QUERY", 300),
            key_precision=self._get_int("CACHE_KEY_PRECISION", 2),
        )

        self.aggregator_config = AggregatorConfig(
            max_radius_m=self._get_int("MAX_RADIUS_M", 50000),
            sparse_community_threshold=self._get_int("SPARSE_COMMUNITY_THRESHOLD", 6),
            sparse_total_threshold=self._get_int("SPARSE_TOTAL_THRESHOLD", 3),
            radius_expansion=self._get_float("RADIUS_EXPANSION", 1.25),
            min_confidence=self._get_int("MIN_CONFIDENCE", 2),
            duplicate_distance_m=self._get_float("DUPLICATE_DISTANCE_M", 100.0),
            first_party_distance_m=self._get_float("FIRST_PARTY_DISTANCE_M", 160.0),
            result_limit=self._get_int("RESULT_LIMIT", 150),
            default_radius_m=self._get_int("DEFAULT_RADIUS_M", 8000),
        )

        self.provider_config = ProviderConfig(
            overpass_url=self._get_str("OVERPASS_URL", "https://overpass-api.de/api/interpreter"),
            places_url=self._get_str(
                "PLACES_URL", "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
            ),
            google_places_api_key=self._get_optional("GOOGLE_PLACES_API_KEY"),
            places_keywords=self._get_list("PLACES_KEYWORDS", list(DEFAULT_PLACES_KEYWORDS)),
            chain_denylist=self._get_list("CHAIN_DENYLIST", list(DEFAULT_CHAIN_DENYLIST)),
        )

        self.logging_config = LoggingConfig(
            level=self._get_str("LOG_LEVEL", "INFO"),
            format=self._get_str("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            file=self._get_optional("LOG_FILE"),
            max_bytes=self._get_int("LOG_MAX_BYTES", 10485760),
            backup_count=self._get_int("LOG_BACKUP_COUNT", 5),
        )

        self._validate()

    def _get_environment(self) -> Environment:
        """Get application environment."""
        env_str = self._get_str("ENVIRONMENT", "development").lower()
        try:
            return Environment(env_str)
        except ValueError:
            raise ValueError(f"Invalid environment: {env_str}")

    def _get_optional(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return os.getenv(key) or default

    def _get_str(self, key: str, default: str) -> str:
        return os.getenv(key, default)

    def _get_int(self, key: str, default: int) -> int:
        """Get integer environment variable with default.

        Raises:
            ValueError: If value cannot be converted to int
        """
        value = os.getenv(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for {key}: {value}")

    def _get_float(self, key: str, default: float) -> float:
        """Get float environment variable with default.

        Raises:
            ValueError: If value cannot be converted to float
        """
        value = os.getenv(key)
        if value is None or value == "":
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid float for {key}: {value}")

    def _get_bool(self, key: str, default: bool) -> bool:
        value = os.getenv(key)
        if value is None:
            return default
        return value.lower() in ('1', 'true', 'yes', 'on')

    def _get_list(self, key: str, default: list) -> list:
        value = os.getenv(key)
        if value is None:
            return default
        return [item.strip() for item in value.split(',') if item.strip()]

    def _validate(self):
        """Validate configuration values."""
        for attr_name in ['overpass', 'places', 'photo', 'refresh']:
            timeout = getattr(self.timeout_config, attr_name)
            if timeout <= 0:
                raise ValueError(f"Invalid timeout for {attr_name}: {timeout}")

        if self.cache_config.ttl_provider <= 0 or self.cache_config.ttl_query <= 0:
            raise ValueError("Cache TTLs must be positive")

        agg = self.aggregator_config
        if agg.radius_expansion <= 1.0:
            raise ValueError(f"Invalid radius expansion factor: {agg.radius_expansion}")
        if agg.max_radius_m <= 0:
            raise ValueError(f"Invalid max radius: {agg.max_radius_m}")

        if self.redis_url and not self.redis_url.startswith(('redis://', 'rediss://', 'unix://')):
            raise ValueError(f"Invalid Redis URL: {self.redis_url}")

        if not self.provider_config.google_places_api_key:
            logging.getLogger(__name__).warning(
                "GOOGLE_PLACES_API_KEY not set - commercial places provider will return no results"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for debugging.

        API keys are reported as present/absent only.
        """
        return {
            'environment': self.environment.value,
            'debug': self.debug,
            'redis': bool(self.redis_url),
            'google_places_api_key': bool(self.provider_config.google_places_api_key),
            'timeout_config': {
                'overpass': self.timeout_config.overpass,
                'places': self.timeout_config.places,
                'refresh': self.timeout_config.refresh,
            },
            'cache_config': {
                'ttl_provider': self.cache_config.ttl_provider,
                'ttl_query': self.cache_config.ttl_query,
            },
            'aggregator_config': {
                'max_radius_m': self.aggregator_config.max_radius_m,
                'min_confidence': self.aggregator_config.min_confidence,
                'result_limit': self.aggregator_config.result_limit,
            },
        }


_config: Optional[Config] = None


def get_config() -> Config:
    """Get the process-wide configuration instance, building it on first use.

    Returns:
        Configuration instance
    """
    global _config
    if _config is None:
        _config = Config()
    return _config


def reset_config() -> None:
    """Drop the cached instance so the next get_config() re-reads the environment."""
    global _config
    _config = None


def setup_logging():
    """Set up logging based on configuration."""
    from logging.handlers import RotatingFileHandler

    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.logging_config.level.upper(), logging.INFO),
        format=config.logging_config.format,
    )

    if config.logging_config.file:
        file_handler = RotatingFileHandler(
            config.logging_config.file,
            maxBytes=config.logging_config.max_bytes,
            backupCount=config.logging_config.backup_count,
        )
        file_handler.setFormatter(logging.Formatter(config.logging_config.format))
        logging.getLogger().addHandler(file_handler)

    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)
