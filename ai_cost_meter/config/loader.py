"""
Configuration management and loading.

Handles metering settings loaded from a YAML file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_cost_meter.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the SQLite metering store."""
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class CacheConfig:
    """Redis cache settings. No URL means caching is off."""
    redis_url: Optional[str] = None
    quota_ttl_seconds: int = 300
    timeout_seconds: float = 0.5

    def __post_init__(self):
        if self.quota_ttl_seconds <= 0:
            raise ValueError("quota_ttl_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class EstimationConfig:
    """Pre-call estimation defaults."""
    default_cost: float = 0.01
    max_output_tokens: int = 1000

    def __post_init__(self):
        if self.default_cost <= 0:
            raise ValueError("default_cost must be > 0")
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False

    def __post_init__(self):
        if self.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown logging level: {self.level}")


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    estimation: EstimationConfig = field(default_factory=EstimationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def defaults(cls) -> "MeteringConfig":
        return cls()


_SECTION_KEYS = {
    "database": {"path"},
    "cache": {"redis_url", "quota_ttl_seconds", "timeout_seconds"},
    "estimation": {"default_cost", "max_output_tokens"},
    "logging": {"level", "json"},
}


def load_metering_config(path: str) -> MeteringConfig:
    """Load and validate metering configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys
    and wrongly typed values are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, allowed in _SECTION_KEYS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        unknown = set(data.keys()) - allowed
        if unknown:
            raise ValueError(f"Unknown {name} keys: {unknown}")
        sections[name] = data

    return MeteringConfig(
        database=_parse_database(sections["database"]),
        cache=_parse_cache(sections["cache"]),
        estimation=_parse_estimation(sections["estimation"]),
        logging=_parse_logging(sections["logging"]),
    )


def _parse_database(data: Dict[str, Any]) -> DatabaseConfig:
    db_path = data.get("path", DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'database.path' must be a non-empty string")
    return DatabaseConfig(path=db_path)


def _parse_cache(data: Dict[str, Any]) -> CacheConfig:
    redis_url = data.get("redis_url")
    if redis_url is not None and not isinstance(redis_url, str):
        raise ValueError("'cache.redis_url' must be a string")

    ttl = data.get("quota_ttl_seconds", 300)
    if isinstance(ttl, bool) or not isinstance(ttl, int):
        raise ValueError("'cache.quota_ttl_seconds' must be an integer")

    timeout = data.get("timeout_seconds", 0.5)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise ValueError("'cache.timeout_seconds' must be a number")

    return CacheConfig(
        redis_url=redis_url or None,
        quota_ttl_seconds=ttl,
        timeout_seconds=float(timeout),
    )


def _parse_estimation(data: Dict[str, Any]) -> EstimationConfig:
    default_cost = data.get("default_cost", 0.01)
    if isinstance(default_cost, bool) or not isinstance(default_cost, (int, float)):
        raise ValueError("'estimation.default_cost' must be a number")

    max_output = data.get("max_output_tokens", 1000)
    if isinstance(max_output, bool) or not isinstance(max_output, int):
        raise ValueError("'estimation.max_output_tokens' must be an integer")

    return EstimationConfig(default_cost=float(default_cost), max_output_tokens=max_output)


def _parse_logging(data: Dict[str, Any]) -> LoggingConfig:
    level = data.get("level", "INFO")
    if not isinstance(level, str):
        raise ValueError("'logging.level' must be a string")

    json_output = data.get("json", False)
    if not isinstance(json_output, bool):
        raise ValueError("'logging.json' must be a boolean")

    return LoggingConfig(level=level.upper(), json=json_output)
