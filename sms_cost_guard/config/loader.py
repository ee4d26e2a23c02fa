"""
Configuration management and loading.

Handles cache, reconciliation and pricing settings.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict

import yaml

from sms_cost_guard.core.reconciler import DEFAULT_SAFETY_LIMITS, ReconcilerSettings


@dataclass(frozen=True)
class CacheConfig:
    """Segment cache persistence settings."""
    ttl_hours: float = 12
    scope: str = "default"
    db_path: str = "sms_cost_guard.db"

    def __post_init__(self):
        """Validate cache values."""
        if self.ttl_hours <= 0:
            raise ValueError("ttl_hours must be > 0")
        if not self.scope:
            raise ValueError("scope cannot be empty")

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)


@dataclass(frozen=True)
class ReconcilerConfig:
    """Background reconciliation limits."""
    batch_size: int = 10
    batch_delay_ms: int = 100
    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 8000
    safety_limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SAFETY_LIMITS))

    def __post_init__(self):
        """Validate reconciliation values."""
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_delay_ms < 0:
            raise ValueError("batch_delay_ms cannot be negative")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.backoff_base_ms < 0 or self.backoff_max_ms < 0:
            raise ValueError("backoff delays cannot be negative")

    def to_settings(self) -> ReconcilerSettings:
        """Convert to the reconciler's runtime settings (seconds)."""
        return ReconcilerSettings(
            batch_size=self.batch_size,
            batch_delay=self.batch_delay_ms / 1000,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base_ms / 1000,
            backoff_max=self.backoff_max_ms / 1000,
            safety_limits=dict(self.safety_limits),
        )


@dataclass(frozen=True)
class PricingConfig:
    """Per-segment price and currency conversion."""
    price_per_segment: Decimal = Decimal("0.0083")
    base_currency: str = "USD"
    target_currency: str = "CAD"
    fx_rate: Decimal = Decimal("1.35")

    def __post_init__(self):
        """Validate pricing values are positive."""
        if self.price_per_segment <= 0:
            raise ValueError("price_per_segment must be > 0")
        if self.fx_rate <= 0:
            raise ValueError("fx_rate must be > 0")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    cache: CacheConfig = field(default_factory=CacheConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)

    @classmethod
    def default(cls) -> "EngineConfig":
        return cls()


_SECTION_KEYS = {
    'cache': {'ttl_hours', 'scope', 'db_path'},
    'reconciler': {
        'batch_size', 'batch_delay_ms', 'max_retries',
        'backoff_base_ms', 'backoff_max_ms', 'safety_limits'
    },
    'pricing': {'price_per_segment', 'base_currency', 'target_currency', 'fx_rate'},
}


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from YAML file.

    Every section is optional; missing values keep their defaults.
    Unknown keys are rejected so typos do not silently fall back.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return EngineConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    cache_data = _section(raw_config, 'cache')
    reconciler_data = _section(raw_config, 'reconciler')
    pricing_data = _section(raw_config, 'pricing')

    return EngineConfig(
        cache=_parse_cache_config(cache_data),
        reconciler=_parse_reconciler_config(reconciler_data),
        pricing=_parse_pricing_config(pricing_data),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_cache_config(data: Dict) -> CacheConfig:
    defaults = CacheConfig()
    return CacheConfig(
        ttl_hours=_positive_number(data, 'ttl_hours', 'cache', defaults.ttl_hours),
        scope=_string(data, 'scope', 'cache', defaults.scope),
        db_path=_string(data, 'db_path', 'cache', defaults.db_path),
    )


def _parse_reconciler_config(data: Dict) -> ReconcilerConfig:
    defaults = ReconcilerConfig()

    # A configured mapping replaces the default limits entirely
    safety_data = data.get('safety_limits', defaults.safety_limits) or {}
    if not isinstance(safety_data, dict):
        raise ValueError("'safety_limits' in reconciler must be a dictionary")
    safety_limits = {}
    for context, limit in safety_data.items():
        safety_limits[str(context)] = _integer(
            {'limit': limit}, 'limit', f"reconciler.safety_limits.{context}", None, minimum=1
        )

    return ReconcilerConfig(
        batch_size=_integer(data, 'batch_size', 'reconciler', defaults.batch_size, minimum=1),
        batch_delay_ms=_integer(data, 'batch_delay_ms', 'reconciler', defaults.batch_delay_ms),
        max_retries=_integer(data, 'max_retries', 'reconciler', defaults.max_retries),
        backoff_base_ms=_integer(data, 'backoff_base_ms', 'reconciler', defaults.backoff_base_ms),
        backoff_max_ms=_integer(data, 'backoff_max_ms', 'reconciler', defaults.backoff_max_ms),
        safety_limits=safety_limits,
    )


def _parse_pricing_config(data: Dict) -> PricingConfig:
    defaults = PricingConfig()
    return PricingConfig(
        price_per_segment=_decimal(data, 'price_per_segment', 'pricing', defaults.price_per_segment),
        base_currency=_string(data, 'base_currency', 'pricing', defaults.base_currency).upper(),
        target_currency=_string(data, 'target_currency', 'pricing', defaults.target_currency).upper(),
        fx_rate=_decimal(data, 'fx_rate', 'pricing', defaults.fx_rate),
    )


def _positive_number(data: Dict, key: str, path: str, default: float) -> float:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return float(value)


def _integer(data: Dict, key: str, path: str, default: Any, minimum: int = 0) -> int:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValueError(f"'{key}' in {path} must be an integer >= {minimum}")
    return value


def _decimal(data: Dict, key: str, path: str, default: Decimal) -> Decimal:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        # str() keeps 0.0083 from turning into a binary float expansion
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if not amount.is_finite() or amount <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return amount


def _string(data: Dict, key: str, path: str, default: str) -> str:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value.strip()
