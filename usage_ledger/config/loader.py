"""
Configuration management and loading.

Handles ledger settings loaded from YAML and secrets from the environment.
"""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


STRIPE_SECRET_KEY_ENV = "STRIPE_SECRET_KEY"


def _require_positive(name: str, value: float) -> None:
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be > 0")


def _require_non_negative(name: str, value: float) -> None:
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be >= 0")


@dataclass(frozen=True)
class DatabaseConfig:
    """Datastore location and transaction bounds."""
    path: str = "usage_ledger.db"
    transaction_timeout_seconds: float = 5.0
    transaction_max_attempts: int = 3

    def __post_init__(self):
        """Validate transaction bounds."""
        if not self.path:
            raise ValueError("database.path cannot be empty")
        _require_positive("transaction_timeout_seconds", self.transaction_timeout_seconds)
        if self.transaction_max_attempts < 1:
            raise ValueError("transaction_max_attempts must be >= 1")


@dataclass(frozen=True)
class CreditConfig:
    """Welcome credit policy."""
    welcome_credit_usd: float = 1.0
    welcome_credit_expiry_days: int = 90

    def __post_init__(self):
        _require_non_negative("welcome_credit_usd", self.welcome_credit_usd)
        if self.welcome_credit_expiry_days < 1:
            raise ValueError("welcome_credit_expiry_days must be >= 1")


@dataclass(frozen=True)
class LimitConfig:
    """Spending cap floor and degraded-mode message allowance."""
    min_cap_usd: float = 0.01
    free_message_limit: int = 10

    def __post_init__(self):
        _require_positive("min_cap_usd", self.min_cap_usd)
        if self.free_message_limit < 0:
            raise ValueError("free_message_limit must be >= 0")


@dataclass(frozen=True)
class ReportingConfig:
    """External metered-billing delivery settings."""
    meter_event_name: str = "usage_ledger_usage"
    cost_to_units: int = 10_000
    max_event_age_days: int = 35
    dispatch_workers: int = 4

    def __post_init__(self):
        if not self.meter_event_name:
            raise ValueError("meter_event_name cannot be empty")
        if self.cost_to_units < 1:
            raise ValueError("cost_to_units must be >= 1")
        if self.max_event_age_days < 1:
            raise ValueError("max_event_age_days must be >= 1")
        if self.dispatch_workers < 1:
            raise ValueError("dispatch_workers must be >= 1")


@dataclass(frozen=True)
class SweepConfig:
    """Reconciliation sweep schedule and batching."""
    interval_seconds: float = 600.0
    batch_size: int = 500
    parallel_chunk: int = 25
    min_age_seconds: float = 60.0
    chunk_pause_seconds: float = 0.0

    def __post_init__(self):
        _require_positive("interval_seconds", self.interval_seconds)
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.parallel_chunk < 1:
            raise ValueError("parallel_chunk must be >= 1")
        _require_non_negative("min_age_seconds", self.min_age_seconds)
        _require_non_negative("chunk_pause_seconds", self.chunk_pause_seconds)


@dataclass(frozen=True)
class BillingConfig:
    """Complete ledger configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    credits: CreditConfig = field(default_factory=CreditConfig)
    limits: LimitConfig = field(default_factory=LimitConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)


DEFAULT_CONFIG = BillingConfig()

# Section name -> (dataclass, {key: type})
_SECTIONS = {
    "database": (DatabaseConfig, {
        "path": str,
        "transaction_timeout_seconds": float,
        "transaction_max_attempts": int,
    }),
    "credits": (CreditConfig, {
        "welcome_credit_usd": float,
        "welcome_credit_expiry_days": int,
    }),
    "limits": (LimitConfig, {
        "min_cap_usd": float,
        "free_message_limit": int,
    }),
    "reporting": (ReportingConfig, {
        "meter_event_name": str,
        "cost_to_units": int,
        "max_event_age_days": int,
        "dispatch_workers": int,
    }),
    "sweep": (SweepConfig, {
        "interval_seconds": float,
        "batch_size": int,
        "parallel_chunk": int,
        "min_age_seconds": float,
        "chunk_pause_seconds": float,
    }),
}


def load_billing_config(path: Optional[str] = None) -> BillingConfig:
    """Load and validate ledger configuration from a YAML file.

    Every section and key is optional; omitted values keep their defaults.
    Unknown keys are rejected so a typo never silently falls back to a
    default that moves money differently than intended.

    Args:
        path: Path to YAML configuration file. ``None`` returns the defaults.

    Returns:
        Validated BillingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return DEFAULT_CONFIG

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Billing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return DEFAULT_CONFIG
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, (section_cls, schema) in _SECTIONS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        sections[name] = section_cls(**_parse_section(data, schema, name))

    return BillingConfig(**sections)


def _parse_section(data: Dict[str, Any], schema: Dict[str, type], path: str) -> Dict[str, Any]:
    """Coerce and type-check one configuration section.

    Raises:
        ValueError: If a key is unknown or has the wrong type
    """
    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        expected = schema[key]
        if expected is str:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' in {path} must be a string")
            parsed[key] = value
        elif expected is int:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' in {path} must be an integer")
            parsed[key] = value
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {path} must be a number")
            parsed[key] = float(value)
    return parsed


def get_stripe_secret_key() -> Optional[str]:
    """Read the Stripe secret key from the environment."""
    return os.environ.get(STRIPE_SECRET_KEY_ENV) or None
