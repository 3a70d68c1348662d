"""
Configuration loader with Pydantic validation.

Supports:
- YAML file loading
- Immutable configuration values passed explicitly to components
- Secrets from environment
"""

from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TradingMode(str, Enum):
    """Which sides of the book are quoted."""

    BOTH = "both"
    BUY = "buy"
    SELL = "sell"

    def quotes(self, side: str) -> bool:
        return self is TradingMode.BOTH or self.value == side


class APIConfig(BaseModel):
    """Venue endpoint configuration."""

    model_config = ConfigDict(frozen=True)

    rest_base_url: str = "https://perps.standx.com"
    ws_url: str = "wss://perps.standx.com/ws-stream/v1"
    request_timeout_s: float = 10.0


class TradingConfig(BaseModel):
    """Quoting parameters."""

    model_config = ConfigDict(frozen=True)

    symbol: str = "BTC-USD"
    mode: TradingMode = TradingMode.BOTH
    order_size: float = 0.1
    order_distance_bp: float = 20.0  # Target distance from mark
    min_distance_bp: float = 10.0  # Closer than this risks a fill
    max_distance_bp: float = 30.0  # Farther than this earns no points
    price_tick: float = 0.01
    qty_step: float = 0.0001
    resume_ratio: float = 0.8  # Hysteresis re-entry, fraction of target distance
    close_slippage_bp: float = 50.0  # How far through the book a close is priced

    @field_validator("order_size", "price_tick", "qty_step")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("resume_ratio")
    @classmethod
    def validate_resume_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("resume_ratio must be between 0 and 1")
        return v

    @field_validator("close_slippage_bp")
    @classmethod
    def validate_slippage(cls, v: float) -> float:
        if v < 0:
            raise ValueError("close_slippage_bp must be non-negative")
        return v

    @model_validator(mode="after")
    def validate_distance_band(self) -> "TradingConfig":
        if not 0 < self.min_distance_bp <= self.order_distance_bp <= self.max_distance_bp:
            raise ValueError(
                "distances must satisfy 0 < min_distance_bp <= order_distance_bp <= max_distance_bp"
            )
        return self


class FeedConfig(BaseModel):
    """Streaming feed parameters."""

    model_config = ConfigDict(frozen=True)

    reconnect_base_delay_ms: int = 1000
    reconnect_max_delay_ms: int = 30000
    reconnect_max_attempts: int = 30
    ping_interval_s: float = 20.0
    first_snapshot_timeout_s: float = 10.0

    @field_validator("reconnect_max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("reconnect_max_attempts must be at least 1")
        return v


class SafetyConfig(BaseModel):
    """Position safety parameters."""

    model_config = ConfigDict(frozen=True)

    position_epsilon: float = 0.00001  # Instrument lot dependent
    fill_cooldown_s: float = 10.0
    flatten_requote_delay_s: float = 5.0
    monitor_interval_s: float = 15.0

    @field_validator("position_epsilon")
    @classmethod
    def validate_epsilon(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("position_epsilon must be positive")
        return v


class ObservabilityConfig(BaseModel):
    """Logging and API configuration."""

    model_config = ConfigDict(frozen=True)

    log_level: str = "INFO"
    log_format: str = "json"  # json, text or clean
    api_port: int = 9090
    metrics_port: int = 9091
    telegram_enabled: bool = False


class SecretsConfig(BaseSettings):
    """
    Secrets loaded exclusively from environment variables.
    Never logged or persisted.
    """

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    standx_access_token: str = ""
    standx_signing_key: str = ""  # Hex encoded Ed25519 seed
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""


class AppConfig(BaseModel):
    """Complete application configuration."""

    model_config = ConfigDict(frozen=True)

    environment: str = "local"
    dry_run: bool = True

    api: APIConfig = Field(default_factory=APIConfig)
    trading: TradingConfig = Field(default_factory=TradingConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def diff_from_defaults(self) -> dict[str, Any]:
        """
        Get configuration differences from defaults.

        Useful for logging what's been customized.
        """
        current = self.model_dump(mode="json")
        default_dict = AppConfig().model_dump(mode="json")

        def diff_dict(d1: dict, d2: dict, path: str = "") -> dict:
            differences = {}
            for key in set(d1.keys()) | set(d2.keys()):
                full_key = f"{path}.{key}" if path else key
                v1 = d1.get(key)
                v2 = d2.get(key)

                if isinstance(v1, dict) and isinstance(v2, dict):
                    nested = diff_dict(v1, v2, full_key)
                    if nested:
                        differences.update(nested)
                elif v1 != v2:
                    differences[full_key] = {"current": v1, "default": v2}

            return differences

        return diff_dict(current, default_dict)


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from YAML file.

    Priority (highest to lowest):
    1. Explicit overrides (CLI flags)
    2. Specified config file
    3. Defaults
    """
    config_dict: dict[str, Any] = {}

    if config_path:
        config_dict = load_yaml_config(Path(config_path))

    if overrides:
        config_dict = deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)


def load_secrets() -> SecretsConfig:
    """Load secrets from environment variables."""
    return SecretsConfig()
