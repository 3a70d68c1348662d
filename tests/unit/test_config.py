"""Tests for configuration loading."""

from pathlib import Path

import pytest

from makerpoints.infrastructure.config import (
    AppConfig,
    FeedConfig,
    SafetyConfig,
    TradingConfig,
    TradingMode,
    deep_merge,
    load_config,
)

CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"


class TestTradingConfig:
    """Tests for TradingConfig validation."""

    def test_defaults(self):
        config = TradingConfig()
        assert config.symbol == "BTC-USD"
        assert config.mode is TradingMode.BOTH
        assert config.order_distance_bp == 20.0
        assert config.min_distance_bp == 10.0
        assert config.max_distance_bp == 30.0

    def test_distance_band_must_contain_target(self):
        """Target distance must sit inside [min, max]."""
        with pytest.raises(ValueError):
            TradingConfig(order_distance_bp=5.0)

        with pytest.raises(ValueError):
            TradingConfig(order_distance_bp=40.0)

        with pytest.raises(ValueError):
            TradingConfig(min_distance_bp=0)

    def test_positive_fields_validation(self):
        with pytest.raises(ValueError):
            TradingConfig(order_size=0)
        with pytest.raises(ValueError):
            TradingConfig(price_tick=-0.01)
        with pytest.raises(ValueError):
            TradingConfig(qty_step=0)

    def test_resume_ratio_validation(self):
        with pytest.raises(ValueError):
            TradingConfig(resume_ratio=0)
        with pytest.raises(ValueError):
            TradingConfig(resume_ratio=1.5)

        config = TradingConfig(resume_ratio=1.0)
        assert config.resume_ratio == 1.0

    def test_mode_from_string(self):
        config = TradingConfig(mode="buy")
        assert config.mode is TradingMode.BUY

    def test_mode_quotes(self):
        assert TradingMode.BOTH.quotes("buy")
        assert TradingMode.BOTH.quotes("sell")
        assert TradingMode.BUY.quotes("buy")
        assert not TradingMode.BUY.quotes("sell")
        assert not TradingMode.SELL.quotes("buy")


class TestFeedAndSafetyConfig:
    """Tests for feed and safety sections."""

    def test_reconnect_attempts_validation(self):
        with pytest.raises(ValueError):
            FeedConfig(reconnect_max_attempts=0)

    def test_position_epsilon_validation(self):
        with pytest.raises(ValueError):
            SafetyConfig(position_epsilon=0)

    def test_zero_cooldown_allowed(self):
        config = SafetyConfig(fill_cooldown_s=0, flatten_requote_delay_s=0)
        assert config.fill_cooldown_s == 0


class TestAppConfig:
    """Tests for AppConfig."""

    def test_default_dry_run(self):
        """Default should be dry run mode."""
        config = AppConfig()
        assert config.dry_run is True

    def test_is_production(self):
        config = AppConfig(environment="production")
        assert config.is_production is True

        config = AppConfig(environment="local")
        assert config.is_production is False

    def test_frozen(self):
        config = AppConfig()
        with pytest.raises(ValueError):
            config.dry_run = False

    def test_diff_from_defaults(self):
        config = AppConfig(trading=TradingConfig(order_size=0.5))
        diff = config.diff_from_defaults()
        assert diff == {"trading.order_size": {"current": 0.5, "default": 0.1}}


class TestLoadConfig:
    """Tests for YAML loading with overrides."""

    def test_yaml_with_override(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "environment: paper\n"
            "trading:\n"
            "  symbol: ETH-USD\n"
            "  order_size: 1.5\n"
        )

        config = load_config(path, overrides={"dry_run": False})

        assert config.environment == "paper"
        assert config.trading.symbol == "ETH-USD"
        assert config.trading.order_size == 1.5
        assert config.trading.order_distance_bp == 20.0
        assert config.dry_run is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == AppConfig()

    def test_bundled_configs_load(self):
        assert load_config(CONFIG_DIR / "default.yaml").dry_run is True
        assert load_config(CONFIG_DIR / "production.yaml").is_production is True


class TestDeepMerge:
    """Tests for deep_merge utility."""

    def test_simple_merge(self):
        """Simple key override."""
        base = {"a": 1, "b": 2}
        override = {"b": 3}
        result = deep_merge(base, override)
        assert result == {"a": 1, "b": 3}

    def test_nested_merge(self):
        """Nested dict merge."""
        base = {"a": {"x": 1, "y": 2}}
        override = {"a": {"y": 3}}
        result = deep_merge(base, override)
        assert result == {"a": {"x": 1, "y": 3}}

    def test_new_key(self):
        """New key addition."""
        base = {"a": 1}
        override = {"b": 2}
        result = deep_merge(base, override)
        assert result == {"a": 1, "b": 2}
