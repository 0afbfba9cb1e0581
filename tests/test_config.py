"""Tests for startup configuration checks."""

import pytest

from core.config import ConfigurationError, Settings, ensure_startup_ok, validate_startup
from core.mode_configs import TradingMode


def test_paper_defaults_are_valid():
    config = Settings(TRADING_MODE="paper")
    assert config.is_paper is True
    assert validate_startup(config) == []


def test_live_without_credentials_is_fatal():
    config = Settings(TRADING_MODE="live", BROKER_API_KEY="", BROKER_ACCESS_TOKEN="")
    problems = validate_startup(config)
    assert any("BROKER_API_KEY" in p for p in problems)
    with pytest.raises(ConfigurationError):
        ensure_startup_ok(config)


def test_live_with_credentials_is_valid():
    config = Settings(
        TRADING_MODE="live", BROKER_API_KEY="key", BROKER_ACCESS_TOKEN="token", BROKER_CLIENT_FACTORY="broker:connect",
    )
    assert config.is_configured is True
    ensure_startup_ok(config)


def test_live_without_client_factory_is_fatal():
    config = Settings(TRADING_MODE="live", BROKER_API_KEY="key", BROKER_ACCESS_TOKEN="token", BROKER_CLIENT_FACTORY="")
    problems = validate_startup(config)
    assert problems == ["Live mode requires BROKER_CLIENT_FACTORY (module:callable)"]


def test_poll_settings_are_checked():
    config = Settings(TRADING_MODE="paper", FILL_POLL_ATTEMPTS=0, FILL_POLL_BASE_DELAY=-1.0)
    assert len(validate_startup(config)) == 2


@pytest.mark.parametrize("raw, expected", [
    ("paper", TradingMode.PAPER),
    ("LIVE", TradingMode.LIVE),
    (" live ", TradingMode.LIVE),
])
def test_trading_mode_from_str(raw, expected):
    assert TradingMode.from_str(raw) is expected
