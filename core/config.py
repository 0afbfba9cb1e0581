"""Engine configuration."""

import logging
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)
load_dotenv()


class ConfigurationError(RuntimeError):
    """Fatal startup problem; trading must not be enabled."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Broker session (owned by the broker client, only checked here)
    broker_api_key: str = Field(default="", alias="BROKER_API_KEY")
    broker_access_token: str = Field(default="", alias="BROKER_ACCESS_TOKEN")
    # "module:callable" returning an authenticated client; called with these settings
    broker_client_factory: str = Field(default="", alias="BROKER_CLIENT_FACTORY")

    # Mode
    trading_mode: Literal["paper", "live"] = Field(default="paper", alias="TRADING_MODE")
    strategy_name: str = Field(default="fifty_percent", alias="STRATEGY_NAME")

    # Order routing
    exchange: str = Field(default="NFO", alias="BROKER_EXCHANGE")
    product: str = Field(default="MIS", alias="BROKER_PRODUCT")
    order_type: str = Field(default="MARKET", alias="BROKER_ORDER_TYPE")
    order_variety: str = Field(default="regular", alias="BROKER_ORDER_VARIETY")

    # Fill resolution
    fill_poll_attempts: int = Field(default=5, alias="FILL_POLL_ATTEMPTS")
    fill_poll_base_delay: float = Field(default=0.5, alias="FILL_POLL_BASE_DELAY")
    fill_poll_max_delay: float = 4.0

    # Journal / logging
    logs_dir: str = Field(default="logs", alias="LOGS_DIR")
    journal_enabled: bool = Field(default=True, alias="JOURNAL_ENABLED")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def is_paper(self) -> bool:
        return self.trading_mode == "paper"

    @property
    def is_configured(self) -> bool:
        return bool(self.broker_api_key and self.broker_access_token)


def validate_startup(config: Settings) -> list[str]:
    """Return fatal configuration problems. Empty list means safe to trade."""
    problems: list[str] = []
    if not config.is_paper and not config.is_configured:
        problems.append("Live mode requires BROKER_API_KEY and BROKER_ACCESS_TOKEN")
    if not config.is_paper and not config.broker_client_factory:
        problems.append("Live mode requires BROKER_CLIENT_FACTORY (module:callable)")
    if config.fill_poll_attempts < 1:
        problems.append("FILL_POLL_ATTEMPTS must be >= 1")
    if config.fill_poll_base_delay < 0:
        problems.append("FILL_POLL_BASE_DELAY must be >= 0")
    return problems


def ensure_startup_ok(config: Settings) -> None:
    """Raise ConfigurationError when trading cannot be enabled safely."""
    problems = validate_startup(config)
    if problems:
        for problem in problems:
            logger.error("[CONFIG] %s", problem)
        raise ConfigurationError("; ".join(problems))


settings = Settings()
