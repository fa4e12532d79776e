"""Pydantic-settings configuration for the decision engine.

Loads round cadence, risk profile, universe filters, execution pacing and
notification credentials from the environment (``AGENTFUND_`` prefix) or a
``.env`` file, with sensible defaults for local development.
"""

from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from agentfund.core.enums import RiskProfileName

DEFAULT_CORRELATED_ASSETS = [
    "BTC",
    "ETH",
    "BNB",
    "SOL",
    "ADA",
    "DOT",
    "AVAX",
    "LINK",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AGENTFUND_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Project
    project_name: str = "AgentFund"
    log_level: str = "INFO"
    log_json: bool = False

    # Round cadence (seconds)
    risk_profile: RiskProfileName = RiskProfileName.NEUTRAL
    round_interval_seconds: float = 3600.0
    error_cooldown_seconds: float = 300.0
    missing_data_wait_seconds: float = 5.0
    kill_switch_enabled: bool = True

    # Consensus
    max_positions: int = 8
    conflict_threshold: float = 0.2

    # Evidence windows (seconds)
    claim_cutoff_seconds: float = 60.0
    news_lookback_seconds: float = 3600.0
    news_query: str = "crypto bitcoin ethereum"
    technical_timeframe: str = "1h"

    # Universe filter
    min_volume_24h: float = 1_000_000.0
    max_spread: float = 0.5
    min_liquidity: float = 0.1

    # Portfolio construction
    correlated_assets: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_CORRELATED_ASSETS)
    )
    annual_risk_free_rate: float = 0.02

    # Execution
    rebalance_threshold: float = 0.05
    order_pacing_seconds: float = 1.0

    # Telegram notifications (empty = disabled)
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    @field_validator("correlated_assets", mode="before")
    @classmethod
    def _split_assets(cls, value: object) -> object:
        """Accept a comma-separated string from the environment."""
        if isinstance(value, str):
            return [v.strip().upper() for v in value.split(",") if v.strip()]
        return value

    @property
    def telegram_enabled(self) -> bool:
        """True when both Telegram credentials are configured."""
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def validate_runtime(self) -> list[str]:
        """Return human-readable configuration problems (empty when valid)."""
        errors: list[str] = []
        if self.round_interval_seconds < 60:
            errors.append("Round interval must be at least 60 seconds")
        if not 1 <= self.max_positions <= 20:
            errors.append("Max positions must be between 1 and 20")
        if self.error_cooldown_seconds <= self.missing_data_wait_seconds:
            errors.append(
                "Error cool-down must be longer than the missing-data wait"
            )
        if not 0 <= self.rebalance_threshold < 1:
            errors.append("Rebalance threshold must be in [0, 1)")
        return errors


# Singleton instance
settings = Settings()
