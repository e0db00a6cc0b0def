"""
Configuration settings for the Fleet Trader orchestrator.

Uses Pydantic Settings for type-safe configuration loaded from
environment variables (prefix FLEET_) and an optional .env file.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAINNET_API_URL = "https://api.hyperliquid.xyz"
TESTNET_API_URL = "https://api.hyperliquid-testnet.xyz"


class FleetSettings(BaseSettings):
    """
    Runtime settings for the orchestrator.

    Intervals are in milliseconds to match the agent records they clamp;
    retry and circuit timings are in seconds like the resilience helpers.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Exchange
    hl_testnet: bool = Field(default=True, description="Use the Hyperliquid testnet API")
    hl_base_url: Optional[str] = Field(default=None, description="Override for the exchange API base URL")
    http_timeout_sec: float = Field(default=10.0, gt=0)

    # Tick scheduling
    tick_interval_min_ms: int = Field(default=60_000, ge=1_000, description="Platform floor for tick intervals")
    tick_interval_max_ms: int = Field(default=900_000, description="Platform ceiling for tick intervals")
    default_tick_interval_ms: int = Field(default=300_000, description="Interval used when activate() gets none")

    # Health
    stale_missed_intervals: int = Field(default=2, ge=1)
    stale_floor_ms: int = Field(default=300_000, ge=0)
    degraded_error_threshold: int = Field(default=2, ge=1)
    unhealthy_error_threshold: int = Field(default=4, ge=1)
    recent_error_window_ms: int = Field(default=600_000, ge=0)
    recent_error_burst: int = Field(default=5, ge=1)
    max_recorded_errors: int = Field(default=50, ge=1)
    auto_heal_interval_sec: float = Field(default=300.0, ge=0, description="0 disables the background auto-heal loop")

    # Retry / circuit breaker
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_sec: float = Field(default=0.5, ge=0)
    retry_max_delay_sec: float = Field(default=8.0, ge=0)
    retry_jitter_factor: float = Field(default=0.5, ge=0, le=1)
    circuit_fail_threshold: int = Field(default=5, ge=1)
    circuit_cooldown_sec: float = Field(default=30.0, ge=0)

    # Builder fee (fee is in tenths of a basis point, e.g. 10 = 1bp)
    builder_address: Optional[str] = Field(default=None)
    builder_fee_tenths_bp: int = Field(default=10, ge=0)

    # Threshold signing service
    threshold_signer_url: Optional[str] = Field(default=None)
    threshold_signer_token: Optional[str] = Field(default=None)

    # Orders
    default_slippage_percent: float = Field(default=1.0, gt=0, lt=100)
    min_order_notional_usd: float = Field(default=10.0, ge=0)

    # Decision provider
    openai_api_key: str = Field(default="")
    decision_model: str = Field(default="gpt-4o-mini")

    # Persistence
    store_backend: str = Field(default="json", description="json or memory")
    data_dir: str = Field(default="fleet_trader/data")

    # Service
    log_level: str = Field(default="INFO")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=5002)

    @model_validator(mode="after")
    def _validate_ranges(self) -> "FleetSettings":
        if self.tick_interval_min_ms > self.tick_interval_max_ms:
            raise ValueError(
                f"tick_interval_min_ms ({self.tick_interval_min_ms}) exceeds "
                f"tick_interval_max_ms ({self.tick_interval_max_ms})"
            )
        if self.degraded_error_threshold > self.unhealthy_error_threshold:
            raise ValueError("degraded_error_threshold must not exceed unhealthy_error_threshold")
        if self.store_backend not in ("json", "memory"):
            raise ValueError(f"Unknown store_backend: {self.store_backend}")
        return self

    @property
    def base_url(self) -> str:
        if self.hl_base_url:
            return self.hl_base_url.rstrip("/")
        return TESTNET_API_URL if self.hl_testnet else MAINNET_API_URL

    @property
    def is_mainnet(self) -> bool:
        return self.base_url == MAINNET_API_URL

    @property
    def builder_enabled(self) -> bool:
        return bool(self.builder_address)

    def clamp_interval(self, interval_ms: int) -> int:
        """Clamp an interval into the platform range."""
        return max(self.tick_interval_min_ms, min(self.tick_interval_max_ms, int(interval_ms)))


def min_confidence_from_aggressiveness(aggressiveness: float) -> float:
    """
    Product default for the confidence floor: 0 aggressiveness requires
    full confidence, 100 requires 0.5. Used when creating agents, never by
    the gate itself.
    """
    aggressiveness = max(0.0, min(100.0, float(aggressiveness)))
    return round(1.0 - (aggressiveness / 100.0) * 0.5, 4)


@lru_cache()
def get_settings() -> FleetSettings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return FleetSettings()
