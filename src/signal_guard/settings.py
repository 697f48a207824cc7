from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = "INFO"
    default_symbol: str = "BTC"
    timezone: str = "UTC"
    refresh_interval_minutes: int = Field(default=5, ge=1, le=1440)

    # Sources
    source_timeout_seconds: float = Field(default=8.0, ge=0.5, le=120)
    triangulation_deadline_seconds: float = Field(default=12.0, ge=0.5, le=300)
    divergence_tolerance_pct: float = Field(default=1.0, ge=0, le=100)
    coinmarketcap_api_key: str = ""
    http_user_agent: str = "SignalGuard/1.0 (consensus engine)"
    whale_threshold_btc: float = Field(default=50.0, ge=0.1, le=100_000)
    history_days: int = Field(default=30, ge=1, le=365)

    # Sanity bounds
    freshness_max_age_seconds: int = Field(default=600, ge=1, le=86_400)
    clock_skew_allowance_seconds: int = Field(default=60, ge=0, le=3600)
    mempool_min: int = Field(default=0, ge=0)
    mempool_max: int = Field(default=500_000, ge=1)
    whale_min: int = Field(default=0, ge=0)
    whale_max: int = Field(default=1_000, ge=1)
    volume_max_multiple: float = Field(default=5.0, ge=1.0, le=1000)

    # Quality scoring
    quality_weight_sources: float = Field(default=50, ge=0, le=100)
    quality_weight_sanity: float = Field(default=35, ge=0, le=100)
    quality_weight_no_error: float = Field(default=15, ge=0, le=100)
    quality_proceed_threshold: float = Field(default=70, ge=0, le=100)
    quality_retry_threshold: float = Field(default=40, ge=0, le=100)

    # Fallback
    fallback_max_retries: int = Field(default=1, ge=0, le=10)
    fallback_backoff_base_seconds: float = Field(default=0.5, ge=0, le=30)
    fallback_backoff_cap_seconds: float = Field(default=5.0, ge=0, le=300)

    # Guardrails
    approved_sources_csv: str = (
        "coingecko,coinmarketcap,kraken,blockchain.com,alternative.me,lunarcrush,glassnode,"
        "messari,santiment,cryptocompare"
    )
    min_quality_score: float = Field(default=70, ge=0, le=100)
    price_floor_usd: float = Field(default=1_000, ge=0)
    price_ceiling_usd: float = Field(default=1_000_000, ge=1)
    guardrail_policy_path: Path = Path("config/guardrail_policy.yaml")

    # Risk
    account_balance_usd: float = Field(default=10_000, ge=0, le=1_000_000_000)
    risk_tolerance_pct: float = Field(default=50, ge=0, le=100)
    max_risk_per_trade_pct: float = Field(default=2.0, ge=0.01, le=100)
    atr_stop_multiplier: float = Field(default=2.0, ge=0.1, le=20)
    min_risk_reward: float = Field(default=2.0, ge=0, le=20)
    max_loss_pct_cap: float = Field(default=2.0, ge=0.01, le=100)
    min_confidence_to_trade: float = Field(default=50, ge=0, le=100)

    # Cache TTLs
    cache_ttl_price_seconds: int = Field(default=60, ge=0, le=86_400)
    cache_ttl_onchain_seconds: int = Field(default=300, ge=0, le=86_400)
    cache_ttl_sentiment_seconds: int = Field(default=300, ge=0, le=86_400)
    cache_ttl_history_seconds: int = Field(default=300, ge=0, le=86_400)

    # Alerts
    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "quorum_lost,quality_halt,guardrail_suspend,guardrail_block"

    @model_validator(mode="after")
    def validate_quality_model(self) -> "Settings":
        total = self.quality_weight_sources + self.quality_weight_sanity + self.quality_weight_no_error
        if abs(total - 100) > 1e-9:
            raise ValueError(f"Quality weights must sum to 100, got {total}")
        if self.quality_retry_threshold >= self.quality_proceed_threshold:
            raise ValueError("QUALITY_RETRY_THRESHOLD must be below QUALITY_PROCEED_THRESHOLD")
        if self.price_floor_usd >= self.price_ceiling_usd:
            raise ValueError("PRICE_FLOOR_USD must be below PRICE_CEILING_USD")
        return self

    def approved_sources(self) -> frozenset[str]:
        return frozenset(
            item.strip().lower()
            for item in self.approved_sources_csv.split(",")
            if item.strip()
        )


settings = Settings()
