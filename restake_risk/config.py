from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Redis Configuration
    ENABLE_REDIS: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"

    # Provider endpoints
    POSITION_API_URL: Optional[str] = None
    MARKET_DATA_API_URL: Optional[str] = None
    PROVIDER_TIMEOUT_SECONDS: float = 5.0
    PROVIDER_MAX_ATTEMPTS: int = 3

    # Cache TTLs (seconds)
    METRICS_CACHE_TTL: int = 300
    ALERTS_CACHE_TTL: int = 120

    # Risk Calculation Parameters
    SLASHING_LOOKBACK_DAYS: int = 7
    STRICT_INVARIANTS: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Risk Levels
class RiskLevel:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Alert Severity Levels
class RiskSeverity:
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Alert Types
class AlertType:
    VALIDATOR_RISK = "validator_risk"
    CONCENTRATION_RISK = "concentration_risk"
    SLASHING_EVENT = "slashing_event"
    LIQUIDITY_RISK = "liquidity_risk"


# Component names, in breakdown order
class Component:
    SLASHING = "slashing"
    LIQUIDITY = "liquidity"
    CONCENTRATION = "concentration"
    MARKET = "market"

    ALL = (SLASHING, LIQUIDITY, CONCENTRATION, MARKET)


# Cache key prefixes
class CacheKeys:
    METRICS = "risk:metrics"
    ALERTS = "risk:alerts"
    ASSESSMENT = "risk:assessment"

    @staticmethod
    def build(prefix: str, user_address: str) -> str:
        return f"{prefix}:{user_address.lower()}"


# Scoring policy. Liquidity and market caps sum to max_component by default.
class SlashingPolicy(BaseModel):
    performance_base: float = 10.0
    performance_scale: float = 10.0
    penalty_per_event: float = 5.0
    technical_base: float = 5.0
    technical_scale: float = 5.0
    uptime_base: float = 10.0
    uptime_scale: float = 10.0
    min_operator_active_days: int = 90
    inexperienced_operator_penalty: float = 1.0
    # Probability model for the detail block
    max_probability: float = 0.1
    # AVS risk weights (0-1 scale)
    avs_audit_weight: float = 0.5
    avs_governance_weight: float = 0.3
    avs_probability_weight: float = 0.2
    avs_probability_scale: float = 10.0


class LiquidityPolicy(BaseModel):
    utilization_cap: float = 8.0
    utilization_scale: float = 10.0
    min_dex_depth_usd: float = 1_000_000.0
    dex_depth_cap: float = 6.0
    exit_queue_cap: float = 6.0
    exit_queue_scale: float = 0.5
    holder_concentration_cap: float = 5.0
    holder_concentration_scale: float = 10.0
    alert_utilization: float = 0.8


class MarketPolicy(BaseModel):
    volatility_cap: float = 8.0
    volatility_scale: float = 10.0
    correlation_cap: float = 6.0
    correlation_scale: float = 6.0
    liquidity_ratio_threshold: float = 0.1
    liquidity_ratio_penalty: float = 5.0
    macro_cap: float = 6.0
    regulatory_weight: float = 4.0
    rate_weight: float = 20.0
    volatility_weight: float = 1.0
    correlation_weight: float = 1.0
    liquidity_ratio_weight: float = 1.0
    macro_weight: float = 1.0
    trading_days_per_year: int = 365


class RegimePolicy(BaseModel):
    extreme_fear_sentiment: float = 20.0
    extreme_greed_sentiment: float = 80.0
    fear_multiplier: float = 1.10
    greed_multiplier: float = 1.05
    correlation_threshold: float = 0.8
    correlation_multiplier: float = 1.10

    @field_validator("fear_multiplier", "greed_multiplier", "correlation_multiplier")
    @classmethod
    def multipliers_only_inflate(cls, v):
        if v < 1.0:
            raise ValueError("Market regime multipliers must be >= 1.0")
        return v


class AlertPolicy(BaseModel):
    validator_critical: float = 0.8
    validator_high: float = 0.6
    protocol_concentration: float = 0.5


class ScoringPolicy(BaseModel):
    max_component: float = 25.0
    max_score: float = 100.0
    low_ceiling: float = 30.0
    medium_ceiling: float = 60.0
    high_ceiling: float = 80.0

    slashing: SlashingPolicy = Field(default_factory=SlashingPolicy)
    liquidity: LiquidityPolicy = Field(default_factory=LiquidityPolicy)
    market: MarketPolicy = Field(default_factory=MarketPolicy)
    regime: RegimePolicy = Field(default_factory=RegimePolicy)
    alerts: AlertPolicy = Field(default_factory=AlertPolicy)

    @field_validator("high_ceiling")
    @classmethod
    def ceilings_are_ordered(cls, v, info):
        low = info.data.get("low_ceiling", 0.0)
        medium = info.data.get("medium_ceiling", low)
        if not (low <= medium <= v):
            raise ValueError("Classification ceilings must be non-decreasing")
        return v

