from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Annotated, Optional, List, Dict, Any, Tuple
from datetime import datetime, timezone
from decimal import Decimal
from .config import RiskLevel, RiskSeverity


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# Position Models
class StakingPosition(FrozenModel):
    protocol_id: str
    validator_address: str
    operator_address: str
    avs_id: str
    staked_value: Decimal = Field(ge=0)

    @field_validator('protocol_id', 'validator_address', 'operator_address', 'avs_id')
    @classmethod
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('Position identifiers must not be blank')
        return v.strip()

    @property
    def value(self) -> float:
        return float(self.staked_value)


# Provider Models
class SlashingEvent(FrozenModel):
    id: str
    validator_address: str
    avs_id: Optional[str] = None
    amount: float = 0.0  # ETH lost
    reason: Optional[str] = None
    timestamp: datetime

    @field_validator('timestamp')
    @classmethod
    def timestamp_in_utc(cls, v):
        return ensure_utc(v)


class ValidatorMetrics(FrozenModel):
    validator_address: str
    attestation_rate: float = Field(ge=0, le=1)
    uptime_history: List[Annotated[float, Field(ge=0, le=1)]] = []  # fraction online per window slot
    slashing_events: List[SlashingEvent] = []
    client_diversity: float = Field(default=1.0, ge=0, le=1)
    commission: float = 0.0
    total_epochs: int = 0


class OperatorMetrics(FrozenModel):
    operator_address: str
    slashing_event_count: int = Field(default=0, ge=0)
    active_days: int = Field(default=0, ge=0)


class AVSMetrics(FrozenModel):
    avs_id: str
    name: Optional[str] = None
    base_slashing_probability: float = 0.01
    max_slashing_percent: float = 0.05
    operator_count: int = 0
    total_staked: float = 0.0
    audit_score: float = Field(default=0.0, ge=0, le=1)
    governance_risk: float = Field(default=0.0, ge=0, le=1)
    slashing_conditions: List[Dict[str, Any]] = []


class ProtocolLiquidity(FrozenModel):
    protocol_id: str
    available_liquidity: float = Field(ge=0)
    exit_queue_days: float = Field(default=0.0, ge=0)
    dex_depth_usd: float = Field(default=0.0, ge=0)
    large_holder_share: float = Field(default=0.0, ge=0, le=1)


class MarketConditions(FrozenModel):
    volatility: Optional[float] = None  # annualized
    price_history: List[float] = []  # daily closes, used when volatility is absent
    eth_correlation: float = 0.0
    risk_asset_correlation: float = 0.0
    liquidity_ratio: float = 1.0
    regulatory_risk: float = Field(default=0.0, ge=0, le=1)
    rate_level: float = 0.0
    sentiment: float = Field(default=50.0, ge=0, le=100)  # fear & greed index
    correlations: Dict[str, Dict[str, float]] = {}  # protocol -> protocol -> corr


# Risk Models
class ComponentBreakdown(FrozenModel):
    slashing: float
    liquidity: float
    concentration: float
    market: float
    multiplier: float = 1.0

    def total(self) -> float:
        return self.slashing + self.liquidity + self.concentration + self.market


class SlashingRiskDetail(FrozenModel):
    probability: float
    potential_loss: float
    risk_score: float
    time_horizon: str = "30d"
    confidence_level: float = 0.95


class LiquidityRiskDetail(FrozenModel):
    available_liquidity: float
    utilization_rate: float
    withdrawal_delay_days: float
    risk_score: float


class ConcentrationRiskDetail(FrozenModel):
    protocol_concentration: float
    operator_concentration: float
    avs_concentration: float
    diversification_score: float
    largest_protocol_share: float = 0.0
    risk_score: float = 0.0


class MarketRiskDetail(FrozenModel):
    volatility: Optional[float] = None
    volatility_risk: float
    correlation_risk: float
    liquidity_ratio_risk: float
    macro_risk: float
    risk_score: float


class ValidatorRisk(FrozenModel):
    validator_address: str
    risk_score: float  # 0-1
    slashing_history: List[SlashingEvent] = []
    performance: Optional[float] = None
    uptime: Optional[float] = None
    commission: Optional[float] = None
    staked_amount: float
    data_available: bool = True


class AVSRisk(FrozenModel):
    avs_id: str
    name: str
    risk_score: float  # 0-1
    operator_count: int = 0
    total_staked: float = 0.0
    audit_score: Optional[float] = None
    governance_risk: Optional[float] = None
    data_available: bool = True


class RiskMetadata(FrozenModel):
    calculation_version: str = "1.0"
    data_quality: float = 1.0
    uncertainty: float = 0.0
    rejected_positions: int = 0
    unavailable_sources: List[str] = []
    failed_components: List[str] = []
    invariant_violations: List[str] = []


class RiskMetrics(FrozenModel):
    user_address: str
    overall_risk_score: float  # 0-100
    risk_level: str
    component_breakdown: ComponentBreakdown
    slashing_risk: Optional[SlashingRiskDetail] = None
    liquidity_risk: Optional[LiquidityRiskDetail] = None
    concentration_risk: Optional[ConcentrationRiskDetail] = None
    market_risk: Optional[MarketRiskDetail] = None
    validator_risks: List[ValidatorRisk] = []
    avs_risks: List[AVSRisk] = []
    total_staked: float = 0.0
    last_updated: datetime
    metadata: RiskMetadata = Field(default_factory=RiskMetadata)

    @field_validator('risk_level')
    @classmethod
    def known_level(cls, v):
        if v not in (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL):
            raise ValueError(f'Unknown risk level {v}')
        return v


class RiskAlert(FrozenModel):
    id: str
    type: str
    severity: str
    title: str
    message: str
    timestamp: datetime
    action_required: bool = True
    suggested_actions: Tuple[str, ...] = ()
    data: Dict[str, Any] = {}

    @field_validator('severity')
    @classmethod
    def known_severity(cls, v):
        allowed = (RiskSeverity.INFO, RiskSeverity.LOW, RiskSeverity.MEDIUM,
                   RiskSeverity.HIGH, RiskSeverity.CRITICAL)
        if v not in allowed:
            raise ValueError(f'Unknown severity {v}')
        return v


# Configuration Models
class RiskProfile(FrozenModel):
    max_risk_score: float = 80.0
    warning_threshold: float = 70.0
    rebalance_threshold: float = 75.0
    emergency_exit_threshold: float = 90.0

    @model_validator(mode='after')
    def thresholds_are_ordered(self):
        if not (self.warning_threshold <= self.rebalance_threshold <= self.emergency_exit_threshold):
            raise ValueError('Thresholds must satisfy warning <= rebalance <= emergency exit')
        return self


class ActionRecommendation(FrozenModel):
    user_address: str
    action: str
    risk_score: float
    threshold: Optional[float] = None
    exceeds_tolerance: bool = False
    reason: str
    timestamp: datetime


class RiskAssessment(FrozenModel):
    metrics: RiskMetrics
    alerts: List[RiskAlert] = []
    recommendation: ActionRecommendation
