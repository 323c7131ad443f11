"""
Restake Risk - risk scoring engine for restaking portfolios

Turns a user's staking positions, validator / operator / AVS telemetry and
market conditions into a bounded, auditable risk assessment.

Key Features:
- Four bounded component scores: slashing, liquidity, concentration, market
- Composite 0-100 score with market-regime multiplier and risk levels
- Herfindahl-Hirschman concentration over protocol, operator and AVS
- Deterministic alert rules for risky validators, concentration and slashing
- Automated action recommendations (warn / rebalance / emergency exit)
- Fail-safe-high handling of missing provider data
- TTL result caching (Redis or in-memory) with in-flight deduplication
- Structured logging with structlog

Version: 1.0.0
"""

__version__ = "1.0.0"

from .actions import AutomatedActionPolicy, RiskAction
from .config import ScoringPolicy, Settings, get_settings
from .engine import RiskEngine
from .logging_config import configure_logging
from .errors import (
    ComputationInvariantViolation, DataUnavailable, InvalidInput, Result, RiskEngineError
)
from .models import (
    ActionRecommendation, RiskAlert, RiskAssessment, RiskMetrics, RiskProfile, StakingPosition
)

__all__ = [
    "RiskEngine",
    "RiskProfile",
    "RiskMetrics",
    "RiskAlert",
    "RiskAssessment",
    "ActionRecommendation",
    "StakingPosition",
    "AutomatedActionPolicy",
    "RiskAction",
    "ScoringPolicy",
    "Settings",
    "get_settings",
    "configure_logging",
    "RiskEngineError",
    "DataUnavailable",
    "InvalidInput",
    "ComputationInvariantViolation",
    "Result",
]
