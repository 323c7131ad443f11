"""
Composite risk: bounded sum of the four component scores, a market-regime
multiplier that can only inflate the result, and the risk-level step function.
"""
import math
from itertools import combinations
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import structlog

from .config import Component, RiskLevel, ScoringPolicy
from .errors import ComputationInvariantViolation, Result
from .models import (
    ComponentBreakdown, MarketConditions, RiskMetadata, RiskMetrics
)
from .snapshot import ComponentResult, PortfolioSnapshot

logger = structlog.get_logger()


def classify(score: float, policy: ScoringPolicy) -> str:
    """Monotonic step function; each band includes its upper boundary"""
    if score <= policy.low_ceiling:
        return RiskLevel.LOW
    if score <= policy.medium_ceiling:
        return RiskLevel.MEDIUM
    if score <= policy.high_ceiling:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def mean_pairwise_correlation(protocols: Sequence[str], correlations: Mapping[str, Mapping[str, float]]) -> Optional[float]:
    """Average correlation across every pair of held protocols that has a reading"""
    readings = []
    for a, b in combinations(sorted(set(protocols)), 2):
        value = correlations.get(a, {}).get(b)
        if value is None:
            value = correlations.get(b, {}).get(a)
        if value is not None:
            readings.append(value)
    if not readings:
        return None
    return float(np.mean(readings))


class RiskAggregator:
    def __init__(self, policy: ScoringPolicy, strict_invariants: bool = False):
        self.policy = policy
        self.strict_invariants = strict_invariants

    def enforce_bound(self, component: str, value: float, violations: List[str]) -> float:
        """Clamp a component score for callers, reporting any out-of-bound value as a defect"""
        upper = self.policy.max_component
        if not math.isnan(value) and 0.0 <= value <= upper:
            return value

        violation = ComputationInvariantViolation(component, value, upper)
        logger.error("Component score outside bound", component=component, value=value, upper=upper)
        if self.strict_invariants:
            raise violation
        violations.append(str(violation))
        if math.isnan(value):
            return upper
        return min(upper, max(0.0, value))

    def regime_multiplier(self, conditions: Optional[MarketConditions], protocols: Sequence[str]) -> float:
        """Product of the fear/greed and correlation-clustering factors, never below 1.0"""
        if conditions is None:
            return 1.0

        regime = self.policy.regime
        multiplier = 1.0
        if conditions.sentiment <= regime.extreme_fear_sentiment:
            multiplier *= regime.fear_multiplier
        elif conditions.sentiment >= regime.extreme_greed_sentiment:
            multiplier *= regime.greed_multiplier

        correlation = mean_pairwise_correlation(protocols, conditions.correlations)
        if correlation is not None and correlation > regime.correlation_threshold:
            multiplier *= regime.correlation_multiplier

        return max(1.0, multiplier)

    def compose(self, breakdown: ComponentBreakdown) -> float:
        """Composite score reproduced from a breakdown alone"""
        return float(min(self.policy.max_score, max(0.0, breakdown.total() * breakdown.multiplier)))

    def aggregate(
        self,
        snapshot: PortfolioSnapshot,
        results: Mapping[str, Result[ComponentResult]]
    ) -> RiskMetrics:
        """Combine all four component results into RiskMetrics.

        A failed component scores max_component and lowers data quality. Every
        component must be present; there is no partial aggregation.
        """
        missing = [name for name in Component.ALL if name not in results]
        if missing:
            raise ValueError(f"Cannot aggregate without components: {missing}")

        violations: List[str] = []
        failed: List[str] = []
        scores: Dict[str, float] = {}
        qualities: List[float] = []
        details: Dict[str, object] = {}
        component_values: Dict[str, ComponentResult] = {}

        for name in Component.ALL:
            result = results[name]
            if result.ok:
                component = result.value
                component_values[name] = component
                scores[name] = self.enforce_bound(name, component.score, violations)
                qualities.append(max(0.0, min(1.0, component.data_quality)))
                details[name] = component.detail
            else:
                logger.warning("Component failed, scoring worst-case",
                               component=name, user_address=snapshot.user_address, error=str(result.error))
                failed.append(name)
                scores[name] = self.policy.max_component
                qualities.append(0.0)
                details[name] = None

        # Positions worth nothing score like an empty portfolio
        has_stake = bool(snapshot.positions) and snapshot.total_staked > 0
        protocols = [p.protocol_id for p in snapshot.positions]
        conditions = snapshot.market.value if snapshot.market.ok else None
        multiplier = self.regime_multiplier(conditions, protocols) if has_stake else 1.0

        breakdown = ComponentBreakdown(
            slashing=scores[Component.SLASHING],
            liquidity=scores[Component.LIQUIDITY],
            concentration=scores[Component.CONCENTRATION],
            market=scores[Component.MARKET],
            multiplier=multiplier
        )
        overall = self.compose(breakdown)

        data_quality = float(np.mean(qualities)) if has_stake else 1.0
        if snapshot.rejected_positions:
            accepted = len(snapshot.positions)
            data_quality *= accepted / (accepted + snapshot.rejected_positions)

        slashing = component_values.get(Component.SLASHING)
        extras = slashing.extras if slashing else {}

        metrics = RiskMetrics(
            user_address=snapshot.user_address,
            overall_risk_score=overall,
            risk_level=classify(overall, self.policy),
            component_breakdown=breakdown,
            slashing_risk=details[Component.SLASHING],
            liquidity_risk=details[Component.LIQUIDITY],
            concentration_risk=details[Component.CONCENTRATION],
            market_risk=details[Component.MARKET],
            validator_risks=extras.get("validator_risks", []),
            avs_risks=extras.get("avs_risks", []),
            total_staked=snapshot.total_staked,
            last_updated=snapshot.as_of,
            metadata=RiskMetadata(
                data_quality=data_quality,
                uncertainty=1.0 - data_quality,
                rejected_positions=snapshot.rejected_positions,
                unavailable_sources=snapshot.unavailable_sources(),
                failed_components=failed,
                invariant_violations=violations
            )
        )

        logger.info("Risk metrics aggregated", user_address=snapshot.user_address,
                    overall_score=round(overall, 2), risk_level=metrics.risk_level,
                    multiplier=multiplier, data_quality=round(data_quality, 3))
        return metrics
