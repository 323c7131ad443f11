import math
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import structlog

from .config import Component, ScoringPolicy
from .errors import DataUnavailable, Result
from .models import MarketConditions, MarketRiskDetail
from .snapshot import ComponentResult, PortfolioSnapshot

logger = structlog.get_logger()


def annualized_volatility(prices: Sequence[float], periods_per_year: int = 365) -> Optional[float]:
    """Realized volatility of daily closes, annualized. None with fewer than three prices."""
    if len(prices) < 3:
        return None
    df = pd.DataFrame({"price": list(prices)})
    returns = df["price"].pct_change().dropna()
    daily_vol = float(np.std(returns.values, ddof=1))
    return daily_vol * math.sqrt(periods_per_year)


class MarketRiskCalculator:
    """Volatility, correlation, liquidity ratio and macro factors"""

    def __init__(self, policy: ScoringPolicy):
        self.policy = policy
        self.rules = policy.market

    def volatility(self, conditions: MarketConditions) -> Optional[float]:
        if conditions.volatility is not None:
            return conditions.volatility
        return annualized_volatility(conditions.price_history, self.rules.trading_days_per_year)

    def score_conditions(self, conditions: MarketConditions) -> MarketRiskDetail:
        rules = self.rules

        volatility = self.volatility(conditions)
        if volatility is None:
            # Unknown volatility scores at the cap
            volatility_risk = rules.volatility_cap
        else:
            volatility_risk = min(rules.volatility_cap, max(0.0, volatility) * rules.volatility_scale)

        correlation_risk = min(rules.correlation_cap, max(0.0, conditions.risk_asset_correlation) * rules.correlation_scale)

        liquidity_ratio_risk = (
            rules.liquidity_ratio_penalty
            if conditions.liquidity_ratio < rules.liquidity_ratio_threshold else 0.0
        )

        macro_risk = min(
            rules.macro_cap,
            rules.regulatory_weight * conditions.regulatory_risk + rules.rate_weight * max(0.0, conditions.rate_level)
        )

        score = (
            rules.volatility_weight * volatility_risk +
            rules.correlation_weight * correlation_risk +
            rules.liquidity_ratio_weight * liquidity_ratio_risk +
            rules.macro_weight * macro_risk
        )
        score = float(min(self.policy.max_component, max(0.0, score)))

        return MarketRiskDetail(
            volatility=volatility,
            volatility_risk=volatility_risk,
            correlation_risk=correlation_risk,
            liquidity_ratio_risk=liquidity_ratio_risk,
            macro_risk=macro_risk,
            risk_score=score
        )

    def calculate(self, snapshot: PortfolioSnapshot) -> Result[ComponentResult]:
        if not snapshot.positions or snapshot.total_staked <= 0:
            return Result.success(ComponentResult(name=Component.MARKET, score=0.0))

        if not snapshot.market.ok:
            error = snapshot.market.error
            logger.warning("Market conditions unavailable", user_address=snapshot.user_address, error=str(error))
            return Result.failure(error if isinstance(error, DataUnavailable)
                                  else DataUnavailable(str(error), source="market:conditions"))

        detail = self.score_conditions(snapshot.market.value)
        quality = 1.0 if detail.volatility is not None else 0.75

        return Result.success(ComponentResult(
            name=Component.MARKET,
            score=detail.risk_score,
            data_quality=quality,
            detail=detail
        ))
