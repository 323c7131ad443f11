from typing import Optional

import numpy as np
import structlog

from .config import Component, ScoringPolicy
from .errors import Result
from .models import LiquidityRiskDetail, ProtocolLiquidity
from .snapshot import ComponentResult, PortfolioSnapshot

logger = structlog.get_logger()


class LiquidityRiskCalculator:
    """Protocol utilization, DEX depth, exit queue and holder concentration"""

    def __init__(self, policy: ScoringPolicy):
        self.policy = policy
        self.rules = policy.liquidity

    def utilization_risk(self, utilization: float) -> float:
        return min(self.rules.utilization_cap, max(0.0, utilization) * self.rules.utilization_scale)

    def dex_depth_risk(self, depth_usd: float) -> float:
        """Linear ramp from zero at the minimum depth to the cap at zero depth"""
        threshold = self.rules.min_dex_depth_usd
        if threshold <= 0 or depth_usd >= threshold:
            return 0.0
        return self.rules.dex_depth_cap * (1.0 - max(0.0, depth_usd) / threshold)

    def exit_queue_risk(self, queue_days: float) -> float:
        return min(self.rules.exit_queue_cap, queue_days * self.rules.exit_queue_scale)

    def holder_concentration_risk(self, large_holder_share: float) -> float:
        return min(self.rules.holder_concentration_cap, large_holder_share * self.rules.holder_concentration_scale)

    def _position_terms(self, liquidity: Optional[ProtocolLiquidity]):
        # Missing protocol data scores every per-position term at its cap
        if liquidity is None:
            return self.rules.dex_depth_cap, self.rules.exit_queue_cap, self.rules.holder_concentration_cap
        return (
            self.dex_depth_risk(liquidity.dex_depth_usd),
            self.exit_queue_risk(liquidity.exit_queue_days),
            self.holder_concentration_risk(liquidity.large_holder_share),
        )

    def calculate(self, snapshot: PortfolioSnapshot) -> Result[ComponentResult]:
        total_staked = snapshot.total_staked
        if not snapshot.positions or total_staked <= 0:
            return Result.success(ComponentResult(
                name=Component.LIQUIDITY,
                score=0.0,
                detail=LiquidityRiskDetail(
                    available_liquidity=0.0, utilization_rate=0.0,
                    withdrawal_delay_days=0.0, risk_score=0.0
                )
            ))

        available = 0.0
        missing = 0
        weights = []
        terms = []
        delays = []
        for position in snapshot.positions:
            protocol = snapshot.protocol(position.protocol_id)
            liquidity = protocol.value if protocol.ok else None
            if liquidity is None:
                missing += 1
            else:
                available += min(position.value, liquidity.available_liquidity)

            weights.append(position.value)
            terms.append(self._position_terms(liquidity))
            delays.append(liquidity.exit_queue_days if liquidity else self.rules.exit_queue_cap / self.rules.exit_queue_scale)

        utilization = 1.0 - available / total_staked
        depth_risk, queue_risk, holder_risk = (float(x) for x in np.average(np.asarray(terms), axis=0, weights=weights))

        score = self.utilization_risk(utilization) + depth_risk + queue_risk + holder_risk
        score = float(min(self.policy.max_component, max(0.0, score)))

        if missing:
            logger.warning("Protocol liquidity data missing, assuming no exit liquidity",
                           user_address=snapshot.user_address, missing_positions=missing)

        return Result.success(ComponentResult(
            name=Component.LIQUIDITY,
            score=score,
            data_quality=1.0 - missing / len(snapshot.positions),
            detail=LiquidityRiskDetail(
                available_liquidity=available,
                utilization_rate=utilization,
                withdrawal_delay_days=float(np.average(delays, weights=weights)),
                risk_score=score
            )
        ))
