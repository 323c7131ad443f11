from typing import Callable, Dict, Mapping

import structlog

from .config import Component, ScoringPolicy
from .errors import Result
from .models import ConcentrationRiskDetail, StakingPosition
from .snapshot import ComponentResult, PortfolioSnapshot

logger = structlog.get_logger()


def distribution(positions, key: Callable[[StakingPosition], str]) -> Dict[str, float]:
    """Aggregate staked value per dimension key"""
    values: Dict[str, float] = {}
    for position in positions:
        values[key(position)] = values.get(key(position), 0.0) + position.value
    return values


def herfindahl_index(values: Mapping[str, float]) -> float:
    """Sum of squared shares. Zero when there is nothing staked."""
    total = sum(values.values())
    if total <= 0:
        return 0.0
    return sum((value / total) ** 2 for value in values.values())


class ConcentrationRiskCalculator:
    """HHI over protocol, operator and AVS dimensions"""

    def __init__(self, policy: ScoringPolicy):
        self.policy = policy

    def calculate(self, snapshot: PortfolioSnapshot) -> Result[ComponentResult]:
        by_protocol = distribution(snapshot.positions, lambda p: p.protocol_id)
        by_operator = distribution(snapshot.positions, lambda p: p.operator_address)
        by_avs = distribution(snapshot.positions, lambda p: p.avs_id)

        protocol_hhi = herfindahl_index(by_protocol)
        operator_hhi = herfindahl_index(by_operator)
        avs_hhi = herfindahl_index(by_avs)
        mean_hhi = (protocol_hhi + operator_hhi + avs_hhi) / 3

        total = snapshot.total_staked
        largest_share = max(by_protocol.values()) / total if total > 0 else 0.0
        score = self.policy.max_component * mean_hhi
        diversification = 1.0 - mean_hhi

        logger.debug("Concentration computed", user_address=snapshot.user_address,
                     protocol_hhi=protocol_hhi, operator_hhi=operator_hhi, avs_hhi=avs_hhi)

        return Result.success(ComponentResult(
            name=Component.CONCENTRATION,
            score=score,
            detail=ConcentrationRiskDetail(
                protocol_concentration=protocol_hhi,
                operator_concentration=operator_hhi,
                avs_concentration=avs_hhi,
                diversification_score=diversification,
                largest_protocol_share=largest_share,
                risk_score=score
            )
        ))
