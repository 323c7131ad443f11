from typing import Dict, List, Optional, Tuple

import numpy as np
import structlog

from .config import Component, ScoringPolicy
from .errors import Result
from .models import (
    AVSMetrics, AVSRisk, OperatorMetrics, SlashingRiskDetail,
    ValidatorMetrics, ValidatorRisk
)
from .snapshot import ComponentResult, PortfolioSnapshot

logger = structlog.get_logger()


class SlashingRiskCalculator:
    """Validator performance and operator reputation -> bounded slashing score"""

    def __init__(self, policy: ScoringPolicy):
        self.policy = policy
        self.rules = policy.slashing

    def score_validator(
        self,
        validator: ValidatorMetrics,
        operator: Optional[OperatorMetrics] = None
    ) -> float:
        """Score one validator in [0, max_component].

        An unknown operator is scored as inexperienced with no slashing record.
        """
        rules = self.rules

        performance_risk = max(0.0, rules.performance_base - validator.attestation_rate * rules.performance_scale)

        event_count = len(validator.slashing_events)
        if operator is not None:
            event_count += operator.slashing_event_count
        reputation_risk = event_count * rules.penalty_per_event
        if operator is None or operator.active_days < rules.min_operator_active_days:
            reputation_risk += rules.inexperienced_operator_penalty

        technical_risk = max(0.0, rules.technical_base - validator.client_diversity * rules.technical_scale)

        if validator.uptime_history:
            uptime = np.asarray(validator.uptime_history, dtype=float)
            uptime_risk = float(np.mean(np.maximum(0.0, rules.uptime_base - uptime * rules.uptime_scale)))
        else:
            # No uptime window means no evidence the validator was online
            uptime_risk = rules.uptime_base

        total = performance_risk + reputation_risk + technical_risk + uptime_risk
        return float(min(self.policy.max_component, max(0.0, total)))

    def score_avs(self, avs: AVSMetrics) -> float:
        """AVS risk on a 0-1 scale, used for reporting"""
        rules = self.rules
        probability_risk = min(1.0, avs.base_slashing_probability * rules.avs_probability_scale)
        score = (
            rules.avs_audit_weight * (1.0 - avs.audit_score) +
            rules.avs_governance_weight * avs.governance_risk +
            rules.avs_probability_weight * probability_risk
        )
        return float(min(1.0, max(0.0, score)))

    def _position_scores(self, snapshot: PortfolioSnapshot) -> Tuple[List[float], int]:
        scores = []
        missing = 0
        for position in snapshot.positions:
            validator = snapshot.validator(position.validator_address)
            if not validator.ok:
                missing += 1
                scores.append(self.policy.max_component)
                continue
            operator = snapshot.operator(position.operator_address)
            scores.append(self.score_validator(validator.value, operator.value if operator.ok else None))
        return scores, missing

    def _detail(self, snapshot: PortfolioSnapshot, score: float) -> SlashingRiskDetail:
        rules = self.rules
        total = snapshot.total_staked
        weighted_probability = 0.0
        potential_loss = 0.0

        for position in snapshot.positions:
            validator = snapshot.validator(position.validator_address)
            avs = snapshot.avs_metrics(position.avs_id)

            if validator.ok and avs.ok:
                history = validator.value
                historical = len(history.slashing_events) / max(history.total_epochs, 1)
                probability = min(historical + avs.value.base_slashing_probability, rules.max_probability)
            else:
                probability = rules.max_probability

            max_slash = avs.value.max_slashing_percent if avs.ok else 1.0
            weighted_probability += probability * position.value
            potential_loss += position.value * max_slash

        return SlashingRiskDetail(
            probability=weighted_probability / total if total > 0 else 0.0,
            potential_loss=potential_loss,
            risk_score=score
        )

    def validator_risks(self, snapshot: PortfolioSnapshot) -> List[ValidatorRisk]:
        """Per-validator risk on a 0-1 scale, stake aggregated per validator"""
        stakes: Dict[str, float] = {}
        operators: Dict[str, str] = {}
        for position in snapshot.positions:
            stakes[position.validator_address] = stakes.get(position.validator_address, 0.0) + position.value
            operators.setdefault(position.validator_address, position.operator_address)

        risks = []
        for address in sorted(stakes):
            validator = snapshot.validator(address)
            if not validator.ok:
                risks.append(ValidatorRisk(
                    validator_address=address,
                    risk_score=1.0,
                    staked_amount=stakes[address],
                    data_available=False
                ))
                continue

            metrics = validator.value
            operator = snapshot.operator(operators[address])
            score = self.score_validator(metrics, operator.value if operator.ok else None)
            risks.append(ValidatorRisk(
                validator_address=address,
                risk_score=score / self.policy.max_component,
                slashing_history=metrics.slashing_events,
                performance=metrics.attestation_rate,
                uptime=float(np.mean(metrics.uptime_history)) if metrics.uptime_history else None,
                commission=metrics.commission,
                staked_amount=stakes[address]
            ))
        return risks

    def avs_risks(self, snapshot: PortfolioSnapshot) -> List[AVSRisk]:
        risks = []
        for avs_id in sorted({p.avs_id for p in snapshot.positions}):
            avs = snapshot.avs_metrics(avs_id)
            if not avs.ok:
                risks.append(AVSRisk(avs_id=avs_id, name=avs_id, risk_score=1.0, data_available=False))
                continue
            metrics = avs.value
            risks.append(AVSRisk(
                avs_id=avs_id,
                name=metrics.name or avs_id,
                risk_score=self.score_avs(metrics),
                operator_count=metrics.operator_count,
                total_staked=metrics.total_staked,
                audit_score=metrics.audit_score,
                governance_risk=metrics.governance_risk
            ))
        return risks

    def calculate(self, snapshot: PortfolioSnapshot) -> Result[ComponentResult]:
        """Stake-weighted slashing score across all positions"""
        if not snapshot.positions:
            return Result.success(ComponentResult(
                name=Component.SLASHING,
                score=0.0,
                detail=SlashingRiskDetail(probability=0.0, potential_loss=0.0, risk_score=0.0)
            ))

        scores, missing = self._position_scores(snapshot)
        total = snapshot.total_staked
        if total > 0:
            weights = [p.value for p in snapshot.positions]
            score = float(np.average(scores, weights=weights))
        else:
            score = 0.0

        if missing:
            logger.warning("Validator data missing, scoring positions worst-case",
                           user_address=snapshot.user_address, missing_positions=missing)

        return Result.success(ComponentResult(
            name=Component.SLASHING,
            score=score,
            data_quality=1.0 - missing / len(snapshot.positions),
            detail=self._detail(snapshot, score),
            extras={
                "validator_risks": self.validator_risks(snapshot),
                "avs_risks": self.avs_risks(snapshot)
            }
        ))
