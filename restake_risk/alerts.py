from datetime import timedelta
from typing import List, Optional

import structlog

from .config import AlertType, RiskSeverity, ScoringPolicy
from .models import (
    ConcentrationRiskDetail, LiquidityRiskDetail, RiskAlert, SlashingEvent, ValidatorRisk
)
from .snapshot import PortfolioSnapshot

logger = structlog.get_logger()


class AlertGenerator:
    """Threshold rules over the same inputs the calculators see.

    Rules are independent and every match fires, so a single dominant risk
    raises an alert even when the composite score is moderate.
    """

    def __init__(self, policy: ScoringPolicy, lookback_days: int = 7):
        self.policy = policy
        self.rules = policy.alerts
        self.lookback = timedelta(days=lookback_days)

    def validator_alerts(self, snapshot: PortfolioSnapshot, validator_risks: List[ValidatorRisk]) -> List[RiskAlert]:
        alerts = []
        for validator in validator_risks:
            if validator.risk_score > self.rules.validator_critical:
                severity = RiskSeverity.CRITICAL
            elif validator.risk_score > self.rules.validator_high:
                severity = RiskSeverity.HIGH
            else:
                continue

            alerts.append(RiskAlert(
                id=f"validator-risk-{validator.validator_address}",
                type=AlertType.VALIDATOR_RISK,
                severity=severity,
                title="High Risk Validator Detected",
                message=(
                    f"Validator {validator.validator_address} has elevated slashing risk "
                    f"({validator.risk_score * 100:.1f}%)"
                ),
                timestamp=snapshot.as_of,
                data={"validator": validator.model_dump(mode="json")},
                suggested_actions=(
                    "Consider reducing stake with this validator",
                    "Monitor validator performance closely",
                    "Diversify stake across multiple validators",
                )
            ))
        return alerts

    def concentration_alerts(self, snapshot: PortfolioSnapshot,
                             concentration: Optional[ConcentrationRiskDetail]) -> List[RiskAlert]:
        if concentration is None or concentration.protocol_concentration <= self.rules.protocol_concentration:
            return []
        return [RiskAlert(
            id=f"concentration-protocol-{snapshot.user_address}",
            type=AlertType.CONCENTRATION_RISK,
            severity=RiskSeverity.MEDIUM,
            title="High Protocol Concentration",
            message=f"Over {self.rules.protocol_concentration:.0%} of stake concentrated in a single protocol",
            timestamp=snapshot.as_of,
            data={
                "concentration": concentration.protocol_concentration,
                "largest_protocol_share": concentration.largest_protocol_share,
            },
            suggested_actions=(
                "Diversify across multiple protocols",
                "Consider rebalancing portfolio",
            )
        )]

    def recent_slashing_events(self, snapshot: PortfolioSnapshot) -> List[SlashingEvent]:
        """Slashing events inside the lookback window, one entry per event id"""
        cutoff = snapshot.as_of - self.lookback
        events = {}
        for address in sorted({p.validator_address for p in snapshot.positions}):
            validator = snapshot.validator(address)
            if not validator.ok:
                continue
            for event in validator.value.slashing_events:
                if cutoff <= event.timestamp <= snapshot.as_of:
                    events.setdefault(event.id, event)
        return sorted(events.values(), key=lambda e: (e.timestamp, e.id))

    def slashing_alerts(self, snapshot: PortfolioSnapshot) -> List[RiskAlert]:
        alerts = []
        for event in self.recent_slashing_events(snapshot):
            alerts.append(RiskAlert(
                id=f"slashing-{event.id}",
                type=AlertType.SLASHING_EVENT,
                severity=RiskSeverity.CRITICAL,
                title="Slashing Event Detected",
                message=f"Slashing event occurred: {event.amount} ETH lost",
                timestamp=event.timestamp,
                data={"event": event.model_dump(mode="json")},
                suggested_actions=(
                    "Review validator selection",
                    "Consider unstaking from affected validator",
                    "Update risk parameters",
                )
            ))
        return alerts

    def liquidity_alerts(self, snapshot: PortfolioSnapshot,
                         liquidity: Optional[LiquidityRiskDetail]) -> List[RiskAlert]:
        threshold = self.policy.liquidity.alert_utilization
        if liquidity is None or liquidity.utilization_rate <= threshold:
            return []
        return [RiskAlert(
            id=f"liquidity-utilization-{snapshot.user_address}",
            type=AlertType.LIQUIDITY_RISK,
            severity=RiskSeverity.MEDIUM,
            title="Low Exit Liquidity",
            message=(
                f"{liquidity.utilization_rate:.0%} of stake could not be withdrawn "
                f"from available protocol liquidity"
            ),
            timestamp=snapshot.as_of,
            data={
                "utilization_rate": liquidity.utilization_rate,
                "available_liquidity": liquidity.available_liquidity,
                "withdrawal_delay_days": liquidity.withdrawal_delay_days,
            },
            suggested_actions=(
                "Stagger withdrawals to avoid the exit queue",
                "Move part of the stake to protocols with deeper liquidity",
            )
        )]

    def generate(
        self,
        snapshot: PortfolioSnapshot,
        validator_risks: List[ValidatorRisk],
        concentration: Optional[ConcentrationRiskDetail],
        liquidity: Optional[LiquidityRiskDetail] = None
    ) -> List[RiskAlert]:
        """All matching alerts, in rule order"""
        if not snapshot.positions or snapshot.total_staked <= 0:
            return []

        alerts: List[RiskAlert] = []
        alerts.extend(self.validator_alerts(snapshot, validator_risks))
        alerts.extend(self.concentration_alerts(snapshot, concentration))
        alerts.extend(self.slashing_alerts(snapshot))
        alerts.extend(self.liquidity_alerts(snapshot, liquidity))

        if alerts:
            logger.info("Risk alerts generated", user_address=snapshot.user_address,
                        alert_count=len(alerts),
                        critical_count=sum(1 for a in alerts if a.severity == RiskSeverity.CRITICAL))
        return alerts
