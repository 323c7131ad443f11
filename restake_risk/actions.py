from datetime import datetime
from typing import Optional

import structlog

from .models import ActionRecommendation, RiskProfile

logger = structlog.get_logger()


class RiskAction:
    NONE = "none"
    WARN = "warn"
    REBALANCE = "rebalance"
    EMERGENCY_EXIT = "emergency_exit"


class AutomatedActionPolicy:
    """Maps a composite score to exactly one recommended action.

    Thresholds are checked highest first. The policy only recommends; executing
    an exit or a rebalance belongs to whoever consumes the recommendation.
    """

    def __init__(self, profile: Optional[RiskProfile] = None):
        self.profile = profile or RiskProfile()

    def recommend(
        self,
        user_address: str,
        score: float,
        timestamp: datetime,
        profile: Optional[RiskProfile] = None
    ) -> ActionRecommendation:
        profile = profile or self.profile

        if score >= profile.emergency_exit_threshold:
            action, threshold = RiskAction.EMERGENCY_EXIT, profile.emergency_exit_threshold
            reason = f"Risk score {score:.1f} reached emergency exit threshold {threshold:.1f}"
        elif score >= profile.rebalance_threshold:
            action, threshold = RiskAction.REBALANCE, profile.rebalance_threshold
            reason = f"Risk score {score:.1f} reached rebalance threshold {threshold:.1f}"
        elif score >= profile.warning_threshold:
            action, threshold = RiskAction.WARN, profile.warning_threshold
            reason = f"Risk score {score:.1f} reached warning threshold {threshold:.1f}"
        else:
            action, threshold = RiskAction.NONE, None
            reason = f"Risk score {score:.1f} is below all action thresholds"

        if action != RiskAction.NONE:
            logger.warning("Automated action recommended", user_address=user_address,
                           action=action, risk_score=round(score, 2), threshold=threshold)

        return ActionRecommendation(
            user_address=user_address,
            action=action,
            risk_score=score,
            threshold=threshold,
            exceeds_tolerance=score > profile.max_risk_score,
            reason=reason,
            timestamp=timestamp
        )
