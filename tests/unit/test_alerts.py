from datetime import timedelta

import pytest

from restake_risk.alerts import AlertGenerator
from restake_risk.config import AlertType, RiskSeverity
from restake_risk.models import ConcentrationRiskDetail, LiquidityRiskDetail, SlashingEvent, ValidatorRisk
from restake_risk.snapshot import PortfolioSnapshot


@pytest.fixture
def generator(policy):
    return AlertGenerator(policy, lookback_days=7)


@pytest.fixture
def diversified():
    return ConcentrationRiskDetail(
        protocol_concentration=0.3,
        operator_concentration=0.3,
        avs_concentration=0.3,
        diversification_score=0.7,
        risk_score=7.5
    )


def snapshot_with_events(snapshot, validator, events):
    return PortfolioSnapshot.build(
        snapshot.user_address,
        snapshot.positions,
        validators={"0xvalidator1": validator.model_copy(update={"slashing_events": events})},
        market=snapshot.market,
        as_of=snapshot.as_of
    )


class TestValidatorAlerts:

    @pytest.mark.parametrize("risk,severity", [
        (0.95, RiskSeverity.CRITICAL),
        (0.81, RiskSeverity.CRITICAL),
        (0.8, RiskSeverity.HIGH),
        (0.65, RiskSeverity.HIGH),
    ])
    def test_risky_validator_alerts(self, generator, swell_snapshot, risk, severity):
        risks = [ValidatorRisk(validator_address="0xvalidator1", risk_score=risk, staked_amount=32.0)]

        alerts = generator.validator_alerts(swell_snapshot, risks)

        assert len(alerts) == 1
        assert alerts[0].severity == severity
        assert alerts[0].type == AlertType.VALIDATOR_RISK
        assert alerts[0].id == "validator-risk-0xvalidator1"

    def test_safe_validator_is_quiet(self, generator, swell_snapshot):
        risks = [ValidatorRisk(validator_address="0xvalidator1", risk_score=0.6, staked_amount=32.0)]

        assert generator.validator_alerts(swell_snapshot, risks) == []


class TestConcentrationAlerts:

    def test_concentrated_protocol_alerts(self, generator, swell_snapshot):
        detail = ConcentrationRiskDetail(
            protocol_concentration=1.0, operator_concentration=1.0, avs_concentration=1.0,
            diversification_score=0.0, largest_protocol_share=1.0, risk_score=25.0
        )

        alerts = generator.concentration_alerts(swell_snapshot, detail)

        assert len(alerts) == 1
        assert alerts[0].severity == RiskSeverity.MEDIUM
        assert alerts[0].type == AlertType.CONCENTRATION_RISK

    def test_diversified_is_quiet(self, generator, swell_snapshot, diversified):
        assert generator.concentration_alerts(swell_snapshot, diversified) == []


class TestSlashingAlerts:

    def test_recent_event_raises_one_critical_alert(self, generator, swell_snapshot, healthy_validator,
                                                    recent_slashing_event):
        snapshot = snapshot_with_events(swell_snapshot, healthy_validator, [recent_slashing_event])

        alerts = generator.slashing_alerts(snapshot)

        assert len(alerts) == 1
        assert alerts[0].severity == RiskSeverity.CRITICAL
        assert alerts[0].type == AlertType.SLASHING_EVENT
        assert alerts[0].id == "slashing-evt-1"
        assert alerts[0].timestamp == recent_slashing_event.timestamp

    def test_old_event_is_ignored(self, generator, swell_snapshot, healthy_validator, recent_slashing_event):
        old = recent_slashing_event.model_copy(update={"timestamp": swell_snapshot.as_of - timedelta(days=8)})
        snapshot = snapshot_with_events(swell_snapshot, healthy_validator, [old])

        assert generator.slashing_alerts(snapshot) == []

    def test_event_on_window_boundary_is_included(self, generator, swell_snapshot, healthy_validator,
                                                  recent_slashing_event):
        edge = recent_slashing_event.model_copy(update={"timestamp": swell_snapshot.as_of - timedelta(days=7)})
        snapshot = snapshot_with_events(swell_snapshot, healthy_validator, [edge])

        assert len(generator.slashing_alerts(snapshot)) == 1

    def test_duplicate_events_alert_once(self, generator, swell_snapshot, healthy_validator, recent_slashing_event):
        snapshot = snapshot_with_events(swell_snapshot, healthy_validator,
                                        [recent_slashing_event, recent_slashing_event])

        assert len(generator.slashing_alerts(snapshot)) == 1

    def test_naive_timestamps_treated_as_utc(self, generator, swell_snapshot, healthy_validator):
        naive = SlashingEvent(
            id="evt-naive",
            validator_address="0xvalidator1",
            timestamp=(swell_snapshot.as_of - timedelta(days=1)).replace(tzinfo=None)
        )
        snapshot = snapshot_with_events(swell_snapshot, healthy_validator, [naive])

        assert len(generator.slashing_alerts(snapshot)) == 1


class TestLiquidityAlerts:

    def test_high_utilization_alerts(self, generator, swell_snapshot):
        detail = LiquidityRiskDetail(available_liquidity=2.0, utilization_rate=0.9,
                                     withdrawal_delay_days=7.0, risk_score=20.0)

        alerts = generator.liquidity_alerts(swell_snapshot, detail)

        assert len(alerts) == 1
        assert alerts[0].type == AlertType.LIQUIDITY_RISK

    def test_missing_detail_is_quiet(self, generator, swell_snapshot):
        assert generator.liquidity_alerts(swell_snapshot, None) == []


class TestGenerate:

    def test_rules_fire_independently(self, generator, swell_snapshot, healthy_validator, recent_slashing_event):
        snapshot = snapshot_with_events(swell_snapshot, healthy_validator, [recent_slashing_event])
        concentrated = ConcentrationRiskDetail(
            protocol_concentration=1.0, operator_concentration=1.0, avs_concentration=1.0,
            diversification_score=0.0, largest_protocol_share=1.0, risk_score=25.0
        )

        alerts = generator.generate(snapshot, [], concentrated)

        assert [a.type for a in alerts] == [AlertType.CONCENTRATION_RISK, AlertType.SLASHING_EVENT]

    def test_empty_portfolio_has_no_alerts(self, generator, sample_user_address, as_of, diversified):
        snapshot = PortfolioSnapshot.build(sample_user_address, [], as_of=as_of)

        assert generator.generate(snapshot, [], diversified) == []
