import pytest
from datetime import timedelta

from restake_risk.models import OperatorMetrics, SlashingEvent, ValidatorMetrics
from restake_risk.slashing import SlashingRiskCalculator
from restake_risk.snapshot import PortfolioSnapshot


def old_events(count, as_of):
    """Slashing events well outside the alert lookback window"""
    return [
        SlashingEvent(id=f"evt-{i}", validator_address="0xvalidator1", timestamp=as_of - timedelta(days=30 + i))
        for i in range(count)
    ]


class TestSlashingRiskCalculator:
    """Tests for validator scoring and the stake-weighted slashing component"""

    @pytest.fixture
    def calculator(self, policy):
        return SlashingRiskCalculator(policy)

    class TestValidatorScore:

        def test_healthy_validator_scores_low(self, calculator, healthy_validator, seasoned_operator):
            score = calculator.score_validator(healthy_validator, seasoned_operator)

            # performance 0.2 + technical 1.0 + uptime 0.05
            assert score == pytest.approx(1.25)

        def test_unknown_operator_counts_as_inexperienced(self, calculator, healthy_validator):
            score = calculator.score_validator(healthy_validator, None)

            assert score == pytest.approx(2.25)

        def test_young_operator_penalized(self, calculator, healthy_validator):
            young = OperatorMetrics(operator_address="0xoperator1", active_days=30)

            assert calculator.score_validator(healthy_validator, young) == pytest.approx(2.25)

        def test_each_slashing_event_adds_penalty(self, calculator, healthy_validator, seasoned_operator, as_of):
            validator = healthy_validator.model_copy(update={"slashing_events": old_events(2, as_of)})
            operator = seasoned_operator.model_copy(update={"slashing_event_count": 1})

            score = calculator.score_validator(validator, operator)

            assert score == pytest.approx(1.25 + 3 * 5.0)

        def test_score_is_monotonic_in_slashing_events(self, calculator, healthy_validator, seasoned_operator, as_of):
            scores = [
                calculator.score_validator(
                    healthy_validator.model_copy(update={"slashing_events": old_events(n, as_of)}),
                    seasoned_operator
                )
                for n in range(8)
            ]

            assert scores == sorted(scores)
            assert scores[-1] == 25.0

        def test_score_is_clamped(self, calculator, seasoned_operator, as_of):
            worst = ValidatorMetrics(
                validator_address="0xvalidator1",
                attestation_rate=0.0,
                uptime_history=[0.0, 0.0],
                client_diversity=0.0,
                slashing_events=old_events(10, as_of)
            )

            assert calculator.score_validator(worst, seasoned_operator) == 25.0

        def test_empty_uptime_history_scores_worst_uptime(self, calculator, healthy_validator, seasoned_operator):
            validator = healthy_validator.model_copy(update={"uptime_history": []})

            assert calculator.score_validator(validator, seasoned_operator) == pytest.approx(0.2 + 1.0 + 10.0)

    class TestAVSScore:

        def test_avs_score_in_unit_range(self, calculator, mach_avs):
            score = calculator.score_avs(mach_avs)

            # 0.5 * 0.15 + 0.3 * 0.3 + 0.2 * 0.1
            assert score == pytest.approx(0.185)

        def test_unaudited_avs_scores_higher(self, calculator, mach_avs):
            unaudited = mach_avs.model_copy(update={"audit_score": 0.0})

            assert calculator.score_avs(unaudited) > calculator.score_avs(mach_avs)

    class TestComponent:

        def test_no_positions_scores_zero(self, calculator, sample_user_address, as_of):
            snapshot = PortfolioSnapshot.build(sample_user_address, [], as_of=as_of)

            result = calculator.calculate(snapshot)

            assert result.ok
            assert result.value.score == 0.0

        def test_component_matches_validator_score(self, calculator, swell_snapshot):
            result = calculator.calculate(swell_snapshot)

            assert result.ok
            assert result.value.score == pytest.approx(1.25)
            assert result.value.data_quality == 1.0
            assert 0.0 <= result.value.detail.probability <= 0.1
            assert result.value.detail.potential_loss == pytest.approx(32 * 0.05)

        def test_stake_weighted_across_positions(self, calculator, sample_user_address, swell_position, make_position,
                                                 healthy_validator, seasoned_operator, as_of):
            risky = ValidatorMetrics(validator_address="0xvalidator2", attestation_rate=0.5, client_diversity=1.0,
                                     uptime_history=[1.0])
            second = make_position(validator_address="0xvalidator2", staked_value=96)
            snapshot = PortfolioSnapshot.build(
                sample_user_address,
                [swell_position, second],
                validators={"0xvalidator1": healthy_validator, "0xvalidator2": risky},
                operators={"0xoperator1": seasoned_operator},
                as_of=as_of
            )

            result = calculator.calculate(snapshot)

            assert result.value.score == pytest.approx(0.25 * 1.25 + 0.75 * 5.0)

        def test_missing_validator_scores_worst_case(self, calculator, sample_user_address, swell_position, as_of):
            snapshot = PortfolioSnapshot.build(sample_user_address, [swell_position], as_of=as_of)

            result = calculator.calculate(snapshot)

            assert result.ok
            assert result.value.score == 25.0
            assert result.value.data_quality == 0.0
            assert result.value.detail.probability == pytest.approx(0.1)

            validator_risks = result.value.extras["validator_risks"]
            assert len(validator_risks) == 1
            assert validator_risks[0].risk_score == 1.0
            assert validator_risks[0].data_available is False

        def test_validator_stake_is_aggregated(self, calculator, sample_user_address, swell_position, make_position,
                                               healthy_validator, seasoned_operator, as_of):
            second = make_position(protocol_id="etherfi", staked_value=8)
            snapshot = PortfolioSnapshot.build(
                sample_user_address,
                [swell_position, second],
                validators={"0xvalidator1": healthy_validator},
                operators={"0xoperator1": seasoned_operator},
                as_of=as_of
            )

            risks = calculator.validator_risks(snapshot)

            assert len(risks) == 1
            assert risks[0].staked_amount == pytest.approx(40.0)
            assert risks[0].risk_score == pytest.approx(1.25 / 25)
