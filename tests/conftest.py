import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

# Set test environment
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["ENABLE_REDIS"] = "false"

from restake_risk.cache import InMemoryResultCache
from restake_risk.config import ScoringPolicy, Settings
from restake_risk.engine import RiskEngine
from restake_risk.models import (
    AVSMetrics, MarketConditions, OperatorMetrics, ProtocolLiquidity,
    SlashingEvent, StakingPosition, ValidatorMetrics
)
from restake_risk.providers import InMemoryMarketDataProvider, InMemoryPositionProvider
from restake_risk.snapshot import PortfolioSnapshot


@pytest.fixture
def sample_user_address():
    """Sample Ethereum wallet address for testing"""
    return "0x742b4c0d8fd9b2b29e70dc3e08f4e98a78b3a2b5"


@pytest.fixture
def as_of():
    """Fixed evaluation time so results are reproducible"""
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy():
    return ScoringPolicy()


@pytest.fixture
def test_settings():
    """Fast provider timeouts and no retries"""
    return Settings(
        ENV="test",
        LOG_LEVEL="ERROR",
        PROVIDER_TIMEOUT_SECONDS=0.2,
        PROVIDER_MAX_ATTEMPTS=1,
        METRICS_CACHE_TTL=300,
        ALERTS_CACHE_TTL=120
    )


@pytest.fixture
def swell_position():
    """One 32 ETH position on swell"""
    return StakingPosition(
        protocol_id="swell",
        validator_address="0xvalidator1",
        operator_address="0xoperator1",
        avs_id="MACH",
        staked_value=Decimal("32")
    )


@pytest.fixture
def make_position():
    """Factory for positions that differ from the swell default in a few fields"""
    def _make(protocol_id="swell", validator_address="0xvalidator1", operator_address="0xoperator1",
              avs_id="MACH", staked_value=32):
        return StakingPosition(
            protocol_id=protocol_id,
            validator_address=validator_address,
            operator_address=operator_address,
            avs_id=avs_id,
            staked_value=Decimal(str(staked_value))
        )
    return _make


@pytest.fixture
def healthy_validator():
    return ValidatorMetrics(
        validator_address="0xvalidator1",
        attestation_rate=0.98,
        uptime_history=[0.995],
        client_diversity=0.8,
        commission=0.05,
        total_epochs=1000
    )


@pytest.fixture
def seasoned_operator():
    return OperatorMetrics(operator_address="0xoperator1", slashing_event_count=0, active_days=400)


@pytest.fixture
def mach_avs():
    return AVSMetrics(
        avs_id="MACH",
        name="MACH",
        base_slashing_probability=0.01,
        max_slashing_percent=0.05,
        operator_count=50,
        total_staked=1000.0,
        audit_score=0.85,
        governance_risk=0.3
    )


@pytest.fixture
def swell_liquidity():
    return ProtocolLiquidity(
        protocol_id="swell",
        available_liquidity=1000.0,
        exit_queue_days=7.0,
        dex_depth_usd=2_000_000.0,
        large_holder_share=0.2
    )


@pytest.fixture
def calm_market():
    return MarketConditions(
        volatility=0.6,
        eth_correlation=0.9,
        risk_asset_correlation=0.5,
        liquidity_ratio=0.5,
        regulatory_risk=0.3,
        rate_level=0.05,
        sentiment=50.0
    )


@pytest.fixture
def recent_slashing_event(as_of):
    return SlashingEvent(
        id="evt-1",
        validator_address="0xvalidator1",
        avs_id="MACH",
        amount=1.0,
        reason="double signing",
        timestamp=as_of - timedelta(days=2)
    )


@pytest.fixture
def swell_snapshot(sample_user_address, swell_position, healthy_validator, seasoned_operator,
                   mach_avs, swell_liquidity, calm_market, as_of):
    """Single swell position with complete market data"""
    return PortfolioSnapshot.build(
        sample_user_address,
        [swell_position],
        validators={"0xvalidator1": healthy_validator},
        operators={"0xoperator1": seasoned_operator},
        avs={"MACH": mach_avs},
        protocols={"swell": swell_liquidity},
        market=calm_market,
        as_of=as_of
    )


@pytest.fixture
def position_provider(sample_user_address, swell_position):
    return InMemoryPositionProvider({sample_user_address: [swell_position]})


@pytest.fixture
def market_data_provider(healthy_validator, seasoned_operator, mach_avs, swell_liquidity, calm_market):
    return InMemoryMarketDataProvider(
        validators={"0xvalidator1": healthy_validator},
        operators={"0xoperator1": seasoned_operator},
        avs={"MACH": mach_avs},
        protocols={"swell": swell_liquidity},
        market=calm_market
    )


@pytest.fixture
def result_cache():
    return InMemoryResultCache()


@pytest.fixture
def risk_engine(position_provider, market_data_provider, result_cache, policy, test_settings):
    """Engine wired to deterministic in-memory providers"""
    return RiskEngine(
        position_provider,
        market_data_provider,
        cache=result_cache,
        policy=policy,
        settings=test_settings
    )
