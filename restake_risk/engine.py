"""
RiskEngine - wires providers, calculators, aggregation, alerts and the action
policy behind a cache with per-key in-flight deduplication.
"""
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import structlog
from pydantic import TypeAdapter, ValidationError

from .actions import AutomatedActionPolicy
from .aggregator import RiskAggregator
from .alerts import AlertGenerator
from .cache import (
    InFlightRegistry, InMemoryResultCache, RedisResultCache, ResultCache,
    cache_get, cache_set
)
from .concentration import ConcentrationRiskCalculator
from .config import CacheKeys, Component, ScoringPolicy, Settings, get_settings
from .errors import ConfigurationError, InvalidInput, Result, guarded_call
from .liquidity import LiquidityRiskCalculator
from .market import MarketRiskCalculator
from .models import (
    ActionRecommendation, RiskAlert, RiskAssessment, RiskMetrics,
    RiskProfile, StakingPosition, utcnow
)
from .providers import (
    BaseAPIClient, HttpMarketDataProvider, HttpPositionProvider, MarketDataProvider,
    PositionProvider, RawPosition
)
from .slashing import SlashingRiskCalculator
from .snapshot import ComponentResult, PortfolioSnapshot

logger = structlog.get_logger()

T = TypeVar("T")

_alert_list = TypeAdapter(List[RiskAlert])


class RiskEngine:
    """Risk metrics, alerts and action recommendations for a user's staking positions"""

    def __init__(
        self,
        position_provider: PositionProvider,
        market_data_provider: MarketDataProvider,
        cache: Optional[ResultCache] = None,
        profile: Optional[RiskProfile] = None,
        policy: Optional[ScoringPolicy] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.policy = policy or ScoringPolicy()
        self.position_provider = position_provider
        self.market_data_provider = market_data_provider
        self.cache = cache

        self.slashing = SlashingRiskCalculator(self.policy)
        self.liquidity = LiquidityRiskCalculator(self.policy)
        self.concentration = ConcentrationRiskCalculator(self.policy)
        self.market = MarketRiskCalculator(self.policy)
        self.aggregator = RiskAggregator(self.policy, strict_invariants=self.settings.STRICT_INVARIANTS)
        self.alert_generator = AlertGenerator(self.policy, lookback_days=self.settings.SLASHING_LOOKBACK_DAYS)
        self.action_policy = AutomatedActionPolicy(profile)

        self._in_flight = InFlightRegistry()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        profile: Optional[RiskProfile] = None,
        policy: Optional[ScoringPolicy] = None
    ) -> "RiskEngine":
        """Wire HTTP providers and a Redis or in-memory cache from settings"""
        settings = settings or get_settings()
        if not settings.POSITION_API_URL or not settings.MARKET_DATA_API_URL:
            raise ConfigurationError("POSITION_API_URL and MARKET_DATA_API_URL must be set")

        cache = (
            RedisResultCache.from_url(settings.REDIS_URL)
            if settings.ENABLE_REDIS else InMemoryResultCache()
        )
        if not settings.ENABLE_REDIS:
            logger.warning("Redis is disabled - results are cached in process memory only")

        return cls(
            position_provider=HttpPositionProvider(settings.POSITION_API_URL, timeout=settings.PROVIDER_TIMEOUT_SECONDS),
            market_data_provider=HttpMarketDataProvider(settings.MARKET_DATA_API_URL, timeout=settings.PROVIDER_TIMEOUT_SECONDS),
            cache=cache,
            profile=profile,
            policy=policy,
            settings=settings
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        """Release HTTP clients and the Redis connection pool opened by from_settings"""
        for provider in (self.position_provider, self.market_data_provider):
            if isinstance(provider, BaseAPIClient):
                await provider.aclose()
        if isinstance(self.cache, RedisResultCache):
            await self.cache.close()

    # Data collection

    async def _fetch(self, source: str, func: Callable[..., Awaitable[T]], *args) -> Result[T]:
        return await guarded_call(
            source, func, *args,
            timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
            max_attempts=self.settings.PROVIDER_MAX_ATTEMPTS
        )

    def _validate_positions(self, user_address: str, raw: Sequence[RawPosition]) -> Tuple[List[StakingPosition], int]:
        """Drop malformed positions one by one instead of failing the evaluation"""
        positions = []
        rejected = 0
        for index, item in enumerate(raw):
            try:
                if isinstance(item, StakingPosition):
                    positions.append(item)
                else:
                    positions.append(StakingPosition.model_validate(item))
            except ValidationError as e:
                rejected += 1
                logger.warning("Invalid staking position", user_address=user_address,
                               position_index=index, error_count=e.error_count(),
                               fields=[".".join(map(str, err["loc"])) for err in e.errors()])
        return positions, rejected

    async def _fetch_many(self, kind: str, func: Callable[[str], Awaitable[T]], keys: Sequence[str]) -> Dict[str, Result[T]]:
        results = await asyncio.gather(*(self._fetch(f"{kind}:{key}", func, key) for key in keys))
        return dict(zip(keys, results))

    async def collect_snapshot(self, user_address: str) -> PortfolioSnapshot:
        """Fetch positions, then every lookup they need in parallel, exactly once.

        Raises DataUnavailable when positions cannot be fetched and InvalidInput
        when every returned position is malformed.
        """
        fetched = await self._fetch("positions", self.position_provider.get_positions, user_address)
        raw = fetched.unwrap()

        positions, rejected = self._validate_positions(user_address, raw)
        if rejected and not positions:
            raise InvalidInput(f"All {rejected} positions for {user_address} were rejected")

        if not positions:
            return PortfolioSnapshot.build(user_address, [], as_of=utcnow())

        validators = sorted({p.validator_address for p in positions})
        operators = sorted({p.operator_address for p in positions})
        avs_ids = sorted({p.avs_id for p in positions})
        protocols = sorted({p.protocol_id for p in positions})

        provider = self.market_data_provider
        validator_data, operator_data, avs_data, protocol_data, market = await asyncio.gather(
            self._fetch_many("validator", provider.get_validator_metrics, validators),
            self._fetch_many("operator", provider.get_operator_metrics, operators),
            self._fetch_many("avs", provider.get_avs_metrics, avs_ids),
            self._fetch_many("protocol", provider.get_protocol_liquidity, protocols),
            self._fetch("market:conditions", provider.get_market_conditions)
        )

        return PortfolioSnapshot.build(
            user_address,
            positions,
            validators=validator_data,
            operators=operator_data,
            avs=avs_data,
            protocols=protocol_data,
            market=market,
            as_of=utcnow(),
            rejected_positions=rejected
        )

    # Pure evaluation

    def score_components(self, snapshot: PortfolioSnapshot) -> Dict[str, Result[ComponentResult]]:
        """Run the four independent calculators; all complete before aggregation"""
        return {
            Component.SLASHING: self.slashing.calculate(snapshot),
            Component.LIQUIDITY: self.liquidity.calculate(snapshot),
            Component.CONCENTRATION: self.concentration.calculate(snapshot),
            Component.MARKET: self.market.calculate(snapshot),
        }

    def evaluate_metrics(self, snapshot: PortfolioSnapshot) -> RiskMetrics:
        return self.aggregator.aggregate(snapshot, self.score_components(snapshot))

    def evaluate_alerts(self, snapshot: PortfolioSnapshot, metrics: Optional[RiskMetrics] = None) -> List[RiskAlert]:
        if metrics is None:
            metrics = self.evaluate_metrics(snapshot)
        return self.alert_generator.generate(
            snapshot,
            metrics.validator_risks,
            metrics.concentration_risk,
            metrics.liquidity_risk
        )

    def evaluate(self, snapshot: PortfolioSnapshot, profile: Optional[RiskProfile] = None) -> RiskAssessment:
        """Metrics, alerts and recommendation from one snapshot"""
        metrics = self.evaluate_metrics(snapshot)
        alerts = self.evaluate_alerts(snapshot, metrics)
        recommendation = self.action_policy.recommend(
            snapshot.user_address, metrics.overall_risk_score, snapshot.as_of, profile
        )
        return RiskAssessment(metrics=metrics, alerts=alerts, recommendation=recommendation)

    # Cached entry points

    async def _cached(
        self,
        key: str,
        ttl: int,
        load: Callable[[str], T],
        dump: Callable[[T], str],
        compute: Callable[[], Awaitable[T]]
    ) -> T:
        raw = await cache_get(self.cache, key)
        if raw is not None:
            try:
                value = load(raw)
                logger.debug("Served from cache", key=key)
                return value
            except (ValidationError, ValueError) as e:
                logger.warning("Discarding unreadable cache entry", key=key, error=str(e))

        async def compute_and_store() -> T:
            value = await compute()
            await cache_set(self.cache, key, dump(value), ttl)
            return value

        return await self._in_flight.run(key, compute_and_store)

    async def compute_risk_metrics(self, user_address: str) -> RiskMetrics:
        async def compute() -> RiskMetrics:
            logger.info("Calculating risk metrics", user_address=user_address)
            snapshot = await self.collect_snapshot(user_address)
            return self.evaluate_metrics(snapshot)

        return await self._cached(
            CacheKeys.build(CacheKeys.METRICS, user_address),
            self.settings.METRICS_CACHE_TTL,
            RiskMetrics.model_validate_json,
            lambda metrics: metrics.model_dump_json(),
            compute
        )

    async def compute_risk_alerts(self, user_address: str) -> List[RiskAlert]:
        async def compute() -> List[RiskAlert]:
            logger.info("Fetching risk alerts", user_address=user_address)
            snapshot = await self.collect_snapshot(user_address)
            return self.evaluate_alerts(snapshot)

        return await self._cached(
            CacheKeys.build(CacheKeys.ALERTS, user_address),
            self.settings.ALERTS_CACHE_TTL,
            _alert_list.validate_json,
            lambda alerts: _alert_list.dump_json(alerts).decode("utf-8"),
            compute
        )

    async def recommend_action(self, user_address: str, profile: Optional[RiskProfile] = None) -> ActionRecommendation:
        """Recommendation from the current (possibly cached) composite score"""
        metrics = await self.compute_risk_metrics(user_address)
        return self.action_policy.recommend(user_address, metrics.overall_risk_score, metrics.last_updated, profile)

    async def assess(self, user_address: str, profile: Optional[RiskProfile] = None) -> RiskAssessment:
        """Fresh evaluation of everything from a single snapshot; refreshes the cached metrics and alerts"""
        async def compute() -> RiskAssessment:
            snapshot = await self.collect_snapshot(user_address)
            assessment = self.evaluate(snapshot, profile)
            await asyncio.gather(
                cache_set(self.cache, CacheKeys.build(CacheKeys.METRICS, user_address),
                          assessment.metrics.model_dump_json(), self.settings.METRICS_CACHE_TTL),
                cache_set(self.cache, CacheKeys.build(CacheKeys.ALERTS, user_address),
                          _alert_list.dump_json(assessment.alerts).decode("utf-8"), self.settings.ALERTS_CACHE_TTL)
            )
            return assessment

        key = CacheKeys.build(CacheKeys.ASSESSMENT, user_address)
        if profile is not None:
            key = (f"{key}:{profile.warning_threshold}:{profile.rebalance_threshold}:"
                   f"{profile.emergency_exit_threshold}:{profile.max_risk_score}")
        return await self._in_flight.run(key, compute)
