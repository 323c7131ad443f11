"""
Immutable evaluation inputs and component outputs.

A ``PortfolioSnapshot`` is fetched once per evaluation and handed by value to
every calculator, the aggregator, the alert generator and the action policy.
"""
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import DataUnavailable, Result
from .models import (
    AVSMetrics, MarketConditions, OperatorMetrics, ProtocolLiquidity,
    StakingPosition, ValidatorMetrics, ensure_utc, utcnow
)


def _missing(kind: str, key: str) -> Result:
    return Result.failure(DataUnavailable(f"No {kind} data for {key}", source=f"{kind}:{key}"))


def _freeze(results: Optional[Mapping[str, Any]]) -> Mapping[str, Result]:
    frozen = {}
    for key, value in (results or {}).items():
        frozen[key] = value if isinstance(value, Result) else Result.success(value)
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class PortfolioSnapshot:
    user_address: str
    as_of: datetime
    positions: Tuple[StakingPosition, ...]
    validators: Mapping[str, Result[ValidatorMetrics]]
    operators: Mapping[str, Result[OperatorMetrics]]
    avs: Mapping[str, Result[AVSMetrics]]
    protocols: Mapping[str, Result[ProtocolLiquidity]]
    market: Result[MarketConditions]
    rejected_positions: int = 0

    @classmethod
    def build(
        cls,
        user_address: str,
        positions: Sequence[StakingPosition],
        validators: Optional[Mapping[str, Any]] = None,
        operators: Optional[Mapping[str, Any]] = None,
        avs: Optional[Mapping[str, Any]] = None,
        protocols: Optional[Mapping[str, Any]] = None,
        market: Any = None,
        as_of: Optional[datetime] = None,
        rejected_positions: int = 0
    ) -> "PortfolioSnapshot":
        """Accepts plain values or ``Result`` objects for every lookup"""
        if market is None:
            market = _missing("market", "conditions")
        elif not isinstance(market, Result):
            market = Result.success(market)

        return cls(
            user_address=user_address,
            as_of=ensure_utc(as_of) if as_of else utcnow(),
            positions=tuple(positions),
            validators=_freeze(validators),
            operators=_freeze(operators),
            avs=_freeze(avs),
            protocols=_freeze(protocols),
            market=market,
            rejected_positions=rejected_positions
        )

    @property
    def total_staked(self) -> float:
        return sum(p.value for p in self.positions)

    def validator(self, address: str) -> Result[ValidatorMetrics]:
        return self.validators.get(address) or _missing("validator", address)

    def operator(self, address: str) -> Result[OperatorMetrics]:
        return self.operators.get(address) or _missing("operator", address)

    def avs_metrics(self, avs_id: str) -> Result[AVSMetrics]:
        return self.avs.get(avs_id) or _missing("avs", avs_id)

    def protocol(self, protocol_id: str) -> Result[ProtocolLiquidity]:
        return self.protocols.get(protocol_id) or _missing("protocol", protocol_id)

    def unavailable_sources(self) -> List[str]:
        """Names of every lookup that failed, in a stable order"""
        sources = []
        for kind, lookup, keys in (
            ("validator", self.validator, sorted({p.validator_address for p in self.positions})),
            ("operator", self.operator, sorted({p.operator_address for p in self.positions})),
            ("avs", self.avs_metrics, sorted({p.avs_id for p in self.positions})),
            ("protocol", self.protocol, sorted({p.protocol_id for p in self.positions})),
        ):
            for key in keys:
                if not lookup(key).ok:
                    sources.append(f"{kind}:{key}")
        if self.positions and not self.market.ok:
            sources.append("market:conditions")
        return sources


@dataclass(frozen=True)
class ComponentResult:
    """Output of a single component calculator"""
    name: str
    score: float
    data_quality: float = 1.0
    detail: Any = None
    extras: Dict[str, Any] = field(default_factory=dict)
