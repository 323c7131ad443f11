"""
Provider contracts consumed by the risk engine, plus in-memory and HTTP
implementations.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import httpx
import structlog
from pydantic import ValidationError

from .errors import DataUnavailable, TransientProviderError
from .models import (
    AVSMetrics, MarketConditions, OperatorMetrics, ProtocolLiquidity,
    StakingPosition, ValidatorMetrics
)

logger = structlog.get_logger()

RawPosition = Union[StakingPosition, Mapping[str, Any]]


class PositionProvider(ABC):
    @abstractmethod
    async def get_positions(self, user_address: str) -> Sequence[RawPosition]:
        """Staking positions for a user. Raises DataUnavailable on provider error."""


class MarketDataProvider(ABC):
    @abstractmethod
    async def get_validator_metrics(self, validator_address: str) -> ValidatorMetrics:
        ...

    @abstractmethod
    async def get_operator_metrics(self, operator_address: str) -> OperatorMetrics:
        ...

    @abstractmethod
    async def get_avs_metrics(self, avs_id: str) -> AVSMetrics:
        ...

    @abstractmethod
    async def get_protocol_liquidity(self, protocol_id: str) -> ProtocolLiquidity:
        ...

    @abstractmethod
    async def get_market_conditions(self) -> MarketConditions:
        ...


class InMemoryPositionProvider(PositionProvider):
    """Deterministic position source keyed by lower-cased user address"""

    def __init__(self, positions: Optional[Mapping[str, Iterable[RawPosition]]] = None):
        self._positions: Dict[str, List[RawPosition]] = {
            address.lower(): list(items) for address, items in (positions or {}).items()
        }
        self.calls = 0

    def set_positions(self, user_address: str, positions: Iterable[RawPosition]):
        self._positions[user_address.lower()] = list(positions)

    async def get_positions(self, user_address: str) -> Sequence[RawPosition]:
        self.calls += 1
        return list(self._positions.get(user_address.lower(), []))


class InMemoryMarketDataProvider(MarketDataProvider):
    """Deterministic market data. Unknown keys raise DataUnavailable."""

    def __init__(
        self,
        validators: Optional[Mapping[str, ValidatorMetrics]] = None,
        operators: Optional[Mapping[str, OperatorMetrics]] = None,
        avs: Optional[Mapping[str, AVSMetrics]] = None,
        protocols: Optional[Mapping[str, ProtocolLiquidity]] = None,
        market: Optional[MarketConditions] = None
    ):
        self.validators = dict(validators or {})
        self.operators = dict(operators or {})
        self.avs = dict(avs or {})
        self.protocols = dict(protocols or {})
        self.market = market
        self.calls: Dict[str, int] = {}

    def _lookup(self, kind: str, table: Mapping[str, Any], key: str):
        self.calls[kind] = self.calls.get(kind, 0) + 1
        if key not in table:
            raise DataUnavailable(f"No {kind} data for {key}", source=f"{kind}:{key}")
        return table[key]

    async def get_validator_metrics(self, validator_address: str) -> ValidatorMetrics:
        return self._lookup("validator", self.validators, validator_address)

    async def get_operator_metrics(self, operator_address: str) -> OperatorMetrics:
        return self._lookup("operator", self.operators, operator_address)

    async def get_avs_metrics(self, avs_id: str) -> AVSMetrics:
        return self._lookup("avs", self.avs, avs_id)

    async def get_protocol_liquidity(self, protocol_id: str) -> ProtocolLiquidity:
        return self._lookup("protocol", self.protocols, protocol_id)

    async def get_market_conditions(self) -> MarketConditions:
        self.calls["market"] = self.calls.get("market", 0) + 1
        if self.market is None:
            raise DataUnavailable("No market conditions", source="market:conditions")
        return self.market


class BaseAPIClient:
    """Thin httpx wrapper mapping transport failures onto the engine's error taxonomy.

    404 and malformed payloads are permanent (DataUnavailable); network errors
    and 5xx/429 responses are transient and left to the caller's retry policy.
    """

    def __init__(self, base_url: str, headers: Optional[Dict] = None, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.default_headers = headers or {}
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.default_headers,
                timeout=self.timeout,
                transport=self.transport,
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100)
            )
        return self.client

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Any:
        client = self._ensure_client()
        try:
            response = await client.request(method, endpoint, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"HTTP error {status} for {method} {endpoint}", error=str(e), status_code=status)
            if status >= 500 or status == 429:
                raise TransientProviderError(f"API request failed: {status}", source=endpoint)
            raise DataUnavailable(f"API request failed: {status}", source=endpoint)
        except httpx.RequestError as e:
            logger.error(f"Request error for {method} {endpoint}", error=str(e))
            raise TransientProviderError(f"Network error: {str(e)}", source=endpoint)
        except ValueError as e:
            raise DataUnavailable(f"Invalid JSON from {endpoint}: {e}", source=endpoint)

    @staticmethod
    def _parse(model, payload: Any, source: str):
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise DataUnavailable(f"Malformed payload from {source}: {e.error_count()} errors", source=source)


class HttpPositionProvider(BaseAPIClient, PositionProvider):
    async def get_positions(self, user_address: str) -> Sequence[RawPosition]:
        data = await self._make_request("GET", f"/users/{user_address.lower()}/positions")
        positions = data.get("positions", []) if isinstance(data, dict) else data
        if not isinstance(positions, list):
            raise DataUnavailable("Position payload is not a list", source="positions")
        # Raw mappings: the engine validates each position on its own
        return positions


class HttpMarketDataProvider(BaseAPIClient, MarketDataProvider):
    async def get_validator_metrics(self, validator_address: str) -> ValidatorMetrics:
        data = await self._make_request("GET", f"/validators/{validator_address}/metrics")
        return self._parse(ValidatorMetrics, data, f"validator:{validator_address}")

    async def get_operator_metrics(self, operator_address: str) -> OperatorMetrics:
        data = await self._make_request("GET", f"/operators/{operator_address}/metrics")
        return self._parse(OperatorMetrics, data, f"operator:{operator_address}")

    async def get_avs_metrics(self, avs_id: str) -> AVSMetrics:
        data = await self._make_request("GET", f"/avs/{avs_id}/metrics")
        return self._parse(AVSMetrics, data, f"avs:{avs_id}")

    async def get_protocol_liquidity(self, protocol_id: str) -> ProtocolLiquidity:
        data = await self._make_request("GET", f"/protocols/{protocol_id}/liquidity")
        return self._parse(ProtocolLiquidity, data, f"protocol:{protocol_id}")

    async def get_market_conditions(self) -> MarketConditions:
        data = await self._make_request("GET", "/market/conditions")
        return self._parse(MarketConditions, data, "market:conditions")
