"""
Error taxonomy, explicit result values and retry helpers for the risk engine
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying, before_sleep_log, retry_if_exception_type,
    stop_after_attempt, wait_exponential
)

logger = structlog.get_logger()

T = TypeVar("T")


class RiskEngineError(Exception):
    """Base class for all risk engine errors"""
    pass


class DataUnavailable(RiskEngineError):
    """Raised when a provider errors out or times out"""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class InvalidInput(RiskEngineError):
    """Raised when a staking position is malformed or has a negative stake"""
    pass


class ComputationInvariantViolation(RiskEngineError):
    """Raised when a component score leaves its declared bound"""

    def __init__(self, component: str, value: float, upper: float):
        super().__init__(
            f"Component {component} scored {value!r}, outside [0, {upper}]"
        )
        self.component = component
        self.value = value
        self.upper = upper


class ConfigurationError(RiskEngineError):
    """Raised when the engine cannot be wired from settings"""
    pass


class TransientProviderError(DataUnavailable):
    """Provider failure worth retrying (network blips, 5xx responses)"""
    pass


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or the error that prevented computing it"""
    value: Optional[T] = None
    error: Optional[RiskEngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: RiskEngineError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value


async def guarded_call(
    source: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    timeout: float = 5.0,
    max_attempts: int = 3,
    base_delay: float = 0.2
) -> Result[T]:
    """Run a provider call with a timeout per attempt and retries on transient errors.

    Every failure mode ends up as ``Result.failure(DataUnavailable)`` so one
    bad lookup never unwinds the whole evaluation.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay, max=2.0),
            retry=retry_if_exception_type((TransientProviderError, asyncio.TimeoutError)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        ):
            with attempt:
                value = await asyncio.wait_for(func(*args), timeout=timeout)
        return Result.success(value)
    except asyncio.TimeoutError:
        logger.warning("Provider call timed out", source=source, timeout=timeout)
        return Result.failure(DataUnavailable(f"{source} timed out after {timeout}s", source=source))
    except DataUnavailable as e:
        logger.warning("Provider data unavailable", source=source, error=str(e))
        if e.source is None:
            e.source = source
        return Result.failure(e)
    except Exception as e:
        logger.error("Provider call failed", source=source, error=str(e), error_type=type(e).__name__)
        return Result.failure(DataUnavailable(f"{source} failed: {e}", source=source))
