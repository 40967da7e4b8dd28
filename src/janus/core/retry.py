"""
Error hierarchy and transport retry policy.

This module provides:
- Error type hierarchy (transient vs permanent) shared by every component
- Venue transport errors raised by the venue clients
- Coordination errors raised by the arbitrage coordinator
- RetryPolicy: an explicit, injectable retry policy built on tenacity

Usage:
    from janus.core.retry import RetryPolicy, VenueRateLimitError

    policy = RetryPolicy()  # one retry on rate limiting after 1s
    order_id = await policy.call(client.post_order, payload)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

log = structlog.get_logger()

T = TypeVar("T")


# =============================================================================
# Error Type Hierarchy
# =============================================================================


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Network issues, rate limits
    PERMANENT = "permanent"  # Bad request, auth failure, business rejection
    UNKNOWN = "unknown"


class JanusError(Exception):
    """Base exception for all Janus errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class PermanentError(JanusError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT


# -- Venue transport ----------------------------------------------------------


class VenueTransportError(JanusError):
    """Network, authentication or rate-limit failure talking to a venue.

    Attributes:
        venue: Venue the call was made against ("polymarket", "kalshi").
        status_code: HTTP status when the venue answered, else None.
    """

    def __init__(
        self,
        venue: str,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(f"{venue}: {message}", cause)
        self.venue = venue
        self.status_code = status_code


class VenueNetworkError(VenueTransportError):
    """Connection failure or timeout before the venue answered."""

    category = ErrorCategory.TRANSIENT


class VenueRateLimitError(VenueTransportError):
    """Venue answered 429."""

    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        venue: str,
        message: str = "rate limited",
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
        cause: Optional[Exception] = None,
    ):
        super().__init__(venue, message, status_code=status_code, cause=cause)
        self.retry_after = retry_after


class VenueAuthenticationError(VenueTransportError):
    """Venue rejected our credentials (401/403)."""

    category = ErrorCategory.PERMANENT


# -- Coordination -------------------------------------------------------------


class AdmissionRejectedError(PermanentError):
    """The admission gate refused an order; nothing was persisted."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LegExecutionFailed(JanusError):
    """A leg reached a terminal status other than filled, or could not be placed."""

    def __init__(
        self,
        message: str,
        venue: Optional[str] = None,
        order_id: Optional[str] = None,
        status: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause)
        self.venue = venue
        self.order_id = order_id
        self.status = status


class OneSidedPositionError(LegExecutionFailed):
    """Leg A filled but leg B did not: a live one-sided position needs an operator."""


class TradeNotFoundError(PermanentError):
    """No trade with the requested id."""


class InvalidTradeTransitionError(PermanentError):
    """The trade is already terminal and cannot move to the requested status."""


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an error into a retry category."""
    if isinstance(error, JanusError):
        return error.category
    if isinstance(error, (ConnectionError, asyncio.TimeoutError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


# =============================================================================
# Retry Policy
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_WAIT_SECONDS = 1.0
DEFAULT_MAX_WAIT_SECONDS = 10.0
DEFAULT_BACKOFF_MULTIPLIER = 1.0


@dataclass
class RetryPolicy:
    """Explicit retry policy handed to venue clients.

    The default retries a rate-limited call exactly once after a fixed
    one-second delay. Any other failure propagates on the first attempt:
    a venue call that may already have mutated external state is never
    replayed.

    Attributes:
        max_attempts: Total attempts including the first call.
        wait_seconds: Delay before the first retry.
        max_wait_seconds: Cap on any single delay (also caps Retry-After).
        backoff_multiplier: 1.0 gives a fixed delay, >1 grows it per attempt.
        retry_on: Exception types considered retryable; permanent errors
            are never retried even when listed.
        sleep: Awaitable sleep used between attempts.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    wait_seconds: float = DEFAULT_WAIT_SECONDS
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    retry_on: tuple[Type[BaseException], ...] = (VenueRateLimitError,)
    sleep: Callable[[float], Awaitable[None]] = field(
        default=asyncio.sleep, repr=False, compare=False
    )

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "RetryPolicy":
        """Create a policy from a config section (e.g. ``venues.retry``)."""
        return cls(
            max_attempts=int(config_dict.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            wait_seconds=float(config_dict.get("wait_seconds", DEFAULT_WAIT_SECONDS)),
            max_wait_seconds=float(
                config_dict.get("max_wait_seconds", DEFAULT_MAX_WAIT_SECONDS)
            ),
            backoff_multiplier=float(
                config_dict.get("backoff_multiplier", DEFAULT_BACKOFF_MULTIPLIER)
            ),
        )

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    def is_retryable(self, error: BaseException) -> bool:
        """Only transient errors of a ``retry_on`` type are retried."""
        if classify_error(error) is not ErrorCategory.TRANSIENT:
            return False
        return isinstance(error, self.retry_on)

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Seconds to wait after the given (1-indexed) failed attempt."""
        if isinstance(error, VenueRateLimitError) and error.retry_after is not None:
            return max(0.0, min(error.retry_after, self.max_wait_seconds))
        delay = self.wait_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_wait_seconds)

    def _wait(self, state: RetryCallState) -> float:
        error = state.outcome.exception() if state.outcome else None
        return self.delay_for(state.attempt_number, error)

    async def call(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        log_context: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> T:
        """Run ``fn`` under this policy, re-raising the last error when exhausted."""
        context = log_context or {}

        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            log.warning(
                "retry_attempt",
                attempt=state.attempt_number,
                error=str(error) if error else None,
                error_type=type(error).__name__ if error else None,
                wait_seconds=state.next_action.sleep if state.next_action else 0,
                **context,
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep,
            sleep=self.sleep,
            reraise=True,
        ):
            with attempt:
                return await fn(*args, **kwargs)

        raise RuntimeError("retry loop exited without a result")  # pragma: no cover
