"""Core framework infrastructure - config, events, logging, lifecycle, retry."""

from janus.core.config import ConfigManager
from janus.core.events import EventBus
from janus.core.logging import setup_logging
from janus.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from janus.core.retry import (
    AdmissionRejectedError,
    ErrorCategory,
    InvalidTradeTransitionError,
    JanusError,
    LegExecutionFailed,
    OneSidedPositionError,
    PermanentError,
    RetryPolicy,
    TradeNotFoundError,
    VenueAuthenticationError,
    VenueNetworkError,
    VenueRateLimitError,
    VenueTransportError,
    classify_error,
)

__all__ = [
    "ConfigManager",
    "EventBus",
    "setup_logging",
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Errors
    "JanusError",
    "ErrorCategory",
    "PermanentError",
    "VenueTransportError",
    "VenueNetworkError",
    "VenueRateLimitError",
    "VenueAuthenticationError",
    "AdmissionRejectedError",
    "LegExecutionFailed",
    "OneSidedPositionError",
    "TradeNotFoundError",
    "InvalidTradeTransitionError",
    "classify_error",
    # Retry
    "RetryPolicy",
]
