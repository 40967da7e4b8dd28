"""
Component lifecycle protocols.

Every long-lived Janus piece (channels, the guest sweeper, the HTTP site,
the app itself) derives from BaseComponent so the app can start, stop and
health-check them uniformly.
"""
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    """Component health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utc_now)

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


@runtime_checkable
class HealthCheckable(Protocol):
    """Protocol for components that can report their health."""

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        ...


class BaseComponent:
    """Base class for components providing common lifecycle functionality.

    Subclasses override:
    - _do_start() - component-specific startup logic
    - _do_stop() - component-specific shutdown logic
    - _do_health_check() - component-specific health check

    start() and stop() are idempotent.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self._name = name or self.__class__.__name__
        self._running = False
        self._started_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if not self._started_at:
            return 0.0
        return (utc_now() - self._started_at).total_seconds()

    async def start(self) -> None:
        """Start the component."""
        if self._running:
            return
        await self._do_start()
        self._running = True
        self._started_at = utc_now()

    async def stop(self) -> None:
        """Stop the component."""
        if not self._running:
            return
        await self._do_stop()
        self._running = False

    async def health_check(self) -> HealthCheckResult:
        """Check component health."""
        if not self._running:
            return HealthCheckResult.unhealthy("Component not running")
        return await self._do_health_check()

    async def _do_start(self) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)
