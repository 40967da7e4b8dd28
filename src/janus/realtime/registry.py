"""Connection registry for real-time clients.

The registry is process-local and injected into the gateway, the broadcast
channels and the emergency stop service. Fan-out across instances happens
through Redis pub/sub, never through the registry.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

import structlog

from janus.core.lifecycle import BaseComponent, HealthCheckResult
from janus.domain.risk import PlanTier
from janus.realtime.protocol import encode_message

if TYPE_CHECKING:
    from janus.services.metrics import MetricsEmitter

log = structlog.get_logger()

GUEST_IDLE_SECONDS = 1800.0
GUEST_EXPIRED_CLOSE_CODE = 4008
GUEST_EXPIRED_REASON = "Guest session expired"

PAID_THROTTLE_SECONDS = 0.5
BASIC_THROTTLE_SECONDS = 2.0


def throttle_interval(plan: PlanTier) -> float:
    """Minimum seconds between deliveries of one symbol to one connection."""
    return PAID_THROTTLE_SECONDS if plan.is_paid else BASIC_THROTTLE_SECONDS


class ClientSocket(Protocol):
    """The slice of aiohttp's WebSocketResponse the registry uses."""

    @property
    def closed(self) -> bool:
        ...

    async def send_str(self, data: str) -> None:
        ...

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        ...


@dataclass
class ConnectionState:
    """Ephemeral per-connection state; never persisted.

    Monotonic timestamps (``last_seen``, ``last_pong``, ``last_delivered``)
    come from the registry clock.
    """
    ws: ClientSocket
    plan: PlanTier = PlanTier.GUEST
    user_id: Optional[str] = None
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    subscribed_symbols: set[str] = field(default_factory=set)
    last_delivered: dict[str, float] = field(default_factory=dict)
    preferred_provider: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_seen: float = field(default_factory=time.monotonic)
    last_pong: float = field(default_factory=time.monotonic)
    message_count: int = 0
    window_start: float = field(default_factory=time.monotonic)

    @property
    def is_guest(self) -> bool:
        return self.plan is PlanTier.GUEST

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def touch(self, now: float) -> None:
        self.last_seen = now

    def allow_inbound(self, now: float, limit: int, window_seconds: float) -> bool:
        """Count one inbound message against a fixed window; False once over limit."""
        if now - self.window_start > window_seconds:
            self.message_count = 0
            self.window_start = now
        self.message_count += 1
        return self.message_count <= limit

    def should_deliver(self, symbol: str, now: float) -> bool:
        """Throttle check for one symbol; records the delivery when allowed."""
        last = self.last_delivered.get(symbol)
        if last is not None and now - last < throttle_interval(self.plan):
            return False
        self.last_delivered[symbol] = now
        return True


ConnectionPredicate = Callable[[ConnectionState], bool]


class ConnectionRegistry:
    """Live connections keyed by connection id.

    Usage:
        registry = ConnectionRegistry(metrics=metrics)
        registry.register(state)
        await registry.broadcast(build_message(MessageType.WHALE_ALERT, payload))
        registry.unregister(state.connection_id)
    """

    def __init__(
        self,
        metrics: Optional["MetricsEmitter"] = None,
        guest_idle_seconds: float = GUEST_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._connections: dict[str, ConnectionState] = {}
        self._metrics = metrics
        self._guest_idle_seconds = guest_idle_seconds
        self._clock = clock
        self._log = log.bind(component="connection_registry")

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, state: ConnectionState) -> None:
        self._connections[state.connection_id] = state
        self._log.info(
            "connection_registered",
            connection_id=state.connection_id,
            user_id=state.user_id,
            plan=state.plan.value,
        )

    def unregister(self, connection_id: str) -> Optional[ConnectionState]:
        state = self._connections.pop(connection_id, None)
        if state is not None:
            state.subscribed_symbols.clear()
            state.last_delivered.clear()
            self._log.info(
                "connection_unregistered",
                connection_id=connection_id,
                user_id=state.user_id,
            )
        return state

    def get(self, connection_id: str) -> Optional[ConnectionState]:
        return self._connections.get(connection_id)

    def get_by_user(self, user_id: str) -> list[ConnectionState]:
        return [s for s in self._connections.values() if s.user_id == user_id]

    def all(self) -> list[ConnectionState]:
        return list(self._connections.values())

    def count_by_plan(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for state in self._connections.values():
            counts[state.plan.value] = counts.get(state.plan.value, 0) + 1
        return counts

    async def send(self, state: ConnectionState, message: dict[str, Any]) -> bool:
        """Send one message to one connection."""
        return await self._send_text(state, encode_message(message), message.get("type", ""))

    async def _send_text(self, state: ConnectionState, text: str, message_type: str) -> bool:
        if state.ws.closed:
            self.unregister(state.connection_id)
            return False
        try:
            await state.ws.send_str(text)
        except (ConnectionResetError, RuntimeError) as e:
            self._log.warning(
                "send_failed",
                connection_id=state.connection_id,
                error=str(e),
            )
            self.unregister(state.connection_id)
            return False

        if self._metrics:
            self._metrics.record_ws_message("out", message_type)
        return True

    async def broadcast(
        self,
        message: dict[str, Any],
        predicate: Optional[ConnectionPredicate] = None,
    ) -> int:
        """Send to every connection matching ``predicate``; returns deliveries."""
        text = encode_message(message)
        message_type = message.get("type", "")
        delivered = 0
        # Snapshot: failed sends unregister during iteration
        for state in self.all():
            if predicate is not None and not predicate(state):
                continue
            if await self._send_text(state, text, message_type):
                delivered += 1
        return delivered

    async def broadcast_to_user(self, user_id: str, message: dict[str, Any]) -> int:
        return await self.broadcast(message, lambda s: s.user_id == user_id)

    async def evict_stale_guests(self, now: Optional[float] = None) -> int:
        """Close guest connections idle longer than the guest idle window."""
        now = self._clock() if now is None else now
        evicted = 0
        for state in self.all():
            if not state.is_guest:
                continue
            if now - state.last_seen <= self._guest_idle_seconds:
                continue

            try:
                await state.ws.close(
                    code=GUEST_EXPIRED_CLOSE_CODE,
                    message=GUEST_EXPIRED_REASON.encode("utf-8"),
                )
            except (ConnectionResetError, RuntimeError) as e:
                self._log.debug("close_failed", connection_id=state.connection_id, error=str(e))
            self.unregister(state.connection_id)
            evicted += 1
            if self._metrics:
                self._metrics.record_eviction("guest_idle")

        if evicted:
            self._log.info("stale_guests_evicted", count=evicted)
        return evicted

    async def close_all(self, code: int = 1001, reason: str = "Server shutting down") -> int:
        closed = 0
        for state in self.all():
            try:
                await state.ws.close(code=code, message=reason.encode("utf-8"))
            except (ConnectionResetError, RuntimeError):
                pass
            self.unregister(state.connection_id)
            closed += 1
        return closed


class GuestSweeper(BaseComponent):
    """Periodically evicts idle guest connections."""

    def __init__(self, registry: ConnectionRegistry, interval_seconds: float = 60.0):
        super().__init__(name="GuestSweeper")
        self._registry = registry
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._log = log.bind(component="guest_sweeper")

    async def _do_start(self) -> None:
        self._task = asyncio.create_task(self._run())
        self._log.info("guest_sweeper_started", interval_seconds=self._interval)

    async def _do_stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._log.info("guest_sweeper_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        if self._task is None or self._task.done():
            return HealthCheckResult.unhealthy("Sweep task not running")
        return HealthCheckResult.healthy(connections=len(self._registry))

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._registry.evict_stale_guests()
            except Exception as e:
                self._log.error("guest_sweep_failed", error=str(e))
