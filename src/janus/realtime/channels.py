"""
Broadcast channels: EventBus topics fanned out to WebSocket clients.

Each channel is a BaseComponent that subscribes one topic (or pattern) on
start, turns each pub/sub payload into a client envelope and hands it to
the ConnectionRegistry with the audience filter for that feed.
"""
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog

from janus.core.events import EventBus
from janus.core.lifecycle import BaseComponent, HealthCheckResult
from janus.domain.emergency import STOP_TOPIC_PATTERN, EmergencyNotification, scope_from_topic
from janus.domain.events import (
    AGENT_ALPHA_TOPIC,
    AGENT_LOGS_TOPIC,
    MARKET_PRICES_PATTERN,
    MARKET_PRICES_PREFIX,
    TRADE_UPDATES_TOPIC,
    WHALE_MOVEMENTS_TOPIC,
)
from janus.realtime.protocol import MessageType, build_message
from janus.realtime.registry import ConnectionRegistry, ConnectionState

if TYPE_CHECKING:
    from janus.services.metrics import MetricsEmitter

log = structlog.get_logger()

# Agent log levels restricted to paid tiers
RESTRICTED_LOG_LEVELS = frozenset({"warning", "alert"})
_LEVEL_ALIASES = {"warn": "warning", "error": "alert", "debate": "alert"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BroadcastChannel(BaseComponent):
    """Base class for one EventBus -> WebSocket feed.

    Subclasses set ``topic`` and implement ``deliver``, returning the number
    of connections the message reached.
    """

    topic: str = ""

    def __init__(
        self,
        event_bus: EventBus,
        registry: ConnectionRegistry,
        metrics: Optional["MetricsEmitter"] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__()
        self._event_bus = event_bus
        self._registry = registry
        self._metrics = metrics
        self._clock = clock or registry.clock
        self._delivered = 0
        self._log = log.bind(component=self.name, topic=self.topic)

    @property
    def delivered_count(self) -> int:
        return self._delivered

    async def _do_start(self) -> None:
        await self._event_bus.subscribe(self.topic, self.handle)
        self._log.info("channel_started")

    async def _do_stop(self) -> None:
        await self._event_bus.unsubscribe(self.topic)
        self._log.info("channel_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(delivered=self._delivered)

    async def handle(self, channel: str, data: dict[str, Any]) -> int:
        """EventBus handler."""
        if self._metrics:
            self._metrics.record_event_bus_message(self.topic)
        if not isinstance(data, dict):
            self._log.warning("invalid_payload", channel=channel)
            return 0
        delivered = await self.deliver(channel, data)
        self._delivered += delivered
        return delivered

    async def deliver(self, channel: str, data: dict[str, Any]) -> int:
        raise NotImplementedError


class MarketPriceChannel(BroadcastChannel):
    """Per-symbol price updates, throttled per connection by plan tier."""

    topic = MARKET_PRICES_PATTERN

    async def deliver(self, channel: str, data: dict[str, Any]) -> int:
        symbol = channel[len(MARKET_PRICES_PREFIX):].upper()
        if not symbol:
            return 0

        pm_price = data.get("polymarketPrice", data.get("polyPrice", 0))
        ks_price = data.get("kalshiPrice", 0)
        spread = data.get("spread")
        if isinstance(spread, dict):
            spread = spread.get("spread")
        if spread is None:
            spread = abs(float(pm_price or 0) - float(ks_price or 0))

        message = build_message(MessageType.MARKET_UPDATE, {
            "symbol": symbol,
            "polymarketPrice": pm_price,
            "kalshiPrice": ks_price,
            "spread": spread,
            "trend": data.get("trend", "neutral"),
            "volume": str(data.get("volume", data.get("volume24h", "0"))),
        })

        now = self._clock()

        def wants(state: ConnectionState) -> bool:
            return symbol in state.subscribed_symbols and state.should_deliver(symbol, now)

        return await self._registry.broadcast(message, wants)


class WhaleAlertChannel(BroadcastChannel):
    """Large wallet movements, for authenticated connections."""

    topic = WHALE_MOVEMENTS_TOPIC

    async def deliver(self, channel: str, data: dict[str, Any]) -> int:
        message = build_message(MessageType.WHALE_ALERT, {
            "id": data.get("id") or str(uuid.uuid4()),
            "wallet": data.get("wallet", data.get("from", "unknown")),
            "action": data.get("action", data.get("type", "transfer")),
            "amount": data.get("amount", data.get("valueUsd", 0)),
            "asset": data.get("asset", data.get("symbol", "unknown")),
            "confidence": data.get("confidence", 0.5),
            "timestamp": data.get("timestamp") or _now_iso(),
        })
        return await self._registry.broadcast(message, lambda s: s.is_authenticated)


class AgentLogChannel(BroadcastChannel):
    """Agent activity. Info goes to everyone; warning and alert to paid tiers."""

    topic = AGENT_LOGS_TOPIC

    async def deliver(self, channel: str, data: dict[str, Any]) -> int:
        level = str(data.get("level", "info")).lower()
        level = _LEVEL_ALIASES.get(level, level)

        message = build_message(MessageType.AGENT_LOG, {
            "id": data.get("id") or str(uuid.uuid4()),
            "timestamp": data.get("timestamp") or _now_iso(),
            "agent": data.get("agent", "Unknown"),
            "message": data.get("message", ""),
            "level": level,
            "provider": data.get("provider", data.get("providerId")),
        })

        if level in RESTRICTED_LOG_LEVELS:
            return await self._registry.broadcast(message, lambda s: s.plan.is_paid)
        return await self._registry.broadcast(message)


class AlphaChannel(BroadcastChannel):
    """Regime and alpha metrics, for authenticated connections."""

    topic = AGENT_ALPHA_TOPIC

    async def deliver(self, channel: str, data: dict[str, Any]) -> int:
        message = build_message(MessageType.ALPHA_UPDATE, {
            "probability": data.get("probability", 50),
            "trend": data.get("trend", "stable"),
            "regime": data.get("regime"),
            "confidence": data.get("confidence"),
            "history": data.get("history", []),
            "breakdown": data.get("breakdown"),
            "generatedBy": data.get("generatedBy", data.get("providerId")),
        })
        return await self._registry.broadcast(message, lambda s: s.is_authenticated)


class TradeUpdateChannel(BroadcastChannel):
    """Trade status and P&L updates, for the owning user's connections."""

    topic = TRADE_UPDATES_TOPIC

    async def deliver(self, channel: str, data: dict[str, Any]) -> int:
        user_id = data.get("userId")
        if not user_id:
            self._log.warning("trade_update_without_user", trade_id=data.get("tradeId"))
            return 0
        message = build_message(MessageType.TRADE_UPDATE, data)
        return await self._registry.broadcast_to_user(user_id, message)


class EmergencyChannel(BroadcastChannel):
    """Kill-switch notifications from any instance.

    The instance that triggered a stop already pushed it to its own
    connections, so payloads carrying this instance's origin are skipped.
    """

    topic = STOP_TOPIC_PATTERN

    def __init__(
        self,
        event_bus: EventBus,
        registry: ConnectionRegistry,
        instance_id: str,
        metrics: Optional["MetricsEmitter"] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        super().__init__(event_bus, registry, metrics=metrics, clock=clock)
        self._instance_id = instance_id

    async def deliver(self, channel: str, data: dict[str, Any]) -> int:
        notification = EmergencyNotification.from_payload(data)
        if notification.origin == self._instance_id:
            return 0

        message = build_message(MessageType.EMERGENCY_STOP, notification.to_client_payload())
        user_id = scope_from_topic(channel)

        if user_id is None:
            delivered = await self._registry.broadcast(message)
        else:
            delivered = await self._registry.broadcast_to_user(user_id, message)

        self._log.warning(
            "emergency_stop_relayed",
            user_id=user_id,
            reason=notification.reason,
            delivered=delivered,
        )
        return delivered


def default_channels(
    event_bus: EventBus,
    registry: ConnectionRegistry,
    instance_id: str,
    metrics: Optional["MetricsEmitter"] = None,
) -> list[BroadcastChannel]:
    """Every feed the gateway serves."""
    return [
        MarketPriceChannel(event_bus, registry, metrics=metrics),
        WhaleAlertChannel(event_bus, registry, metrics=metrics),
        AgentLogChannel(event_bus, registry, metrics=metrics),
        AlphaChannel(event_bus, registry, metrics=metrics),
        TradeUpdateChannel(event_bus, registry, metrics=metrics),
        EmergencyChannel(event_bus, registry, instance_id=instance_id, metrics=metrics),
    ]
