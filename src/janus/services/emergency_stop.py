"""Emergency Stop Service - the kill switch.

This service:
- Closes every open trade in a scope (one user, or the whole system)
- Records one audit event per activation
- Sets a Redis flag the admission gate checks before anything else
- Notifies other instances over pub/sub and local clients directly
- Resolves activations and clears their flag
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis
import structlog

from janus.core.events import EventBus
from janus.domain.emergency import (
    SYSTEM_USER_ID,
    EmergencyEvent,
    EmergencyNotification,
    flag_key,
    stop_topic,
)
from janus.domain.order import OrderStatus
from janus.domain.trade import TradeStatus
from janus.realtime.protocol import MessageType, build_message
from janus.realtime.registry import ConnectionRegistry
from janus.services.metrics import MetricsEmitter
from janus.services.state_store import StateStore

log = structlog.get_logger()

FLAG_VALUE = "true"


class EmergencyFlagStore:
    """Fast-lookup activation flags in Redis, one key per scope.

    Keys are ``emergency:active:{user_id}`` or ``emergency:active:system``
    and carry no expiry; they are removed on resolve.
    """

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> "EmergencyFlagStore":
        return cls(redis.from_url(redis_url, encoding="utf-8", decode_responses=True))

    async def set_active(self, user_id: Optional[str] = None) -> None:
        await self._redis.set(flag_key(user_id), FLAG_VALUE)

    async def is_active(self, user_id: Optional[str] = None) -> bool:
        value = await self._redis.get(flag_key(user_id))
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value == FLAG_VALUE

    async def clear(self, user_id: Optional[str] = None) -> None:
        await self._redis.delete(flag_key(user_id))

    async def close(self) -> None:
        await self._redis.aclose()


class EmergencyStopService:
    """Triggers, checks and resolves emergency stops.

    Triggers for the same scope are serialized in process. A trigger for a
    scope that already has an unresolved event folds into that event
    instead of opening a second one.

    Event channels published:
    - emergency:stop:{user_id} - user-scoped stop
    - emergency:stop:broadcast - system-wide stop
    """

    def __init__(
        self,
        state_store: StateStore,
        flag_store: EmergencyFlagStore,
        event_bus: EventBus,
        registry: ConnectionRegistry,
        metrics: Optional[MetricsEmitter] = None,
        instance_id: Optional[str] = None,
    ):
        self._store = state_store
        self._flags = flag_store
        self._event_bus = event_bus
        self._registry = registry
        self._metrics = metrics
        self._instance_id = instance_id or str(uuid.uuid4())
        self._scope_locks: dict[str, asyncio.Lock] = {}
        self._log = log.bind(component="emergency_stop")

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def _lock_for(self, user_id: Optional[str]) -> asyncio.Lock:
        scope = user_id or SYSTEM_USER_ID
        lock = self._scope_locks.get(scope)
        if lock is None:
            lock = self._scope_locks[scope] = asyncio.Lock()
        return lock

    async def trigger(self, reason: str, user_id: Optional[str] = None) -> EmergencyEvent:
        """Halt trading for a user, or for everyone when ``user_id`` is None.

        Returns:
            The event recording this activation (an existing unresolved
            event for the scope when there is one).
        """
        async with self._lock_for(user_id):
            return await self._trigger(reason, user_id)

    async def _trigger(self, reason: str, user_id: Optional[str]) -> EmergencyEvent:
        scope = "user" if user_id else "system"
        self._log.warning(
            "emergency_stop_triggered",
            user_id=user_id or "SYSTEM",
            scope=scope,
            reason=reason,
        )

        # 1-2. Close open trades in scope; count only those actually moved
        closed_at = datetime.now(timezone.utc)
        closed_ids: list[str] = []
        for trade in await self._store.get_open_trades(user_id):
            moved = await self._store.transition_trade(
                trade.id,
                TradeStatus.EMERGENCY_CLOSED,
                closed_at=closed_at,
                emergency_reason=reason,
            )
            if moved:
                closed_ids.append(trade.id)

        # 3. Audit event
        owner = user_id or SYSTEM_USER_ID
        event = await self._store.get_active_emergency_event(owner)
        if event is not None:
            if closed_ids:
                await self._store.add_trades_closed(event.id, len(closed_ids))
                event.trades_closed += len(closed_ids)
            self._log.info(
                "emergency_event_extended",
                event_id=event.id,
                trades_closed=len(closed_ids),
            )
        else:
            event = EmergencyEvent(
                user_id=owner,
                trigger_reason=reason,
                trades_closed=len(closed_ids),
                metadata={"source": "EmergencyStopService", "scope": scope},
                triggered_at=closed_at,
            )
            await self._store.save_emergency_event(event)

        # 4. Flag
        await self._flags.set_active(user_id)

        # 5. Cross-instance notification
        notification = EmergencyNotification(
            reason=reason,
            trades_affected=len(closed_ids),
            timestamp=closed_at.isoformat(),
            origin=self._instance_id,
        )
        try:
            await self._event_bus.publish(stop_topic(user_id), notification.to_payload())
        except Exception as e:
            self._log.error("failed_to_publish_emergency_stop", error=str(e))

        # 6. Local clients
        message = build_message(MessageType.EMERGENCY_STOP, notification.to_client_payload())
        if user_id:
            delivered = await self._registry.broadcast_to_user(user_id, message)
        else:
            delivered = await self._registry.broadcast(message)

        if self._metrics:
            self._metrics.record_emergency_stop(scope, len(closed_ids))
            await self._release_positions(closed_ids)

        self._log.warning(
            "emergency_stop_completed",
            event_id=event.id,
            user_id=user_id or "SYSTEM",
            trades_closed=len(closed_ids),
            clients_notified=delivered,
        )
        return event

    async def _release_positions(self, trade_ids: list[str]) -> None:
        filled = 0
        for trade_id in trade_ids:
            orders = await self._store.get_orders_for_trade(trade_id)
            filled += sum(1 for o in orders if o.status is OrderStatus.FILLED)
        if filled and self._metrics:
            self._metrics.decrement_active_positions(filled)

    async def is_emergency_active(self, user_id: Optional[str] = None) -> bool:
        """True if trading is halted for the system or for ``user_id``.

        Flags are checked first; the store is the fallback for a flag lost
        from Redis. The fallback only considers the system scope and this
        user's scope.
        """
        if await self._flags.is_active(None):
            return True
        if user_id and await self._flags.is_active(user_id):
            return True

        owners = [SYSTEM_USER_ID]
        if user_id:
            owners.append(user_id)
        return await self._store.has_unresolved_emergency(owners)

    async def resolve_emergency(self, event_id: str) -> Optional[EmergencyEvent]:
        """Mark an event resolved and clear its scope's flag.

        Returns:
            The resolved event, or None if no such event exists.
        """
        event = await self._store.get_emergency_event(event_id)
        if event is None:
            return None
        if not event.is_active:
            return event

        async with self._lock_for(event.scope_user_id):
            changed = await self._store.resolve_emergency_event(
                event_id, datetime.now(timezone.utc)
            )
            if changed:
                await self._flags.clear(event.scope_user_id)

        self._log.info(
            "emergency_resolved",
            event_id=event_id,
            user_id=event.scope_user_id or "SYSTEM",
        )
        return await self._store.get_emergency_event(event_id)

    async def get_active_events(self) -> list[EmergencyEvent]:
        return await self._store.get_active_emergency_events()

    async def status(self) -> dict[str, Any]:
        events = await self.get_active_events()
        return {
            "system_active": await self._flags.is_active(None),
            "active_events": len(events),
        }
