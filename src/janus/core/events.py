"""
Event bus implementation using Redis pub/sub.

Carries trade updates, emergency-stop notifications and the market, whale
and agent streams between Janus instances. Topic names use ``:`` separators
(``market:prices:BTC``, ``emergency:stop:broadcast``); subscriptions accept
glob patterns.
"""
import asyncio
import fnmatch
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

import redis.asyncio as redis
import structlog

log = structlog.get_logger()


class EventEncoder(json.JSONEncoder):
    """JSON encoder for event payloads (Decimal, datetime, Enum, dataclasses)."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if is_dataclass(obj) and not isinstance(obj, type):
            return asdict(obj)
        return super().default(obj)


def encode_event(event: Any) -> str:
    """Encode an event payload as JSON."""
    if is_dataclass(event) and not isinstance(event, type):
        event = asdict(event)
    return json.dumps(event, cls=EventEncoder)


def decode_event(data: str) -> dict[str, Any]:
    """Decode JSON event data."""
    return json.loads(data)


# Handlers receive the concrete channel name and the decoded payload.
EventHandler = Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]]


class EventBus:
    """Redis-backed event bus for component communication.

    Usage:
        bus = EventBus(redis_url="redis://localhost:6379")
        await bus.connect()

        async def handler(channel, event):
            print(channel, event)

        await bus.subscribe("market:prices:*", handler)
        await bus.publish("market:prices:BTC", {"polymarketPrice": 0.52})
    """

    def __init__(self, redis_url: str = "redis://localhost:6379") -> None:
        self._redis_url = redis_url
        self._redis: Optional[redis.Redis] = None
        self._pubsub: Optional[redis.client.PubSub] = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._subscriber_task: Optional[asyncio.Task] = None
        self._running = False
        self._log = log.bind(component="event_bus")

    async def connect(self) -> None:
        """Establish connection to Redis and start the subscriber loop."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await self._redis.ping()
        self._pubsub = self._redis.pubsub()
        self._running = True
        self._subscriber_task = asyncio.create_task(self._subscriber_loop())
        self._log.info("event_bus_connected", redis_url=self._redis_url)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        self._running = False
        if self._subscriber_task:
            self._subscriber_task.cancel()
            try:
                await self._subscriber_task
            except asyncio.CancelledError:
                pass
            self._subscriber_task = None
        if self._pubsub:
            await self._pubsub.aclose()
        if self._redis:
            await self._redis.aclose()
        self._redis = None
        self._pubsub = None
        self._handlers.clear()

    @property
    def client(self) -> redis.Redis:
        """Underlying Redis client, for key/value use alongside pub/sub."""
        if not self._redis:
            raise RuntimeError("EventBus not connected")
        return self._redis

    @property
    def is_connected(self) -> bool:
        """Check if connected to Redis."""
        return self._redis is not None and self._running

    async def publish(self, channel: str, event: dict[str, Any] | Any) -> int:
        """Publish event to channel.

        Args:
            channel: Channel name (e.g., "trades:updates")
            event: Event data (dict or dataclass)

        Returns:
            Number of subscribers that received the message.
        """
        if not self._redis:
            raise RuntimeError("EventBus not connected")
        return await self._redis.publish(channel, encode_event(event))

    async def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Subscribe a handler to a channel name or glob pattern."""
        if not self._pubsub:
            raise RuntimeError("EventBus not connected")

        if pattern not in self._handlers:
            self._handlers[pattern] = []
            if _is_pattern(pattern):
                await self._pubsub.psubscribe(pattern)
            else:
                await self._pubsub.subscribe(pattern)

        self._handlers[pattern].append(handler)

    async def unsubscribe(self, pattern: str) -> None:
        """Drop every handler registered for a channel name or pattern."""
        if not self._pubsub or pattern not in self._handlers:
            return

        del self._handlers[pattern]
        if _is_pattern(pattern):
            await self._pubsub.punsubscribe(pattern)
        else:
            await self._pubsub.unsubscribe(pattern)

    async def _subscriber_loop(self) -> None:
        # get_message returns immediately while nothing is subscribed yet,
        # so poll with a timeout instead of relying on listen().
        try:
            while self._running and self._pubsub is not None:
                if not self._pubsub.subscribed:
                    await asyncio.sleep(0.1)
                    continue

                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if message is None:
                    continue
                if message["type"] not in ("message", "pmessage"):
                    continue

                channel = message["channel"]
                try:
                    data = decode_event(message["data"])
                except json.JSONDecodeError:
                    self._log.warning("malformed_event_skipped", channel=channel)
                    continue

                await self.dispatch(channel, data)
        except asyncio.CancelledError:
            pass

    async def dispatch(self, channel: str, data: dict[str, Any]) -> None:
        """Deliver an event to every handler whose pattern matches the channel."""
        for pattern, handlers in list(self._handlers.items()):
            if not self._pattern_matches(pattern, channel):
                continue
            for handler in handlers:
                try:
                    await handler(channel, data)
                except Exception as e:
                    # One failing handler must not starve the others
                    self._log.error(
                        "event_handler_failed",
                        channel=channel,
                        pattern=pattern,
                        error=str(e),
                        exc_info=True,
                    )

    def _pattern_matches(self, pattern: str, channel: str) -> bool:
        if pattern == channel:
            return True
        if not _is_pattern(pattern):
            return False
        return fnmatch.fnmatchcase(channel, pattern)


def _is_pattern(name: str) -> bool:
    return any(c in name for c in "*?[")
