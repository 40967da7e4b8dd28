"""
WebSocket gateway served by aiohttp at ``GET /ws``.

Authentication is optional: a ``token`` query parameter or a Bearer
Authorization header is looked up as an API key; anything else connects as
a guest. Pings and pongs are handled here (``autoping=False``) so liveness
is tracked per connection.
"""
import asyncio
from typing import TYPE_CHECKING, Any, Optional

import structlog
from aiohttp import WSMsgType, web

from janus.domain.risk import PlanTier, UserAccount
from janus.realtime.protocol import (
    ClientMessage,
    ErrorCode,
    MessageType,
    ProtocolError,
    build_message,
    error_message,
    parse_client_message,
)
from janus.realtime.registry import ConnectionRegistry, ConnectionState

if TYPE_CHECKING:
    from janus.core.config import ConfigManager
    from janus.services.metrics import MetricsEmitter
    from janus.services.state_store import StateStore

log = structlog.get_logger()

RATE_LIMIT_MESSAGES = 50
RATE_LIMIT_WINDOW_SECONDS = 60.0
BASIC_SYMBOL_LIMIT = 10
PING_INTERVAL_SECONDS = 30.0
PONG_TIMEOUT_SECONDS = 10.0
PONG_TIMEOUT_CLOSE_CODE = 1001


class RealtimeGateway:
    """Accepts client sockets and runs the inbound protocol.

    Usage:
        gateway = RealtimeGateway(registry, state_store, metrics=metrics)
        app.router.add_get("/ws", gateway.handle)
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        state_store: "StateStore",
        metrics: Optional["MetricsEmitter"] = None,
        rate_limit: int = RATE_LIMIT_MESSAGES,
        rate_window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        symbol_limit: int = BASIC_SYMBOL_LIMIT,
        ping_interval_seconds: float = PING_INTERVAL_SECONDS,
        pong_timeout_seconds: float = PONG_TIMEOUT_SECONDS,
    ):
        self._registry = registry
        self._store = state_store
        self._metrics = metrics
        self._rate_limit = rate_limit
        self._rate_window = rate_window_seconds
        self._symbol_limit = symbol_limit
        self._ping_interval = ping_interval_seconds
        self._pong_timeout = pong_timeout_seconds
        self._clock = registry.clock
        self._log = log.bind(component="realtime_gateway")

    @classmethod
    def from_config(
        cls,
        config: "ConfigManager",
        registry: ConnectionRegistry,
        state_store: "StateStore",
        metrics: Optional["MetricsEmitter"] = None,
    ) -> "RealtimeGateway":
        return cls(
            registry=registry,
            state_store=state_store,
            metrics=metrics,
            rate_limit=config.get_int("realtime.rate_limit_messages", RATE_LIMIT_MESSAGES),
            rate_window_seconds=config.get_float(
                "realtime.rate_limit_window_seconds", RATE_LIMIT_WINDOW_SECONDS
            ),
            symbol_limit=config.get_int("realtime.basic_symbol_limit", BASIC_SYMBOL_LIMIT),
            ping_interval_seconds=config.get_float(
                "realtime.ping_interval_seconds", PING_INTERVAL_SECONDS
            ),
            pong_timeout_seconds=config.get_float(
                "realtime.pong_timeout_seconds", PONG_TIMEOUT_SECONDS
            ),
        )

    # ============ Connection Handling ============

    async def authenticate(self, request: web.Request) -> Optional[UserAccount]:
        """Resolve the request's API key, or None for a guest."""
        token = request.query.get("token")
        if not token:
            header = request.headers.get("Authorization", "")
            if header.lower().startswith("bearer "):
                token = header[7:].strip()
        if not token:
            return None

        account = await self._store.get_user_by_api_key(token)
        if account is None:
            self._log.info("unknown_token_connected_as_guest", remote=request.remote)
        return account

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for ``GET /ws``."""
        ws = web.WebSocketResponse(autoping=False)
        await ws.prepare(request)

        account = await self.authenticate(request)
        now = self._clock()
        state = ConnectionState(
            ws=ws,
            user_id=account.id if account else None,
            plan=account.plan if account else PlanTier.GUEST,
            last_seen=now,
            last_pong=now,
            window_start=now,
        )
        self._registry.register(state)
        if self._metrics:
            self._metrics.connection_opened(state.plan.value)

        keepalive = asyncio.create_task(self._keepalive(state))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    reply = await self.process_message(state, msg.data)
                    if reply is not None:
                        await self._registry.send(state, reply)
                elif msg.type == WSMsgType.PING:
                    state.touch(self._clock())
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.PONG:
                    state.last_pong = self._clock()
                    state.touch(state.last_pong)
                elif msg.type == WSMsgType.ERROR:
                    self._log.warning(
                        "connection_error",
                        connection_id=state.connection_id,
                        error=str(ws.exception()),
                    )
                    break
        finally:
            keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass
            self._registry.unregister(state.connection_id)
            if self._metrics:
                self._metrics.connection_closed(state.plan.value)

        return ws

    async def _keepalive(self, state: ConnectionState) -> None:
        """Ping on an interval; close the socket if no pong arrives in time."""
        ws = state.ws
        while not ws.closed:
            await asyncio.sleep(self._ping_interval)
            if ws.closed:
                return

            sent_at = self._clock()
            try:
                await ws.ping()
            except (ConnectionResetError, RuntimeError):
                return

            await asyncio.sleep(self._pong_timeout)
            if state.last_pong < sent_at:
                self._log.warning(
                    "pong_timeout",
                    connection_id=state.connection_id,
                    user_id=state.user_id,
                )
                if self._metrics:
                    self._metrics.record_eviction("pong_timeout")
                await ws.close(code=PONG_TIMEOUT_CLOSE_CODE, message=b"Pong timeout")
                return

    # ============ Inbound Protocol ============

    async def process_message(
        self,
        state: ConnectionState,
        raw: str,
    ) -> Optional[dict[str, Any]]:
        """Apply one inbound frame; returns the reply to send, if any."""
        now = self._clock()
        state.touch(now)

        if not state.allow_inbound(now, self._rate_limit, self._rate_window):
            self._record_inbound("rate_limited")
            return error_message(
                ErrorCode.RATE_LIMIT,
                f"Rate limit exceeded: {self._rate_limit} messages per "
                f"{int(self._rate_window)}s",
            )

        try:
            message = parse_client_message(raw)
        except ProtocolError as e:
            self._record_inbound("invalid")
            return error_message(e.code, e.message)

        self._record_inbound(message.type.value)

        if message.type is MessageType.SUBSCRIBE_SYMBOL:
            return self._subscribe(state, message)
        if message.type is MessageType.UNSUBSCRIBE_SYMBOL:
            symbol = message.payload["symbol"].strip().upper()
            state.subscribed_symbols.discard(symbol)
            state.last_delivered.pop(symbol, None)
            return None
        if message.type is MessageType.PING:
            return build_message(MessageType.PONG, {"ts": now})
        return self._set_provider(state, message)

    def _subscribe(self, state: ConnectionState, message: ClientMessage) -> Optional[dict[str, Any]]:
        symbol = message.payload["symbol"].strip().upper()
        if symbol in state.subscribed_symbols:
            return None
        if not state.plan.is_paid and len(state.subscribed_symbols) >= self._symbol_limit:
            return error_message(
                ErrorCode.SUBSCRIBE_LIMIT,
                f"{state.plan.value.capitalize()} plan limit: max {self._symbol_limit} symbols",
            )
        state.subscribed_symbols.add(symbol)
        self._log.debug("symbol_subscribed", connection_id=state.connection_id, symbol=symbol)
        return None

    def _set_provider(self, state: ConnectionState, message: ClientMessage) -> dict[str, Any]:
        if state.is_guest:
            return error_message(
                ErrorCode.UPGRADE_REQUIRED, "Guests cannot change the AI provider"
            )
        provider = message.payload["provider"].strip()
        state.preferred_provider = provider
        return build_message(MessageType.AGENT_LOG, {
            "agent": "Interface Controller",
            "message": f"Provider switched to {provider}",
            "level": "info",
        })

    def _record_inbound(self, message_type: str) -> None:
        if self._metrics:
            self._metrics.record_ws_message("in", message_type)
