"""
HTTP control surface for Janus.

Serves the trade and emergency-stop routes, /health and /metrics, and
mounts the real-time gateway at /ws on the same aiohttp site.

Error mapping:
    AdmissionRejectedError          -> 400
    LegExecutionFailed,
    VenueTransportError             -> 502
    TradeNotFoundError              -> 404
    InvalidTradeTransitionError     -> 409
"""

from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import structlog
from aiohttp import web

from janus import __version__
from janus.core.lifecycle import BaseComponent, HealthCheckResult
from janus.core.retry import (
    AdmissionRejectedError,
    InvalidTradeTransitionError,
    LegExecutionFailed,
    TradeNotFoundError,
    VenueTransportError,
)
from janus.domain.trade import ArbOpportunity, TradeStatus

if TYPE_CHECKING:
    from janus.realtime.gateway import RealtimeGateway
    from janus.services.arb_coordinator import ArbCoordinator
    from janus.services.emergency_stop import EmergencyStopService
    from janus.services.metrics import MetricsEmitter
    from janus.services.state_store import StateStore

log = structlog.get_logger()

HealthProvider = Callable[[], Awaitable[dict[str, Any]]]


def _error(status: int, message: str, code: Optional[str] = None) -> web.Response:
    body: dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    return web.json_response(body, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise web.HTTPBadRequest(
            text='{"error": "Request body must be JSON"}',
            content_type="application/json",
        ) from e
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text='{"error": "Request body must be a JSON object"}',
            content_type="application/json",
        )
    return body


def _decimal(value: Any, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{name} must be numeric") from e
    if not result.is_finite():
        raise ValueError(f"{name} must be finite")
    return result


class ControlApi(BaseComponent):
    """aiohttp server for the control routes and the WebSocket gateway.

    Usage:
        api = ControlApi(
            state_store=store,
            coordinator=coordinator,
            emergency=emergency,
            gateway=gateway,
            metrics=metrics,
            health_provider=app.get_health,
            port=8080,
        )
        await api.start()
    """

    def __init__(
        self,
        state_store: "StateStore",
        coordinator: "ArbCoordinator",
        emergency: "EmergencyStopService",
        gateway: Optional["RealtimeGateway"] = None,
        metrics: Optional["MetricsEmitter"] = None,
        health_provider: Optional[HealthProvider] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
    ) -> None:
        super().__init__(name="ControlApi")
        self._store = state_store
        self._coordinator = coordinator
        self._emergency = emergency
        self._gateway = gateway
        self._metrics = metrics
        self._health_provider = health_provider
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._log = log.bind(component="control_api")

    @property
    def port(self) -> int:
        return self._port

    def build_app(self) -> web.Application:
        """Application with every route registered."""
        app = web.Application()
        app.router.add_get("/", self._handle_root)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)

        app.router.add_post("/trades/arb", self._handle_coordinate_arb)
        app.router.add_get("/trades", self._handle_list_trades)
        app.router.add_get("/trades/{trade_id}", self._handle_get_trade)
        app.router.add_post("/trades/{trade_id}/close", self._handle_close_trade)

        app.router.add_post("/emergency/stop", self._handle_emergency_stop)
        app.router.add_get("/emergency/active", self._handle_emergency_active)
        app.router.add_post("/emergency/{event_id}/resolve", self._handle_emergency_resolve)

        if self._gateway is not None:
            app.router.add_get("/ws", self._gateway.handle)
        return app

    async def _do_start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        self._log.info("control_api_started", host=self._host, port=self._port)

    async def _do_stop(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._runner = None
        self._site = None
        self._log.info("control_api_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        if self._site is None:
            return HealthCheckResult.unhealthy("Server not running")
        return HealthCheckResult.healthy(port=self._port)

    # ============ Service ============

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({
            "service": "janus",
            "version": __version__,
            "endpoints": ["/health", "/metrics", "/trades", "/emergency", "/ws"],
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        if self._health_provider is None:
            return web.json_response(
                {"status": "unknown", "error": "No health provider configured"},
                status=503,
            )
        try:
            health = await self._health_provider()
        except Exception as e:
            self._log.error("health_check_error", error=str(e))
            return web.json_response({"status": "unhealthy", "error": str(e)}, status=503)

        status_code = 503 if health.get("status") == "unhealthy" else 200
        return web.json_response(health, status=status_code)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        if self._metrics is None:
            return web.Response(text="# No metrics configured\n", content_type="text/plain")
        return web.Response(text=self._metrics.get_metrics(), content_type="text/plain")

    # ============ Trades ============

    async def _handle_coordinate_arb(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        try:
            user_id = body["userId"]
            opportunity = ArbOpportunity.from_dict(body.get("opportunity") or {})
            size_usd = _decimal(body["sizeUsd"], "sizeUsd")
        except KeyError as e:
            return _error(400, f"missing field {e.args[0]}", "INVALID_REQUEST")
        except ValueError as e:
            return _error(400, str(e), "INVALID_REQUEST")
        if size_usd <= 0:
            return _error(400, "sizeUsd must be positive", "INVALID_REQUEST")

        try:
            trade = await self._coordinator.coordinate_arb(str(user_id), opportunity, size_usd)
        except AdmissionRejectedError as e:
            return _error(400, e.reason, "ADMISSION_REJECTED")
        except LegExecutionFailed as e:
            return web.json_response(
                {
                    "error": str(e),
                    "code": type(e).__name__,
                    "venue": e.venue,
                    "orderId": e.order_id,
                    "status": e.status,
                },
                status=502,
            )
        except VenueTransportError as e:
            return _error(502, str(e), "VENUE_TRANSPORT")

        return web.json_response({"trade": trade.to_dict()}, status=201)

    async def _handle_list_trades(self, request: web.Request) -> web.Response:
        status = request.query.get("status")
        try:
            trade_status = TradeStatus(status) if status else None
            limit = int(request.query.get("limit", "100"))
        except ValueError as e:
            return _error(400, str(e), "INVALID_REQUEST")

        trades = await self._store.get_trades(
            user_id=request.query.get("userId"),
            status=trade_status,
            limit=limit,
        )
        return web.json_response({"trades": [t.to_dict() for t in trades]})

    async def _handle_get_trade(self, request: web.Request) -> web.Response:
        trade_id = request.match_info["trade_id"]
        trade = await self._store.get_trade(trade_id)
        if trade is None:
            return _error(404, f"trade {trade_id} not found", "NOT_FOUND")

        orders = await self._store.get_orders_for_trade(trade_id)
        return web.json_response({
            "trade": trade.to_dict(),
            "orders": [o.to_dict() for o in orders],
        })

    async def _handle_close_trade(self, request: web.Request) -> web.Response:
        trade_id = request.match_info["trade_id"]
        body = await _json_body(request)
        try:
            exit_price = _decimal(body["exitPrice"], "exitPrice")
        except KeyError:
            return _error(400, "missing field exitPrice", "INVALID_REQUEST")
        except ValueError as e:
            return _error(400, str(e), "INVALID_REQUEST")

        try:
            trade = await self._coordinator.close_trade(trade_id, exit_price)
        except TradeNotFoundError as e:
            return _error(404, str(e), "NOT_FOUND")
        except InvalidTradeTransitionError as e:
            return _error(409, str(e), "INVALID_TRANSITION")

        return web.json_response({"trade": trade.to_dict()})

    # ============ Emergency ============

    async def _handle_emergency_stop(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        reason = body.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            return _error(400, "reason is required", "INVALID_REQUEST")

        user_id = body.get("userId") or None
        event = await self._emergency.trigger(reason.strip(), user_id)
        return web.json_response({"event": event.to_dict()}, status=201)

    async def _handle_emergency_resolve(self, request: web.Request) -> web.Response:
        event_id = request.match_info["event_id"]
        event = await self._emergency.resolve_emergency(event_id)
        if event is None:
            return _error(404, f"emergency event {event_id} not found", "NOT_FOUND")
        return web.json_response({"event": event.to_dict()})

    async def _handle_emergency_active(self, request: web.Request) -> web.Response:
        events = await self._emergency.get_active_events()
        return web.json_response({"events": [e.to_dict() for e in events]})
