"""
Unit tests for the HTTP control API.

Routes are served through aiohttp's TestServer; the coordinator and the
emergency service are mocks, the store is a real SQLite file.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from janus.core.retry import (
    AdmissionRejectedError,
    InvalidTradeTransitionError,
    LegExecutionFailed,
    OneSidedPositionError,
    TradeNotFoundError,
    VenueNetworkError,
)
from janus.domain.emergency import EmergencyEvent
from janus.domain.order import Order, OrderStatus
from janus.domain.trade import Side, Trade, TradeStatus, Venue
from janus.services.control_api import ControlApi

OPPORTUNITY = {
    "marketPairId": "btc-100k-2026",
    "polymarketPrice": "0.45",
    "kalshiPrice": "0.52",
    "confidence": 80,
    "polymarketTokenId": "123456",
    "kalshiTicker": "KXBTC-26DEC31-100K",
}


def make_trade(**kwargs) -> Trade:
    return Trade(user_id="user-1", market_pair_id="btc-100k-2026", size=Decimal("100"),
                 entry_price=Decimal("0.45"), **kwargs)


@pytest.fixture
def coordinator():
    mock = MagicMock()
    mock.coordinate_arb = AsyncMock(return_value=make_trade())
    mock.close_trade = AsyncMock()
    return mock


@pytest.fixture
def emergency():
    mock = MagicMock()
    mock.trigger = AsyncMock()
    mock.resolve_emergency = AsyncMock(return_value=None)
    mock.get_active_events = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def health_provider():
    return AsyncMock(return_value={"status": "healthy", "message": "OK"})


@pytest_asyncio.fixture
async def client(state_store, coordinator, emergency, metrics, health_provider):
    api = ControlApi(
        state_store=state_store,
        coordinator=coordinator,
        emergency=emergency,
        metrics=metrics,
        health_provider=health_provider,
    )
    client = TestClient(TestServer(api.build_app()))
    await client.start_server()
    yield client
    await client.close()


class TestServiceRoutes:
    """Tests for /, /health and /metrics."""

    @pytest.mark.asyncio
    async def test_root(self, client):
        resp = await client.get("/")
        body = await resp.json()

        assert resp.status == 200
        assert body["service"] == "janus"
        assert "/ws" in body["endpoints"]

    @pytest.mark.asyncio
    async def test_health_ok(self, client):
        """Verify healthy status returns 200 with the provider body."""
        resp = await client.get("/health")

        assert resp.status == 200
        assert (await resp.json())["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_unhealthy(self, client, health_provider):
        """Verify unhealthy status returns 503."""
        health_provider.return_value = {"status": "unhealthy", "message": "db down"}

        resp = await client.get("/health")

        assert resp.status == 503

    @pytest.mark.asyncio
    async def test_health_degraded_is_200(self, client, health_provider):
        health_provider.return_value = {"status": "degraded"}
        assert (await client.get("/health")).status == 200

    @pytest.mark.asyncio
    async def test_health_provider_error(self, client, health_provider):
        """Verify a failing provider reports 503."""
        health_provider.side_effect = RuntimeError("boom")

        resp = await client.get("/health")

        assert resp.status == 503
        assert (await resp.json())["error"] == "boom"

    @pytest.mark.asyncio
    async def test_metrics(self, client, metrics):
        """Verify Prometheus text output."""
        metrics.record_order_rejection("size")

        resp = await client.get("/metrics")
        text = await resp.text()

        assert resp.status == 200
        assert resp.content_type == "text/plain"
        assert 'janus_order_rejections_total{check="size"} 1.0' in text


class TestCoordinateArb:
    """Tests for POST /trades/arb."""

    async def post(self, client, **overrides):
        body = {"userId": "user-1", "opportunity": OPPORTUNITY, "sizeUsd": "100"}
        body.update(overrides)
        return await client.post("/trades/arb", json=body)

    @pytest.mark.asyncio
    async def test_success(self, client, coordinator):
        """Verify 201 with the opened trade."""
        resp = await self.post(client)
        body = await resp.json()

        assert resp.status == 201
        assert body["trade"]["status"] == "open"
        user_id, opportunity, size = coordinator.coordinate_arb.await_args.args
        assert user_id == "user-1"
        assert opportunity.kalshi_ticker == "KXBTC-26DEC31-100K"
        assert size == Decimal("100")

    @pytest.mark.asyncio
    async def test_missing_user(self, client):
        resp = await client.post("/trades/arb", json={"opportunity": OPPORTUNITY, "sizeUsd": 1})

        assert resp.status == 400
        assert (await resp.json())["code"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"sizeUsd": "lots"},
            {"sizeUsd": "-5"},
            {"opportunity": {**OPPORTUNITY, "polymarketPrice": "1.5"}},
            {"opportunity": {"marketPairId": "x"}},
        ],
    )
    async def test_invalid_body(self, client, coordinator, overrides):
        """Verify validation failures are 400 and never reach the coordinator."""
        resp = await self.post(client, **overrides)

        assert resp.status == 400
        coordinator.coordinate_arb.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_json_body(self, client):
        resp = await client.post("/trades/arb", data="not json")
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_admission_rejected(self, client, coordinator):
        """Verify gate rejections are 400 with the reason."""
        coordinator.coordinate_arb.side_effect = AdmissionRejectedError("Emergency stop active")

        resp = await self.post(client)

        assert resp.status == 400
        assert await resp.json() == {"error": "Emergency stop active", "code": "ADMISSION_REJECTED"}

    @pytest.mark.asyncio
    async def test_leg_failure(self, client, coordinator):
        """Verify leg failures are 502 with the failing leg."""
        coordinator.coordinate_arb.side_effect = LegExecutionFailed(
            "Polymarket leg ended cancelled", venue="polymarket", order_id="o-1", status="cancelled"
        )

        resp = await self.post(client)
        body = await resp.json()

        assert resp.status == 502
        assert body["code"] == "LegExecutionFailed"
        assert body["venue"] == "polymarket"
        assert body["orderId"] == "o-1"
        assert body["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_one_sided(self, client, coordinator):
        coordinator.coordinate_arb.side_effect = OneSidedPositionError(
            "Leg A filled but leg B failed", venue="kalshi", order_id="o-2"
        )

        resp = await self.post(client)

        assert resp.status == 502
        assert (await resp.json())["code"] == "OneSidedPositionError"

    @pytest.mark.asyncio
    async def test_transport_error(self, client, coordinator):
        """Verify venue transport errors are 502."""
        coordinator.coordinate_arb.side_effect = VenueNetworkError("polymarket", "timeout")

        resp = await self.post(client)

        assert resp.status == 502
        assert (await resp.json())["code"] == "VENUE_TRANSPORT"


class TestTradeRoutes:
    """Tests for trade reads and manual close."""

    @pytest.mark.asyncio
    async def test_list_trades(self, client, state_store):
        """Verify user and status filters."""
        await state_store.save_trade(make_trade())
        failed = make_trade()
        await state_store.save_trade(failed)
        await state_store.transition_trade(failed.id, TradeStatus.FAILED)

        resp = await client.get("/trades", params={"userId": "user-1", "status": "failed"})
        body = await resp.json()

        assert resp.status == 200
        assert [t["id"] for t in body["trades"]] == [failed.id]

    @pytest.mark.asyncio
    async def test_list_bad_status(self, client):
        resp = await client.get("/trades", params={"status": "exploded"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_get_trade_with_orders(self, client, state_store):
        """Verify the trade is returned with its leg timeline."""
        trade = make_trade()
        await state_store.save_trade(trade)
        await state_store.save_order(Order(
            user_id="user-1", market_pair_id="btc-100k-2026", venue=Venue.POLYMARKET,
            side=Side.BUY, size=Decimal("100"), price=Decimal("0.45"),
            trade_id=trade.id, status=OrderStatus.FILLED,
        ))

        resp = await client.get(f"/trades/{trade.id}")
        body = await resp.json()

        assert resp.status == 200
        assert body["trade"]["id"] == trade.id
        assert len(body["orders"]) == 1

    @pytest.mark.asyncio
    async def test_get_unknown_trade(self, client):
        resp = await client.get("/trades/missing")

        assert resp.status == 404
        assert (await resp.json())["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_close_trade(self, client, coordinator):
        """Verify close passes the exit price through."""
        coordinator.close_trade.return_value = make_trade(
            status=TradeStatus.CLOSED, exit_price=Decimal("0.55"), pnl=Decimal("10")
        )

        resp = await client.post("/trades/t-1/close", json={"exitPrice": "0.55"})
        body = await resp.json()

        assert resp.status == 200
        assert body["trade"]["pnl"] == "10"
        coordinator.close_trade.assert_awaited_once_with("t-1", Decimal("0.55"))

    @pytest.mark.asyncio
    async def test_close_missing_price(self, client):
        resp = await client.post("/trades/t-1/close", json={})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_close_unknown(self, client, coordinator):
        coordinator.close_trade.side_effect = TradeNotFoundError("trade t-1 not found")
        assert (await client.post("/trades/t-1/close", json={"exitPrice": 0.5})).status == 404

    @pytest.mark.asyncio
    async def test_close_not_open(self, client, coordinator):
        """Verify closing a terminal trade is a conflict."""
        coordinator.close_trade.side_effect = InvalidTradeTransitionError("trade t-1 is closed")

        resp = await client.post("/trades/t-1/close", json={"exitPrice": 0.5})

        assert resp.status == 409
        assert (await resp.json())["code"] == "INVALID_TRANSITION"


class TestEmergencyRoutes:
    """Tests for the kill-switch routes."""

    @pytest.mark.asyncio
    async def test_trigger_system(self, client, emergency):
        """Verify a stop without userId is system-wide."""
        emergency.trigger.return_value = EmergencyEvent(
            user_id="00000000-0000-0000-0000-000000000000", trigger_reason="halt", trades_closed=4
        )

        resp = await client.post("/emergency/stop", json={"reason": " halt "})
        body = await resp.json()

        assert resp.status == 201
        assert body["event"]["scope"] == "system"
        assert body["event"]["tradesClosed"] == 4
        emergency.trigger.assert_awaited_once_with("halt", None)

    @pytest.mark.asyncio
    async def test_trigger_user(self, client, emergency):
        emergency.trigger.return_value = EmergencyEvent(user_id="user-1", trigger_reason="halt")

        resp = await client.post("/emergency/stop", json={"reason": "halt", "userId": "user-1"})

        assert resp.status == 201
        emergency.trigger.assert_awaited_once_with("halt", "user-1")

    @pytest.mark.asyncio
    async def test_trigger_requires_reason(self, client, emergency):
        """Verify an empty reason is refused."""
        resp = await client.post("/emergency/stop", json={"reason": ""})

        assert resp.status == 400
        emergency.trigger.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_active(self, client, emergency):
        emergency.get_active_events.return_value = [
            EmergencyEvent(user_id="user-1", trigger_reason="halt")
        ]

        body = await (await client.get("/emergency/active")).json()

        assert len(body["events"]) == 1
        assert body["events"][0]["resolvedAt"] is None

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, client):
        """Verify resolving an unknown event is 404."""
        assert (await client.post("/emergency/missing/resolve")).status == 404

    @pytest.mark.asyncio
    async def test_resolve(self, client, emergency):
        event = EmergencyEvent(user_id="user-1", trigger_reason="halt")
        emergency.resolve_emergency.return_value = event

        resp = await client.post(f"/emergency/{event.id}/resolve")

        assert resp.status == 200
        emergency.resolve_emergency.assert_awaited_once_with(event.id)


class TestServerLifecycle:
    """Tests for start/stop on a real port."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, state_store, coordinator, emergency):
        """Verify the server binds and reports health."""
        api = ControlApi(state_store, coordinator, emergency, host="127.0.0.1", port=0)

        await api.start()
        health = await api.health_check()
        await api.stop()

        assert health.status.value == "healthy"
        assert not api.is_running
