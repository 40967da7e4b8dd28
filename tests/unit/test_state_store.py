"""
Unit tests for StateStore service.

Tests the SQLite persistence layer for trades, orders, emergency events,
regime readings and users.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from janus.domain.emergency import SYSTEM_USER_ID, EmergencyEvent
from janus.domain.order import Order, OrderStatus
from janus.domain.risk import PlanTier, RegimeReading, RiskRegime, UserAccount
from janus.domain.trade import Side, Trade, TradeStatus, Venue
from janus.services.state_store import ConnectionPool, StateStore, hash_api_key


def make_trade(user_id: str = "user-1", size: str = "100", **kwargs) -> Trade:
    return Trade(
        user_id=user_id,
        market_pair_id="pair-1",
        size=Decimal(size),
        entry_price=Decimal("0.45"),
        **kwargs,
    )


def make_order(trade_id=None, venue=Venue.POLYMARKET, **kwargs) -> Order:
    return Order(
        user_id="user-1",
        market_pair_id="pair-1",
        venue=venue,
        side=Side.BUY,
        size=Decimal("100"),
        price=Decimal("0.45"),
        trade_id=trade_id,
        **kwargs,
    )


class TestConnectionPool:
    """Test ConnectionPool functionality."""

    @pytest.mark.asyncio
    async def test_connection_pool_connect_and_close(self, tmp_path):
        """Verify basic connect and close."""
        pool = ConnectionPool(str(tmp_path / "test_pool.db"))

        assert not pool.is_connected
        await pool.connect()
        assert pool.is_connected
        await pool.close()
        assert not pool.is_connected

    @pytest.mark.asyncio
    async def test_acquire_raises_when_not_connected(self, tmp_path):
        """Verify acquire raises when not connected."""
        pool = ConnectionPool(str(tmp_path / "test_pool.db"))

        with pytest.raises(RuntimeError, match="not connected"):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_creates_directory(self, tmp_path):
        """Verify the pool creates the parent directory."""
        pool = ConnectionPool(str(tmp_path / "subdir" / "deep" / "test.db"))

        await pool.connect()
        assert (tmp_path / "subdir" / "deep").exists()
        await pool.close()


class TestStateStoreConnection:
    """Test StateStore connection and health."""

    @pytest.mark.asyncio
    async def test_health_check_connected(self, state_store):
        """Verify health reports healthy when connected."""
        health = await state_store.health_check()
        assert health["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_check_disconnected(self, tmp_path):
        """Verify health reports unhealthy before connect."""
        store = StateStore(db_path=str(tmp_path / "x.db"))
        health = await store.health_check()
        assert health["status"] == "unhealthy"


class TestTrades:
    """Test trade persistence and transitions."""

    @pytest.mark.asyncio
    async def test_save_and_get_trade(self, state_store):
        """Verify a trade round-trips through the store."""
        trade = make_trade()
        await state_store.save_trade(trade)

        loaded = await state_store.get_trade(trade.id)

        assert loaded is not None
        assert loaded.user_id == "user-1"
        assert loaded.size == Decimal("100")
        assert loaded.entry_price == Decimal("0.45")
        assert loaded.status is TradeStatus.OPEN
        assert loaded.venue is Venue.POLYMARKET

    @pytest.mark.asyncio
    async def test_get_missing_trade(self, state_store):
        """Verify an unknown id returns None."""
        assert await state_store.get_trade("nope") is None

    @pytest.mark.asyncio
    async def test_get_trades_filters(self, state_store):
        """Verify user and status filters."""
        await state_store.save_trade(make_trade("user-1"))
        await state_store.save_trade(make_trade("user-2"))
        closed = make_trade("user-1")
        await state_store.save_trade(closed)
        await state_store.transition_trade(closed.id, TradeStatus.CLOSED)

        assert len(await state_store.get_trades()) == 3
        assert len(await state_store.get_trades(user_id="user-1")) == 2
        open_user_1 = await state_store.get_trades(user_id="user-1", status=TradeStatus.OPEN)
        assert len(open_user_1) == 1

    @pytest.mark.asyncio
    async def test_transition_is_conditional(self, state_store):
        """Verify only open trades transition; terminal trades stay terminal."""
        trade = make_trade()
        await state_store.save_trade(trade)

        assert await state_store.transition_trade(trade.id, TradeStatus.FAILED) is True
        assert await state_store.transition_trade(trade.id, TradeStatus.CLOSED) is False

        loaded = await state_store.get_trade(trade.id)
        assert loaded.status is TradeStatus.FAILED
        assert loaded.closed_at is not None

    @pytest.mark.asyncio
    async def test_transition_records_exit_fields(self, state_store):
        """Verify exit price, pnl and emergency reason are stored."""
        trade = make_trade()
        await state_store.save_trade(trade)

        await state_store.transition_trade(
            trade.id,
            TradeStatus.EMERGENCY_CLOSED,
            exit_price=Decimal("0.5"),
            pnl=Decimal("5"),
            emergency_reason="halt",
        )
        loaded = await state_store.get_trade(trade.id)

        assert loaded.exit_price == Decimal("0.5")
        assert loaded.pnl == Decimal("5")
        assert loaded.emergency_reason == "halt"

    @pytest.mark.asyncio
    async def test_transition_to_open_rejected(self, state_store):
        """Verify OPEN is not a valid transition target."""
        with pytest.raises(ValueError):
            await state_store.transition_trade("any", TradeStatus.OPEN)

    @pytest.mark.asyncio
    async def test_open_trades_and_exposure(self, state_store):
        """Verify open trade listing and the exposure sum."""
        first = make_trade("user-1", "100")
        second = make_trade("user-1", "250")
        other = make_trade("user-2", "900")
        for trade in (first, second, other):
            await state_store.save_trade(trade)
        await state_store.transition_trade(second.id, TradeStatus.CLOSED)

        assert [t.id for t in await state_store.get_open_trades("user-1")] == [first.id]
        assert len(await state_store.get_open_trades()) == 2
        assert await state_store.get_open_exposure("user-1") == Decimal("100")
        assert await state_store.get_open_exposure("user-1", exclude_trade_id=first.id) == 0
        assert await state_store.get_open_exposure("nobody") == 0


class TestOrders:
    """Test order persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get_order(self, state_store):
        """Verify an order round-trips through the store."""
        order = make_order()
        await state_store.save_order(order)

        loaded = await state_store.get_order(order.id)

        assert loaded is not None
        assert loaded.status is OrderStatus.PENDING
        assert loaded.filled_size == Decimal("0")
        assert loaded.trade_id is None

    @pytest.mark.asyncio
    async def test_update_order_fields(self, state_store):
        """Verify update_order touches only the named fields."""
        order = make_order()
        await state_store.save_order(order)
        later = datetime.now(timezone.utc) + timedelta(seconds=5)

        await state_store.update_order(
            order.id,
            {"status": OrderStatus.FILLED, "filled_size": Decimal("100"), "external_order_id": "x-1"},
            later,
        )
        loaded = await state_store.get_order(order.id)

        assert loaded.status is OrderStatus.FILLED
        assert loaded.filled_size == Decimal("100")
        assert loaded.external_order_id == "x-1"
        assert loaded.price == Decimal("0.45")
        assert loaded.updated_at == later

    @pytest.mark.asyncio
    async def test_update_unknown_field_rejected(self, state_store):
        """Verify unknown columns are refused."""
        with pytest.raises(ValueError):
            await state_store.update_order("id", {"size": 1}, datetime.now(timezone.utc))

    @pytest.mark.asyncio
    async def test_orders_for_trade_oldest_first(self, state_store):
        """Verify the leg timeline is ordered by creation time."""
        trade = make_trade()
        await state_store.save_trade(trade)
        now = datetime.now(timezone.utc)
        leg_b = make_order(trade.id, Venue.KALSHI, created_at=now + timedelta(seconds=1))
        leg_a = make_order(trade.id, Venue.POLYMARKET, created_at=now)
        await state_store.save_order(leg_b)
        await state_store.save_order(leg_a)
        await state_store.save_order(make_order())

        legs = await state_store.get_orders_for_trade(trade.id)

        assert [o.venue for o in legs] == [Venue.POLYMARKET, Venue.KALSHI]


class TestEmergencyEvents:
    """Test emergency event persistence."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, state_store):
        """Verify an event and its metadata round-trip."""
        event = EmergencyEvent(user_id="user-1", trigger_reason="halt", metadata={"scope": "user"})
        await state_store.save_emergency_event(event)

        loaded = await state_store.get_emergency_event(event.id)

        assert loaded.trigger_reason == "halt"
        assert loaded.metadata == {"scope": "user"}
        assert loaded.is_active

    @pytest.mark.asyncio
    async def test_active_lookup_and_resolve(self, state_store):
        """Verify active lookups and single resolution."""
        event = EmergencyEvent(user_id=SYSTEM_USER_ID, trigger_reason="halt")
        await state_store.save_emergency_event(event)

        assert (await state_store.get_active_emergency_event(SYSTEM_USER_ID)).id == event.id
        assert await state_store.has_unresolved_emergency([SYSTEM_USER_ID, "user-1"])
        assert not await state_store.has_unresolved_emergency(["user-1"])
        assert not await state_store.has_unresolved_emergency([])

        now = datetime.now(timezone.utc)
        assert await state_store.resolve_emergency_event(event.id, now) is True
        assert await state_store.resolve_emergency_event(event.id, now) is False
        assert await state_store.get_active_emergency_events() == []

    @pytest.mark.asyncio
    async def test_add_trades_closed(self, state_store):
        """Verify the closed-trade counter is incremented in place."""
        event = EmergencyEvent(user_id="user-1", trigger_reason="halt", trades_closed=2)
        await state_store.save_emergency_event(event)

        await state_store.add_trades_closed(event.id, 3)

        assert (await state_store.get_emergency_event(event.id)).trades_closed == 5


class TestCollaboratorTables:
    """Test regime and user reads."""

    @pytest.mark.asyncio
    async def test_latest_regime(self, state_store):
        """Verify the newest regime reading wins."""
        now = datetime.now(timezone.utc)
        await state_store.record_regime(RegimeReading(RiskRegime.LOW, created_at=now - timedelta(minutes=5)))
        await state_store.record_regime(RegimeReading(RiskRegime.CRITICAL, created_at=now))

        latest = await state_store.get_latest_regime()

        assert latest.regime is RiskRegime.CRITICAL
        assert latest.blocks_trading

    @pytest.mark.asyncio
    async def test_no_regime(self, state_store):
        """Verify an empty table returns None."""
        assert await state_store.get_latest_regime() is None

    @pytest.mark.asyncio
    async def test_user_lookup_by_api_key(self, state_store):
        """Verify API keys are stored hashed and resolve to the user."""
        await state_store.save_user(UserAccount(id="u-1", plan=PlanTier.ENTERPRISE), api_key="secret")

        account = await state_store.get_user_by_api_key("secret")

        assert account.id == "u-1"
        assert account.plan is PlanTier.ENTERPRISE
        assert await state_store.get_user_by_api_key("wrong") is None
        assert hash_api_key("secret") != "secret"
