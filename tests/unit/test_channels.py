"""
Unit tests for the broadcast channels.

Each channel is driven through ``handle`` with the payload the EventBus
would dispatch; deliveries are read back from fake sockets.
"""
import json

import pytest

from janus.domain.risk import PlanTier
from janus.realtime.channels import (
    AgentLogChannel,
    AlphaChannel,
    EmergencyChannel,
    MarketPriceChannel,
    TradeUpdateChannel,
    WhaleAlertChannel,
    default_channels,
)
from janus.realtime.registry import ConnectionRegistry, ConnectionState


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return ConnectionRegistry(clock=clock)


@pytest.fixture
def connect(registry, socket_factory):
    def _connect(plan=PlanTier.PRO, user_id="user-1", symbols=()):
        state = ConnectionState(
            ws=socket_factory(), plan=plan, user_id=user_id, subscribed_symbols=set(symbols)
        )
        registry.register(state)
        return state
    return _connect


def frames(state) -> list[dict]:
    return [json.loads(text) for text in state.ws.sent]


class TestLifecycle:
    """Tests for subscribe/unsubscribe on start and stop."""

    @pytest.mark.asyncio
    async def test_start_subscribes_topic(self, mock_event_bus, registry):
        """Verify each channel subscribes its own topic."""
        channel = MarketPriceChannel(mock_event_bus, registry)

        await channel.start()
        await channel.stop()

        mock_event_bus.subscribe.assert_awaited_once_with("market:prices:*", channel.handle)
        mock_event_bus.unsubscribe.assert_awaited_once_with("market:prices:*")

    def test_default_channels(self, mock_event_bus, registry):
        """Verify every feed is built."""
        topics = {c.topic for c in default_channels(mock_event_bus, registry, "i-1")}

        assert topics == {
            "market:prices:*",
            "whale:movements",
            "agents:logs",
            "agents:alpha",
            "trades:updates",
            "emergency:stop:*",
        }

    @pytest.mark.asyncio
    async def test_non_dict_payload_ignored(self, mock_event_bus, registry, connect):
        channel = WhaleAlertChannel(mock_event_bus, registry)
        state = connect()

        assert await channel.handle("whale:movements", ["not", "a", "dict"]) == 0
        assert state.ws.sent == []


class TestMarketPriceChannel:
    """Tests for per-symbol price delivery."""

    @pytest.mark.asyncio
    async def test_only_subscribers_receive(self, mock_event_bus, registry, connect):
        """Verify delivery follows the channel suffix, upper-cased."""
        subscriber = connect(symbols={"BTC"})
        other = connect(symbols={"ETH"})
        channel = MarketPriceChannel(mock_event_bus, registry)

        delivered = await channel.handle(
            "market:prices:btc", {"polymarketPrice": 0.45, "kalshiPrice": 0.52, "volume": 1200}
        )

        assert delivered == 1
        assert other.ws.sent == []
        message = frames(subscriber)[0]
        assert message["type"] == "market-update"
        assert message["payload"]["symbol"] == "BTC"
        assert message["payload"]["volume"] == "1200"
        assert message["payload"]["spread"] == pytest.approx(0.07)

    @pytest.mark.asyncio
    async def test_throttled_within_interval(self, mock_event_bus, registry, connect, clock):
        """Verify two updates inside the window yield one delivery."""
        free = connect(plan=PlanTier.FREE, symbols={"BTC"})
        channel = MarketPriceChannel(mock_event_bus, registry)

        await channel.handle("market:prices:BTC", {"polymarketPrice": 0.45})
        clock.now += 1.0
        await channel.handle("market:prices:BTC", {"polymarketPrice": 0.46})

        assert len(free.ws.sent) == 1

        clock.now += 1.5
        await channel.handle("market:prices:BTC", {"polymarketPrice": 0.47})
        assert len(free.ws.sent) == 2

    @pytest.mark.asyncio
    async def test_paid_tier_faster(self, mock_event_bus, registry, connect, clock):
        """Verify paid connections get updates every half second."""
        paid = connect(plan=PlanTier.PRO, symbols={"BTC"})
        free = connect(plan=PlanTier.FREE, symbols={"BTC"})
        channel = MarketPriceChannel(mock_event_bus, registry)

        await channel.handle("market:prices:BTC", {"polymarketPrice": 0.45})
        clock.now += 0.6
        await channel.handle("market:prices:BTC", {"polymarketPrice": 0.46})

        assert len(paid.ws.sent) == 2
        assert len(free.ws.sent) == 1


class TestAudienceFilters:
    """Tests for the authenticated-only and paid-only feeds."""

    @pytest.mark.asyncio
    async def test_whale_alerts_authenticated_only(self, mock_event_bus, registry, connect):
        """Verify guests do not receive whale alerts."""
        member = connect(plan=PlanTier.FREE)
        guest = connect(plan=PlanTier.GUEST, user_id=None)
        channel = WhaleAlertChannel(mock_event_bus, registry)

        await channel.handle("whale:movements", {"wallet": "0xabc", "amount": 250000, "asset": "USDC"})

        assert guest.ws.sent == []
        payload = frames(member)[0]["payload"]
        assert payload["wallet"] == "0xabc"
        assert payload["amount"] == 250000
        assert payload["id"]

    @pytest.mark.asyncio
    async def test_alpha_authenticated_only(self, mock_event_bus, registry, connect):
        member = connect(plan=PlanTier.FREE)
        guest = connect(plan=PlanTier.GUEST, user_id=None)
        channel = AlphaChannel(mock_event_bus, registry)

        await channel.handle("agents:alpha", {"probability": 72, "regime": "high"})

        assert guest.ws.sent == []
        assert frames(member)[0]["payload"]["probability"] == 72

    @pytest.mark.asyncio
    async def test_agent_info_to_everyone(self, mock_event_bus, registry, connect):
        """Verify info logs reach guests too."""
        guest = connect(plan=PlanTier.GUEST, user_id=None)
        channel = AgentLogChannel(mock_event_bus, registry)

        await channel.handle("agents:logs", {"agent": "Scout", "message": "scanning", "level": "info"})

        assert frames(guest)[0]["payload"]["agent"] == "Scout"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("level,normalized", [("warning", "warning"), ("alert", "alert"),
                                                  ("warn", "warning"), ("debate", "alert")])
    async def test_agent_warnings_paid_only(self, mock_event_bus, registry, connect, level, normalized):
        """Verify warning and alert levels skip guest and free connections."""
        paid = connect(plan=PlanTier.ENTERPRISE)
        free = connect(plan=PlanTier.FREE)
        guest = connect(plan=PlanTier.GUEST, user_id=None)
        channel = AgentLogChannel(mock_event_bus, registry)

        delivered = await channel.handle("agents:logs", {"message": "risk rising", "level": level})

        assert delivered == 1
        assert frames(paid)[0]["payload"]["level"] == normalized
        assert free.ws.sent == []
        assert guest.ws.sent == []


class TestTradeUpdateChannel:
    """Tests for per-user trade updates."""

    @pytest.mark.asyncio
    async def test_sent_to_owner(self, mock_event_bus, registry, connect):
        """Verify only the owning user's connections receive the update."""
        owner = connect(user_id="user-1")
        stranger = connect(user_id="user-2")
        channel = TradeUpdateChannel(mock_event_bus, registry)

        await channel.handle("trades:updates", {"userId": "user-1", "tradeId": "t-1", "status": "open"})

        message = frames(owner)[0]
        assert message["type"] == "trade-update"
        assert message["payload"]["tradeId"] == "t-1"
        assert stranger.ws.sent == []

    @pytest.mark.asyncio
    async def test_missing_user_dropped(self, mock_event_bus, registry, connect):
        connect()
        channel = TradeUpdateChannel(mock_event_bus, registry)

        assert await channel.handle("trades:updates", {"tradeId": "t-1"}) == 0


class TestEmergencyChannel:
    """Tests for relayed kill-switch notifications."""

    PAYLOAD = {"reason": "halt", "tradesAffected": 3, "timestamp": "2026-01-01T00:00:00+00:00"}

    @pytest.mark.asyncio
    async def test_broadcast_scope(self, mock_event_bus, registry, connect):
        """Verify a broadcast stop reaches every connection without the origin."""
        member = connect()
        guest = connect(plan=PlanTier.GUEST, user_id=None)
        channel = EmergencyChannel(mock_event_bus, registry, instance_id="instance-b")

        delivered = await channel.handle(
            "emergency:stop:broadcast", {**self.PAYLOAD, "origin": "instance-a"}
        )

        assert delivered == 2
        message = frames(guest)[0]
        assert message["type"] == "emergency-stop"
        assert message["payload"] == self.PAYLOAD
        assert len(member.ws.sent) == 1

    @pytest.mark.asyncio
    async def test_user_scope(self, mock_event_bus, registry, connect):
        """Verify a user stop reaches only that user."""
        target = connect(user_id="user-1")
        other = connect(user_id="user-2")
        channel = EmergencyChannel(mock_event_bus, registry, instance_id="instance-b")

        await channel.handle("emergency:stop:user-1", self.PAYLOAD)

        assert len(target.ws.sent) == 1
        assert other.ws.sent == []

    @pytest.mark.asyncio
    async def test_own_origin_skipped(self, mock_event_bus, registry, connect):
        """Verify an instance does not re-deliver its own stop."""
        state = connect()
        channel = EmergencyChannel(mock_event_bus, registry, instance_id="instance-a")

        delivered = await channel.handle(
            "emergency:stop:broadcast", {**self.PAYLOAD, "origin": "instance-a"}
        )

        assert delivered == 0
        assert state.ws.sent == []
