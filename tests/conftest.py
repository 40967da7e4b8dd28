"""
Shared pytest fixtures for Janus tests.
"""
from decimal import Decimal
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from janus.domain.risk import PlanTier, UserAccount
from janus.domain.trade import ArbOpportunity
from janus.services.metrics import MetricsEmitter
from janus.services.state_store import StateStore


class FakeRedis:
    """In-memory stand-in for the redis.asyncio key/value calls the flag store makes."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.closed = False

    async def set(self, key: str, value: Any) -> bool:
        self.data[key] = value
        return True

    async def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def aclose(self) -> None:
        self.closed = True


class FakeSocket:
    """Records frames sent to one WebSocket client."""

    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_message: Optional[bytes] = None
        self._fail_with = fail_with

    async def send_str(self, data: str) -> None:
        if self._fail_with is not None:
            raise self._fail_with
        self.sent.append(data)

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.closed = True
        self.close_code = code
        self.close_message = message
        return True


@pytest.fixture
def mock_config():
    """Mock ConfigManager for unit tests."""
    config = MagicMock()
    config.get.return_value = None
    return config


@pytest.fixture
def mock_event_bus():
    """Mock EventBus for unit tests."""
    bus = MagicMock()
    bus.publish = AsyncMock(return_value=1)
    bus.subscribe = AsyncMock()
    bus.unsubscribe = AsyncMock()
    bus.is_connected = True
    return bus


@pytest.fixture
def mock_redis():
    """Mock Redis connection for unit tests."""
    redis = MagicMock()
    redis.ping = AsyncMock(return_value=True)
    redis.publish = AsyncMock()
    redis.subscribe = AsyncMock()
    return redis


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def socket_factory():
    """Builds FakeSocket instances: ``socket_factory()`` or ``socket_factory(fail_with=exc)``."""
    return FakeSocket


@pytest.fixture
def metrics() -> MetricsEmitter:
    """Metrics emitter on its own registry."""
    return MetricsEmitter()


@pytest_asyncio.fixture
async def state_store(tmp_path):
    """Connected StateStore on a temporary database."""
    store = StateStore(db_path=str(tmp_path / "janus.db"))
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def pro_user(state_store) -> UserAccount:
    account = UserAccount(id="user-pro", plan=PlanTier.PRO, email="pro@example.com")
    await state_store.save_user(account, api_key="pro-key")
    return account


@pytest.fixture
def opportunity() -> ArbOpportunity:
    return ArbOpportunity(
        market_pair_id="btc-100k-2026",
        polymarket_price=Decimal("0.45"),
        kalshi_price=Decimal("0.52"),
        confidence=Decimal("80"),
        polymarket_token_id="123456",
        kalshi_ticker="KXBTC-26DEC31-100K",
        spread=Decimal("0.07"),
        ai_provider="claude",
    )
