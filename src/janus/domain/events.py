"""
Event payloads and topic names for the EventBus.

Payload keys are camelCase because the same envelopes are forwarded to
WebSocket clients unchanged.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

TRADE_UPDATES_TOPIC = "trades:updates"
TRADE_ALERTS_TOPIC = "trades:alerts"
MARKET_PRICES_PREFIX = "market:prices:"
MARKET_PRICES_PATTERN = MARKET_PRICES_PREFIX + "*"
WHALE_MOVEMENTS_TOPIC = "whale:movements"
AGENT_LOGS_TOPIC = "agents:logs"
AGENT_ALPHA_TOPIC = "agents:alpha"


def market_prices_topic(symbol: str) -> str:
    return MARKET_PRICES_PREFIX + symbol.upper()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TradeUpdateEvent:
    """Published whenever a trade changes status or is re-valued."""
    trade_id: str
    user_id: str
    status: str
    message: str = ""
    type: str = "TRADE_UPDATE"
    extra: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_iso)

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "type": self.type,
            "tradeId": self.trade_id,
            "userId": self.user_id,
            "status": self.status,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        payload.update(self.extra)
        return payload


@dataclass
class OneSidedPositionAlert:
    """Operator alert: leg A filled, leg B did not."""
    trade_id: str
    user_id: str
    filled_venue: str
    filled_order_id: str
    failed_venue: str
    error: str
    failed_order_id: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "ONE_SIDED_POSITION",
            "tradeId": self.trade_id,
            "userId": self.user_id,
            "filledVenue": self.filled_venue,
            "filledOrderId": self.filled_order_id,
            "failedVenue": self.failed_venue,
            "failedOrderId": self.failed_order_id,
            "error": self.error,
            "timestamp": self.timestamp,
        }
