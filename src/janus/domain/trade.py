"""
Trade domain models.

A Trade is the parent aggregate of one two-legged arbitrage: leg A buys on
the primary venue (Polymarket), leg B sells on the secondary venue (Kalshi).
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional
import uuid


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Venue(str, Enum):
    """The two supported venues. The set is closed on purpose."""
    POLYMARKET = "polymarket"
    KALSHI = "kalshi"


class Side(str, Enum):
    """Order / trade side."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class TradeStatus(str, Enum):
    """Trade lifecycle status. Only OPEN is non-terminal."""
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"
    EMERGENCY_CLOSED = "emergency_closed"

    @property
    def is_terminal(self) -> bool:
        return self is not TradeStatus.OPEN


@dataclass
class Trade:
    """Parent record of an arbitrage position."""
    user_id: str
    market_pair_id: str
    size: Decimal
    entry_price: Decimal
    venue: Venue = Venue.POLYMARKET
    side: Side = Side.BUY
    status: TradeStatus = TradeStatus.OPEN
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    exit_price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    emergency_reason: Optional[str] = None
    opened_at: datetime = field(default_factory=_utc_now)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    def can_transition_to(self, status: TradeStatus) -> bool:
        """Transitions are monotonic: open -> any terminal status, nothing else."""
        return self.status is TradeStatus.OPEN and status.is_terminal

    @property
    def notional(self) -> Decimal:
        return self.size * self.entry_price

    def to_dict(self) -> dict[str, Any]:
        """Client-facing representation (camelCase keys)."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "marketPairId": self.market_pair_id,
            "venue": self.venue.value,
            "side": self.side.value,
            "size": str(self.size),
            "entryPrice": str(self.entry_price),
            "exitPrice": str(self.exit_price) if self.exit_price is not None else None,
            "pnl": str(self.pnl) if self.pnl is not None else None,
            "status": self.status.value,
            "txHash": self.tx_hash,
            "emergencyReason": self.emergency_reason,
            "openedAt": self.opened_at.isoformat(),
            "closedAt": self.closed_at.isoformat() if self.closed_at else None,
        }


def _decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{name} must be numeric, got {value!r}") from e


@dataclass
class ArbOpportunity:
    """A detected cross-venue spread, as produced by the signal pipeline.

    Prices are per-contract in dollars (0 < price < 1) on each venue;
    confidence is the 0-100 score attached by the AI provider.
    """
    market_pair_id: str
    polymarket_price: Decimal
    kalshi_price: Decimal
    confidence: Decimal
    polymarket_token_id: str = ""
    kalshi_ticker: str = ""
    spread: Decimal = Decimal("0")
    expected_profit: Decimal = Decimal("0")
    ai_provider: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("polymarket_price", "kalshi_price"):
            price = getattr(self, name)
            if not (0 < price < 1):
                raise ValueError(f"{name} must be between 0 and 1 exclusive, got {price}")
        if not (0 <= self.confidence <= 100):
            raise ValueError(f"confidence must be between 0 and 100, got {self.confidence}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArbOpportunity":
        """Build from a camelCase request body."""
        try:
            market_pair_id = data["marketPairId"]
            pm_price = data["polymarketPrice"]
            ks_price = data["kalshiPrice"]
        except KeyError as e:
            raise ValueError(f"missing field {e.args[0]}") from e

        return cls(
            market_pair_id=str(market_pair_id),
            polymarket_price=_decimal(pm_price, "polymarketPrice"),
            kalshi_price=_decimal(ks_price, "kalshiPrice"),
            confidence=_decimal(data.get("confidence", 0), "confidence"),
            polymarket_token_id=str(data.get("polymarketTokenId", "")),
            kalshi_ticker=str(data.get("kalshiTicker", "")),
            spread=_decimal(data.get("spread", 0), "spread"),
            expected_profit=_decimal(data.get("expectedProfit", 0), "expectedProfit"),
            ai_provider=data.get("aiProvider"),
        )
