"""
Order domain models.

An Order is one leg of a Trade. It is created by the OrderManager once the
admission gate passes and is driven forward by the ArbCoordinator.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
import uuid

from janus.domain.trade import Side, Venue


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    """Order lifecycle status shared by both venues."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OrderStatus.FILLED,
            OrderStatus.CANCELLED,
            OrderStatus.FAILED,
            OrderStatus.EXPIRED,
        )


# Fields update_order_status may replace
ORDER_UPDATABLE_FIELDS = frozenset({
    "trade_id",
    "status",
    "filled_size",
    "filled_price",
    "external_order_id",
    "error_message",
})


@dataclass
class OrderRequest:
    """Request to place one leg through the admission gate."""
    user_id: str
    market_pair_id: str
    venue: Venue
    side: Side
    size: Decimal
    price: Decimal
    confidence: Decimal
    trade_id: Optional[str] = None
    ai_provider: Optional[str] = None

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise ValueError(f"size must be positive, got {self.size}")
        if not (0 < self.price < 1):
            raise ValueError(f"price must be between 0 and 1 exclusive, got {self.price}")


@dataclass
class Order:
    """An order (leg) in the system."""
    user_id: str
    market_pair_id: str
    venue: Venue
    side: Side
    size: Decimal
    price: Decimal
    status: OrderStatus = OrderStatus.PENDING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trade_id: Optional[str] = None
    filled_size: Decimal = Decimal("0")
    filled_price: Optional[Decimal] = None
    external_order_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @classmethod
    def from_request(cls, request: OrderRequest) -> "Order":
        return cls(
            user_id=request.user_id,
            market_pair_id=request.market_pair_id,
            venue=request.venue,
            side=request.side,
            size=request.size,
            price=request.price,
            trade_id=request.trade_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tradeId": self.trade_id,
            "venue": self.venue.value,
            "side": self.side.value,
            "size": str(self.size),
            "price": str(self.price),
            "filledSize": str(self.filled_size),
            "filledPrice": str(self.filled_price) if self.filled_price is not None else None,
            "status": self.status.value,
            "externalOrderId": self.external_order_id,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class OrderResult:
    """Outcome of OrderManager.place_order.

    A rejected result carries the gate's reason and never an order id.
    """
    success: bool
    order: Optional[Order] = None
    reason: Optional[str] = None

    @classmethod
    def accepted(cls, order: Order) -> "OrderResult":
        return cls(success=True, order=order)

    @classmethod
    def rejected(cls, reason: str) -> "OrderResult":
        return cls(success=False, reason=reason)

    @property
    def order_id(self) -> Optional[str]:
        return self.order.id if self.order else None

    @property
    def status(self) -> OrderStatus:
        if self.order is None:
            return OrderStatus.FAILED
        return self.order.status
