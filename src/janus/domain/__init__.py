"""Domain models - pure data structures with no I/O dependencies."""

from janus.domain.emergency import EmergencyEvent, EmergencyNotification, SYSTEM_USER_ID
from janus.domain.order import Order, OrderRequest, OrderResult, OrderStatus
from janus.domain.risk import PlanTier, RegimeReading, RiskRegime, TradingLimits, UserAccount
from janus.domain.trade import ArbOpportunity, Side, Trade, TradeStatus, Venue

__all__ = [
    # Trades
    "Trade",
    "TradeStatus",
    "ArbOpportunity",
    "Side",
    "Venue",
    # Orders
    "Order",
    "OrderRequest",
    "OrderResult",
    "OrderStatus",
    # Emergency stop
    "EmergencyEvent",
    "EmergencyNotification",
    "SYSTEM_USER_ID",
    # Risk and entitlement
    "PlanTier",
    "RiskRegime",
    "RegimeReading",
    "TradingLimits",
    "UserAccount",
]
