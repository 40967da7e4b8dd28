"""Profit and loss arithmetic for trades."""

from decimal import Decimal

import structlog

from janus.core.events import EventBus
from janus.domain.events import TRADE_UPDATES_TOPIC, TradeUpdateEvent
from janus.domain.trade import Side, Trade

log = structlog.get_logger()

ZERO = Decimal("0")


class PnLCalculator:
    """Pure P&L functions. Fees are not modelled.

    Buys profit when price rises: (exit - entry) * size.
    Sells profit when price falls: (entry - exit) * size.
    """

    @staticmethod
    def realized_pnl(trade: Trade) -> Decimal:
        if trade.exit_price is None:
            return ZERO
        return PnLCalculator.unrealized_pnl(
            trade.entry_price, trade.side, trade.exit_price, trade.size
        )

    @staticmethod
    def unrealized_pnl(entry: Decimal, side: Side, current: Decimal, size: Decimal) -> Decimal:
        if side is Side.BUY:
            return (current - entry) * size
        return (entry - current) * size

    @staticmethod
    async def publish_pnl_update(
        event_bus: EventBus,
        trade: Trade,
        current_price: Decimal,
    ) -> Decimal:
        """Publish a PNL_UPDATE for an open trade; returns the unrealized P&L."""
        unrealized = PnLCalculator.unrealized_pnl(
            trade.entry_price, trade.side, current_price, trade.size
        )
        event = TradeUpdateEvent(
            trade_id=trade.id,
            user_id=trade.user_id,
            status=trade.status.value,
            type="PNL_UPDATE",
            extra={
                "currentPrice": str(current_price),
                "unrealizedPnl": str(unrealized),
            },
        )
        await event_bus.publish(TRADE_UPDATES_TOPIC, event.to_payload())
        log.debug("pnl_update_published", trade_id=trade.id, unrealized_pnl=str(unrealized))
        return unrealized
