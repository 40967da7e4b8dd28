"""Arbitrage Coordinator - drives one two-legged trade to a terminal state.

This service:
- Creates the parent Trade before any leg is placed
- Places leg A (Polymarket buy) and waits for a terminal fill status
- Places leg B (Kalshi sell) only after leg A filled
- Marks the trade failed on any error and re-raises
- Raises an operator alert when leg A filled and leg B did not
- Closes trades manually with realized P&L

Legs run strictly in sequence. There is no automatic unwind of a filled
leg A: a one-sided position is surfaced for manual intervention.
"""

import asyncio
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional

import structlog

from janus.core.config import ConfigManager
from janus.core.events import EventBus
from janus.core.retry import (
    AdmissionRejectedError,
    InvalidTradeTransitionError,
    LegExecutionFailed,
    OneSidedPositionError,
    TradeNotFoundError,
)
from janus.domain.events import (
    TRADE_ALERTS_TOPIC,
    TRADE_UPDATES_TOPIC,
    OneSidedPositionAlert,
    TradeUpdateEvent,
)
from janus.domain.order import Order, OrderRequest, OrderStatus
from janus.domain.trade import ArbOpportunity, Side, Trade, TradeStatus, Venue
from janus.integrations.venues import VenueExecutors
from janus.integrations.venues.base import VenueOrder
from janus.services.metrics import MetricsEmitter
from janus.services.order_manager import OrderManager
from janus.services.pnl import PnLCalculator
from janus.services.state_store import StateStore

log = structlog.get_logger()


class ArbCoordinator:
    """Sequences the two legs of an arbitrage trade.

    Event channels published:
    - trades:updates - trade opened, failed or closed
    - trades:alerts - one-sided position (leg A filled, leg B failed)
    """

    DEFAULT_POLL_TIMEOUT_SECONDS = 30.0
    DEFAULT_POLL_INTERVAL_SECONDS = 1.0

    def __init__(
        self,
        state_store: StateStore,
        order_manager: OrderManager,
        executors: VenueExecutors,
        event_bus: EventBus,
        metrics: Optional[MetricsEmitter] = None,
        poll_timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = state_store
        self._orders = order_manager
        self._executors = executors
        self._event_bus = event_bus
        self._metrics = metrics
        self._poll_timeout = poll_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock
        self._in_flight = 0
        self._log = log.bind(component="arb_coordinator")

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        state_store: StateStore,
        order_manager: OrderManager,
        executors: VenueExecutors,
        event_bus: EventBus,
        metrics: Optional[MetricsEmitter] = None,
    ) -> "ArbCoordinator":
        return cls(
            state_store=state_store,
            order_manager=order_manager,
            executors=executors,
            event_bus=event_bus,
            metrics=metrics,
            poll_timeout_seconds=config.get_float(
                "execution.poll_timeout_seconds", cls.DEFAULT_POLL_TIMEOUT_SECONDS
            ),
            poll_interval_seconds=config.get_float(
                "execution.poll_interval_seconds", cls.DEFAULT_POLL_INTERVAL_SECONDS
            ),
        )

    @property
    def in_flight_count(self) -> int:
        """Coordinations currently running (used to drain on shutdown)."""
        return self._in_flight

    async def coordinate_arb(
        self,
        user_id: str,
        opportunity: ArbOpportunity,
        size_usd: Decimal,
    ) -> Trade:
        """Execute both legs of an opportunity for a user.

        Returns:
            The open trade once both legs filled.

        Raises:
            AdmissionRejectedError: A leg was refused by the admission gate
                before anything was submitted for it.
            LegExecutionFailed: Leg A ended in a non-filled status.
            OneSidedPositionError: Leg A filled but leg B did not.
            VenueTransportError: Leg A submission or polling failed.
        """
        trade = Trade(
            user_id=user_id,
            market_pair_id=opportunity.market_pair_id,
            size=size_usd,
            entry_price=opportunity.polymarket_price,
            venue=Venue.POLYMARKET,
            side=Side.BUY,
        )
        await self._store.save_trade(trade)

        self._log.info(
            "coordinating_arb",
            trade_id=trade.id,
            user_id=user_id,
            market_pair_id=opportunity.market_pair_id,
            size_usd=str(size_usd),
            spread=str(opportunity.spread),
        )

        self._in_flight += 1
        try:
            await self._coordinate(trade, opportunity)
        except Exception as e:
            await self._fail_trade(trade, e)
            raise
        finally:
            self._in_flight -= 1

        if self._metrics:
            self._metrics.record_arb_outcome("success")

        stored = await self._store.get_trade(trade.id) or trade
        if stored.status is not TradeStatus.OPEN:
            # An emergency stop closed the trade while its legs were running
            self._log.warning(
                "arb_filled_after_close",
                trade_id=trade.id,
                user_id=user_id,
                status=stored.status.value,
            )
            return stored

        await self._publish_update(trade, TradeStatus.OPEN, "Both legs filled")
        self._log.info("arb_opened", trade_id=trade.id, user_id=user_id)
        return stored

    async def _coordinate(self, trade: Trade, opportunity: ArbOpportunity) -> None:
        # Leg A: primary venue buy
        leg_a = await self._place(trade, opportunity, Venue.POLYMARKET)
        try:
            status_a, leg_a = await self._run_leg(leg_a, opportunity.polymarket_token_id)
        except Exception as e:
            await self._orders.update_order_status(
                leg_a.id,
                {"trade_id": trade.id, "status": OrderStatus.FAILED, "error_message": str(e)},
            )
            raise

        if status_a is not OrderStatus.FILLED:
            await self._orders.update_order_status(
                leg_a.id,
                {
                    "trade_id": trade.id,
                    "status": status_a,
                    "error_message": f"Leg ended {status_a.value}",
                },
            )
            raise LegExecutionFailed(
                f"Polymarket leg ended {status_a.value}",
                venue=Venue.POLYMARKET.value,
                order_id=leg_a.id,
                status=status_a.value,
            )

        leg_a = await self._orders.update_order_status(
            leg_a.id,
            {
                "trade_id": trade.id,
                "status": OrderStatus.FILLED,
                "filled_size": leg_a.size,
                "filled_price": leg_a.filled_price or leg_a.price,
            },
        )
        self._log.info("leg_a_filled", trade_id=trade.id, order_id=leg_a.id)

        # Leg B: secondary venue sell; any failure leaves leg A one-sided
        leg_b: Optional[Order] = None
        try:
            leg_b = await self._place(trade, opportunity, Venue.KALSHI)
            leg_b = await self._orders.update_order_status(leg_b.id, {"trade_id": trade.id})
            status_b, leg_b = await self._run_leg(leg_b, opportunity.kalshi_ticker)

            if status_b is not OrderStatus.FILLED:
                await self._orders.update_order_status(
                    leg_b.id,
                    {"status": status_b, "error_message": f"Leg ended {status_b.value}"},
                )
                raise LegExecutionFailed(
                    f"Kalshi leg ended {status_b.value}",
                    venue=Venue.KALSHI.value,
                    order_id=leg_b.id,
                    status=status_b.value,
                )

            await self._orders.update_order_status(
                leg_b.id,
                {
                    "status": OrderStatus.FILLED,
                    "filled_size": leg_b.size,
                    "filled_price": leg_b.filled_price or leg_b.price,
                },
            )
        except Exception as e:
            if leg_b is not None and not isinstance(e, LegExecutionFailed):
                await self._orders.update_order_status(
                    leg_b.id, {"status": OrderStatus.FAILED, "error_message": str(e)}
                )
            await self._raise_one_sided(trade, leg_a, leg_b, e)

    async def _place(self, trade: Trade, opportunity: ArbOpportunity, venue: Venue) -> Order:
        is_primary = venue is Venue.POLYMARKET
        request = OrderRequest(
            user_id=trade.user_id,
            market_pair_id=trade.market_pair_id,
            venue=venue,
            side=Side.BUY if is_primary else Side.SELL,
            size=trade.size,
            price=opportunity.polymarket_price if is_primary else opportunity.kalshi_price,
            confidence=opportunity.confidence,
            ai_provider=opportunity.ai_provider,
        )
        result = await self._orders.place_order(request, parent_trade_id=trade.id)
        if not result.success or result.order is None:
            raise AdmissionRejectedError(result.reason or "Order rejected")
        return result.order

    async def _run_leg(self, order: Order, instrument: str) -> tuple[OrderStatus, Order]:
        """Submit a placed order and wait for a terminal status.

        Orders already terminal at placement (paper fills) are not submitted.
        """
        if order.is_terminal:
            return order.status, order

        executor = self._executors.select_executor(order.venue)
        started = self._clock()

        external_id = await executor.submit_order(
            VenueOrder(
                client_order_id=order.id,
                instrument=instrument,
                side=order.side,
                size=order.size,
                price=order.price,
            )
        )
        order = await self._orders.update_order_status(
            order.id,
            {"status": OrderStatus.SUBMITTED, "external_order_id": external_id},
        )

        status = await self._await_terminal(executor, external_id)

        if self._metrics:
            venue = order.venue.value
            self._metrics.record_leg_latency(venue, self._clock() - started)
            self._metrics.record_order(venue, status.value)
            if status is OrderStatus.FILLED:
                self._metrics.record_trade_executed(venue)
                self._metrics.increment_active_positions()

        self._log.info(
            "leg_terminal",
            order_id=order.id,
            venue=order.venue.value,
            external_order_id=external_id,
            status=status.value,
        )
        return status, order

    async def _await_terminal(self, executor, external_id: str) -> OrderStatus:
        """Poll until terminal; EXPIRED once the poll timeout elapses."""
        deadline = self._clock() + self._poll_timeout
        while True:
            status = await executor.poll_order_status(external_id)
            if status.is_terminal:
                return status
            if self._clock() >= deadline:
                self._log.warning(
                    "leg_poll_timeout",
                    external_order_id=external_id,
                    last_status=status.value,
                    timeout_seconds=self._poll_timeout,
                )
                return OrderStatus.EXPIRED
            await self._sleep(self._poll_interval)

    async def _raise_one_sided(
        self,
        trade: Trade,
        leg_a: Order,
        leg_b: Optional[Order],
        error: Exception,
    ) -> None:
        self._log.warning(
            "one_sided_position",
            trade_id=trade.id,
            user_id=trade.user_id,
            filled_order_id=leg_a.id,
            failed_order_id=leg_b.id if leg_b else None,
            error=str(error),
        )

        alert = OneSidedPositionAlert(
            trade_id=trade.id,
            user_id=trade.user_id,
            filled_venue=Venue.POLYMARKET.value,
            filled_order_id=leg_a.id,
            failed_venue=Venue.KALSHI.value,
            failed_order_id=leg_b.id if leg_b else None,
            error=str(error),
        )
        try:
            await self._event_bus.publish(TRADE_ALERTS_TOPIC, alert.to_payload())
        except Exception as e:
            self._log.error("failed_to_publish_alert", trade_id=trade.id, error=str(e))

        raise OneSidedPositionError(
            f"Leg A filled but leg B failed: {error}",
            venue=Venue.KALSHI.value,
            order_id=leg_b.id if leg_b else None,
            status=getattr(error, "status", None),
            cause=error,
        ) from error

    async def _fail_trade(self, trade: Trade, error: Exception) -> None:
        transitioned = await self._store.transition_trade(trade.id, TradeStatus.FAILED)

        if isinstance(error, AdmissionRejectedError):
            outcome = "rejected"
        elif isinstance(error, OneSidedPositionError):
            outcome = "one_sided"
        elif isinstance(error, LegExecutionFailed):
            outcome = "leg_a_failed"
        else:
            outcome = "error"

        self._log.error(
            "arb_coordination_failed",
            trade_id=trade.id,
            outcome=outcome,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._metrics:
            self._metrics.record_arb_outcome(outcome)

        if transitioned:
            await self._publish_update(trade, TradeStatus.FAILED, str(error))

    async def _publish_update(
        self,
        trade: Trade,
        status: TradeStatus,
        message: str,
        **extra,
    ) -> None:
        event = TradeUpdateEvent(
            trade_id=trade.id,
            user_id=trade.user_id,
            status=status.value,
            message=message,
            extra=extra,
        )
        try:
            await self._event_bus.publish(TRADE_UPDATES_TOPIC, event.to_payload())
        except Exception as e:
            self._log.error("failed_to_publish_trade_update", trade_id=trade.id, error=str(e))

    # ============ Manual Close ============

    async def close_trade(self, trade_id: str, exit_price: Decimal) -> Trade:
        """Close an open trade at ``exit_price`` and record realized P&L.

        Raises:
            TradeNotFoundError: No such trade.
            InvalidTradeTransitionError: The trade is not open.
        """
        trade = await self._store.get_trade(trade_id)
        if trade is None:
            raise TradeNotFoundError(f"trade {trade_id} not found")
        if not trade.can_transition_to(TradeStatus.CLOSED):
            raise InvalidTradeTransitionError(
                f"trade {trade_id} is {trade.status.value}, not open"
            )

        trade.exit_price = exit_price
        pnl = PnLCalculator.realized_pnl(trade)

        closed = await self._store.transition_trade(
            trade_id,
            TradeStatus.CLOSED,
            exit_price=exit_price,
            pnl=pnl,
        )
        if not closed:
            raise InvalidTradeTransitionError(f"trade {trade_id} was closed concurrently")

        if self._metrics:
            filled_legs = [
                o for o in await self._store.get_orders_for_trade(trade_id)
                if o.status is OrderStatus.FILLED
            ]
            if filled_legs:
                self._metrics.decrement_active_positions(len(filled_legs))

        self._log.info(
            "trade_closed",
            trade_id=trade_id,
            exit_price=str(exit_price),
            pnl=str(pnl),
        )
        await self._publish_update(
            trade, TradeStatus.CLOSED, "Trade closed", pnl=str(pnl), exitPrice=str(exit_price)
        )
        return await self._store.get_trade(trade_id) or trade
