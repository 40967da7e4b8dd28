"""Order Manager - admission gate and order persistence.

This service:
- Runs the ordered pre-trade checks for every leg before anything is stored
- Persists admitted orders as pending
- Simulates an immediate fill in paper-trading mode
- Applies field-level status updates to existing orders
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Protocol

import structlog

from janus.core.config import ConfigManager
from janus.domain.order import (
    ORDER_UPDATABLE_FIELDS,
    Order,
    OrderRequest,
    OrderResult,
    OrderStatus,
)
from janus.domain.risk import PlanTier, TradingLimits
from janus.domain.trade import Venue
from janus.integrations.venues.base import paper_order_id
from janus.services.metrics import MetricsEmitter
from janus.services.state_store import StateStore

log = structlog.get_logger()

PAPER_ID_PREFIX = {
    Venue.POLYMARKET: "pm",
    Venue.KALSHI: "ks",
}


class EmergencyChecker(Protocol):
    async def is_emergency_active(self, user_id: Optional[str] = None) -> bool:
        ...


class OrderManager:
    """Gatekeeper for every leg the coordinator wants to place.

    Checks run in a fixed order and the first failure wins:
    1. Emergency stop active for the user's scope
    2. Latest risk regime is critical
    3. Plan tier below the required tier
    4. Size above the per-position maximum
    5. Confidence below the minimum
    6. Aggregate open exposure above the per-user cap

    A rejection returns OrderResult.rejected(reason) and writes nothing.
    The read-check-write sequence is not isolated: two concurrent requests
    may both pass the exposure check before either trade is counted.
    """

    def __init__(
        self,
        state_store: StateStore,
        emergency: EmergencyChecker,
        metrics: Optional[MetricsEmitter] = None,
        limits: Optional[TradingLimits] = None,
        paper_trading: bool = True,
    ):
        self._store = state_store
        self._emergency = emergency
        self._metrics = metrics
        self._limits = limits or TradingLimits()
        self._paper_trading = paper_trading
        self._log = log.bind(component="order_manager")

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        state_store: StateStore,
        emergency: EmergencyChecker,
        metrics: Optional[MetricsEmitter] = None,
    ) -> "OrderManager":
        return cls(
            state_store=state_store,
            emergency=emergency,
            metrics=metrics,
            limits=TradingLimits.from_config(config),
            paper_trading=config.get_bool("trading.paper_trading", True),
        )

    @property
    def limits(self) -> TradingLimits:
        return self._limits

    @property
    def paper_trading(self) -> bool:
        return self._paper_trading

    async def check_admission(
        self,
        request: OrderRequest,
        parent_trade_id: Optional[str] = None,
    ) -> tuple[Optional[str], Optional[str]]:
        """Evaluate the gate.

        Args:
            request: The leg to admit.
            parent_trade_id: Trade being coordinated; its own size is not
                counted as existing exposure.

        Returns:
            Tuple of (check, reason) for the first failing check, or
            (None, None) when every check passes.
        """
        if await self._emergency.is_emergency_active(request.user_id):
            return "emergency", "Emergency stop active"

        regime = await self._store.get_latest_regime()
        if regime is not None and regime.blocks_trading:
            return "regime", "Risk regime is critical"

        account = await self._store.get_user(request.user_id)
        plan = account.plan if account else PlanTier.GUEST
        if not plan.at_least(self._limits.required_plan):
            return "plan", f"Plan tier '{plan.value}' does not permit automated trading"

        if request.size > self._limits.max_position_usd:
            return "size", (
                f"Exceeds maximum position size "
                f"({request.size} > {self._limits.max_position_usd})"
            )

        if request.confidence < self._limits.min_confidence:
            return "confidence", (
                f"Confidence {request.confidence} below minimum threshold "
                f"{self._limits.min_confidence}"
            )

        exposure = await self._store.get_open_exposure(
            request.user_id, exclude_trade_id=parent_trade_id
        )
        if exposure + request.size > self._limits.user_exposure_cap:
            return "exposure", "User exposure limit reached"

        return None, None

    async def place_order(
        self,
        request: OrderRequest,
        parent_trade_id: Optional[str] = None,
    ) -> OrderResult:
        """Admit and persist one leg.

        Returns:
            OrderResult with a pending order (live mode), a filled order
            (paper mode), or a rejection reason and no order.
        """
        self._log.info(
            "placing_order",
            user_id=request.user_id,
            market_pair_id=request.market_pair_id,
            venue=request.venue.value,
            side=request.side.value,
            size=str(request.size),
        )

        check, reason = await self.check_admission(request, parent_trade_id)
        if reason is not None:
            self._log.warning(
                "order_rejected",
                user_id=request.user_id,
                venue=request.venue.value,
                check=check,
                reason=reason,
            )
            if self._metrics:
                self._metrics.record_order_rejection(check or "unknown")
            return OrderResult.rejected(reason)

        order = Order.from_request(request)
        await self._store.save_order(order)

        if self._paper_trading:
            order = await self._simulate_fill(order, request.ai_provider)
        elif self._metrics:
            self._metrics.record_order(order.venue.value, order.status.value)

        self._log.info(
            "order_placed",
            order_id=order.id,
            venue=order.venue.value,
            status=order.status.value,
            paper=self._paper_trading,
        )
        return OrderResult.accepted(order)

    async def _simulate_fill(self, order: Order, ai_provider: Optional[str]) -> Order:
        filled = await self.update_order_status(
            order.id,
            {
                "status": OrderStatus.FILLED,
                "filled_size": order.size,
                "filled_price": order.price,
                "external_order_id": paper_order_id(PAPER_ID_PREFIX[order.venue]),
            },
        )
        if self._metrics:
            self._metrics.record_order(filled.venue.value, filled.status.value)
            self._metrics.record_trade_executed(filled.venue.value, ai_provider)
            self._metrics.increment_active_positions()
        return filled

    async def update_order_status(self, order_id: str, fields: dict[str, Any]) -> Order:
        """Replace exactly ``fields`` on an order and stamp updated_at.

        Raises:
            ValueError: Unknown order, unknown field name, or an attempt to
                move an order to a different trade.
        """
        unknown = set(fields) - ORDER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown order fields: {sorted(unknown)}")

        current = await self._store.get_order(order_id)
        if current is None:
            raise ValueError(f"order {order_id} not found")

        if "trade_id" in fields and current.trade_id is not None:
            if fields["trade_id"] != current.trade_id:
                raise ValueError(
                    f"order {order_id} already belongs to trade {current.trade_id}"
                )

        updates = dict(fields)
        if "status" in updates:
            updates["status"] = OrderStatus(updates["status"])
        for name in ("filled_size", "filled_price"):
            if updates.get(name) is not None:
                updates[name] = Decimal(str(updates[name]))

        await self._store.update_order(order_id, updates, datetime.now(timezone.utc))

        updated = await self._store.get_order(order_id)
        assert updated is not None
        self._log.debug(
            "order_updated",
            order_id=order_id,
            fields=sorted(fields),
            status=updated.status.value,
        )
        return updated

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self._store.get_order(order_id)

    async def get_orders_for_trade(self, trade_id: str) -> list[Order]:
        return await self._store.get_orders_for_trade(trade_id)
