"""Kalshi trade API executor.

Authenticates with a static API key header. Orders are limit orders on the
YES contract; size in USD is converted to a whole number of contracts at
the limit price.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from janus.core.retry import RetryPolicy
from janus.domain.order import OrderStatus
from janus.domain.trade import Venue
from janus.integrations.venues.base import VenueHttpClient, VenueOrder, paper_order_id

DEFAULT_BASE_URL = "https://api.kalshi.com/trade-api/v2"
API_KEY_HEADER = "X-Kalshi-API-KEY"

STATUS_MAP: dict[str, OrderStatus] = {
    "resting": OrderStatus.SUBMITTED,
    "executed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "pending": OrderStatus.PENDING,
}


def map_kalshi_status(raw: Optional[str]) -> OrderStatus:
    """Normalize a Kalshi status string; anything unmapped is failed."""
    if not raw:
        return OrderStatus.FAILED
    return STATUS_MAP.get(raw.lower(), OrderStatus.FAILED)


def contracts_for(size_usd: Decimal, price: Decimal) -> int:
    """Whole contracts purchasable with ``size_usd`` at ``price`` (at least one)."""
    return max(1, int((size_usd / price).quantize(Decimal("1"), rounding=ROUND_DOWN)))


class KalshiExecutor(VenueHttpClient):
    """Secondary-venue executor.

    Paper mode mirrors PolymarketExecutor: synthetic ``paper-ks-<hex>`` ids
    and FILLED on poll, for use outside the coordinator.
    """

    venue = Venue.KALSHI

    def __init__(
        self,
        api_key: Optional[str] = None,
        paper_trading: bool = True,
        base_url: str = DEFAULT_BASE_URL,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        # Header is built in connect(), so the key must be set first
        self._api_key = api_key or ""
        self._paper_trading = paper_trading
        super().__init__(base_url, retry_policy=retry_policy, timeout=timeout, transport=transport)

    @property
    def paper_trading(self) -> bool:
        return self._paper_trading

    def _default_headers(self) -> dict[str, str]:
        headers = super()._default_headers()
        headers[API_KEY_HEADER] = self._api_key
        return headers

    async def submit_order(self, order: VenueOrder) -> str:
        if self._paper_trading:
            external_id = paper_order_id("ks")
            self._log.info(
                "paper_order_submitted",
                order_id=order.client_order_id,
                external_order_id=external_id,
                ticker=order.instrument,
                side=order.side.value,
            )
            return external_id

        body = {
            "ticker": order.instrument,
            "client_order_id": order.client_order_id,
            "action": order.side.value,
            "side": "yes",
            "type": "limit",
            "count": contracts_for(order.size, order.price),
            "yes_price": int((order.price * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
        }
        data = await self._request("POST", "/orders", json=body)
        external_id = data.get("order_id") or (data.get("order") or {}).get("order_id")
        if not external_id:
            raise ValueError(f"Kalshi accepted order without an id: {data}")

        self._log.info(
            "order_submitted",
            order_id=order.client_order_id,
            external_order_id=external_id,
            count=body["count"],
        )
        return str(external_id)

    async def poll_order_status(self, external_order_id: str) -> OrderStatus:
        if self._paper_trading:
            return OrderStatus.FILLED

        data = await self._request("GET", f"/orders/{external_order_id}")
        raw = data.get("status") or (data.get("order") or {}).get("status")
        return map_kalshi_status(raw)
