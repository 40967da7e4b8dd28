"""Polymarket CLOB executor.

Orders are EIP-712 typed messages signed with the single operator key held
by this service; there is no per-user custody. Amounts and prices are sent
as 6-decimal fixed-point integers (USDC precision).
"""

import secrets
import time
from decimal import ROUND_DOWN, Decimal
from typing import Any, Optional

import httpx
from eth_account import Account

from janus.core.retry import RetryPolicy
from janus.domain.order import OrderStatus
from janus.domain.trade import Side, Venue
from janus.integrations.venues.base import VenueHttpClient, VenueOrder, paper_order_id

DEFAULT_BASE_URL = "https://clob.polymarket.com"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
USDC_SCALE = Decimal("1000000")
DEFAULT_ORDER_TTL_SECONDS = 300

EIP712_DOMAIN = {
    "name": "Polymarket CLOB",
    "version": "1",
    "chainId": 137,
    "verifyingContract": "0x4bFb41d5B3570DeFd17c2199640522067306282E",
}

ORDER_TYPES = {
    "Order": [
        {"name": "maker", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "price", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
    ],
}

# CLOB order states -> shared vocabulary
STATUS_MAP: dict[str, OrderStatus] = {
    "live": OrderStatus.SUBMITTED,
    "matched": OrderStatus.FILLED,
    "filled": OrderStatus.FILLED,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "expired": OrderStatus.EXPIRED,
    "unmatched": OrderStatus.PENDING,
    "delayed": OrderStatus.PENDING,
}


class PolymarketSigningError(Exception):
    """Order could not be signed (no operator key or bad order fields)."""


def map_polymarket_status(raw: Optional[str]) -> OrderStatus:
    """Normalize a CLOB status string; unknown values count as failed."""
    if not raw:
        return OrderStatus.FAILED
    return STATUS_MAP.get(raw.lower(), OrderStatus.FAILED)


def _fixed6(value: Decimal) -> int:
    return int((value * USDC_SCALE).quantize(Decimal("1"), rounding=ROUND_DOWN))


class PolymarketExecutor(VenueHttpClient):
    """Primary-venue executor.

    In paper-trading mode no key is needed and nothing leaves the process:
    submit_order returns ``paper-pm-<hex>`` and poll_order_status reports
    FILLED. The coordinator never reaches this path, because OrderManager
    fills paper orders at placement; it serves an executor driven on its own
    (a shell session or a connectivity check) with the paper flag still set.
    """

    venue = Venue.POLYMARKET

    def __init__(
        self,
        private_key: Optional[str] = None,
        paper_trading: bool = True,
        base_url: str = DEFAULT_BASE_URL,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        order_ttl_seconds: int = DEFAULT_ORDER_TTL_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, retry_policy=retry_policy, timeout=timeout, transport=transport)
        self._paper_trading = paper_trading
        self._order_ttl = order_ttl_seconds
        self._account = Account.from_key(private_key) if private_key else None

    @property
    def paper_trading(self) -> bool:
        return self._paper_trading

    @property
    def operator_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def build_order_message(
        self,
        order: VenueOrder,
        nonce: Optional[int] = None,
        expiration: Optional[int] = None,
    ) -> dict[str, Any]:
        """EIP-712 message fields for one order."""
        if self._account is None:
            raise PolymarketSigningError("Operator key not configured")
        try:
            token_id = int(order.instrument)
        except ValueError as e:
            raise PolymarketSigningError(
                f"Polymarket token id must be an integer, got {order.instrument!r}"
            ) from e

        return {
            "maker": self._account.address,
            "taker": ZERO_ADDRESS,
            "tokenId": token_id,
            "makerAmount": _fixed6(order.size),
            "price": _fixed6(order.price),
            "side": 0 if order.side is Side.BUY else 1,
            "expiration": expiration if expiration is not None else int(time.time()) + self._order_ttl,
            "nonce": nonce if nonce is not None else secrets.randbits(64),
        }

    def sign_order_message(self, message: dict[str, Any]) -> str:
        """Sign an order message; returns a 0x-prefixed 65-byte signature."""
        if self._account is None:
            raise PolymarketSigningError("Operator key not configured")
        signed = Account.sign_typed_data(
            self._account.key,
            domain_data=EIP712_DOMAIN,
            message_types=ORDER_TYPES,
            message_data=message,
        )
        return "0x" + bytes(signed.signature).hex()

    async def submit_order(self, order: VenueOrder) -> str:
        if self._paper_trading:
            external_id = paper_order_id("pm")
            self._log.info(
                "paper_order_submitted",
                order_id=order.client_order_id,
                external_order_id=external_id,
                side=order.side.value,
                size=str(order.size),
                price=str(order.price),
            )
            return external_id

        message = self.build_order_message(order)
        signature = self.sign_order_message(message)
        body = {
            "order": {key: str(value) for key, value in message.items()},
            "signature": signature,
            "owner": message["maker"],
            "orderType": "GTC",
            "clientOrderId": order.client_order_id,
        }

        data = await self._request("POST", "/orders", json=body)
        external_id = data.get("orderId") or data.get("orderID")
        if not external_id:
            raise PolymarketSigningError(f"CLOB accepted order without an id: {data}")

        self._log.info(
            "order_submitted",
            order_id=order.client_order_id,
            external_order_id=external_id,
            nonce=message["nonce"],
        )
        return str(external_id)

    async def poll_order_status(self, external_order_id: str) -> OrderStatus:
        if self._paper_trading:
            return OrderStatus.FILLED

        data = await self._request("GET", f"/data/order/{external_order_id}")
        status = map_polymarket_status(data.get("status"))
        self._log.debug(
            "order_status_polled",
            external_order_id=external_order_id,
            raw_status=data.get("status"),
            status=status.value,
        )
        return status
