"""Shared venue plumbing: the executor contract, the order payload handed to
executors, and the httpx transport both venue clients build on.
"""

import secrets
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Protocol

import httpx
import structlog

from janus.core.retry import (
    RetryPolicy,
    VenueAuthenticationError,
    VenueNetworkError,
    VenueRateLimitError,
    VenueTransportError,
)
from janus.domain.order import OrderStatus
from janus.domain.trade import Side, Venue

log = structlog.get_logger()


@dataclass(frozen=True)
class VenueOrder:
    """One leg as submitted to a venue.

    Attributes:
        client_order_id: Our Order id, echoed to the venue for correlation.
        instrument: Polymarket token id or Kalshi market ticker.
        side: Buy or sell.
        size: Notional in USD.
        price: Limit price per contract in dollars (0 < price < 1).
    """
    client_order_id: str
    instrument: str
    side: Side
    size: Decimal
    price: Decimal


class VenueExecutor(Protocol):
    """Capability implemented by exactly two classes, one per Venue."""

    venue: Venue

    async def submit_order(self, order: VenueOrder) -> str:
        """Submit an order and return the venue-assigned identifier."""
        ...

    async def poll_order_status(self, external_order_id: str) -> OrderStatus:
        """Fetch the order's current status in the shared vocabulary."""
        ...


def paper_order_id(prefix: str) -> str:
    """Synthetic correlation id for paper-trading submissions."""
    return f"paper-{prefix}-{secrets.token_hex(4)}"


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class VenueHttpClient:
    """Async httpx transport with venue error mapping and an injected RetryPolicy.

    Subclasses set ``venue`` and supply default headers. Every request goes
    through ``_request``, which turns HTTP and connection failures into
    VenueTransportError subclasses and applies the retry policy.
    """

    venue: Venue

    def __init__(
        self,
        base_url: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Venue REST base URL.
            retry_policy: Transport retry policy (default: one retry on 429).
            timeout: HTTP request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._log = log.bind(component=f"{self.venue.value}_executor")

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def _default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers=self._default_headers(),
        )
        self._log.info("venue_client_connected", base_url=self._base_url)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._log.info("venue_client_closed")

    async def __aenter__(self) -> "VenueHttpClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.connect()
        assert self._client is not None
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send one request under the retry policy and return the JSON body."""
        return await self._retry_policy.call(
            self._send,
            method,
            path,
            log_context={"venue": self.venue.value, "path": path},
            **kwargs,
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._ensure_client()
        venue = self.venue.value

        try:
            response = await client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise VenueNetworkError(venue, f"{method} {path} failed: {e}", cause=e) from e

        if response.status_code == 429:
            raise VenueRateLimitError(venue, retry_after=_retry_after(response))
        if response.status_code in (401, 403):
            raise VenueAuthenticationError(
                venue,
                f"{method} {path} rejected credentials",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise VenueTransportError(
                venue,
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise VenueTransportError(
                venue, f"{method} {path} returned non-JSON body", status_code=response.status_code, cause=e
            ) from e
