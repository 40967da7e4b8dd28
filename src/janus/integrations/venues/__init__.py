"""Venue executors.

Exactly two venues are supported. Callers pick an executor through
VenueExecutors.select_executor() with an explicit Venue value.
"""

from typing import TYPE_CHECKING, Optional

from janus.core.retry import RetryPolicy
from janus.domain.trade import Venue
from janus.integrations.venues.base import VenueExecutor, VenueOrder
from janus.integrations.venues.kalshi import KalshiExecutor, map_kalshi_status
from janus.integrations.venues.polymarket import PolymarketExecutor, map_polymarket_status

if TYPE_CHECKING:
    from janus.core.config import ConfigManager


class VenueExecutors:
    """The pair of executors used by the coordinator."""

    def __init__(self, polymarket: VenueExecutor, kalshi: VenueExecutor):
        self.polymarket = polymarket
        self.kalshi = kalshi

    def select_executor(self, venue: Venue) -> VenueExecutor:
        if venue is Venue.POLYMARKET:
            return self.polymarket
        if venue is Venue.KALSHI:
            return self.kalshi
        raise ValueError(f"unsupported venue: {venue!r}")

    async def close(self) -> None:
        for executor in (self.polymarket, self.kalshi):
            close = getattr(executor, "close", None)
            if close is not None:
                await close()

    @classmethod
    def from_config(
        cls,
        config: "ConfigManager",
        retry_policy: Optional[RetryPolicy] = None,
    ) -> "VenueExecutors":
        paper = config.get_bool("trading.paper_trading", True)
        policy = retry_policy or RetryPolicy.from_dict(config.get_section("venues.retry"))
        timeout = config.get_float("venues.timeout_seconds", 10.0)
        return cls(
            polymarket=PolymarketExecutor(
                private_key=config.get("venues.polymarket.operator_private_key") or None,
                paper_trading=paper,
                base_url=config.get("venues.polymarket.base_url", "https://clob.polymarket.com"),
                retry_policy=policy,
                timeout=timeout,
            ),
            kalshi=KalshiExecutor(
                api_key=config.get("venues.kalshi.api_key") or None,
                paper_trading=paper,
                base_url=config.get("venues.kalshi.base_url", "https://api.kalshi.com/trade-api/v2"),
                retry_policy=policy,
                timeout=timeout,
            ),
        )


__all__ = [
    "VenueExecutor",
    "VenueExecutors",
    "VenueOrder",
    "PolymarketExecutor",
    "KalshiExecutor",
    "map_kalshi_status",
    "map_polymarket_status",
]
