"""
Prometheus metrics emission for Janus.

All metrics use the 'janus_' prefix and live on the emitter's own
CollectorRegistry, so tests can create independent emitters.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from janus import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_order("polymarket", "filled")
        emitter.increment_active_positions()
        text = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "janus",
            "Janus arbitrage coordinator information",
            registry=self._registry,
        )
        self._info.info({"version": __version__, "component": "janus"})

        self._uptime = Gauge(
            "janus_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Execution
        self._orders_total = Counter(
            "janus_orders_total",
            "Orders recorded by venue and status",
            ["venue", "status"],
            registry=self._registry,
        )

        self._order_rejections_total = Counter(
            "janus_order_rejections_total",
            "Orders refused by the admission gate",
            ["check"],
            registry=self._registry,
        )

        self._trades_executed_total = Counter(
            "janus_trades_executed_total",
            "Filled legs by venue and AI provider",
            ["venue", "provider"],
            registry=self._registry,
        )

        self._arb_outcomes_total = Counter(
            "janus_arb_outcomes_total",
            "Arbitrage coordination outcomes",
            ["outcome"],
            registry=self._registry,
        )

        self._active_positions = Gauge(
            "janus_active_positions",
            "Filled legs currently held",
            registry=self._registry,
        )

        self._leg_latency = Histogram(
            "janus_leg_latency_seconds",
            "Time from leg submission to terminal status",
            ["venue"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self._registry,
        )

        # Emergency stop
        self._emergency_stops_total = Counter(
            "janus_emergency_stops_total",
            "Emergency stop activations",
            ["scope"],
            registry=self._registry,
        )

        self._emergency_trades_closed_total = Counter(
            "janus_emergency_trades_closed_total",
            "Trades closed by emergency stops",
            registry=self._registry,
        )

        # Real-time fan-out
        self._ws_connections = Gauge(
            "janus_ws_connections_active",
            "Live WebSocket connections by plan tier",
            ["plan"],
            registry=self._registry,
        )

        self._ws_messages_total = Counter(
            "janus_ws_messages_total",
            "WebSocket messages by direction and type",
            ["direction", "type"],
            registry=self._registry,
        )

        self._ws_evictions_total = Counter(
            "janus_ws_evictions_total",
            "Connections terminated by the server",
            ["reason"],
            registry=self._registry,
        )

        self._event_bus_messages = Counter(
            "janus_event_bus_messages_total",
            "Pub/sub messages consumed by channel",
            ["channel"],
            registry=self._registry,
        )

    # ============ Execution ============

    def record_order(self, venue: str, status: str) -> None:
        self._orders_total.labels(venue=venue, status=status).inc()

    def record_order_rejection(self, check: str) -> None:
        self._order_rejections_total.labels(check=check).inc()

    def record_trade_executed(self, venue: str, provider: Optional[str] = None) -> None:
        self._trades_executed_total.labels(venue=venue, provider=provider or "none").inc()

    def record_arb_outcome(self, outcome: str) -> None:
        """Outcome is one of: success, rejected, leg_a_failed, one_sided, error."""
        self._arb_outcomes_total.labels(outcome=outcome).inc()

    def increment_active_positions(self, count: int = 1) -> None:
        self._active_positions.inc(count)

    def decrement_active_positions(self, count: int = 1) -> None:
        self._active_positions.dec(count)

    def record_leg_latency(self, venue: str, seconds: float) -> None:
        self._leg_latency.labels(venue=venue).observe(seconds)

    # ============ Emergency ============

    def record_emergency_stop(self, scope: str, trades_closed: int) -> None:
        self._emergency_stops_total.labels(scope=scope).inc()
        if trades_closed:
            self._emergency_trades_closed_total.inc(trades_closed)

    # ============ Real-time ============

    def connection_opened(self, plan: str) -> None:
        self._ws_connections.labels(plan=plan).inc()

    def connection_closed(self, plan: str) -> None:
        self._ws_connections.labels(plan=plan).dec()

    def record_ws_message(self, direction: str, message_type: str) -> None:
        self._ws_messages_total.labels(direction=direction, type=message_type).inc()

    def record_eviction(self, reason: str) -> None:
        self._ws_evictions_total.labels(reason=reason).inc()

    def record_event_bus_message(self, channel: str) -> None:
        self._event_bus_messages.labels(channel=channel).inc()

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    # ============ Export ============

    def get_metrics(self) -> str:
        """Prometheus text exposition of every metric."""
        return generate_latest(self._registry).decode("utf-8")

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry
