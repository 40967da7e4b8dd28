"""
Janus application lifecycle and component wiring.

This is the main orchestrator that starts and stops all services.
Handles graceful shutdown with proper ordering:
1. Stop accepting new requests
2. Wait for in-flight arb coordinations to finish
3. Close WebSocket connections and pub/sub channels
4. Flush metrics
5. Close Redis and the database
"""
import asyncio
import uuid
from pathlib import Path
from typing import Any, Optional

import structlog

from janus import __version__
from janus.core.config import ConfigManager
from janus.core.events import EventBus
from janus.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from janus.core.logging import setup_logging
from janus.core.shutdown import ShutdownManager, ShutdownProgress
from janus.integrations.venues import VenueExecutors
from janus.realtime.channels import BroadcastChannel, default_channels
from janus.realtime.gateway import RealtimeGateway
from janus.realtime.registry import ConnectionRegistry, GuestSweeper
from janus.services.arb_coordinator import ArbCoordinator
from janus.services.control_api import ControlApi
from janus.services.emergency_stop import EmergencyFlagStore, EmergencyStopService
from janus.services.metrics import MetricsEmitter
from janus.services.order_manager import OrderManager
from janus.services.state_store import StateStore


class JanusApp(BaseComponent):
    """Main Janus application.

    Builds every component from one ConfigManager, starts them in
    dependency order and tears them down through the ShutdownManager on
    SIGTERM/SIGINT.

    Usage:
        app = JanusApp(ConfigManager(Path("config/default.toml")))
        await app.run_forever()
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        instance_id: Optional[str] = None,
    ) -> None:
        super().__init__(name="JanusApp")

        if config is None:
            config_path = Path("config/default.toml")
            config = ConfigManager(config_path if config_path.exists() else None)
        self._config = config
        self._instance_id = instance_id or config.get("janus.instance_id") or str(uuid.uuid4())

        setup_logging(
            level=config.get("janus.log_level", "INFO"),
            json_output=config.get_bool("janus.log_json", False),
            log_file=config.get("janus.log_file"),
        )
        self._log = structlog.get_logger("janus.app").bind(instance_id=self._instance_id)

        redis_url = config.get("redis.url", "redis://localhost:6379")
        self._event_bus = EventBus(redis_url=redis_url)
        self._flag_store = EmergencyFlagStore.from_url(redis_url)
        self._state_store = StateStore(config=config)
        self._metrics = MetricsEmitter()

        self._registry = ConnectionRegistry(
            metrics=self._metrics,
            guest_idle_seconds=config.get_float("realtime.guest_idle_seconds", 1800.0),
        )
        self._sweeper = GuestSweeper(
            self._registry,
            interval_seconds=config.get_float("realtime.sweep_interval_seconds", 60.0),
        )

        self._executors = VenueExecutors.from_config(config)
        self._emergency = EmergencyStopService(
            state_store=self._state_store,
            flag_store=self._flag_store,
            event_bus=self._event_bus,
            registry=self._registry,
            metrics=self._metrics,
            instance_id=self._instance_id,
        )
        self._order_manager = OrderManager.from_config(
            config, self._state_store, self._emergency, metrics=self._metrics
        )
        self._coordinator = ArbCoordinator.from_config(
            config,
            state_store=self._state_store,
            order_manager=self._order_manager,
            executors=self._executors,
            event_bus=self._event_bus,
            metrics=self._metrics,
        )

        self._gateway = RealtimeGateway.from_config(
            config, self._registry, self._state_store, metrics=self._metrics
        )
        self._channels: list[BroadcastChannel] = default_channels(
            self._event_bus, self._registry, self._instance_id, metrics=self._metrics
        )
        self._api = ControlApi(
            state_store=self._state_store,
            coordinator=self._coordinator,
            emergency=self._emergency,
            gateway=self._gateway,
            metrics=self._metrics,
            health_provider=self.get_health,
            host=config.get("server.host", "0.0.0.0"),
            port=config.get_int("server.port", 8080),
        )

        self._shutdown_manager = ShutdownManager(
            timeout_seconds=config.get_float("janus.shutdown_timeout_seconds", 30.0),
            drain_timeout_seconds=config.get_float("janus.drain_timeout_seconds", 60.0),
        )

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    @property
    def state_store(self) -> StateStore:
        return self._state_store

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def coordinator(self) -> ArbCoordinator:
        return self._coordinator

    @property
    def emergency(self) -> EmergencyStopService:
        return self._emergency

    @property
    def paper_trading(self) -> bool:
        return self._order_manager.paper_trading

    @property
    def shutdown_progress(self) -> ShutdownProgress:
        return self._shutdown_manager.progress

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_manager.is_shutting_down

    async def _do_start(self) -> None:
        """Start all components."""
        self._log.info(
            "starting_janus",
            version=__version__,
            paper_trading=self.paper_trading,
        )

        await self._state_store.connect()

        try:
            await self._event_bus.connect()
        except Exception as e:
            self._log.warning(
                "event_bus_connection_failed",
                error=str(e),
                message="Running without pub/sub; broadcast channels disabled",
            )

        if self._event_bus.is_connected:
            for channel in self._channels:
                await channel.start()

        await self._sweeper.start()
        await self._api.start()

        self._configure_shutdown_manager()
        self._shutdown_manager.install_signal_handlers()

        self._log.info("janus_started", port=self._api.port)

    def _configure_shutdown_manager(self) -> None:
        # Phase 1: stop accepting new requests
        self._shutdown_manager.on_stop_new_work(self._api.stop)
        self._shutdown_manager.on_stop_new_work(self._sweeper.stop)

        # Phase 2: drain in-flight coordinations
        self._shutdown_manager.set_in_flight_tracker(lambda: self._coordinator.in_flight_count)

        # Phase 3: close client sockets and feeds
        self._shutdown_manager.on_close_connections(self._registry.close_all)
        self._shutdown_manager.on_close_connections(self._stop_channels)
        self._shutdown_manager.on_close_connections(self._executors.close)

        # Phase 4: flush
        self._shutdown_manager.on_flush_data(self._flush_metrics)

        # Phase 5: cleanup
        self._shutdown_manager.on_cleanup(self._cleanup_event_bus)
        self._shutdown_manager.on_cleanup(self._flag_store.close)
        self._shutdown_manager.on_cleanup(self._state_store.close)

    async def _stop_channels(self) -> None:
        for channel in self._channels:
            await channel.stop()

    async def _flush_metrics(self) -> None:
        self._metrics.update_uptime(self.uptime_seconds)
        self._log.info("metrics_flushed")

    async def _cleanup_event_bus(self) -> None:
        if self._event_bus.is_connected:
            await self._event_bus.disconnect()
            self._log.info("event_bus_disconnected")

    async def _do_stop(self) -> None:
        """Stop all components gracefully via the shutdown manager."""
        self._log.info("stopping_janus")

        if not self._shutdown_manager.progress.is_shutting_down:
            await self._shutdown_manager.shutdown()
        else:
            await self._shutdown_manager.wait_for_shutdown()

        self._shutdown_manager.remove_signal_handlers()

        self._log.info(
            "janus_stopped",
            shutdown_progress=self._shutdown_manager.progress.to_dict(),
        )

    async def _do_health_check(self) -> HealthCheckResult:
        if self._shutdown_manager.is_shutting_down:
            return HealthCheckResult.degraded(
                message=f"Shutting down: {self._shutdown_manager.progress.phase.value}",
                uptime_seconds=self.uptime_seconds,
            )

        db = await self._state_store.health_check()
        if db.get("status") != "healthy":
            return HealthCheckResult.unhealthy(db.get("message", "Database unavailable"))

        issues = []
        if not self._event_bus.is_connected:
            issues.append("event_bus_disconnected")
        sweeper = await self._sweeper.health_check()
        if sweeper.status == HealthStatus.UNHEALTHY:
            issues.append("guest_sweeper_unhealthy")

        if issues:
            return HealthCheckResult.degraded(
                message=f"Issues: {', '.join(issues)}",
                uptime_seconds=self.uptime_seconds,
            )

        return HealthCheckResult.healthy(
            uptime_seconds=self.uptime_seconds,
            paper_trading=self.paper_trading,
        )

    async def get_health(self) -> dict[str, Any]:
        """Health as a JSON-ready dict, served at /health."""
        result = await self.health_check()
        emergency: dict[str, Any] = {}
        if self._event_bus.is_connected:
            try:
                emergency = await self._emergency.status()
            except Exception as e:
                emergency = {"error": str(e)}

        health = {
            "status": result.status.value,
            "message": result.message,
            "details": result.details,
            "checked_at": result.checked_at.isoformat(),
            "version": __version__,
            "instance_id": self._instance_id,
            "connections": self._registry.count_by_plan(),
            "in_flight": self._coordinator.in_flight_count,
            "emergency": emergency,
        }
        if self._shutdown_manager.is_shutting_down:
            health["shutting_down"] = True
            health["shutdown_progress"] = self._shutdown_manager.progress.to_dict()
        return health

    async def run_forever(self) -> None:
        """Run until a shutdown signal arrives, then shut down gracefully."""
        await self.start()

        try:
            while not self._shutdown_manager.shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(
                        self._shutdown_manager.shutdown_event.wait(),
                        timeout=1.0,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def request_shutdown(self) -> None:
        self._log.info("shutdown_requested_programmatically")
        await self._shutdown_manager.shutdown()
