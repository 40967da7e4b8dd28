"""
Graceful shutdown handling for Janus.

Coordinates orderly shutdown when SIGTERM/SIGINT is received:
1. Stop accepting new work (control API, channel subscriptions)
2. Wait for in-flight arbitrage coordinations to finish (with timeout)
3. Close client connections
4. Flush metrics
5. Close Redis and database connections
"""

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

import structlog

log = structlog.get_logger()


class ShutdownPhase(str, Enum):
    RUNNING = "running"
    SIGNAL_RECEIVED = "signal_received"
    STOPPING_NEW_WORK = "stopping_new_work"
    DRAINING = "draining"
    CLOSING_CONNECTIONS = "closing_connections"
    FLUSHING_DATA = "flushing_data"
    CLEANUP = "cleanup"
    COMPLETED = "completed"


@dataclass
class ShutdownProgress:
    """Tracks progress of graceful shutdown."""

    phase: ShutdownPhase = ShutdownPhase.RUNNING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    signal_received: Optional[str] = None
    in_flight: int = 0
    drained: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def is_shutting_down(self) -> bool:
        return self.phase not in (ShutdownPhase.RUNNING, ShutdownPhase.COMPLETED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "signal_received": self.signal_received,
            "in_flight": self.in_flight,
            "drained": self.drained,
            "duration_seconds": self.duration_seconds,
            "errors": self.errors,
        }


ShutdownCallback = Callable[[], Coroutine[Any, Any, None]]


class ShutdownManager:
    """Runs registered shutdown callbacks phase by phase.

    Usage:
        manager = ShutdownManager(timeout_seconds=30.0)
        manager.on_stop_new_work(control_api.stop)
        manager.set_in_flight_tracker(lambda: coordinator.in_flight_count)
        manager.on_close_connections(gateway.close_all)
        manager.on_cleanup(state_store.close)
        manager.install_signal_handlers()
    """

    DEFAULT_TIMEOUT_SECONDS = 30.0
    DEFAULT_DRAIN_TIMEOUT_SECONDS = 60.0
    DRAIN_POLL_SECONDS = 0.5

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        drain_timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        self._timeout = timeout_seconds
        self._drain_timeout = drain_timeout_seconds
        self._progress = ShutdownProgress()
        self._shutdown_event = asyncio.Event()
        self._log = log.bind(component="shutdown_manager")

        self._phases: dict[ShutdownPhase, list[ShutdownCallback]] = {
            ShutdownPhase.STOPPING_NEW_WORK: [],
            ShutdownPhase.CLOSING_CONNECTIONS: [],
            ShutdownPhase.FLUSHING_DATA: [],
            ShutdownPhase.CLEANUP: [],
        }
        self._get_in_flight_count: Optional[Callable[[], int]] = None

    @property
    def progress(self) -> ShutdownProgress:
        return self._progress

    @property
    def is_shutting_down(self) -> bool:
        return self._progress.is_shutting_down

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install SIGTERM and SIGINT handlers on the running loop."""
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._log.warning("no_event_loop_for_signal_handlers")
                return

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.create_task(self._handle_signal(s)),
            )

        self._log.info("signal_handlers_installed", signals=["SIGTERM", "SIGINT"])

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):
                pass

    async def _handle_signal(self, sig: signal.Signals) -> None:
        self._log.info("shutdown_signal_received", signal=sig.name)
        self._progress.signal_received = sig.name
        await self.shutdown()

    def on_stop_new_work(self, callback: ShutdownCallback) -> None:
        self._phases[ShutdownPhase.STOPPING_NEW_WORK].append(callback)

    def on_close_connections(self, callback: ShutdownCallback) -> None:
        self._phases[ShutdownPhase.CLOSING_CONNECTIONS].append(callback)

    def on_flush_data(self, callback: ShutdownCallback) -> None:
        self._phases[ShutdownPhase.FLUSHING_DATA].append(callback)

    def on_cleanup(self, callback: ShutdownCallback) -> None:
        self._phases[ShutdownPhase.CLEANUP].append(callback)

    def set_in_flight_tracker(self, get_count: Callable[[], int]) -> None:
        """Set the function reporting in-flight coordinations."""
        self._get_in_flight_count = get_count

    async def shutdown(self) -> None:
        """Execute the shutdown sequence once; later calls are ignored."""
        if self._progress.is_shutting_down or self._shutdown_event.is_set():
            self._log.warning("shutdown_already_in_progress")
            return

        self._progress.started_at = datetime.now(timezone.utc)
        self._progress.phase = ShutdownPhase.SIGNAL_RECEIVED
        self._log.info(
            "graceful_shutdown_starting",
            timeout_seconds=self._timeout,
            drain_timeout_seconds=self._drain_timeout,
        )

        try:
            await self._run_phase(ShutdownPhase.STOPPING_NEW_WORK)
            await self._drain_in_flight()
            await self._run_phase(ShutdownPhase.CLOSING_CONNECTIONS)
            await self._run_phase(ShutdownPhase.FLUSHING_DATA)
            await self._run_phase(ShutdownPhase.CLEANUP)
        finally:
            self._progress.phase = ShutdownPhase.COMPLETED
            self._progress.completed_at = datetime.now(timezone.utc)
            self._shutdown_event.set()
            self._log.info(
                "graceful_shutdown_completed",
                duration_seconds=self._progress.duration_seconds,
                errors=len(self._progress.errors),
            )

    async def _run_phase(self, phase: ShutdownPhase) -> None:
        self._progress.phase = phase
        callbacks = self._phases[phase]
        self._log.info("shutdown_phase_starting", phase=phase.value, callback_count=len(callbacks))

        for i, callback in enumerate(callbacks):
            callback_name = getattr(callback, "__qualname__", f"callback_{i}")
            try:
                await asyncio.wait_for(callback(), timeout=self._timeout)
            except asyncio.TimeoutError:
                self._log.warning("shutdown_callback_timeout", phase=phase.value, callback=callback_name)
                self._progress.errors.append(f"Timeout: {callback_name}")
            except Exception as e:
                self._log.warning(
                    "shutdown_callback_error",
                    phase=phase.value,
                    callback=callback_name,
                    error=str(e),
                )
                self._progress.errors.append(f"Error in {callback_name}: {e}")

    async def _drain_in_flight(self) -> None:
        self._progress.phase = ShutdownPhase.DRAINING
        if self._get_in_flight_count is None:
            self._progress.drained = True
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._drain_timeout
        while True:
            count = self._get_in_flight_count()
            self._progress.in_flight = count
            if count == 0:
                self._progress.drained = True
                self._log.info("in_flight_drained")
                return
            if loop.time() >= deadline:
                # Legs already submitted keep running at the venue; operators reconcile
                self._log.warning("drain_timeout_reached", remaining=count)
                self._progress.errors.append(f"Drain timeout: {count} coordinations remaining")
                return
            await asyncio.sleep(self.DRAIN_POLL_SECONDS)

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()
