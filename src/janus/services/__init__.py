"""Services - business logic with single responsibility."""

from janus.services.metrics import MetricsEmitter
from janus.services.state_store import StateStore
from janus.services.pnl import PnLCalculator
from janus.services.order_manager import OrderManager
from janus.services.emergency_stop import EmergencyFlagStore, EmergencyStopService
from janus.services.arb_coordinator import ArbCoordinator
from janus.services.control_api import ControlApi

__all__ = [
    "MetricsEmitter",
    "StateStore",
    "PnLCalculator",
    "OrderManager",
    "EmergencyFlagStore",
    "EmergencyStopService",
    "ArbCoordinator",
    "ControlApi",
]
