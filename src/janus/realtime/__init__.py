"""Real-time fan-out to WebSocket clients."""

from janus.realtime.channels import (
    AgentLogChannel,
    AlphaChannel,
    BroadcastChannel,
    EmergencyChannel,
    MarketPriceChannel,
    TradeUpdateChannel,
    WhaleAlertChannel,
    default_channels,
)
from janus.realtime.gateway import RealtimeGateway
from janus.realtime.protocol import ErrorCode, MessageType, build_message
from janus.realtime.registry import ConnectionRegistry, ConnectionState, GuestSweeper

__all__ = [
    "ConnectionRegistry",
    "ConnectionState",
    "GuestSweeper",
    "RealtimeGateway",
    "MessageType",
    "ErrorCode",
    "build_message",
    "BroadcastChannel",
    "MarketPriceChannel",
    "WhaleAlertChannel",
    "AgentLogChannel",
    "AlphaChannel",
    "TradeUpdateChannel",
    "EmergencyChannel",
    "default_channels",
]
