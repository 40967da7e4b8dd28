"""
Real-time client protocol.

Every frame is a JSON envelope ``{type, payload, timestamp}``. Inbound
frames are parsed into ClientMessage; malformed input raises ProtocolError
carrying the error code sent back to the client.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from janus.core.events import EventEncoder


class MessageType(str, Enum):
    # Client -> server
    SUBSCRIBE_SYMBOL = "subscribe-symbol"
    UNSUBSCRIBE_SYMBOL = "unsubscribe-symbol"
    PING = "ping"
    SET_PREFERRED_PROVIDER = "set-preferred-provider"

    # Server -> client
    MARKET_UPDATE = "market-update"
    WHALE_ALERT = "whale-alert"
    AGENT_LOG = "agent-log"
    ALPHA_UPDATE = "alpha-update"
    TRADE_UPDATE = "trade-update"
    EMERGENCY_STOP = "emergency-stop"
    PONG = "pong"
    ERROR = "error"


INBOUND_TYPES = frozenset({
    MessageType.SUBSCRIBE_SYMBOL,
    MessageType.UNSUBSCRIBE_SYMBOL,
    MessageType.PING,
    MessageType.SET_PREFERRED_PROVIDER,
})

# Payload field each inbound type requires (string-valued)
_REQUIRED_FIELD = {
    MessageType.SUBSCRIBE_SYMBOL: "symbol",
    MessageType.UNSUBSCRIBE_SYMBOL: "symbol",
    MessageType.SET_PREFERRED_PROVIDER: "provider",
}


class ErrorCode(str, Enum):
    INVALID_JSON = "INVALID_JSON"
    INVALID_MESSAGE = "INVALID_MESSAGE"
    RATE_LIMIT = "RATE_LIMIT"
    SUBSCRIBE_LIMIT = "SUBSCRIBE_LIMIT"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"


class ProtocolError(Exception):
    """An inbound frame the server refuses; reported to the client, not raised further."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class ClientMessage:
    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_message(
    message_type: MessageType,
    payload: dict[str, Any],
    timestamp: Optional[str] = None,
) -> dict[str, Any]:
    """Server envelope for one outbound message."""
    return {
        "type": message_type.value,
        "payload": payload,
        "timestamp": timestamp or _timestamp(),
    }


def error_message(code: ErrorCode, message: str) -> dict[str, Any]:
    return build_message(MessageType.ERROR, {"code": code.value, "message": message})


def encode_message(message: dict[str, Any]) -> str:
    return json.dumps(message, cls=EventEncoder)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse and validate one inbound frame.

    Raises:
        ProtocolError: INVALID_JSON for undecodable text, INVALID_MESSAGE for
            a well-formed document that is not a known client message.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(ErrorCode.INVALID_JSON, "Malformed JSON") from e

    if not isinstance(data, dict):
        raise ProtocolError(ErrorCode.INVALID_MESSAGE, "Message must be a JSON object")

    try:
        message_type = MessageType(data.get("type"))
    except (TypeError, ValueError):
        message_type = None
    if message_type not in INBOUND_TYPES:
        raise ProtocolError(
            ErrorCode.INVALID_MESSAGE, f"Unknown message type: {data.get('type')!r}"
        )

    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ProtocolError(ErrorCode.INVALID_MESSAGE, "payload must be an object")

    required = _REQUIRED_FIELD.get(message_type)
    if required is not None:
        value = payload.get(required)
        if not isinstance(value, str) or not value.strip():
            raise ProtocolError(
                ErrorCode.INVALID_MESSAGE,
                f"{message_type.value} requires a non-empty '{required}'",
            )

    return ClientMessage(type=message_type, payload=payload)
