"""
Emergency-stop domain models and scope helpers.

A scope is either a single user or the whole system. System scope is stored
under a reserved sentinel user id, flagged under ``system`` and published
on the ``broadcast`` topic.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
import uuid

SYSTEM_USER_ID = "00000000-0000-0000-0000-000000000000"
SYSTEM_FLAG_SCOPE = "system"
BROADCAST_SCOPE = "broadcast"

FLAG_KEY_PREFIX = "emergency:active:"
STOP_TOPIC_PREFIX = "emergency:stop:"
STOP_TOPIC_PATTERN = STOP_TOPIC_PREFIX + "*"


def flag_key(user_id: Optional[str] = None) -> str:
    """Fast-lookup flag key for a scope."""
    return FLAG_KEY_PREFIX + (user_id or SYSTEM_FLAG_SCOPE)


def stop_topic(user_id: Optional[str] = None) -> str:
    """Pub/sub topic carrying stop notifications for a scope."""
    return STOP_TOPIC_PREFIX + (user_id or BROADCAST_SCOPE)


def scope_from_topic(channel: str) -> Optional[str]:
    """Inverse of stop_topic: the user id, or None for system scope."""
    target = channel[len(STOP_TOPIC_PREFIX):]
    if target in (BROADCAST_SCOPE, SYSTEM_FLAG_SCOPE, SYSTEM_USER_ID):
        return None
    return target


@dataclass
class EmergencyEvent:
    """Audit record of one kill-switch activation."""
    user_id: str
    trigger_reason: str
    trades_closed: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    triggered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.resolved_at is None

    @property
    def is_system_scope(self) -> bool:
        return self.user_id == SYSTEM_USER_ID

    @property
    def scope_user_id(self) -> Optional[str]:
        """The scoped user id, or None for a system-wide stop."""
        return None if self.is_system_scope else self.user_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "scope": "system" if self.is_system_scope else "user",
            "triggerReason": self.trigger_reason,
            "tradesClosed": self.trades_closed,
            "metadata": self.metadata,
            "triggeredAt": self.triggered_at.isoformat(),
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }


@dataclass
class EmergencyNotification:
    """Payload published on the stop topic and pushed to clients.

    ``origin`` identifies the publishing instance so the instance that
    already pushed locally can skip its own echo. It never reaches clients.
    """
    reason: str
    trades_affected: int
    timestamp: str
    origin: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        """Pub/sub payload."""
        payload: dict[str, Any] = self.to_client_payload()
        if self.origin:
            payload["origin"] = self.origin
        return payload

    def to_client_payload(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "tradesAffected": self.trades_affected,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "EmergencyNotification":
        return cls(
            reason=str(data.get("reason", "")),
            trades_affected=int(data.get("tradesAffected", 0)),
            timestamp=str(data.get("timestamp", "")),
            origin=data.get("origin"),
        )
