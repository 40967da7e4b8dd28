"""
Risk and entitlement domain models.

These models represent plan tiers, the externally produced risk regime,
and the limits the admission gate enforces.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from janus.core.config import ConfigManager


class PlanTier(str, Enum):
    """Subscription tier. GUEST is the unauthenticated tier."""
    GUEST = "guest"
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _PLAN_RANK[self]

    @property
    def is_paid(self) -> bool:
        return self.rank >= PlanTier.PRO.rank

    def at_least(self, other: "PlanTier") -> bool:
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any, default: Optional["PlanTier"] = None) -> "PlanTier":
        """Parse a stored plan string; unknown values fall back to ``default`` (guest)."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.GUEST


_PLAN_RANK = {
    PlanTier.GUEST: 0,
    PlanTier.FREE: 1,
    PlanTier.PRO: 2,
    PlanTier.ENTERPRISE: 3,
}


class RiskRegime(str, Enum):
    """Market-wide risk classification from the alpha pipeline."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RegimeReading:
    """One regime classification as stored in alpha_metrics."""
    regime: RiskRegime
    confidence: Decimal = Decimal("0")
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def blocks_trading(self) -> bool:
        return self.regime is RiskRegime.CRITICAL


@dataclass
class UserAccount:
    """The slice of a user record the core reads."""
    id: str
    plan: PlanTier = PlanTier.FREE
    email: Optional[str] = None


@dataclass
class TradingLimits:
    """Limits enforced by the admission gate."""
    max_position_usd: Decimal = Decimal("1000")
    min_confidence: Decimal = Decimal("60")
    required_plan: PlanTier = PlanTier.PRO
    max_user_exposure_usd: Optional[Decimal] = None

    @property
    def user_exposure_cap(self) -> Decimal:
        """Aggregate open exposure allowed per user (5x one position by default)."""
        if self.max_user_exposure_usd is not None:
            return self.max_user_exposure_usd
        return self.max_position_usd * 5

    @classmethod
    def from_config(cls, config: "ConfigManager") -> "TradingLimits":
        exposure = config.get("trading.max_user_exposure_usd")
        return cls(
            max_position_usd=config.get_decimal("trading.max_position_usd", Decimal("1000")),
            min_confidence=config.get_decimal("trading.min_confidence", Decimal("60")),
            required_plan=PlanTier.parse(
                config.get("trading.required_plan", "pro"), default=PlanTier.PRO
            ),
            max_user_exposure_usd=Decimal(str(exposure)) if exposure is not None else None,
        )
