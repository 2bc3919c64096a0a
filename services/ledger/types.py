"""Ledger service contracts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class SubscriptionStatus(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    EXPIRED = "expired"


class SubscriptionType(str, Enum):
    FREE = "free"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class PendingChangeReason(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCELLATION = "cancellation"


@dataclass(frozen=True)
class PendingChange:
    from_plan: SubscriptionType
    to_plan: SubscriptionType
    effective_date: datetime
    reason: PendingChangeReason


@dataclass(frozen=True)
class BalanceSnapshot:
    credits: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE
    subscription_type: SubscriptionType = SubscriptionType.FREE
    period_end: Optional[datetime] = None
    pending_change: Optional[PendingChange] = None


SAFE_DEFAULT_SNAPSHOT = BalanceSnapshot()


@dataclass(frozen=True)
class BalanceResult:
    """A snapshot plus the error that forced it to the safe default, if any."""

    snapshot: BalanceSnapshot
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class SpendResult:
    success: bool
    remaining_credits: int
    error: Optional[str] = None
    # The request may have reached the ledger but no response came back.
    ambiguous: bool = False
    # The ledger answered and refused the spend (e.g. insufficient credits).
    declined: bool = False


@dataclass(frozen=True)
class ResetResult:
    reset_performed: bool
    credits: int
    next_reset: Optional[datetime] = None
    subscription_type: Optional[str] = None
    error: Optional[str] = None
