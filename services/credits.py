"""Credit reconciliation: the single owner of the cached balance.

The remote ledger is the source of truth. This controller keeps one
``BalanceSnapshot`` and folds ledger responses into it under three rules:

* responses are sequenced; a response is applied only when no newer
  request's data is already in the cache (last request wins),
* a failed read keeps the last good snapshot and raises an error flag,
* spends and resets overwrite credits with the server's number, never with
  a locally computed one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from services.identity import IdentityProvider
from services.ledger.client import LedgerClient
from services.ledger.types import (
    SAFE_DEFAULT_SNAPSHOT,
    BalanceSnapshot,
    PendingChange,
    PendingChangeReason,
    ResetResult,
    SpendResult,
    SubscriptionStatus,
    SubscriptionType,
)

logger = logging.getLogger(__name__)


class RefreshTrigger(str, Enum):
    MOUNT = "mount"
    FOREGROUND = "foreground"
    TIMER = "timer"
    POST_PURCHASE = "post_purchase"
    MANUAL = "manual"
    SPEND_RECONCILE = "spend_reconcile"
    STATUS_CHANGE = "status_change"


SUBSCRIBED_PLANS = frozenset({SubscriptionType.WEEKLY, SubscriptionType.MONTHLY})


def has_pending_downgrade(snapshot: BalanceSnapshot) -> bool:
    change = snapshot.pending_change
    return change is not None and change.reason == PendingChangeReason.DOWNGRADE


def is_subscribed_plan(snapshot: BalanceSnapshot) -> bool:
    return snapshot.subscription_status == SubscriptionStatus.ACTIVE and snapshot.subscription_type in SUBSCRIBED_PLANS


def entered_subscribed_plan(previous: BalanceSnapshot, current: BalanceSnapshot) -> bool:
    """True when ``(status, type)`` moved and now names an active weekly/monthly plan."""
    moved = (previous.subscription_status, previous.subscription_type) != (
        current.subscription_status,
        current.subscription_type,
    )
    return moved and is_subscribed_plan(current)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class CreditsView:
    """Published read model for presentation."""

    credits: int
    subscription_status: SubscriptionStatus
    subscription_type: SubscriptionType
    is_loading: bool
    error: Optional[str]
    period_end: Optional[datetime]
    pending_change: Optional[PendingChange]
    has_active_pending_downgrade: bool

    def as_dict(self) -> Dict[str, Any]:
        pending = None
        if self.pending_change is not None:
            pending = {
                "from": self.pending_change.from_plan.value,
                "to": self.pending_change.to_plan.value,
                "effective_date": _iso(self.pending_change.effective_date),
                "reason": self.pending_change.reason.value,
            }
        return {
            "credits": self.credits,
            "subscription_status": self.subscription_status.value,
            "subscription_type": self.subscription_type.value,
            "is_loading": self.is_loading,
            "error": self.error,
            "period_end": _iso(self.period_end),
            "pending_change": pending,
            "has_active_pending_downgrade": self.has_active_pending_downgrade,
        }


class CreditReconciliationController:
    def __init__(
        self,
        ledger: LedgerClient,
        identity: IdentityProvider,
        *,
        default_spend_reason: str = "AI generation",
    ) -> None:
        self._ledger = ledger
        self._identity = identity
        self.default_spend_reason = default_spend_reason

        self._snapshot: BalanceSnapshot = SAFE_DEFAULT_SNAPSHOT
        self._error: Optional[str] = None
        self._issued_seq = 0
        self._applied_seq = 0
        self._error_seq = 0
        self._refreshes_in_flight = 0
        self._settled_once = False

    @property
    def snapshot(self) -> BalanceSnapshot:
        return self._snapshot

    @property
    def view(self) -> CreditsView:
        snapshot = self._snapshot
        return CreditsView(
            credits=snapshot.credits,
            subscription_status=snapshot.subscription_status,
            subscription_type=snapshot.subscription_type,
            is_loading=self._refreshes_in_flight > 0 or not self._settled_once,
            error=self._error,
            period_end=snapshot.period_end,
            pending_change=snapshot.pending_change,
            has_active_pending_downgrade=has_pending_downgrade(snapshot),
        )

    @property
    def has_active_pending_downgrade(self) -> bool:
        return has_pending_downgrade(self._snapshot)

    @property
    def is_subscribed(self) -> bool:
        return is_subscribed_plan(self._snapshot)

    def has_enough(self, amount: int) -> bool:
        """Pure read of the cached balance; never touches the network."""
        return self._snapshot.credits >= amount

    def _next_seq(self) -> int:
        self._issued_seq += 1
        return self._issued_seq

    def _accept(self, seq: int) -> bool:
        if seq <= self._applied_seq:
            return False
        self._applied_seq = seq
        if seq > self._error_seq:
            self._error = None
            self._error_seq = seq
        return True

    def _record_error(self, seq: int, error: str) -> None:
        if seq <= self._applied_seq or seq <= self._error_seq:
            return
        self._error = error
        self._error_seq = seq

    async def refresh(self, trigger: RefreshTrigger = RefreshTrigger.MANUAL) -> CreditsView:
        await self._refresh(trigger)
        return self.view

    async def _refresh(self, trigger: RefreshTrigger) -> bool:
        """Fetch and fold one balance; returns whether a reset check ran."""
        principal = await self._identity.get_or_create()
        seq = self._next_seq()
        self._refreshes_in_flight += 1
        try:
            result = await self._ledger.get_balance(principal)
        finally:
            self._refreshes_in_flight -= 1
            self._settled_once = True

        if not result.ok:
            self._record_error(seq, result.error or "Failed to fetch credits")
            logger.warning("Credits refresh (%s) failed; keeping last known balance: %s", trigger.value, result.error)
            return False
        if not self._accept(seq):
            logger.debug("Discarded superseded refresh response seq=%s (applied=%s)", seq, self._applied_seq)
            return False

        previous, self._snapshot = self._snapshot, result.snapshot
        logger.info(
            "Credits refreshed (%s): credits=%s status=%s type=%s",
            trigger.value,
            result.snapshot.credits,
            result.snapshot.subscription_status.value,
            result.snapshot.subscription_type.value,
        )
        if entered_subscribed_plan(previous, result.snapshot):
            logger.info("Plan is now %s; checking for a credit reset", result.snapshot.subscription_type.value)
            await self.check_credit_reset()
            return True
        return False

    async def reconcile(self, trigger: RefreshTrigger) -> CreditsView:
        """Refresh; on foreground an active subscriber also gets a reset check."""
        reset_checked = await self._refresh(trigger)
        if (
            trigger == RefreshTrigger.FOREGROUND
            and not reset_checked
            and self._snapshot.subscription_status == SubscriptionStatus.ACTIVE
        ):
            await self.check_credit_reset()
        return self.view

    async def mount(self) -> CreditsView:
        return await self.reconcile(RefreshTrigger.MOUNT)

    async def spend(self, amount: int, reason: Optional[str] = None) -> SpendResult:
        if amount <= 0:
            raise ValueError("amount must be a positive integer")

        principal = await self._identity.get_or_create()
        seq = self._next_seq()
        result = await self._ledger.spend(principal, amount, reason or self.default_spend_reason)

        if result.success:
            if self._accept(seq):
                self._snapshot = replace(self._snapshot, credits=result.remaining_credits)
                logger.info("Spent %s credits; ledger reports %s remaining", amount, result.remaining_credits)
            else:
                logger.debug("Spend acknowledged but a newer balance is already cached (seq=%s)", seq)
        elif result.ambiguous:
            logger.warning("Spend of %s has unknown outcome; reconciling against the ledger", amount)
            await self.refresh(RefreshTrigger.SPEND_RECONCILE)
        elif not result.declined:
            self._record_error(seq, result.error or "Failed to spend credits")
        return result

    async def check_credit_reset(self) -> ResetResult:
        principal = await self._identity.get_or_create()
        seq = self._next_seq()
        result = await self._ledger.check_reset(principal)
        if result.reset_performed and self._accept(seq):
            self._snapshot = replace(self._snapshot, credits=result.credits)
            logger.info("Credit reset applied: %s credits", result.credits)
        return result
