"""Public ledger client utilities."""

from services.ledger.client import LedgerClient, LedgerResponseError
from services.ledger.types import (
    SAFE_DEFAULT_SNAPSHOT,
    BalanceResult,
    BalanceSnapshot,
    PendingChange,
    PendingChangeReason,
    ResetResult,
    SpendResult,
    SubscriptionStatus,
    SubscriptionType,
)

__all__ = [
    "SAFE_DEFAULT_SNAPSHOT",
    "BalanceResult",
    "BalanceSnapshot",
    "LedgerClient",
    "LedgerResponseError",
    "PendingChange",
    "PendingChangeReason",
    "ResetResult",
    "SpendResult",
    "SubscriptionStatus",
    "SubscriptionType",
]
