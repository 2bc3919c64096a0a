"""Purchase provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union

from services.ledger.types import SubscriptionType


class PurchaseProviderError(RuntimeError):
    """Raised when the purchase provider cannot complete a request."""


class PurchaseCancelledError(PurchaseProviderError):
    """Raised when the user backs out of the store purchase sheet."""


class PurchaseAdapterNotReadyError(RuntimeError):
    """Raised when an adapter operation is invoked outside the ready state."""


class AdapterState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    PURCHASING = "purchasing"
    RESTORING = "restoring"
    POLLING_STATUS = "polling_status"


@dataclass(frozen=True)
class Product:
    identifier: str
    title: str = ""
    description: str = ""
    price: str = ""
    price_amount_micros: int = 0
    price_currency_code: str = ""
    subscription_period: Optional[str] = None
    package_type: str = ""
    offering_id: Optional[str] = None


@dataclass(frozen=True)
class ProductCatalog:
    products: Tuple[Product, ...] = ()
    error: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.products


@dataclass(frozen=True)
class EntitlementInfo:
    identifier: str
    product_identifier: str
    expiration_date: Optional[datetime] = None
    will_renew: bool = True


@dataclass(frozen=True)
class CustomerInfo:
    original_app_user_id: str
    active_subscriptions: Tuple[str, ...] = ()
    active_entitlements: Dict[str, EntitlementInfo] = field(default_factory=dict)
    first_seen: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionSession:
    """Local mirror of the provider's entitlement state.

    Only used to decide when the ledger needs a resync; credits always come
    from the ledger.
    """

    is_active: bool = False
    product_identifier: Optional[str] = None
    entitlements: FrozenSet[str] = frozenset()
    active_product_ids: FrozenSet[str] = frozenset()
    expiration_date: Optional[datetime] = None
    will_renew: bool = False
    subscription_type: SubscriptionType = SubscriptionType.FREE

    def differs_from(self, other: Optional["SubscriptionSession"]) -> bool:
        if other is None:
            return True
        return (
            self.product_identifier != other.product_identifier
            or self.entitlements != other.entitlements
            or self.active_product_ids != other.active_product_ids
        )


@dataclass(frozen=True)
class PurchaseSuccess:
    customer_info: CustomerInfo
    session: SubscriptionSession


@dataclass(frozen=True)
class PurchaseCancelled:
    reason: str = "Purchase was cancelled by user"


@dataclass(frozen=True)
class PurchaseFailed:
    error: str


PurchaseOutcome = Union[PurchaseSuccess, PurchaseCancelled, PurchaseFailed]
