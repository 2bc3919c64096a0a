"""Public purchase provider utilities."""

from services.purchases.adapter import PurchaseAdapter, infer_subscription_type, session_from_customer_info
from services.purchases.providers import (
    BasePurchaseProvider,
    RevenueCatProvider,
    StoreFront,
    UnattachedStoreFront,
    parse_subscriber,
)
from services.purchases.types import (
    AdapterState,
    CustomerInfo,
    EntitlementInfo,
    Product,
    ProductCatalog,
    PurchaseAdapterNotReadyError,
    PurchaseCancelled,
    PurchaseCancelledError,
    PurchaseFailed,
    PurchaseOutcome,
    PurchaseProviderError,
    PurchaseSuccess,
    SubscriptionSession,
)

__all__ = [
    "AdapterState",
    "BasePurchaseProvider",
    "CustomerInfo",
    "EntitlementInfo",
    "Product",
    "ProductCatalog",
    "PurchaseAdapter",
    "PurchaseAdapterNotReadyError",
    "PurchaseCancelled",
    "PurchaseCancelledError",
    "PurchaseFailed",
    "PurchaseOutcome",
    "PurchaseProviderError",
    "PurchaseSuccess",
    "RevenueCatProvider",
    "StoreFront",
    "SubscriptionSession",
    "UnattachedStoreFront",
    "infer_subscription_type",
    "parse_subscriber",
    "session_from_customer_info",
]
