"""Purchase provider adapter: lifecycle state machine and ledger resync hooks."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from services.credits import RefreshTrigger
from services.identity import IdentityProvider, SessionInfo
from services.ledger.types import SubscriptionType
from services.purchases.providers import BasePurchaseProvider
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
from services.refresh_scheduler import RefreshScheduler

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_WEEKLY_MARKERS = ("week", "499")
_MONTHLY_MARKERS = ("month", "1999")


def infer_subscription_type(product_id: Optional[str]) -> SubscriptionType:
    """Map a store product identifier to a plan.

    Lossy by intent: identifiers matching neither naming pattern are free.
    """
    pid = (product_id or "").lower()
    if not pid:
        return SubscriptionType.FREE
    if any(marker in pid for marker in _WEEKLY_MARKERS):
        return SubscriptionType.WEEKLY
    if any(marker in pid for marker in _MONTHLY_MARKERS):
        return SubscriptionType.MONTHLY
    return SubscriptionType.FREE


def _primary_entitlement(entitlements: Dict[str, EntitlementInfo]) -> EntitlementInfo:
    """Non-expiring first, then latest expiry, then identifier."""

    def _rank(entitlement: EntitlementInfo):
        expires = entitlement.expiration_date
        return (expires is not None, -expires.timestamp() if expires else 0.0, entitlement.identifier)

    return min(entitlements.values(), key=_rank)


def session_from_customer_info(info: CustomerInfo) -> SubscriptionSession:
    entitlements = info.active_entitlements
    is_active = bool(info.active_subscriptions) and bool(entitlements)
    if not is_active:
        return SubscriptionSession(
            entitlements=frozenset(entitlements),
            active_product_ids=frozenset(info.active_subscriptions),
        )

    primary = _primary_entitlement(entitlements)
    return SubscriptionSession(
        is_active=True,
        product_identifier=primary.product_identifier,
        entitlements=frozenset(entitlements),
        active_product_ids=frozenset(info.active_subscriptions),
        expiration_date=primary.expiration_date,
        will_renew=primary.will_renew,
        subscription_type=infer_subscription_type(primary.product_identifier),
    )


class PurchaseAdapter:
    """Wraps the purchase provider for one application session.

    ``uninitialized -> initializing -> ready -> {purchasing, restoring,
    polling_status} -> ready``. The provider's entitlement state is mirrored
    only to decide when the ledger needs resynchronizing.
    """

    def __init__(
        self,
        provider: BasePurchaseProvider,
        identity: IdentityProvider,
        scheduler: RefreshScheduler,
        *,
        poll_interval_seconds: float = 300.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._identity = identity
        self._scheduler = scheduler
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep

        self._state = AdapterState.UNINITIALIZED
        self._session: Optional[SubscriptionSession] = None
        self._products: Tuple[Product, ...] = ()
        self.bound_session: Optional[SessionInfo] = None
        self.last_error: Optional[str] = None
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == AdapterState.READY

    @property
    def session(self) -> SubscriptionSession:
        return self._session or SubscriptionSession()

    @property
    def products(self) -> Tuple[Product, ...]:
        return self._products

    @property
    def subscription_type(self) -> SubscriptionType:
        return self.session.subscription_type

    def _require_ready(self, operation: str) -> None:
        if self._state != AdapterState.READY:
            raise PurchaseAdapterNotReadyError(
                f"Cannot {operation}: purchase adapter is {self._state.value}, expected ready."
            )

    def _mirror(self, info: CustomerInfo) -> bool:
        """Store the new session; True when product or entitlements moved since the last one."""
        previous = self._session
        current = session_from_customer_info(info)
        self._session = current
        changed = previous is not None and current.differs_from(previous)
        logger.info(
            "Subscription status updated: active=%s product=%s type=%s",
            current.is_active,
            current.product_identifier,
            current.subscription_type.value,
        )
        return changed

    async def initialize(self) -> bool:
        if self._state != AdapterState.UNINITIALIZED:
            return self.is_ready

        self._state = AdapterState.INITIALIZING
        self.last_error = None
        try:
            await self._provider.configure()
            principal = await self._identity.get_or_create()
            self.bound_session = await self._identity.bind_to_purchase_provider(principal)
            info = await self._provider.get_customer_info()
        except PurchaseProviderError as exc:
            logger.error("Purchase provider initialization failed: %s", exc)
            self.last_error = str(exc) or "Failed to initialize purchases"
            self._state = AdapterState.UNINITIALIZED
            return False
        except Exception as exc:
            logger.exception("Unexpected error initializing purchases: %s", exc)
            self.last_error = str(exc) or "Failed to initialize purchases"
            self._state = AdapterState.UNINITIALIZED
            return False

        self._mirror(info)
        self._state = AdapterState.READY
        logger.info("Purchase adapter ready (%s)", self._provider.provider_name)
        return True

    async def load_products(self) -> ProductCatalog:
        self._require_ready("load products")
        try:
            products = tuple(await self._provider.get_offerings())
        except Exception as exc:
            logger.warning("Failed to load products: %s", exc)
            self.last_error = str(exc) or "Failed to load products"
            return ProductCatalog(products=self._products, error=self.last_error)

        self._products = products
        if not products:
            logger.info("Product catalog is empty; purchasing stays hidden")
        else:
            logger.info("Loaded %d products", len(products))
        return ProductCatalog(products=products)

    def get_product(self, product_id: str) -> Optional[Product]:
        return next((p for p in self._products if p.identifier == product_id), None)

    def is_product_active(self, product_id: str) -> bool:
        session = self.session
        return session.is_active and session.product_identifier == product_id

    def has_entitlement(self, entitlement_id: str) -> bool:
        return entitlement_id in self.session.entitlements

    async def purchase(self, product: Product) -> PurchaseOutcome:
        self._require_ready("purchase")
        self._state = AdapterState.PURCHASING
        self.last_error = None
        logger.info("Purchasing product: %s", product.identifier)
        try:
            info = await self._provider.purchase(product)
        except PurchaseCancelledError as exc:
            logger.info("Purchase cancelled: %s", product.identifier)
            return PurchaseCancelled(reason=str(exc) or PurchaseCancelled().reason)
        except PurchaseProviderError as exc:
            logger.error("Purchase failed for %s: %s", product.identifier, exc)
            self.last_error = str(exc) or "Purchase failed"
            return PurchaseFailed(error=self.last_error)
        except Exception as exc:
            logger.exception("Unexpected purchase error for %s: %s", product.identifier, exc)
            self.last_error = str(exc) or "Purchase failed"
            return PurchaseFailed(error=self.last_error)
        finally:
            self._state = AdapterState.READY

        self._mirror(info)
        # The provider's webhook reaches the ledger on its own schedule.
        self._scheduler.schedule_backoff(RefreshTrigger.POST_PURCHASE)
        return PurchaseSuccess(customer_info=info, session=self.session)

    async def restore(self) -> bool:
        self._require_ready("restore purchases")
        self._state = AdapterState.RESTORING
        self.last_error = None
        try:
            info = await self._provider.restore()
        except Exception as exc:
            logger.error("Restore failed: %s", exc)
            self.last_error = str(exc) or "Failed to restore purchases"
            return False
        finally:
            self._state = AdapterState.READY

        self._mirror(info)
        self._scheduler.schedule_backoff(RefreshTrigger.POST_PURCHASE)
        return self.session.is_active

    async def check_status(self) -> Optional[SubscriptionSession]:
        """Poll entitlements; resync the ledger when they moved."""
        if self._state != AdapterState.READY:
            logger.debug("Skipping status poll while %s", self._state.value)
            return self._session

        self._state = AdapterState.POLLING_STATUS
        try:
            info = await self._provider.get_customer_info()
        except Exception as exc:
            logger.warning("Failed to check subscription status: %s", exc)
            return self._session
        finally:
            self._state = AdapterState.READY

        if self._mirror(info):
            logger.info("Entitlements changed; resynchronizing credits")
            await self._scheduler.fire(RefreshTrigger.STATUS_CHANGE)
        return self._session

    async def log_out(self) -> None:
        """Detach the provider user; ``initialize()`` must run again before further use."""
        self._require_ready("log out")
        await self.stop_status_polling()
        try:
            await self._provider.log_out()
        finally:
            self._session = None
            self._products = ()
            self.bound_session = None
            self._state = AdapterState.UNINITIALIZED
        logger.info("Purchase provider user logged out")

    async def _poll_loop(self) -> None:
        while True:
            await self._sleep(self.poll_interval_seconds)
            try:
                await self.check_status()
            except Exception as exc:
                logger.exception("Subscription status poll failed: %s", exc)

    def start_status_polling(self) -> None:
        if self.poll_interval_seconds <= 0:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("Subscription status polling every %ss", self.poll_interval_seconds)

    async def stop_status_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
