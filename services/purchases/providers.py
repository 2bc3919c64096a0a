"""Purchase provider abstraction and the RevenueCat REST implementation."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from config import Settings
from services.purchases.types import (
    CustomerInfo,
    EntitlementInfo,
    Product,
    PurchaseCancelledError,
    PurchaseProviderError,
)

logger = logging.getLogger(__name__)


class BasePurchaseProvider(ABC):
    provider_name: str

    @abstractmethod
    async def configure(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def log_in(self, app_user_id: str) -> CustomerInfo:
        raise NotImplementedError

    @abstractmethod
    async def log_out(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_offerings(self) -> List[Product]:
        raise NotImplementedError

    @abstractmethod
    async def purchase(self, product: Product) -> CustomerInfo:
        """Run the store purchase; raises ``PurchaseCancelledError`` if the user backs out."""
        raise NotImplementedError

    @abstractmethod
    async def restore(self) -> CustomerInfo:
        raise NotImplementedError

    @abstractmethod
    async def get_customer_info(self) -> CustomerInfo:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class StoreFront(ABC):
    """The platform store sheet. Produces receipt tokens for the provider."""

    @abstractmethod
    async def purchase(self, product: Product) -> str:
        raise NotImplementedError

    @abstractmethod
    async def restore(self) -> List[str]:
        raise NotImplementedError


class UnattachedStoreFront(StoreFront):
    """Fails deterministically until a real store sheet is attached."""

    def _error(self) -> PurchaseProviderError:
        return PurchaseProviderError(
            "No store purchase flow is attached to this session. "
            "Attach a StoreFront before purchasing or restoring."
        )

    async def purchase(self, product: Product) -> str:
        raise self._error()

    async def restore(self) -> List[str]:
        raise self._error()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def _is_unexpired(expires: Optional[datetime], now: datetime) -> bool:
    return expires is None or expires > now


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_subscriber(subscriber: Dict[str, Any], now: Optional[datetime] = None) -> CustomerInfo:
    """Convert a RevenueCat ``subscriber`` object into ``CustomerInfo``.

    Malformed sections are skipped rather than raised.
    """
    current = now or datetime.now(timezone.utc)
    subscriber = _mapping(subscriber)
    subscriptions = {
        str(product_id): sub
        for product_id, sub in _mapping(subscriber.get("subscriptions")).items()
        if isinstance(sub, dict)
    }

    active_subscriptions = []
    for product_id, sub in subscriptions.items():
        if _is_unexpired(_parse_timestamp(sub.get("expires_date")), current):
            active_subscriptions.append(product_id)

    active_entitlements: Dict[str, EntitlementInfo] = {}
    for name, entitlement in _mapping(subscriber.get("entitlements")).items():
        if not isinstance(entitlement, dict):
            continue
        expires = _parse_timestamp(entitlement.get("expires_date"))
        if not _is_unexpired(expires, current):
            continue
        product_id = str(entitlement.get("product_identifier") or "")
        sub = subscriptions.get(product_id) or {}
        will_renew = sub.get("unsubscribe_detected_at") is None and sub.get("billing_issues_detected_at") is None
        active_entitlements[name] = EntitlementInfo(
            identifier=name,
            product_identifier=product_id,
            expiration_date=expires,
            will_renew=will_renew,
        )

    return CustomerInfo(
        original_app_user_id=str(subscriber.get("original_app_user_id") or ""),
        active_subscriptions=tuple(sorted(active_subscriptions)),
        active_entitlements=active_entitlements,
        first_seen=_parse_timestamp(subscriber.get("first_seen")),
    )


class RevenueCatProvider(BasePurchaseProvider):
    """RevenueCat over its v1 REST API."""

    provider_name = "revenuecat"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.revenuecat.com/v1",
        platform: str = "ios",
        timeout_seconds: float = 10.0,
        storefront: Optional[StoreFront] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.platform = platform
        self.timeout_seconds = timeout_seconds
        self.storefront = storefront or UnattachedStoreFront()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._app_user_id: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        *,
        storefront: Optional[StoreFront] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "RevenueCatProvider":
        return cls(
            api_key=config.REVENUECAT_API_KEY,
            base_url=config.REVENUECAT_BASE_URL,
            platform=config.REVENUECAT_PLATFORM,
            timeout_seconds=config.REVENUECAT_TIMEOUT_SECONDS,
            storefront=storefront,
            transport=transport,
        )

    async def configure(self) -> None:
        if not (self.api_key or "").strip():
            raise PurchaseProviderError("RevenueCat API key is not configured.")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "X-Platform": self.platform,
                },
                timeout=self.timeout_seconds,
                transport=self._transport,
            )
        logger.info("RevenueCat configured for platform %s", self.platform)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_user(self) -> str:
        if not self._app_user_id:
            raise PurchaseProviderError("No RevenueCat app user is logged in.")
        return self._app_user_id

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if self._client is None:
            raise PurchaseProviderError("RevenueCat not initialized. Call configure() first.")
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise PurchaseProviderError(f"RevenueCat request timed out: {path}") from exc
        except httpx.HTTPError as exc:
            raise PurchaseProviderError(f"RevenueCat request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "RevenueCat API returned status %d for %s: %s",
                response.status_code,
                path,
                response.text[:200],
            )
            raise PurchaseProviderError(f"RevenueCat returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise PurchaseProviderError("RevenueCat returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise PurchaseProviderError("RevenueCat returned an unexpected payload")
        return data

    def _subscriber_path(self, app_user_id: str) -> str:
        return f"/subscribers/{quote(app_user_id, safe='')}"

    async def _fetch_customer_info(self, app_user_id: str) -> CustomerInfo:
        data = await self._request("GET", self._subscriber_path(app_user_id))
        subscriber = data.get("subscriber")
        if not isinstance(subscriber, dict):
            raise PurchaseProviderError("RevenueCat response missing subscriber")
        return parse_subscriber(subscriber)

    async def log_in(self, app_user_id: str) -> CustomerInfo:
        # GET /subscribers creates the subscriber on first sight.
        info = await self._fetch_customer_info(app_user_id)
        self._app_user_id = app_user_id
        return info

    async def log_out(self) -> None:
        self._app_user_id = None

    async def get_offerings(self) -> List[Product]:
        app_user_id = self._require_user()
        data = await self._request("GET", f"{self._subscriber_path(app_user_id)}/offerings")
        current_id = data.get("current_offering_id")
        offerings = data.get("offerings") or []
        current = next((o for o in offerings if o.get("identifier") == current_id), None)
        if current is None:
            logger.warning("No current offering found")
            return []

        products: List[Product] = []
        for package in current.get("packages") or []:
            product_id = str(package.get("platform_product_identifier") or "").strip()
            if not product_id:
                continue
            products.append(
                Product(
                    identifier=product_id,
                    title=str(package.get("title") or product_id),
                    description=str(current.get("description") or ""),
                    package_type=str(package.get("identifier") or ""),
                    offering_id=str(current_id),
                )
            )
        return products

    async def _post_receipt(self, app_user_id: str, fetch_token: str, product_id: Optional[str]) -> CustomerInfo:
        body: Dict[str, Any] = {"app_user_id": app_user_id, "fetch_token": fetch_token}
        if product_id:
            body["product_id"] = product_id
        data = await self._request("POST", "/receipts", json=body)
        subscriber = data.get("subscriber")
        if not isinstance(subscriber, dict):
            raise PurchaseProviderError("RevenueCat receipt response missing subscriber")
        return parse_subscriber(subscriber)

    async def purchase(self, product: Product) -> CustomerInfo:
        app_user_id = self._require_user()
        fetch_token = await self.storefront.purchase(product)
        if not fetch_token:
            raise PurchaseCancelledError("Purchase was cancelled by user")
        return await self._post_receipt(app_user_id, fetch_token, product.identifier)

    async def restore(self) -> CustomerInfo:
        app_user_id = self._require_user()
        for fetch_token in await self.storefront.restore():
            await self._post_receipt(app_user_id, fetch_token, None)
        return await self._fetch_customer_info(app_user_id)

    async def get_customer_info(self) -> CustomerInfo:
        return await self._fetch_customer_info(self._require_user())
