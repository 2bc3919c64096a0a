"""Installation identity: one stable principal shared by the purchase provider and the ledger."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from services.storage import KeyValueStore, StorageUnavailableError

if TYPE_CHECKING:
    from services.purchases.providers import BasePurchaseProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    expected_principal: str
    confirmed_principal: str

    @property
    def matches(self) -> bool:
        return self.expected_principal == self.confirmed_principal


def generate_principal(prefix: str, *, fallback: bool = False) -> str:
    """Build ``{prefix}_{epoch_ms}_{random}``; 64 random bits make cross-install collisions negligible."""
    marker = f"{prefix}_fallback" if fallback else prefix
    return f"{marker}_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


class IdentityProvider:
    """Produces and persists the installation principal.

    Resolution order is memory, then durable storage, then a freshly
    generated identifier that is persisted before it is cached. Concurrent
    callers are serialized so only one principal is ever created. When
    storage is unavailable a volatile principal is used for the rest of the
    process; ledger balances keyed by it will not survive a restart.
    """

    def __init__(
        self,
        store: KeyValueStore,
        purchase_provider: Optional[BasePurchaseProvider] = None,
        *,
        storage_key: str = "figure_ai_customer_id",
        prefix: str = "figure_ai",
    ) -> None:
        self._store = store
        self._purchase_provider = purchase_provider
        self.storage_key = storage_key
        self.prefix = prefix
        self._principal: Optional[str] = None
        self._volatile = False
        self._lock = asyncio.Lock()

    @property
    def is_volatile(self) -> bool:
        return self._volatile

    def current(self) -> Optional[str]:
        return self._principal

    async def get_or_create(self) -> str:
        if self._principal:
            return self._principal

        async with self._lock:
            if self._principal:
                return self._principal

            try:
                existing = await self._store.get_item(self.storage_key)
                if existing and existing.strip():
                    logger.info("Retrieved existing principal from storage: %s", existing)
                    self._principal = existing.strip()
                    return self._principal

                principal = generate_principal(self.prefix)
                await self._store.set_item(self.storage_key, principal)
                logger.info("Generated new principal: %s", principal)
                self._principal = principal
                return principal
            except StorageUnavailableError as exc:
                fallback = generate_principal(self.prefix, fallback=True)
                logger.error(
                    "Durable storage unavailable (%s); using VOLATILE principal %s. "
                    "Credits keyed by this principal will not be found after restart.",
                    exc,
                    fallback,
                )
                self._principal = fallback
                self._volatile = True
                return fallback

    async def stored(self) -> Optional[str]:
        """Read the persisted principal without touching the cache."""
        try:
            return await self._store.get_item(self.storage_key)
        except StorageUnavailableError as exc:
            logger.error("Could not read stored principal: %s", exc)
            return None

    async def clear(self) -> None:
        async with self._lock:
            try:
                await self._store.remove_item(self.storage_key)
            except StorageUnavailableError as exc:
                logger.error("Could not clear stored principal: %s", exc)
            self._principal = None
            self._volatile = False
            logger.info("Principal cleared")

    async def bind_to_purchase_provider(self, principal: str) -> SessionInfo:
        """Log the principal into the purchase provider and verify it is echoed back.

        A mismatch means two identities now address one purchase session. The
        caller keeps using its own principal for ledger calls either way.
        """
        if self._purchase_provider is None:
            raise RuntimeError("IdentityProvider has no purchase provider to bind to.")

        info = await self._purchase_provider.log_in(principal)
        session = SessionInfo(expected_principal=principal, confirmed_principal=info.original_app_user_id)
        if session.matches:
            logger.info("Purchase session bound to principal %s", principal)
        else:
            logger.error(
                "IDENTITY MISMATCH: purchase provider returned original app user %r, expected %r. "
                "Ledger calls continue with the local principal.",
                session.confirmed_principal,
                principal,
            )
        return session
