"""Explicit wiring of one application session.

Every collaborator is constructed once here and handed to the others, so
tests can swap any of them for a fake.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

import httpx

from config import Settings, settings
from database import async_session_maker
from services.credits import CreditReconciliationController, CreditsView, RefreshTrigger
from services.identity import IdentityProvider
from services.ledger.client import LedgerClient
from services.purchases.adapter import PurchaseAdapter
from services.purchases.providers import BasePurchaseProvider, RevenueCatProvider, StoreFront
from services.refresh_scheduler import RefreshScheduler, Sleep
from services.storage import KeyValueStore, SqlKeyValueStore

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    ACTIVE = "active"
    BACKGROUND = "background"
    INACTIVE = "inactive"


class AppSession:
    def __init__(
        self,
        *,
        identity: IdentityProvider,
        ledger: LedgerClient,
        provider: BasePurchaseProvider,
        controller: CreditReconciliationController,
        scheduler: RefreshScheduler,
        purchases: PurchaseAdapter,
    ) -> None:
        self.identity = identity
        self.ledger = ledger
        self.provider = provider
        self.controller = controller
        self.scheduler = scheduler
        self.purchases = purchases
        self.app_state = AppState.INACTIVE
        self.started = False

    async def start(self) -> CreditsView:
        principal = await self.identity.get_or_create()
        if self.identity.is_volatile:
            logger.error("Session started with a volatile principal %s", principal)

        ready = await self.purchases.initialize()
        view = await self.scheduler.fire(RefreshTrigger.MOUNT)
        if ready:
            await self.purchases.load_products()
            self.purchases.start_status_polling()
        else:
            logger.warning("Purchases unavailable: %s", self.purchases.last_error)

        self.app_state = AppState.ACTIVE
        self.scheduler.start_timer()
        self.started = True
        return view

    async def on_app_state_change(self, state: AppState) -> CreditsView:
        previous, self.app_state = self.app_state, state
        if state != AppState.ACTIVE:
            await self.scheduler.stop_timer()
            return self.controller.view

        if previous != AppState.ACTIVE:
            logger.info("App became active - refreshing credits")
            await self.scheduler.fire(RefreshTrigger.FOREGROUND)
            await self.purchases.check_status()
            self.scheduler.start_timer()
        return self.controller.view

    async def close(self) -> None:
        await self.scheduler.aclose()
        await self.purchases.stop_status_polling()
        await self.ledger.aclose()
        await self.provider.aclose()
        self.started = False


def build_app_session(
    config: Settings = settings,
    *,
    store: Optional[KeyValueStore] = None,
    provider: Optional[BasePurchaseProvider] = None,
    storefront: Optional[StoreFront] = None,
    ledger_transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Sleep = asyncio.sleep,
) -> AppSession:
    provider = provider or RevenueCatProvider.from_settings(config, storefront=storefront)
    identity = IdentityProvider(
        store or SqlKeyValueStore(async_session_maker),
        provider,
        storage_key=config.PRINCIPAL_STORAGE_KEY,
        prefix=config.PRINCIPAL_PREFIX,
    )
    ledger = LedgerClient.from_settings(config, transport=ledger_transport)
    controller = CreditReconciliationController(
        ledger,
        identity,
        default_spend_reason=config.DEFAULT_SPEND_REASON,
    )
    scheduler = RefreshScheduler(
        controller,
        interval_seconds=config.CREDITS_REFRESH_INTERVAL_SECONDS,
        post_purchase_delays=config.POST_PURCHASE_REFRESH_DELAYS_SECONDS,
        sleep=sleep,
    )
    purchases = PurchaseAdapter(
        provider,
        identity,
        scheduler,
        poll_interval_seconds=config.SUBSCRIPTION_POLL_INTERVAL_MINUTES * 60,
        sleep=sleep,
    )
    return AppSession(
        identity=identity,
        ledger=ledger,
        provider=provider,
        controller=controller,
        scheduler=scheduler,
        purchases=purchases,
    )
