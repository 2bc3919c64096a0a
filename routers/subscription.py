"""Subscription status, catalog and purchase router."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from routers.session_scope import get_app_session
from services.app_session import AppSession
from services.purchases.adapter import PurchaseAdapter
from services.purchases.types import (
    Product,
    PurchaseAdapterNotReadyError,
    PurchaseCancelled,
    PurchaseSuccess,
    SubscriptionSession,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=200)


def _product_payload(product: Product) -> Dict[str, Any]:
    return {
        "identifier": product.identifier,
        "title": product.title,
        "description": product.description,
        "price": product.price,
        "price_currency_code": product.price_currency_code,
        "subscription_period": product.subscription_period,
        "package_type": product.package_type,
    }


def _session_payload(adapter: PurchaseAdapter, session: SubscriptionSession) -> Dict[str, Any]:
    return {
        "state": adapter.state.value,
        "has_active_subscription": session.is_active,
        "current_product_id": session.product_identifier,
        "subscription_type": session.subscription_type.value,
        "entitlements": sorted(session.entitlements),
        "expiration_date": session.expiration_date.isoformat() if session.expiration_date else None,
        "will_renew": session.will_renew,
        "error": adapter.last_error,
    }


def _not_ready(exc: PurchaseAdapterNotReadyError) -> HTTPException:
    return HTTPException(status_code=503, detail=str(exc))


@router.get("")
async def subscription_status(session: AppSession = Depends(get_app_session)):
    adapter = session.purchases
    return _session_payload(adapter, adapter.session)


@router.get("/products")
async def list_products(session: AppSession = Depends(get_app_session)):
    try:
        catalog = await session.purchases.load_products()
    except PurchaseAdapterNotReadyError as exc:
        raise _not_ready(exc) from exc
    return {
        "products": [_product_payload(product) for product in catalog.products],
        "purchasing_enabled": not catalog.is_empty,
        "error": catalog.error,
    }


@router.post("/purchase")
async def purchase_product(request: PurchaseRequest, session: AppSession = Depends(get_app_session)):
    adapter = session.purchases
    product = adapter.get_product(request.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail=f"Unknown product: {request.product_id}")

    try:
        outcome = await adapter.purchase(product)
    except PurchaseAdapterNotReadyError as exc:
        raise _not_ready(exc) from exc

    if isinstance(outcome, PurchaseSuccess):
        return {"status": "success", "subscription": _session_payload(adapter, outcome.session)}
    if isinstance(outcome, PurchaseCancelled):
        return {"status": "cancelled", "detail": outcome.reason}
    return {"status": "failed", "detail": outcome.error}


@router.post("/restore")
async def restore_purchases(session: AppSession = Depends(get_app_session)):
    adapter = session.purchases
    try:
        has_active = await adapter.restore()
    except PurchaseAdapterNotReadyError as exc:
        raise _not_ready(exc) from exc
    return {
        "has_active_entitlement": has_active,
        "subscription": _session_payload(adapter, adapter.session),
    }


@router.post("/check-status")
async def check_subscription_status(session: AppSession = Depends(get_app_session)):
    adapter = session.purchases
    if not adapter.is_ready:
        raise HTTPException(status_code=503, detail=f"Purchase adapter is {adapter.state.value}.")
    await adapter.check_status()
    return _session_payload(adapter, adapter.session)
