"""Credits read model and actions router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from routers.session_scope import get_app_session
from services.app_session import AppSession
from services.credits import RefreshTrigger

router = APIRouter()
logger = logging.getLogger(__name__)


class SpendRequest(BaseModel):
    amount: int = Field(ge=1, le=10000)
    reason: Optional[str] = Field(default=None, max_length=200)


@router.get("")
async def credits_view(session: AppSession = Depends(get_app_session)):
    return session.controller.view.as_dict()


@router.post("/refresh")
async def refresh_credits(session: AppSession = Depends(get_app_session)):
    view = await session.scheduler.fire(RefreshTrigger.MANUAL)
    return view.as_dict()


@router.post("/spend")
async def spend_credits(request: SpendRequest, session: AppSession = Depends(get_app_session)):
    result = await session.controller.spend(request.amount, request.reason)
    return {
        "success": result.success,
        "remaining_credits": result.remaining_credits,
        "error": result.error,
        "ambiguous": result.ambiguous,
        "declined": result.declined,
        "credits": session.controller.view.as_dict(),
    }


@router.get("/has-enough")
async def has_enough_credits(
    amount: int = Query(ge=0),
    session: AppSession = Depends(get_app_session),
):
    return {"amount": amount, "has_enough": session.controller.has_enough(amount)}


@router.post("/check-reset")
async def check_credit_reset(session: AppSession = Depends(get_app_session)):
    result = await session.controller.check_credit_reset()
    return {
        "reset_performed": result.reset_performed,
        "credits": result.credits,
        "next_reset": result.next_reset.isoformat() if result.next_reset else None,
        "subscription_type": result.subscription_type,
        "error": result.error,
    }
