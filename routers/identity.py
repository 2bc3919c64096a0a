"""Installation identity router."""

from fastapi import APIRouter, Depends

from routers.session_scope import get_app_session
from services.app_session import AppSession

router = APIRouter()


@router.get("")
async def identity_info(session: AppSession = Depends(get_app_session)):
    principal = await session.identity.get_or_create()
    bound = session.purchases.bound_session
    return {
        "principal": principal,
        "volatile": session.identity.is_volatile,
        "purchase_session_matches": bound.matches if bound else None,
        "purchase_session_principal": bound.confirmed_principal if bound else None,
    }
