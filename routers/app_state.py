"""App lifecycle transitions reported by the presentation layer."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from routers.session_scope import get_app_session
from services.app_session import AppSession, AppState

router = APIRouter()


class AppStateChange(BaseModel):
    state: AppState


@router.post("")
async def app_state_changed(change: AppStateChange, session: AppSession = Depends(get_app_session)):
    view = await session.on_app_state_change(change.state)
    return {
        "state": session.app_state.value,
        "timer_running": session.scheduler.timer_running,
        "credits": view.as_dict(),
    }
