"""Dependency resolving the running application session."""

from fastapi import HTTPException, Request

from services.app_session import AppSession


def get_app_session(request: Request) -> AppSession:
    """Return the session created during startup."""
    session = getattr(request.app.state, "app_session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Credit session is not running.")
    return session
