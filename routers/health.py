"""
Health check endpoints.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from config import ledger_function_url, settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "ledger_endpoint": "configured" if ledger_function_url(settings) else "missing",
        "revenuecat_api_key": "configured" if settings.REVENUECAT_API_KEY else "missing",
        "purchases": "unknown",
        "principal": "unknown",
    }

    # Check database connection
    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    session = getattr(request.app.state, "app_session", None)
    if session is None:
        health_status["status"] = "degraded"
    else:
        health_status["purchases"] = session.purchases.state.value
        if session.identity.current() is None:
            health_status["principal"] = "unresolved"
        else:
            health_status["principal"] = "volatile" if session.identity.is_volatile else "durable"
        if session.identity.is_volatile or not session.purchases.is_ready:
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness probe."""
    missing = []
    if not ledger_function_url(settings):
        missing.append("SUPABASE_URL")
    if not settings.SUPABASE_ANON_KEY:
        missing.append("SUPABASE_ANON_KEY")
    if getattr(request.app.state, "app_session", None) is None:
        missing.append("app_session")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Liveness probe."""
    return {"alive": True}
