"""
Credit Sync - local credit reconciliation service
Application entry point wiring the credit session into a FastAPI app.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_ledger_settings
from database import create_schema
from routers import app_state, credits, health, identity, subscription
from services.app_session import build_app_session


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Sync...")
    validate_ledger_settings()
    try:
        await create_schema()
        print("🗄️ Device storage verified.")
    except Exception as e:
        print(f"⚠️ Device storage bootstrap failed, principal will be volatile: {e}")

    session = build_app_session(settings)
    app.state.app_session = session
    view = await session.start()
    print(
        f"💳 Credits loaded: credits={view.credits} "
        f"status={view.subscription_status.value} purchases={session.purchases.state.value}"
    )
    yield
    # Shutdown
    await session.close()
    app.state.app_session = None
    print("👋 Shutting down Credit Sync...")


app = FastAPI(
    title="Credit Sync",
    description="Keeps the displayed credit balance reconciled with the remote ledger",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(subscription.router, prefix="/subscription", tags=["Subscription"])
app.include_router(app_state.router, prefix="/app-state", tags=["App State"])
app.include_router(identity.router, prefix="/identity", tags=["Identity"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Sync",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT)
