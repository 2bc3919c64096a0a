"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Durable device storage (holds the principal only)
    DATABASE_URL: str = "sqlite+aiosqlite:///./credit_sync.db"

    # API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:8081", "http://127.0.0.1:8081"]

    # Ledger service (Supabase edge function)
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    LEDGER_FUNCTION_URL: str = ""  # Overrides the URL derived from SUPABASE_URL
    LEDGER_FUNCTION_NAME: str = "credit-operations"
    LEDGER_PRINCIPAL_FIELD: str = "principal"
    LEDGER_TIMEOUT_SECONDS: float = 10.0

    # Identity
    PRINCIPAL_STORAGE_KEY: str = "figure_ai_customer_id"
    PRINCIPAL_PREFIX: str = "figure_ai"

    # RevenueCat
    REVENUECAT_API_KEY: str = ""
    REVENUECAT_BASE_URL: str = "https://api.revenuecat.com/v1"
    REVENUECAT_PLATFORM: str = "ios"
    REVENUECAT_TIMEOUT_SECONDS: float = 10.0

    # Refresh cadence
    CREDITS_REFRESH_INTERVAL_SECONDS: float = 30.0
    SUBSCRIPTION_POLL_INTERVAL_MINUTES: float = 5.0
    POST_PURCHASE_REFRESH_DELAYS_SECONDS: List[float] = [1.0, 3.0, 5.0, 8.0]

    DEFAULT_SPEND_REASON: str = "AI generation"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def ledger_function_url(config: Settings = settings) -> str:
    """Return the credit-operations endpoint, explicit URL first."""
    explicit = (config.LEDGER_FUNCTION_URL or "").strip()
    if explicit:
        return explicit
    base = (config.SUPABASE_URL or "").strip().rstrip("/")
    if not base:
        return ""
    return f"{base}/functions/v1/{config.LEDGER_FUNCTION_NAME}"


def validate_ledger_settings(config: Settings = settings) -> None:
    """Fail fast when the ledger endpoint cannot be resolved."""
    if not ledger_function_url(config):
        raise ValueError("Ledger endpoint is not configured. Set SUPABASE_URL or LEDGER_FUNCTION_URL.")
    if not (config.SUPABASE_ANON_KEY or "").strip():
        raise ValueError("SUPABASE_ANON_KEY is not configured.")
    delays = list(config.POST_PURCHASE_REFRESH_DELAYS_SECONDS)
    if any(delay < 0 for delay in delays) or delays != sorted(delays):
        raise ValueError("POST_PURCHASE_REFRESH_DELAYS_SECONDS must be non-negative and ascending.")
