"""HTTP client for the remote credit ledger.

Every operation is a single POST to the ledger function with an ``action``
discriminator. Failures are converted to typed results here and never raised
to callers: balance reads fall back to the safe default snapshot with an
error attached, spends report failure (flagging the ambiguous case where the
request may have landed), and reset checks report ``reset_performed=False``.

Spends are never retried by this client.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import Settings, ledger_function_url
from services.ledger.types import (
    SAFE_DEFAULT_SNAPSHOT,
    BalanceResult,
    BalanceSnapshot,
    PendingChange,
    PendingChangeReason,
    ResetResult,
    SpendResult,
    SubscriptionStatus,
    SubscriptionType,
)

logger = logging.getLogger(__name__)

ACTION_GET_CREDITS = "get-credits"
ACTION_SPEND_CREDITS = "spend-credits"
ACTION_CHECK_RESET = "check-reset"

# Failures raised before any byte of the request reached the ledger.
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout, httpx.UnsupportedProtocol)


class LedgerResponseError(RuntimeError):
    """The ledger answered, but not with a usable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _empty_to_none(value: Any) -> Any:
    return value or None


class _PendingChangePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_plan: SubscriptionType = Field(alias="from")
    to_plan: SubscriptionType = Field(alias="to")
    effective_date: datetime
    reason: PendingChangeReason


class _CreditsPayload(BaseModel):
    credits: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE
    subscription_type: SubscriptionType = SubscriptionType.FREE
    period_end: Optional[datetime] = None
    pending_change: Optional[_PendingChangePayload] = None

    @field_validator("credits", mode="before")
    @classmethod
    def _credits_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("credits")
    @classmethod
    def _credits_non_negative(cls, value: int) -> int:
        return max(value, 0)

    @field_validator("subscription_status", "subscription_type", mode="before")
    @classmethod
    def _plan_default(cls, value: Any) -> Any:
        return value or "free"

    @field_validator("period_end", "pending_change", mode="before")
    @classmethod
    def _optional_default(cls, value: Any) -> Any:
        return _empty_to_none(value)

    def to_snapshot(self) -> BalanceSnapshot:
        pending = None
        if self.pending_change is not None:
            pending = PendingChange(
                from_plan=self.pending_change.from_plan,
                to_plan=self.pending_change.to_plan,
                effective_date=self.pending_change.effective_date,
                reason=self.pending_change.reason,
            )
        return BalanceSnapshot(
            credits=self.credits,
            subscription_status=self.subscription_status,
            subscription_type=self.subscription_type,
            period_end=self.period_end,
            pending_change=pending,
        )


class _SpendPayload(BaseModel):
    success: bool = False
    remaining_credits: int = 0
    error: Optional[str] = None

    @field_validator("success", mode="before")
    @classmethod
    def _success_default(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("remaining_credits", mode="before")
    @classmethod
    def _remaining_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("remaining_credits")
    @classmethod
    def _remaining_non_negative(cls, value: int) -> int:
        return max(value, 0)


class _ResetPayload(BaseModel):
    reset_performed: bool = False
    credits: int = 0
    next_reset: Optional[datetime] = None
    subscription_type: Optional[str] = None

    @field_validator("reset_performed", mode="before")
    @classmethod
    def _reset_default(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("credits", mode="before")
    @classmethod
    def _credits_default(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("credits")
    @classmethod
    def _credits_non_negative(cls, value: int) -> int:
        return max(value, 0)

    @field_validator("next_reset", "subscription_type", mode="before")
    @classmethod
    def _optional_default(cls, value: Any) -> Any:
        return _empty_to_none(value)


class LedgerClient:
    """Stateless request layer keyed by the installation principal."""

    def __init__(
        self,
        endpoint_url: str,
        api_key: str = "",
        *,
        principal_field: str = "principal",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
            headers["apikey"] = api_key
        self.endpoint_url = endpoint_url
        self.principal_field = principal_field
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "LedgerClient":
        return cls(
            ledger_function_url(config),
            config.SUPABASE_ANON_KEY,
            principal_field=config.LEDGER_PRINCIPAL_FIELD,
            timeout_seconds=config.LEDGER_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _invoke(self, principal: str, action: str, **fields: Any) -> Dict[str, Any]:
        body: Dict[str, Any] = {self.principal_field: principal, **fields, "action": action}
        response = await self._client.post(self.endpoint_url, json=body)
        if response.status_code >= 400:
            raise LedgerResponseError(_error_message(response), status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise LedgerResponseError("Ledger returned a non-JSON body", response.status_code) from exc
        if not isinstance(data, dict):
            raise LedgerResponseError("Ledger returned an unexpected payload", response.status_code)
        return data

    async def get_balance(self, principal: str) -> BalanceResult:
        try:
            data = await self._invoke(principal, ACTION_GET_CREDITS)
            snapshot = _CreditsPayload.model_validate(data).to_snapshot()
        except httpx.TimeoutException:
            return self._balance_fallback(principal, "Ledger request timed out")
        except httpx.HTTPError as exc:
            return self._balance_fallback(principal, f"Ledger unreachable: {exc}")
        except LedgerResponseError as exc:
            return self._balance_fallback(principal, str(exc))
        except ValidationError as exc:
            return self._balance_fallback(principal, f"Malformed ledger response: {exc.error_count()} error(s)")

        logger.debug("Ledger balance principal=%s credits=%s", principal, snapshot.credits)
        return BalanceResult(snapshot=snapshot)

    @staticmethod
    def _balance_fallback(principal: str, error: str) -> BalanceResult:
        logger.warning("Ledger get-credits failed for %s, using safe default: %s", principal, error)
        return BalanceResult(snapshot=SAFE_DEFAULT_SNAPSHOT, error=error)

    async def spend(self, principal: str, amount: int, reason: str) -> SpendResult:
        if amount <= 0:
            return SpendResult(success=False, remaining_credits=0, error="Spend amount must be positive")

        try:
            data = await self._invoke(principal, ACTION_SPEND_CREDITS, amount=amount, reason=reason)
        except _NOT_SENT_ERRORS as exc:
            logger.warning("Spend not sent for %s: %s", principal, exc)
            return SpendResult(success=False, remaining_credits=0, error=f"Ledger unreachable: {exc}")
        except httpx.TransportError as exc:
            logger.warning("Spend outcome unknown for %s (amount=%s): %s", principal, amount, exc)
            return SpendResult(
                success=False,
                remaining_credits=0,
                error="No response from ledger; spend outcome unknown",
                ambiguous=True,
            )
        except LedgerResponseError as exc:
            if _is_client_error(exc.status_code):
                logger.warning("Spend rejected for %s: %s", principal, exc)
                return SpendResult(success=False, remaining_credits=0, error=str(exc))
            # Gateway errors and unreadable bodies: the spend may have been applied.
            logger.warning("Spend outcome unknown for %s (amount=%s): %s", principal, amount, exc)
            return SpendResult(
                success=False,
                remaining_credits=0,
                error=f"{exc}; spend outcome unknown",
                ambiguous=True,
            )

        try:
            payload = _SpendPayload.model_validate(data)
        except ValidationError:
            logger.warning("Unreadable spend response for %s: %s", principal, data)
            return SpendResult(
                success=False,
                remaining_credits=0,
                error="Unreadable spend response; spend outcome unknown",
                ambiguous=True,
            )

        if not payload.success:
            logger.info("Spend declined for %s: %s", principal, payload.error)
        return SpendResult(
            success=payload.success,
            remaining_credits=payload.remaining_credits,
            error=payload.error if not payload.success else None,
            declined=not payload.success,
        )

    async def check_reset(self, principal: str) -> ResetResult:
        try:
            data = await self._invoke(principal, ACTION_CHECK_RESET)
            payload = _ResetPayload.model_validate(data)
        except (httpx.HTTPError, LedgerResponseError, ValidationError) as exc:
            logger.warning("Ledger check-reset failed for %s: %s", principal, exc)
            return ResetResult(reset_performed=False, credits=0, error=str(exc) or type(exc).__name__)

        if payload.reset_performed:
            logger.info("Credit reset applied for %s: %s credits", principal, payload.credits)
        return ResetResult(
            reset_performed=payload.reset_performed,
            credits=payload.credits,
            next_reset=payload.next_reset,
            subscription_type=payload.subscription_type,
        )

    async def has_enough_credits(self, principal: str, required: int) -> bool:
        """Remote check; unknown balances count as insufficient."""
        result = await self.get_balance(principal)
        return result.ok and result.snapshot.credits >= required

    async def register_user(self, principal: str) -> bool:
        """True when the ledger already knows this principal as a subscriber or holder."""
        result = await self.get_balance(principal)
        if not result.ok:
            return False
        snapshot = result.snapshot
        return snapshot.subscription_status != SubscriptionStatus.FREE or snapshot.credits > 0


def _is_client_error(status_code: Optional[int]) -> bool:
    return status_code is not None and 400 <= status_code < 500


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        detail = data.get("error") or data.get("message")
        if detail:
            return str(detail)
    return f"Ledger returned HTTP {response.status_code}"
