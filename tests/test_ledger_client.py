import json
from datetime import datetime, timezone

import httpx
import pytest

from services.ledger.client import LedgerClient
from services.ledger.types import PendingChangeReason, SubscriptionStatus, SubscriptionType


LEDGER_URL = "https://ledger.test/functions/v1/credit-operations"


def _client(handler, **kwargs) -> LedgerClient:
    return LedgerClient(LEDGER_URL, "anon-key", transport=httpx.MockTransport(handler), **kwargs)


class _Recorder:
    def __init__(self, responder):
        self.responder = responder
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def bodies(self):
        return [json.loads(request.content) for request in self.requests]


@pytest.mark.asyncio
async def test_get_balance_sends_wire_contract_and_parses_snapshot():
    recorder = _Recorder(
        lambda request: httpx.Response(
            200,
            json={
                "credits": 12,
                "subscription_status": "active",
                "subscription_type": "monthly",
                "period_end": "2026-11-01T00:00:00Z",
                "pending_change": {
                    "from": "monthly",
                    "to": "weekly",
                    "effective_date": "2026-11-01T00:00:00Z",
                    "reason": "downgrade",
                },
            },
        )
    )
    client = _client(recorder)

    result = await client.get_balance("P1")
    await client.aclose()

    assert result.ok
    snapshot = result.snapshot
    assert snapshot.credits == 12
    assert snapshot.subscription_status == SubscriptionStatus.ACTIVE
    assert snapshot.subscription_type == SubscriptionType.MONTHLY
    assert snapshot.period_end == datetime(2026, 11, 1, tzinfo=timezone.utc)
    assert snapshot.pending_change.reason == PendingChangeReason.DOWNGRADE
    assert snapshot.pending_change.from_plan == SubscriptionType.MONTHLY
    assert snapshot.pending_change.to_plan == SubscriptionType.WEEKLY

    assert recorder.bodies() == [{"principal": "P1", "action": "get-credits"}]
    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == LEDGER_URL
    assert request.headers["Authorization"] == "Bearer anon-key"
    assert request.headers["apikey"] == "anon-key"


@pytest.mark.asyncio
async def test_get_balance_fills_missing_fields_with_defaults():
    client = _client(lambda request: httpx.Response(200, json={"credits": None, "pending_change": None}))
    result = await client.get_balance("P1")
    await client.aclose()

    assert result.ok
    assert result.snapshot.credits == 0
    assert result.snapshot.subscription_status == SubscriptionStatus.FREE
    assert result.snapshot.subscription_type == SubscriptionType.FREE
    assert result.snapshot.pending_change is None


@pytest.mark.asyncio
async def test_get_balance_clamps_negative_credits():
    client = _client(lambda request: httpx.Response(200, json={"credits": -3}))
    result = await client.get_balance("P1")
    await client.aclose()
    assert result.snapshot.credits == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "responder",
    [
        lambda request: httpx.Response(500, json={"error": "boom"}),
        lambda request: httpx.Response(200, text="not json"),
        lambda request: httpx.Response(200, json={"credits": 3, "subscription_status": "paused"}),
    ],
    ids=["server-error", "non-json", "unknown-status"],
)
async def test_get_balance_failures_return_safe_default_with_error(responder):
    client = _client(responder)
    result = await client.get_balance("P1")
    await client.aclose()

    assert not result.ok
    assert result.error
    assert result.snapshot.credits == 0
    assert result.snapshot.subscription_status == SubscriptionStatus.FREE


@pytest.mark.asyncio
async def test_get_balance_timeout_resolves_to_safe_default():
    def _timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(_timeout)
    result = await client.get_balance("P1")
    await client.aclose()

    assert result.error == "Ledger request timed out"
    assert result.snapshot.credits == 0


@pytest.mark.asyncio
async def test_server_error_message_is_surfaced():
    client = _client(lambda request: httpx.Response(400, json={"error": "Unknown customer"}))
    result = await client.get_balance("P1")
    await client.aclose()
    assert result.error == "Unknown customer"


@pytest.mark.asyncio
async def test_principal_field_name_is_configurable():
    recorder = _Recorder(lambda request: httpx.Response(200, json={"credits": 1}))
    client = _client(recorder, principal_field="revenuecat_customer_id")
    await client.get_balance("P1")
    await client.aclose()
    assert recorder.bodies() == [{"revenuecat_customer_id": "P1", "action": "get-credits"}]


@pytest.mark.asyncio
async def test_spend_success_reports_server_remaining_credits():
    recorder = _Recorder(lambda request: httpx.Response(200, json={"success": True, "remaining_credits": 4}))
    client = _client(recorder)

    result = await client.spend("P1", 1, "generation")
    await client.aclose()

    assert result.success is True
    assert result.remaining_credits == 4
    assert result.ambiguous is False
    assert recorder.bodies() == [{"principal": "P1", "amount": 1, "reason": "generation", "action": "spend-credits"}]


@pytest.mark.asyncio
async def test_spend_declined_is_not_retried():
    recorder = _Recorder(
        lambda request: httpx.Response(200, json={"success": False, "remaining_credits": 0, "error": "Insufficient credits"})
    )
    client = _client(recorder)

    result = await client.spend("P1", 5, "generation")
    await client.aclose()

    assert result.success is False
    assert result.error == "Insufficient credits"
    assert result.ambiguous is False
    assert result.declined is True
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_spend_client_error_is_definite_failure_without_retry():
    recorder = _Recorder(lambda request: httpx.Response(400, json={"message": "invalid amount"}))
    client = _client(recorder)

    result = await client.spend("P1", 5, "generation")
    await client.aclose()

    assert result.success is False
    assert result.ambiguous is False
    assert result.declined is False
    assert result.error == "invalid amount"
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [500, 502, 503, 504])
async def test_spend_gateway_errors_are_ambiguous(status_code):
    recorder = _Recorder(lambda request: httpx.Response(status_code, json={"error": "upstream timed out"}))
    client = _client(recorder)

    result = await client.spend("P1", 5, "generation")
    await client.aclose()

    assert result.success is False
    assert result.ambiguous is True
    assert "upstream timed out" in result.error
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_spend_unreadable_success_body_is_ambiguous():
    client = _client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
    result = await client.spend("P1", 5, "generation")
    await client.aclose()

    assert result.success is False
    assert result.ambiguous is True


@pytest.mark.asyncio
async def test_spend_without_response_is_ambiguous():
    calls = []

    def _drop(request):
        calls.append(request)
        raise httpx.ReadTimeout("no response", request=request)

    client = _client(_drop)
    result = await client.spend("P1", 5, "generation")
    await client.aclose()

    assert result.success is False
    assert result.ambiguous is True
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_spend_connect_failure_is_not_ambiguous():
    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(_refuse)
    result = await client.spend("P1", 5, "generation")
    await client.aclose()

    assert result.success is False
    assert result.ambiguous is False


@pytest.mark.asyncio
async def test_spend_rejects_non_positive_amount_without_request():
    recorder = _Recorder(lambda request: httpx.Response(200, json={"success": True}))
    client = _client(recorder)
    result = await client.spend("P1", 0, "generation")
    await client.aclose()

    assert result.success is False
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_check_reset_parses_response():
    recorder = _Recorder(
        lambda request: httpx.Response(
            200,
            json={
                "reset_performed": True,
                "credits": 25,
                "next_reset": "2026-10-26T00:00:00Z",
                "subscription_type": "weekly",
            },
        )
    )
    client = _client(recorder)
    result = await client.check_reset("P1")
    await client.aclose()

    assert result.reset_performed is True
    assert result.credits == 25
    assert result.next_reset == datetime(2026, 10, 26, tzinfo=timezone.utc)
    assert result.subscription_type == "weekly"
    assert recorder.bodies() == [{"principal": "P1", "action": "check-reset"}]


@pytest.mark.asyncio
async def test_check_reset_no_op_and_failure():
    client = _client(lambda request: httpx.Response(200, json={"reset_performed": False, "credits": 7}))
    no_op = await client.check_reset("P1")
    await client.aclose()
    assert no_op.reset_performed is False
    assert no_op.error is None

    failing = _client(lambda request: httpx.Response(502))
    failed = await failing.check_reset("P1")
    await failing.aclose()
    assert failed.reset_performed is False
    assert failed.error


@pytest.mark.asyncio
async def test_register_user_and_remote_has_enough():
    client = _client(lambda request: httpx.Response(200, json={"credits": 3, "subscription_status": "free"}))
    assert await client.register_user("P1") is True
    assert await client.has_enough_credits("P1", 3) is True
    assert await client.has_enough_credits("P1", 4) is False
    await client.aclose()

    empty = _client(lambda request: httpx.Response(200, json={"credits": 0, "subscription_status": "free"}))
    assert await empty.register_user("P1") is False
    await empty.aclose()
