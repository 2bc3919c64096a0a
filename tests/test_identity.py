import asyncio
import logging

import pytest

from fakes import FakePurchaseProvider, MemoryStore
from services.identity import IdentityProvider, generate_principal


STORAGE_KEY = "figure_ai_customer_id"


def test_generated_principal_has_prefix_timestamp_and_random_suffix():
    principal = generate_principal("figure_ai")
    prefix, timestamp, suffix = principal.rsplit("_", 2)
    assert prefix == "figure_ai"
    assert timestamp.isdigit()
    assert len(suffix) == 16
    assert generate_principal("figure_ai") != principal


@pytest.mark.asyncio
async def test_concurrent_get_or_create_yields_one_principal_persisted_once(store):
    identity = IdentityProvider(store, storage_key=STORAGE_KEY)

    results = await asyncio.gather(*(identity.get_or_create() for _ in range(20)))

    assert len(set(results)) == 1
    assert store.set_calls == 1
    assert store.items[STORAGE_KEY] == results[0]
    assert identity.is_volatile is False


@pytest.mark.asyncio
async def test_existing_stored_principal_is_reused():
    store = MemoryStore({STORAGE_KEY: "figure_ai_1700000000000_abc"})
    identity = IdentityProvider(store, storage_key=STORAGE_KEY)

    assert await identity.get_or_create() == "figure_ai_1700000000000_abc"
    assert store.set_calls == 0


@pytest.mark.asyncio
async def test_blank_stored_value_is_replaced():
    store = MemoryStore({STORAGE_KEY: "   "})
    identity = IdentityProvider(store, storage_key=STORAGE_KEY)

    principal = await identity.get_or_create()

    assert principal.startswith("figure_ai_")
    assert store.items[STORAGE_KEY] == principal


@pytest.mark.asyncio
async def test_second_process_reads_the_same_principal(store):
    first = await IdentityProvider(store, storage_key=STORAGE_KEY).get_or_create()
    second = await IdentityProvider(store, storage_key=STORAGE_KEY).get_or_create()
    assert first == second


@pytest.mark.asyncio
async def test_storage_failure_falls_back_to_volatile_principal(caplog):
    identity = IdentityProvider(MemoryStore(fail=True), storage_key=STORAGE_KEY)

    with caplog.at_level(logging.ERROR, logger="services.identity"):
        principal = await identity.get_or_create()

    assert principal.startswith("figure_ai_fallback_")
    assert identity.is_volatile is True
    assert await identity.get_or_create() == principal
    assert any("VOLATILE" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_clear_forgets_principal(store):
    identity = IdentityProvider(store, storage_key=STORAGE_KEY)
    first = await identity.get_or_create()

    await identity.clear()

    assert identity.current() is None
    assert await identity.stored() is None
    assert await identity.get_or_create() != first


@pytest.mark.asyncio
async def test_bind_confirms_matching_principal(store):
    provider = FakePurchaseProvider()
    identity = IdentityProvider(store, provider, storage_key=STORAGE_KEY)
    principal = await identity.get_or_create()

    session = await identity.bind_to_purchase_provider(principal)

    assert provider.app_user_id == principal
    assert session.matches is True
    assert session.confirmed_principal == principal


@pytest.mark.asyncio
async def test_bind_mismatch_is_reported_and_local_principal_kept(store, caplog):
    provider = FakePurchaseProvider()
    provider.echo_user_id = "$RCAnonymousID:someone-else"
    identity = IdentityProvider(store, provider, storage_key=STORAGE_KEY)
    principal = await identity.get_or_create()

    with caplog.at_level(logging.ERROR, logger="services.identity"):
        session = await identity.bind_to_purchase_provider(principal)

    assert session.matches is False
    assert session.confirmed_principal == "$RCAnonymousID:someone-else"
    assert identity.current() == principal
    assert any("IDENTITY MISMATCH" in record.getMessage() for record in caplog.records)
