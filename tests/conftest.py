import pytest

from fakes import MONTHLY, WEEKLY, FakeClock, FakeLedger, FakePurchaseProvider, MemoryStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def provider():
    return FakePurchaseProvider(products=[WEEKLY, MONTHLY])
