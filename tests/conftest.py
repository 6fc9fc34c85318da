"""
Revshare Test Configuration

Shared fixtures: in-memory state store, controllable clock, fake chain RPC,
and a price oracle whose upstream fetch is mocked.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from revshare import metrics
from revshare.config import reset_config
from revshare.price_oracle import PriceOracle
from revshare.retry import RetryPolicy
from revshare.storage import SQLiteStateStore
from tests.helpers import FakeClock, FakeRpc


@pytest.fixture(autouse=True)
def _reset_globals():
    metrics.reset_registry()
    reset_config()
    yield
    metrics.reset_registry()
    reset_config()


@pytest.fixture
def store():
    s = SQLiteStateStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_rpc():
    return FakeRpc()


@pytest.fixture
def price_oracle(clock):
    """PriceOracle with one attempt per call and a mocked upstream at $100."""
    oracle = PriceOracle(
        cache_ttl_seconds=30,
        retry_policy=RetryPolicy(max_attempts=1, base_delay=0, jitter=0),
        clock=clock,
    )
    oracle._fetch = AsyncMock(return_value=Decimal("100"))
    return oracle
