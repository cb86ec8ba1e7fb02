"""
Pytest configuration and fixtures for asaflow tests.

Provides reusable fixtures for storage backends, fake collaborators, and
controllable clocks.
"""

import asyncio
import shutil
import tempfile
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from hypothesis import strategies as st

from asaflow.client import AttributionProvider, BackendClient, TransactionObserver
from asaflow.models import (
    AssociateResponse,
    AttributionResult,
    AttributionToken,
    AttributionUnavailable,
    RegisterResponse,
    ResolveResponse,
)
from asaflow.storage import InMemoryStateStore, SqliteStateStore


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    import os

    # In CI environments only, force exit to prevent hanging
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


# ==============================================================================
# Storage
# ==============================================================================


@pytest.fixture
async def in_memory_store() -> AsyncGenerator[InMemoryStateStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryStateStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteStateStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteStateStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_store(temp_db_path: Path) -> AsyncGenerator[SqliteStateStore, None]:
    """Async SQLite file-based store fixture with automatic cleanup."""
    store = SqliteStateStore(str(temp_db_path))
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def any_store(request) -> AsyncGenerator:
    """Every local StateStore implementation in turn."""
    if request.param == "memory":
        store = InMemoryStateStore()
    else:
        store = await SqliteStateStore.in_memory()
    yield store
    await store.close()


# ==============================================================================
# Time and jitter
# ==============================================================================


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FixedJitter:
    """random.Random stand-in whose uniform() always returns one factor."""

    def __init__(self, factor: float = 1.0):
        self.factor = factor

    def uniform(self, low: float, high: float) -> float:
        return self.factor


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_jitter() -> FixedJitter:
    return FixedJitter(1.0)


# ==============================================================================
# Fake collaborators
# ==============================================================================


class FakeAttributionProvider(AttributionProvider):
    """Returns a fixed token, or an unavailable result when token is None."""

    def __init__(self, token: str | None = "token-abc"):
        self.token = token
        self.calls = 0

    async def fetch_attribution(self) -> AttributionResult:
        self.calls += 1
        if self.token is None:
            return AttributionUnavailable("attribution not available on this device")
        return AttributionToken(self.token)


class FakeTransactionObserver(TransactionObserver):
    """Records start/stop and lets tests deliver a transaction id."""

    def __init__(self):
        self.callback = None
        self.starts = 0
        self.stops = 0

    @property
    def running(self) -> bool:
        return self.callback is not None

    def start(self, on_captured) -> None:
        self.starts += 1
        self.callback = on_captured

    def stop(self) -> None:
        self.stops += 1
        self.callback = None

    def deliver(self, transaction_id: str) -> None:
        assert self.callback is not None, "observer is not running"
        self.callback(transaction_id)


class FakeBackend(BackendClient):
    """Scripted BackendClient.

    Each operation takes a list of outcomes; an outcome is a reply or an
    exception to raise. The last outcome repeats once the list runs out.
    An optional asyncio.Event holds every call until it is set.
    """

    def __init__(
        self,
        register=None,
        resolve=None,
        associate=None,
        gate: asyncio.Event | None = None,
    ):
        self.outcomes = {
            "register": list(register or [RegisterResponse()]),
            "resolve": list(resolve or [ResolveResponse()]),
            "associate": list(associate or [AssociateResponse()]),
        }
        self.calls: dict[str, list[tuple]] = {"register": [], "resolve": [], "associate": []}
        self.gate = gate
        self.concurrent = 0
        self.max_concurrent = 0
        self.closed = False

    def count(self, operation: str) -> int:
        return len(self.calls[operation])

    async def _answer(self, operation: str, args: tuple):
        self.calls[operation].append(args)
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            if self.gate is not None:
                await self.gate.wait()
            outcomes = self.outcomes[operation]
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.concurrent -= 1

    async def register(self, token):
        return await self._answer("register", (token,))

    async def resolve(self, user_id, token):
        return await self._answer("resolve", (user_id, token))

    async def associate(self, user_id, transaction_id):
        return await self._answer("associate", (user_id, transaction_id))

    async def close(self):
        self.closed = True


@pytest.fixture
def attribution() -> FakeAttributionProvider:
    return FakeAttributionProvider()


@pytest.fixture
def observer() -> FakeTransactionObserver:
    return FakeTransactionObserver()


# Hypothesis strategies for property-based testing

optional_bool = st.sampled_from([None, True, False])


@st.composite
def register_response_strategy(draw):
    """Strategy for arbitrary, possibly partial, register replies."""
    return RegisterResponse(
        user_id=draw(st.one_of(st.none(), st.integers(min_value=1, max_value=10**9).map(str))),
        originated=draw(optional_bool),
        attribution_resolved=draw(optional_bool),
        user_created=draw(optional_bool),
    )


@pytest.fixture
def make_ledger():
    """Factory for a RetryLedger over a fresh in-memory store with a fake clock.

    Returns (ledger, store, clock).
    """
    from asaflow.executor import RetryLedger

    def factory(factor: float = 1.0, policy=None, store=None, clock=None):
        store = store or InMemoryStateStore()
        clock = clock or FakeClock()
        kwargs = {"policy": policy} if policy is not None else {}
        ledger = RetryLedger(store, clock=clock, rng=FixedJitter(factor), **kwargs)
        return ledger, store, clock

    return factory
