"""
Tests for FlowOrchestrator.

Covers the register → resolve → associate flow end to end against fake
collaborators, plus single-flight behavior, backoff, termination and
restart from persisted state.
"""

import asyncio

import pytest

from asaflow import FlowConfig, build_orchestrator
from asaflow.client import (
    BudgetedBackendClient,
    BudgetExceededError,
    RequestBudget,
    TransportError,
)
from asaflow.executor import FlowOrchestrator, RetryLedger
from asaflow.models import (
    AssociateResponse,
    FlowPhase,
    Operation,
    RegisterResponse,
    ResolveResponse,
)
from asaflow.storage import InMemoryStateStore, SqliteStateStore, StorageError

from conftest import (
    FakeAttributionProvider,
    FakeBackend,
    FakeClock,
    FakeTransactionObserver,
    FixedJitter,
)

ASA_USER_CREATED = RegisterResponse(
    user_id="7", originated=True, attribution_resolved=True, user_created=True
)
USER_CREATED_UNRESOLVED = RegisterResponse(user_id="5", user_created=True)
NON_ASA = RegisterResponse(user_id=None, originated=False, attribution_resolved=True)


@pytest.fixture
async def make_orchestrator():
    """Factory building orchestrators over fake collaborators.

    Every orchestrator built is shut down at teardown.
    """
    built: list[FlowOrchestrator] = []

    def factory(
        backend: FakeBackend,
        store=None,
        attribution=None,
        observer=None,
        clock=None,
        budget_ceiling: int | None = None,
        install_detector=None,
    ) -> FlowOrchestrator:
        store = store or InMemoryStateStore()
        client = backend
        if budget_ceiling is not None:
            client = BudgetedBackendClient(backend, RequestBudget(store, budget_ceiling))

        orchestrator = FlowOrchestrator(
            store=store,
            ledger=RetryLedger(store, clock=clock or FakeClock(), rng=FixedJitter(1.0)),
            backend=client,
            attribution=attribution or FakeAttributionProvider(),
            observer=observer or FakeTransactionObserver(),
            settle_delay=0.0,
            install_detector=install_detector,
        )
        built.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in built:
        await orchestrator.shutdown()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll until predicate() is true."""

    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


# ==============================================================================
# Scenarios
# ==============================================================================


@pytest.mark.asyncio
async def test_register_creates_asa_user(make_orchestrator):
    """Fresh state and a complete register reply yield a resolved ASA user."""
    backend = FakeBackend(register=[ASA_USER_CREATED])
    orchestrator = make_orchestrator(backend)

    await orchestrator.start()
    await orchestrator.wait_idle()

    state = await orchestrator.state()
    assert state.user_created is True
    assert state.user_id == "7"
    assert state.attribution_resolved is True
    assert state.is_asa_user is True
    assert state.phase is FlowPhase.ASA_AWAITING_TRANSACTION

    assert backend.calls["register"] == [("token-abc",)]
    assert backend.count("resolve") == 0
    assert backend.count("associate") == 0


@pytest.mark.asyncio
async def test_non_asa_register_reply_terminates_without_user(make_orchestrator):
    """A non-campaign register reply ends the flow; no user is recorded."""
    backend = FakeBackend(register=[NON_ASA])
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, observer=observer)

    await orchestrator.start()
    assert observer.running
    await orchestrator.wait_idle()

    state = await orchestrator.state()
    assert state.user_created is False
    assert state.should_terminate is True
    assert state.phase is FlowPhase.TERMINAL_NON_ASA
    assert not observer.running

    orchestrator.trigger()
    await orchestrator.wait_idle()
    assert backend.count("register") == 1


@pytest.mark.asyncio
async def test_transaction_captured_before_registration_is_used_later(make_orchestrator):
    """A transaction arriving while register is in flight is held and associated afterwards."""
    gate = asyncio.Event()
    backend = FakeBackend(
        register=[ASA_USER_CREATED],
        associate=[AssociateResponse(success=True, confirmed_user_id="7")],
        gate=gate,
    )
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, observer=observer)

    await orchestrator.start()
    await wait_until(lambda: backend.count("register") == 1)

    observer.deliver("tx-1")
    await wait_until(lambda: not observer.running)

    state = await orchestrator.state()
    assert state.transaction_captured is True
    assert state.original_transaction_id == "tx-1"
    assert state.user_created is False
    assert backend.count("associate") == 0

    gate.set()
    await orchestrator.wait_idle()

    state = await orchestrator.state()
    assert backend.calls["associate"] == [("7", "tx-1")]
    assert state.association_complete is True
    assert state.phase is FlowPhase.TERMINAL_COMPLETE


@pytest.mark.asyncio
async def test_full_flow_with_separate_resolution(make_orchestrator):
    """Register without attribution, resolve, then associate a later purchase."""
    backend = FakeBackend(
        register=[USER_CREATED_UNRESOLVED],
        resolve=[ResolveResponse(originated=True, attribution_resolved=True)],
        associate=[AssociateResponse(success=True)],
    )
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, observer=observer)

    await orchestrator.start()
    await orchestrator.wait_idle()

    assert backend.calls["resolve"] == [("5", "token-abc")]
    state = await orchestrator.state()
    assert state.is_asa_user is True
    assert backend.count("associate") == 0

    observer.deliver("tx-9")
    await orchestrator.wait_idle()

    assert backend.calls["associate"] == [("5", "tx-9")]
    assert (await orchestrator.state()).association_complete is True


@pytest.mark.asyncio
async def test_resolution_as_non_asa_terminates(make_orchestrator):
    backend = FakeBackend(
        register=[USER_CREATED_UNRESOLVED],
        resolve=[ResolveResponse(originated=False, attribution_resolved=True)],
    )
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, observer=observer)

    await orchestrator.start()
    await orchestrator.wait_idle()

    state = await orchestrator.state()
    assert state.user_created is True
    assert state.should_terminate is True
    assert not observer.running


# ==============================================================================
# Single-flight
# ==============================================================================


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_concurrent_triggers_issue_one_register(make_orchestrator):
    """
    Race Condition Test: any number of triggers while register is in flight
    produce exactly one register call.
    """
    gate = asyncio.Event()
    backend = FakeBackend(register=[ASA_USER_CREATED], gate=gate)
    orchestrator = make_orchestrator(backend)

    await orchestrator.start()

    async def hammer():
        for _ in range(10):
            orchestrator.trigger()
            await asyncio.sleep(0)

    await asyncio.gather(*[hammer() for _ in range(10)])
    await wait_until(lambda: backend.count("register") == 1)
    assert orchestrator.in_flight == frozenset({Operation.CREATE_USER})

    gate.set()
    await orchestrator.wait_idle()

    for _ in range(5):
        orchestrator.trigger()
    await orchestrator.wait_idle()

    assert backend.count("register") == 1
    assert backend.max_concurrent == 1
    assert orchestrator.in_flight == frozenset()


@pytest.mark.concurrency
@pytest.mark.asyncio
async def test_completed_flow_never_calls_backend_again(make_orchestrator):
    """Test repeated triggers after completion are no-ops."""
    backend = FakeBackend(
        register=[ASA_USER_CREATED],
        associate=[AssociateResponse(success=True)],
    )
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, observer=observer)

    await orchestrator.start()
    await orchestrator.wait_idle()
    observer.deliver("tx-1")
    await orchestrator.wait_idle()

    for _ in range(20):
        orchestrator.trigger()
    await orchestrator.wait_idle()

    assert backend.count("register") == 1
    assert backend.count("associate") == 1


# ==============================================================================
# Failures and backoff
# ==============================================================================


@pytest.mark.asyncio
async def test_register_failure_backs_off_then_retries(make_orchestrator):
    """A transport failure is recorded; the retry waits for the backoff delay."""
    clock = FakeClock()
    store = InMemoryStateStore()
    backend = FakeBackend(register=[TransportError("connection refused"), ASA_USER_CREATED])
    orchestrator = make_orchestrator(backend, store=store, clock=clock)

    await orchestrator.start()
    await orchestrator.wait_idle()

    record = await store.get_retry_record(Operation.CREATE_USER)
    assert record.consecutive_failures == 1
    assert backend.count("register") == 1
    assert (await orchestrator.state()).user_created is False

    orchestrator.trigger()
    await orchestrator.wait_idle()
    assert backend.count("register") == 1

    clock.advance(1.5)
    orchestrator.trigger()
    await orchestrator.wait_idle()

    assert backend.count("register") == 2
    assert (await orchestrator.state()).user_id == "7"
    assert await store.get_retry_record(Operation.CREATE_USER) is None


@pytest.mark.asyncio
async def test_ambiguous_register_reply_counts_as_failure(make_orchestrator):
    """A reply with no user and no ruling is booked against the ledger."""
    store = InMemoryStateStore()
    backend = FakeBackend(register=[RegisterResponse()])
    orchestrator = make_orchestrator(backend, store=store)

    await orchestrator.start()
    await orchestrator.wait_idle()

    assert backend.count("register") == 1
    assert (await store.get_retry_record(Operation.CREATE_USER)).consecutive_failures == 1


@pytest.mark.asyncio
async def test_unavailable_token_skips_resolve_call(make_orchestrator):
    """Without a token no resolve request is sent and the attempt is booked."""
    store = InMemoryStateStore()
    backend = FakeBackend(register=[USER_CREATED_UNRESOLVED])
    orchestrator = make_orchestrator(
        backend, store=store, attribution=FakeAttributionProvider(token=None)
    )

    await orchestrator.start()
    await orchestrator.wait_idle()

    assert backend.calls["register"] == [(None,)]
    assert backend.count("resolve") == 0
    record = await store.get_retry_record(Operation.RESOLVE_ATTRIBUTION)
    assert record.consecutive_failures == 1
    assert (await orchestrator.state()).attribution_resolved is False


@pytest.mark.asyncio
async def test_failed_association_is_retried_after_backoff(make_orchestrator):
    clock = FakeClock()
    store = InMemoryStateStore()
    backend = FakeBackend(
        register=[ASA_USER_CREATED],
        associate=[AssociateResponse(success=False), AssociateResponse(success=True)],
    )
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, store=store, observer=observer, clock=clock)

    await orchestrator.start()
    await orchestrator.wait_idle()
    observer.deliver("tx-1")
    await orchestrator.wait_idle()

    assert backend.count("associate") == 1
    assert (await store.get_retry_record(Operation.ASSOCIATE_USER)).consecutive_failures == 1
    assert (await orchestrator.state()).association_complete is False

    clock.advance(2)
    orchestrator.trigger()
    await orchestrator.wait_idle()

    assert backend.count("associate") == 2
    assert (await orchestrator.state()).association_complete is True


@pytest.mark.asyncio
async def test_budget_exhaustion_blocks_without_ledger_entry(make_orchestrator):
    """A spent budget sends nothing and does not consume a retry slot."""
    store = InMemoryStateStore()
    backend = FakeBackend(register=[ASA_USER_CREATED])
    orchestrator = make_orchestrator(backend, store=store, budget_ceiling=0)

    await orchestrator.start()
    await orchestrator.wait_idle()

    assert backend.count("register") == 0
    assert await store.get_retry_record(Operation.CREATE_USER) is None
    assert (await orchestrator.state()).user_created is False


@pytest.mark.asyncio
async def test_unexpected_exception_is_absorbed(make_orchestrator):
    store = InMemoryStateStore()
    backend = FakeBackend(register=[RuntimeError("boom")])
    orchestrator = make_orchestrator(backend, store=store)

    await orchestrator.start()
    await orchestrator.wait_idle()

    assert (await store.get_retry_record(Operation.CREATE_USER)).consecutive_failures == 1


# ==============================================================================
# Lifecycle
# ==============================================================================


@pytest.mark.asyncio
async def test_update_install_skips_flow(make_orchestrator):
    """An app update never registers a user."""
    backend = FakeBackend(register=[ASA_USER_CREATED])
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, observer=observer, install_detector=lambda: False)

    await orchestrator.start()
    await orchestrator.wait_idle()

    state = await orchestrator.state()
    assert state.install_type_resolved is True
    assert state.is_first_install is False
    assert backend.count("register") == 0
    assert observer.starts == 0


@pytest.mark.asyncio
async def test_install_type_decided_once():
    calls = []

    def detector():
        calls.append(1)
        return True

    store = InMemoryStateStore()
    from asaflow.executor import resolve_install_type

    assert await resolve_install_type(store, detector) is True
    assert await resolve_install_type(store, lambda: False) is True
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_terminal_state_at_start_does_nothing(make_orchestrator):
    store = InMemoryStateStore()
    await store.set_user_created("7")
    await store.set_attribution_resolved(False)
    backend = FakeBackend()
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, store=store, observer=observer)

    await orchestrator.start()
    await orchestrator.wait_idle()

    assert backend.count("register") == 0
    assert observer.starts == 0


@pytest.mark.asyncio
async def test_delivery_after_stop_is_ignored(make_orchestrator):
    """A transaction delivered after the observer was stopped changes nothing."""
    backend = FakeBackend(register=[NON_ASA])
    observer = FakeTransactionObserver()
    orchestrator = make_orchestrator(backend, observer=observer)

    await orchestrator.start()
    late_callback = observer.callback
    await orchestrator.wait_idle()

    late_callback("tx-late")
    await orchestrator.wait_idle()

    assert (await orchestrator.state()).transaction_captured is False


@pytest.mark.asyncio
async def test_progress_survives_restart(temp_db_path, make_orchestrator):
    """A second launch resumes from SQLite without repeating register."""
    store = SqliteStateStore(str(temp_db_path))
    await store.connect()
    first = make_orchestrator(FakeBackend(register=[ASA_USER_CREATED]), store=store)
    await first.start()
    await first.wait_idle()
    await first.shutdown()
    await store.close()

    store = SqliteStateStore(str(temp_db_path))
    await store.connect()
    try:
        backend = FakeBackend(associate=[AssociateResponse(success=True)])
        observer = FakeTransactionObserver()
        second = make_orchestrator(backend, store=store, observer=observer)
        await second.start()
        await second.wait_idle()

        assert backend.count("register") == 0
        observer.deliver("tx-2")
        await second.wait_idle()

        assert backend.calls["associate"] == [("7", "tx-2")]
        await second.shutdown()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_reset_allows_a_fresh_flow(make_orchestrator):
    store = InMemoryStateStore()
    backend = FakeBackend(register=[NON_ASA, ASA_USER_CREATED])
    orchestrator = make_orchestrator(backend, store=store)

    await orchestrator.start()
    await orchestrator.wait_idle()
    assert (await orchestrator.state()).should_terminate

    await orchestrator.reset()
    assert (await orchestrator.state()).should_terminate is False

    await orchestrator.start()
    await orchestrator.wait_idle()

    assert backend.count("register") == 2
    assert (await orchestrator.state()).user_id == "7"


@pytest.mark.asyncio
async def test_debug_state_reports_progress(make_orchestrator):
    backend = FakeBackend(register=[ASA_USER_CREATED])
    orchestrator = make_orchestrator(backend, budget_ceiling=100)

    await orchestrator.start()
    await orchestrator.wait_idle()

    dump = await orchestrator.debug_state()
    assert "- User Created: True" in dump
    assert "- Phase: ASA_AWAITING_TRANSACTION" in dump
    assert "create_user: No failures" in dump
    assert "Lifetime Requests: 1/100" in dump


@pytest.mark.asyncio
async def test_build_orchestrator_wires_budget_and_store(temp_db_path):
    """build_orchestrator meters the given backend against the configured ceiling."""
    config = FlowConfig(state_path=str(temp_db_path), max_lifetime_requests=1, settle_delay=0.0)
    backend = FakeBackend(register=[USER_CREATED_UNRESOLVED])
    orchestrator = await build_orchestrator(
        config, FakeAttributionProvider(), FakeTransactionObserver(), backend=backend
    )
    try:
        await orchestrator.start()
        await orchestrator.wait_idle()

        assert orchestrator.budget.ceiling == 1
        assert await orchestrator.budget.count() == 1
        assert backend.count("register") == 1
        assert backend.count("resolve") == 0

        with pytest.raises(BudgetExceededError):
            await orchestrator.budget.consume()
    finally:
        await orchestrator.close()


@pytest.mark.asyncio
async def test_close_releases_store_opened_by_build(temp_db_path):
    """close() closes the store build_orchestrator opened; the given backend stays open."""
    config = FlowConfig(state_path=str(temp_db_path), settle_delay=0.0)
    backend = FakeBackend(register=[ASA_USER_CREATED])
    orchestrator = await build_orchestrator(
        config, FakeAttributionProvider(), FakeTransactionObserver(), backend=backend
    )

    await orchestrator.start()
    await orchestrator.wait_idle()
    await orchestrator.close()

    with pytest.raises(StorageError):
        await orchestrator.state()
    assert backend.closed is False

    reopened = SqliteStateStore(str(temp_db_path))
    await reopened.connect()
    try:
        assert (await reopened.load()).user_id == "7"
    finally:
        await reopened.close()


@pytest.mark.asyncio
async def test_close_leaves_caller_store_open(temp_db_path):
    store = SqliteStateStore(str(temp_db_path))
    await store.connect()
    try:
        orchestrator = await build_orchestrator(
            FlowConfig(settle_delay=0.0),
            FakeAttributionProvider(),
            FakeTransactionObserver(),
            backend=FakeBackend(register=[ASA_USER_CREATED]),
            store=store,
        )
        await orchestrator.start()
        await orchestrator.wait_idle()
        await orchestrator.close()

        assert (await store.load()).user_id == "7"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_close_releases_owned_backend():
    store = InMemoryStateStore()
    backend = FakeBackend()
    orchestrator = FlowOrchestrator(
        store=store,
        ledger=RetryLedger(store),
        backend=backend,
        attribution=FakeAttributionProvider(),
        observer=FakeTransactionObserver(),
        close_backend=True,
    )

    await orchestrator.close()

    assert backend.closed is True


@pytest.mark.asyncio
async def test_build_orchestrator_closes_its_http_client(temp_db_path):
    """The HTTP transport created by build_orchestrator is closed by close()."""
    config = FlowConfig(
        base_url="https://backend.test/functions/v1", state_path=str(temp_db_path)
    )
    orchestrator = await build_orchestrator(
        config, FakeAttributionProvider(), FakeTransactionObserver()
    )
    http_backend = orchestrator._backend._inner

    await orchestrator.close()

    assert http_backend._http.is_closed


@pytest.mark.asyncio
async def test_resolved_register_reply_without_origin_is_logged(make_orchestrator, caplog):
    """A register reply resolving attribution with no origin ends the flow with a warning."""
    backend = FakeBackend(
        register=[RegisterResponse(user_id="4", user_created=True, attribution_resolved=True)]
    )
    orchestrator = make_orchestrator(backend)

    with caplog.at_level("WARNING", logger="asaflow.executor.orchestrator"):
        await orchestrator.start()
        await orchestrator.wait_idle()

    state = await orchestrator.state()
    assert state.user_id == "4"
    assert state.is_asa_user is False
    assert state.should_terminate is True
    assert "resolved without an origin" in caplog.text
