"""Attribution flow orchestrator.

Drives register → resolve → associate against the backend as a persisted,
idempotent state machine.

Execution model:
- One serialized message queue consumed by one task. Triggers, remote
  call completions and captured transactions are all posted as messages;
  completions never call the evaluation logic directly.
- Remote calls run as background tasks. While any call is in flight the
  pass counts as in progress: new Evaluate messages are dropped, and the
  completion of the running call posts a fresh one.
- Failures are booked in the retry ledger and absorbed. When an operation
  is blocked by backoff, one wake-up timer re-triggers the flow at the
  earliest eligible time.

Features:
- Single-flight evaluation (at most one register/resolve/associate each)
- Per-operation exponential backoff with jitter
- Transaction capture at any phase, held until association is possible
- Settle delay between a register reply and the next decision
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from asaflow.client.base import AttributionProvider, BackendClient, TransactionObserver
from asaflow.client.budget import BudgetedBackendClient, RequestBudget
from asaflow.client.errors import BackendError
from asaflow.client.http import HttpBackendClient
from asaflow.config import FlowConfig, open_store
from asaflow.executor.install import DirectoryAgeDetector, InstallTypeDetector, resolve_install_type
from asaflow.executor.ledger import RetryLedger
from asaflow.executor.reconcile import reconcile_registration, reconcile_resolution
from asaflow.models import (
    AssociateResponse,
    AttributionToken,
    CreationBasis,
    FlowState,
    Operation,
    RegisterResponse,
    ResolveResponse,
)
from asaflow.storage.base import StateStore

logger = logging.getLogger(__name__)

# Lower bound for backoff wake-ups, so a timer landing exactly on the
# eligibility boundary cannot re-arm itself in a tight loop
MIN_WAKE_DELAY = 0.05


# ============================================================================
# Messages
# ============================================================================


@dataclass(frozen=True)
class Evaluate:
    """Run one decision pass."""


@dataclass(frozen=True)
class RegisterFinished:
    response: RegisterResponse | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class ResolveFinished:
    response: ResolveResponse | None = None
    error: Exception | None = None
    unavailable_reason: str | None = None
    """Set when no token was available and no call was made."""


@dataclass(frozen=True)
class AssociateFinished:
    response: AssociateResponse | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class TransactionCaptured:
    transaction_id: str


Message = Evaluate | RegisterFinished | ResolveFinished | AssociateFinished | TransactionCaptured


class FlowOrchestrator:
    """Single-flight state machine for the attribution flow.

    All dependencies passed explicitly, no globals. The host owns exactly
    one instance per install.

    Usage:
        orchestrator = FlowOrchestrator(store, ledger, backend, provider, observer)
        await orchestrator.start()
        ...
        await orchestrator.close()
    """

    def __init__(
        self,
        store: StateStore,
        ledger: RetryLedger,
        backend: BackendClient,
        attribution: AttributionProvider,
        observer: TransactionObserver,
        settle_delay: float = 0.1,
        install_detector: InstallTypeDetector | None = None,
        close_store: bool = False,
        close_backend: bool = False,
    ):
        """
        Args:
            store: Persisted flow state
            ledger: Retry/backoff ledger (normally over the same store)
            backend: Remote calls; wrap in BudgetedBackendClient to meter them
            attribution: Attribution token source
            observer: Purchase transaction source
            settle_delay: Seconds between applying a register reply and the next pass
            install_detector: Decides first install vs update; None means always first
            close_store: Close the store in close() (set when this instance opened it)
            close_backend: Close the backend in close() (set when this instance created it)
        """
        self._store = store
        self._ledger = ledger
        self._backend = backend
        self._attribution = attribution
        self._observer = observer
        self._settle_delay = settle_delay
        self._install_detector = install_detector or (lambda: True)
        self._close_store = close_store
        self._close_backend = close_backend

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._active = False
        self._observing = False
        self._evaluate_queued = False

        # Operations whose remote call has not reported back yet
        self._in_flight: set[Operation] = set()

        # Track background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

        self._wake_handle: asyncio.TimerHandle | None = None
        self._wake_at: float | None = None

    @property
    def budget(self) -> RequestBudget | None:
        if isinstance(self._backend, BudgetedBackendClient):
            return self._backend.budget
        return None

    @property
    def in_flight(self) -> frozenset[Operation]:
        return frozenset(self._in_flight)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Activate the flow.

        Resolves the install type, starts the transaction observer and
        triggers the first pass. Returns immediately; the flow continues in
        the background.
        """
        if self._active:
            logger.info("Attribution flow already started")
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._active = True
        self._consumer = asyncio.create_task(self._run())

        logger.info("Starting attribution flow")
        state = await self._store.load()
        logger.debug(state.describe())

        if not await resolve_install_type(self._store, self._install_detector):
            logger.info("App update detected (not first install) - skipping attribution flow")
            return

        if state.should_terminate:
            logger.info("Attribution flow terminal - flow complete or user is non-ASA")
            return

        # Transactions may arrive before a user exists
        if not state.transaction_captured:
            self._start_observer()

        self.trigger()

    def trigger(self) -> None:
        """Request a decision pass.

        Safe to call any number of times: pending requests are coalesced and
        requests arriving while a pass is in progress are dropped.
        """
        if not self._active:
            return
        if self._evaluate_queued:
            logger.debug("Evaluation already queued, coalescing trigger")
            return
        self._evaluate_queued = True
        self._queue.put_nowait(Evaluate())

    async def wait_idle(self) -> None:
        """Wait until no message, remote call or settle delay is pending.

        Backoff wake-up timers are not waited for.
        """
        while True:
            # Let callbacks scheduled from observer threads post first
            await asyncio.sleep(0)
            await self._queue.join()
            pending = [task for task in self._background_tasks if not task.done()]
            if not pending and self._queue.empty():
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop the observer and cancel all pending work.

        Remote calls in flight are abandoned; their results are never applied.
        """
        logger.info("Attribution flow shutting down")
        self._active = False
        self._stop_observer()
        self._cancel_wake()

        tasks = [task for task in self._background_tasks if not task.done()]
        if self._consumer is not None and not self._consumer.done():
            tasks.append(self._consumer)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._consumer = None
        self._background_tasks.clear()
        self._in_flight.clear()
        self._evaluate_queued = False

    async def reset(self) -> None:
        """Shut down and clear all persisted flow state and retry records.

        The lifetime request budget is not refilled. Call start() again to
        run a fresh flow.
        """
        await self.shutdown()
        await self._store.reset()
        logger.info("Attribution flow state reset")

    async def close(self) -> None:
        """Shut down and release the store and backend this instance owns.

        Resources passed in by the caller stay open; the caller closes them.
        The orchestrator cannot be started again after close().
        """
        await self.shutdown()
        if self._close_backend:
            await self._backend.close()
        if self._close_store:
            await self._store.close()

    async def state(self) -> FlowState:
        return await self._store.load()

    async def debug_state(self) -> str:
        """Multi-line dump of flow state, retry statistics and budget usage."""
        state = await self._store.load()
        lines = [state.describe(), "", "Retry Statistics:"]
        for operation in Operation:
            lines.append(f"- {await self._ledger.failure_stats(operation)}")

        budget = self.budget
        if budget is not None:
            lines.append("")
            lines.append(f"Lifetime Requests: {await budget.count()}/{budget.ceiling}")
        return "\n".join(lines)

    # ========================================================================
    # Message Loop
    # ========================================================================

    async def _run(self) -> None:
        """Consume messages one at a time until cancelled."""
        while True:
            message = await self._queue.get()
            try:
                await self._dispatch(message)
            except Exception as e:
                logger.error(f"Attribution flow error handling {type(message).__name__}: {e}")
            finally:
                self._queue.task_done()

    async def _dispatch(self, message: Message) -> None:
        if isinstance(message, Evaluate):
            self._evaluate_queued = False
            await self._execute_pass()
        elif isinstance(message, RegisterFinished):
            await self._handle_register(message)
        elif isinstance(message, ResolveFinished):
            await self._handle_resolve(message)
        elif isinstance(message, AssociateFinished):
            await self._handle_associate(message)
        elif isinstance(message, TransactionCaptured):
            await self._handle_transaction(message)

    def _post(self, message: Message) -> None:
        if self._active:
            self._queue.put_nowait(message)

    # ========================================================================
    # Decision Pass
    # ========================================================================

    async def _execute_pass(self) -> None:
        """Decide and launch the next legal remote calls."""
        if self._in_flight:
            names = ", ".join(sorted(op.value for op in self._in_flight))
            logger.debug(f"Pass already in progress ({names}), skipping concurrent trigger")
            return

        state = await self._store.load()
        logger.debug(
            f"Pass: phase={state.phase}, userCreated={state.user_created}, "
            f"attributionResolved={state.attribution_resolved}, isASAUser={state.is_asa_user}"
        )

        if state.should_terminate:
            logger.info(f"Attribution flow terminal ({state.phase}) - nothing to do")
            return

        if not state.user_created:
            if not await self._ledger.can_retry(Operation.CREATE_USER):
                await self._arm_wake(Operation.CREATE_USER)
                return
            logger.info("No user exists - creating new user")
            self._launch(Operation.CREATE_USER, self._call_register)
            return

        fired = False

        if not state.attribution_resolved:
            if await self._ledger.can_retry(Operation.RESOLVE_ATTRIBUTION):
                user_id = state.user_id
                self._launch(Operation.RESOLVE_ATTRIBUTION, lambda: self._call_resolve(user_id))
                fired = True
            else:
                await self._arm_wake(Operation.RESOLVE_ATTRIBUTION)

        if state.can_associate and not state.association_complete:
            if await self._ledger.can_retry(Operation.ASSOCIATE_USER):
                user_id, transaction_id = state.user_id, state.original_transaction_id
                self._launch(
                    Operation.ASSOCIATE_USER,
                    lambda: self._call_associate(user_id, transaction_id),
                )
                fired = True
            else:
                await self._arm_wake(Operation.ASSOCIATE_USER)

        if not fired:
            logger.info("Pass idle - waiting for transaction, backoff timer or next launch")

    def _launch(self, operation: Operation, call: Callable[[], Awaitable[None]]) -> None:
        self._in_flight.add(operation)
        self._spawn(call())

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # ========================================================================
    # Remote Calls (background tasks; report back through the queue)
    # ========================================================================

    async def _call_register(self) -> None:
        try:
            result = await self._attribution.fetch_attribution()
            token = None
            if isinstance(result, AttributionToken):
                logger.info("Attribution token obtained")
                token = result.token
            else:
                logger.info(f"Attribution token unavailable: {result.reason}")

            response = await self._backend.register(token)
        except Exception as e:
            self._post(RegisterFinished(error=e))
            return
        self._post(RegisterFinished(response=response))

    async def _call_resolve(self, user_id: str) -> None:
        logger.info("Resolving attribution...")
        try:
            result = await self._attribution.fetch_attribution()
            if not isinstance(result, AttributionToken):
                self._post(ResolveFinished(unavailable_reason=result.reason))
                return
            response = await self._backend.resolve(user_id, result.token)
        except Exception as e:
            self._post(ResolveFinished(error=e))
            return
        self._post(ResolveFinished(response=response))

    async def _call_associate(self, user_id: str, transaction_id: str) -> None:
        logger.info("Associating transaction with user...")
        try:
            response = await self._backend.associate(user_id, transaction_id)
        except Exception as e:
            self._post(AssociateFinished(error=e))
            return
        self._post(AssociateFinished(response=response))

    # ========================================================================
    # Completion Handlers (run on the message loop)
    # ========================================================================

    async def _absorb_failure(self, operation: Operation, error: Exception) -> bool:
        """Book a failed call.

        Returns:
            True if the failure is retryable and was recorded in the ledger
        """
        if isinstance(error, BackendError) and not error.is_retryable():
            logger.warning(f"Operation {operation} not attempted: {error}")
            return False

        if not isinstance(error, BackendError):
            logger.error(f"Operation {operation} raised unexpected {type(error).__name__}: {error}")
        else:
            logger.error(f"Operation {operation} failed: {error}")
        await self._ledger.record_failure(operation)
        return True

    async def _handle_register(self, message: RegisterFinished) -> None:
        self._in_flight.discard(Operation.CREATE_USER)

        if message.error is not None:
            if await self._absorb_failure(Operation.CREATE_USER, message.error):
                self.trigger()
            return

        outcome = reconcile_registration(message.response)
        if message.response.attribution_resolved is True and message.response.originated is None:
            logger.warning(
                "Register reply marks attribution resolved without an origin - "
                "treating user as non-ASA"
            )

        if outcome.basis is CreationBasis.EXPLICIT:
            logger.info(f"User explicitly created with ID: {outcome.user_id}")
        elif outcome.basis is CreationBasis.INFERRED:
            logger.warning(
                f"User implicitly created with ID: {outcome.user_id} "
                "(created flag missing from register reply, ASA user confirmed)"
            )
        elif outcome.basis is CreationBasis.NON_CAMPAIGN:
            logger.info("User was not created (non-ASA user)")
        else:
            logger.info("User creation status unclear from register reply")

        if outcome.user_created:
            if not await self._store.set_user_created(outcome.user_id):
                logger.warning(f"User already recorded, ignoring user ID {outcome.user_id}")

        if outcome.is_asa_user is not None:
            await self._store.set_attribution_resolved(outcome.is_asa_user)
            logger.info(
                "Attribution resolved during user creation: "
                f"{'ASA user' if outcome.is_asa_user else 'non-ASA user'}"
            )

        if outcome.settles_registration:
            await self._ledger.record_success(Operation.CREATE_USER)
        else:
            await self._ledger.record_failure(Operation.CREATE_USER)

        if outcome.is_asa_user is False:
            logger.info("User confirmed as non-ASA during creation - terminating")
            self._on_terminal()
            return

        self._spawn(self._settle_then_trigger())

    async def _settle_then_trigger(self) -> None:
        await asyncio.sleep(self._settle_delay)
        logger.debug("Proceeding to next pass after settle delay")
        self.trigger()

    async def _handle_resolve(self, message: ResolveFinished) -> None:
        self._in_flight.discard(Operation.RESOLVE_ATTRIBUTION)

        if message.error is not None:
            if await self._absorb_failure(Operation.RESOLVE_ATTRIBUTION, message.error):
                self.trigger()
            return

        if message.unavailable_reason is not None:
            logger.info(f"Attribution token unavailable: {message.unavailable_reason}")
            await self._ledger.record_failure(Operation.RESOLVE_ATTRIBUTION)
            self.trigger()
            return

        is_asa_user = reconcile_resolution(message.response)
        if is_asa_user is None:
            logger.info("Attribution resolution inconclusive - will retry after backoff")
            await self._ledger.record_failure(Operation.RESOLVE_ATTRIBUTION)
            self.trigger()
            return

        await self._ledger.record_success(Operation.RESOLVE_ATTRIBUTION)
        await self._store.set_attribution_resolved(is_asa_user)

        if not is_asa_user:
            logger.info("User confirmed as non-ASA user - terminating")
            self._on_terminal()
            return

        logger.info("User confirmed as ASA user")
        self.trigger()

    async def _handle_associate(self, message: AssociateFinished) -> None:
        self._in_flight.discard(Operation.ASSOCIATE_USER)

        if message.error is not None:
            if await self._absorb_failure(Operation.ASSOCIATE_USER, message.error):
                self.trigger()
            return

        response = message.response
        if response.success is not True:
            logger.error("Transaction association failed")
            await self._ledger.record_failure(Operation.ASSOCIATE_USER)
            self.trigger()
            return

        state = await self._store.load()
        if response.confirmed_user_id is not None and response.confirmed_user_id != state.user_id:
            logger.warning(
                f"Association confirmed for user {response.confirmed_user_id}, "
                f"expected {state.user_id}"
            )

        await self._ledger.record_success(Operation.ASSOCIATE_USER)
        await self._store.set_association_complete()
        logger.info("Transaction association successful - attribution flow complete")
        self._on_terminal()

    async def _handle_transaction(self, message: TransactionCaptured) -> None:
        stored = await self._store.set_transaction_captured(message.transaction_id)
        self._stop_observer()

        if not stored:
            logger.info(f"Transaction {message.transaction_id} ignored - one is already captured")
            return

        state = await self._store.load()
        if state.user_created:
            logger.info("Transaction captured after user creation - proceeding with flow")
            self.trigger()
        else:
            logger.info("Transaction captured before user creation - held until user exists")

    def _on_terminal(self) -> None:
        self._stop_observer()
        self._cancel_wake()

    # ========================================================================
    # Transaction Observer
    # ========================================================================

    def _start_observer(self) -> None:
        logger.info("Starting transaction monitoring")
        self._observing = True
        try:
            self._observer.start(self._on_transaction)
        except Exception as e:
            self._observing = False
            logger.error(f"Transaction observer failed to start: {e}")

    def _stop_observer(self) -> None:
        if not self._observing:
            return
        self._observing = False
        try:
            self._observer.stop()
        except Exception as e:
            logger.error(f"Transaction observer failed to stop: {e}")

    def _on_transaction(self, transaction_id: str) -> None:
        """Observer callback; may run on any thread."""
        if not self._observing or self._loop is None or self._loop.is_closed():
            logger.debug(f"Transaction {transaction_id} delivered after stop, ignored")
            return
        logger.info(f"Transaction captured: {transaction_id}")
        self._loop.call_soon_threadsafe(self._post, TransactionCaptured(transaction_id))

    # ========================================================================
    # Backoff Wake-up
    # ========================================================================

    async def _arm_wake(self, operation: Operation) -> None:
        """Re-trigger the flow when the operation leaves backoff.

        Only the earliest pending wake-up is kept.
        """
        delay = max(await self._ledger.time_until_next_retry(operation), MIN_WAKE_DELAY)
        logger.info(f"Operation {operation} in backoff - next retry in {delay:.1f} seconds")

        wake_at = self._loop.time() + delay
        if self._wake_handle is not None and self._wake_at is not None and self._wake_at <= wake_at:
            return

        self._cancel_wake()
        self._wake_at = wake_at
        self._wake_handle = self._loop.call_later(delay, self._on_wake)

    def _on_wake(self) -> None:
        self._wake_handle = None
        self._wake_at = None
        self.trigger()

    def _cancel_wake(self) -> None:
        if self._wake_handle is not None:
            self._wake_handle.cancel()
        self._wake_handle = None
        self._wake_at = None


async def build_orchestrator(
    config: FlowConfig,
    attribution: AttributionProvider,
    observer: TransactionObserver,
    backend: BackendClient | None = None,
    store: StateStore | None = None,
    install_detector: InstallTypeDetector | None = None,
) -> FlowOrchestrator:
    """Wire an orchestrator from configuration.

    The backend (HttpBackendClient unless one is given) is always wrapped in
    a BudgetedBackendClient over the same store, so every remote call is
    metered against the lifetime budget.

    The store and backend created here are owned by the orchestrator and
    released by close(); a store or backend passed in stays the caller's.

    Example:
        orchestrator = await build_orchestrator(FlowConfig.from_env(), provider, observer)
        await orchestrator.start()
        ...
        await orchestrator.close()
    """
    owns_store = store is None
    owns_backend = backend is None
    if owns_store:
        store = await open_store(config)
    if owns_backend:
        backend = HttpBackendClient(config.base_url, config.api_key, timeout=config.request_timeout)
    if install_detector is None and config.data_dir:
        install_detector = DirectoryAgeDetector(config.data_dir)

    budget = RequestBudget(store, config.max_lifetime_requests)
    return FlowOrchestrator(
        store=store,
        ledger=RetryLedger(store, config.backoff),
        backend=BudgetedBackendClient(backend, budget),
        attribution=attribution,
        observer=observer,
        settle_delay=config.settle_delay,
        install_detector=install_detector,
        close_store=owns_store,
        close_backend=owns_backend,
    )
