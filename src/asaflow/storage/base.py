"""
StateStore protocol - Abstract interface for persisted flow progress.

Design Pattern: Adapter Pattern
StateStore defines the target interface that all storage adapters implement.
Different storage backends (SQLite, Redis, Memory) adapt to this common interface.

Design Principle: Dependency Inversion (SOLID)
The orchestrator and the retry ledger depend on this abstraction, not on
concrete storage implementations, and never mutate storage directly.

Three independent areas live behind one store:
- flow state (``asaflow.state.*``), cleared by reset()
- retry records (``asaflow.retry.*``), cleared by reset()
- the lifetime request counter (``asaflow.budget.*``), never cleared
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from asaflow.models import FlowState, Operation, RetryRecord

KEY_NAMESPACE = "asaflow"
STATE_PREFIX = f"{KEY_NAMESPACE}.state."
RETRY_PREFIX = f"{KEY_NAMESPACE}.retry."
REQUEST_COUNT_KEY = f"{KEY_NAMESPACE}.budget.lifetime_request_count"

# Flow state keys, in FlowState field order
STATE_FIELDS = (
    "user_created",
    "user_id",
    "attribution_resolved",
    "is_asa_user",
    "transaction_captured",
    "original_transaction_id",
    "association_complete",
    "install_type_resolved",
    "is_first_install",
)

BOOL_FIELDS = frozenset(
    {
        "user_created",
        "attribution_resolved",
        "is_asa_user",
        "transaction_captured",
        "association_complete",
        "install_type_resolved",
        "is_first_install",
    }
)


def state_key(field: str) -> str:
    """Namespaced storage key of a FlowState field."""
    return f"{STATE_PREFIX}{field}"


def retry_failures_key(operation: Operation) -> str:
    return f"{RETRY_PREFIX}{operation.value}.failures"


def retry_last_failure_key(operation: Operation) -> str:
    return f"{RETRY_PREFIX}{operation.value}.last_failure"


class StorageError(Exception):
    """
    Storage operation failed.

    Custom exception with context, not generic Exception.
    """

    pass


class ReadWriteLock:
    """Asyncio reader/writer lock.

    Readers share the lock; a writer holds it exclusively. Waiting writers
    block new readers, so a stream of reads cannot starve a write, and a
    write that has released the lock is visible to every read that starts
    afterwards.

    Usage:
        lock = ReadWriteLock()
        async with lock.read():
            ...
        async with lock.write():
            ...
    """

    def __init__(self):
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._waiting_writers += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._waiting_writers -= 1
                # Readers parked behind this writer re-check on cancellation too
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writer


class StateStore(ABC):
    """
    Abstract durable storage for flow progress.

    Every compound write (user_created + user_id, and so on) is applied as
    one unit: a concurrent reader observes either the old pair or the new
    pair, never half of each. All operations are total; a StorageError
    signals misuse (for example a store that was never connected).
    """

    # ========================================================================
    # Flow State
    # ========================================================================

    @abstractmethod
    async def load(self) -> FlowState:
        """Return a snapshot of the current flow state."""
        pass

    @abstractmethod
    async def set_user_created(self, user_id: str) -> bool:
        """
        Record the backend user.

        Sets user_id and user_created together, once. A second call is
        ignored while a user is already recorded.

        Returns:
            True if the user was recorded by this call
        """
        pass

    @abstractmethod
    async def set_attribution_resolved(self, is_asa_user: bool) -> None:
        """Record the attribution outcome (is_asa_user and attribution_resolved together)."""
        pass

    @abstractmethod
    async def set_transaction_captured(self, transaction_id: str) -> bool:
        """
        Record the captured transaction, first value wins.

        Returns:
            True if this call stored the value, False if one was already stored
        """
        pass

    @abstractmethod
    async def set_association_complete(self) -> None:
        """Mark the flow as terminally complete."""
        pass

    @abstractmethod
    async def set_install_type(self, is_first_install: bool) -> None:
        """Fix the install type (is_first_install and install_type_resolved together)."""
        pass

    @abstractmethod
    async def reset(self) -> None:
        """
        Clear every flow field and every retry record.

        The lifetime request counter survives a reset.
        """
        pass

    async def should_terminate(self) -> bool:
        """True once the flow is complete or the user is known not to be a campaign user."""
        return (await self.load()).should_terminate

    async def can_associate(self) -> bool:
        """True once every input of the associate call is stored."""
        return (await self.load()).can_associate

    # ========================================================================
    # Retry Records
    # ========================================================================

    @abstractmethod
    async def get_retry_record(self, operation: Operation) -> RetryRecord | None:
        """Return the failure record of an operation, None if there is none."""
        pass

    @abstractmethod
    async def put_retry_record(self, operation: Operation, record: RetryRecord) -> None:
        """Replace the failure record of an operation."""
        pass

    @abstractmethod
    async def clear_retry_record(self, operation: Operation) -> None:
        """Remove the failure record of an operation."""
        pass

    # ========================================================================
    # Lifetime Request Counter
    # ========================================================================

    @abstractmethod
    async def get_request_count(self) -> int:
        """Return the number of remote call attempts ever made."""
        pass

    @abstractmethod
    async def try_increment_request_count(self, ceiling: int) -> int | None:
        """
        Atomically increment the request counter unless it reached the ceiling.

        Args:
            ceiling: Maximum value the counter may take

        Returns:
            The new count, or None if the counter was already at the ceiling
        """
        pass

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def close(self) -> None:
        """Release storage resources. Default: nothing to release."""
        return None
