"""In-memory storage implementation for asaflow.

Design Pattern: Adapter Pattern
InMemoryStateStore adapts plain attributes to the StateStore interface.

Instance is immediately usable after __init__. Nothing survives the
process; use it for tests and for hosts that persist elsewhere.
"""

from __future__ import annotations

from dataclasses import replace

from asaflow.models import FlowState, Operation, RetryRecord
from asaflow.storage.base import ReadWriteLock, StateStore


class InMemoryStateStore(StateStore):
    """In-memory storage for testing.

    Can be substituted for SqliteStateStore without changing client code.

    Usage:
        store = InMemoryStateStore()
        await store.set_user_created("42")
    """

    def __init__(self):
        self._state = FlowState()
        self._retry_records: dict[Operation, RetryRecord] = {}
        self._request_count = 0
        self._lock = ReadWriteLock()

    def __repr__(self) -> str:
        return "InMemoryStateStore"

    async def load(self) -> FlowState:
        async with self._lock.read():
            return self._state

    async def set_user_created(self, user_id: str) -> bool:
        async with self._lock.write():
            if self._state.user_created:
                return False
            self._state = replace(self._state, user_created=True, user_id=user_id)
            return True

    async def set_attribution_resolved(self, is_asa_user: bool) -> None:
        async with self._lock.write():
            self._state = replace(self._state, attribution_resolved=True, is_asa_user=is_asa_user)

    async def set_transaction_captured(self, transaction_id: str) -> bool:
        async with self._lock.write():
            if self._state.transaction_captured:
                return False
            self._state = replace(
                self._state, transaction_captured=True, original_transaction_id=transaction_id
            )
            return True

    async def set_association_complete(self) -> None:
        async with self._lock.write():
            self._state = replace(self._state, association_complete=True)

    async def set_install_type(self, is_first_install: bool) -> None:
        async with self._lock.write():
            self._state = replace(
                self._state, install_type_resolved=True, is_first_install=is_first_install
            )

    async def reset(self) -> None:
        async with self._lock.write():
            self._state = FlowState()
            self._retry_records.clear()

    async def get_retry_record(self, operation: Operation) -> RetryRecord | None:
        async with self._lock.read():
            return self._retry_records.get(operation)

    async def put_retry_record(self, operation: Operation, record: RetryRecord) -> None:
        async with self._lock.write():
            self._retry_records[operation] = record

    async def clear_retry_record(self, operation: Operation) -> None:
        async with self._lock.write():
            self._retry_records.pop(operation, None)

    async def get_request_count(self) -> int:
        async with self._lock.read():
            return self._request_count

    async def try_increment_request_count(self, ceiling: int) -> int | None:
        async with self._lock.write():
            if self._request_count >= ceiling:
                return None
            self._request_count += 1
            return self._request_count
