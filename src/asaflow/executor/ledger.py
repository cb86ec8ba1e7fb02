"""Retry/backoff ledger for remote operations.

Tracks consecutive failures per Operation in the state store and decides
when an operation may be attempted again.

Rules:
- No record: eligible.
- Record quiet for longer than the policy's reset window: treated as empty
  (and cleared), eligible.
- consecutive_failures >= max_retries: not eligible until the quiet window
  has passed.
- Otherwise eligible once the jittered backoff delay since the last
  failure has elapsed.

The jitter factor is drawn again on every computation, so repeated
time_until_next_retry() queries give a stable but re-jittered estimate.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from asaflow.models import BackoffPolicy, Operation, RetryRecord
from asaflow.storage.base import StateStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RetryLedger:
    """Per-operation failure counters with exponential backoff.

    Usage:
        ledger = RetryLedger(store)
        if await ledger.can_retry(Operation.CREATE_USER):
            try:
                ...
                await ledger.record_success(Operation.CREATE_USER)
            except BackendError:
                await ledger.record_failure(Operation.CREATE_USER)
    """

    def __init__(
        self,
        store: StateStore,
        policy: BackoffPolicy = BackoffPolicy.DEFAULT,
        clock: Callable[[], datetime] = _utc_now,
        rng: random.Random | None = None,
    ):
        """
        Args:
            store: Where failure records are persisted
            policy: Backoff timing
            clock: Returns the current aware datetime (injectable for tests)
            rng: Source of jitter (injectable for tests)
        """
        self._store = store
        self._policy = policy
        self._clock = clock
        self._rng = rng or random.Random()

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    def _jitter(self) -> float:
        low, high = self._policy.jitter
        return self._rng.uniform(low, high)

    def _is_exhausted(self, record: RetryRecord) -> bool:
        return record.consecutive_failures >= self._policy.max_retries

    async def _active_record(self, operation: Operation) -> RetryRecord | None:
        """Stored record, or None if there is none or it has gone quiet."""
        record = await self._store.get_retry_record(operation)
        if record is None or record.is_empty:
            return None

        if record.is_expired(self._clock(), self._policy.quiet_window):
            logger.info(
                f"Operation {operation} failure record expired after quiet window "
                f"({record.consecutive_failures} failures), resetting"
            )
            await self._store.clear_retry_record(operation)
            return None

        return record

    async def record(self, operation: Operation) -> RetryRecord | None:
        """Current failure record, honoring the quiet window."""
        return await self._active_record(operation)

    async def can_retry(self, operation: Operation) -> bool:
        """Check if the operation may be attempted now."""
        record = await self._active_record(operation)
        if record is None:
            return True

        if self._is_exhausted(record):
            return False

        delay = self._policy.delay_for(record.consecutive_failures, self._jitter())
        return record.age(self._clock()) >= timedelta(seconds=delay)

    async def next_eligible_time(self, operation: Operation) -> datetime | None:
        """
        When the operation becomes eligible again.

        Returns:
            None if there is no active failure record, otherwise the end of
            the backoff delay (or of the quiet window once retries are
            exhausted)
        """
        record = await self._active_record(operation)
        if record is None:
            return None

        if self._is_exhausted(record):
            return record.last_failure_time + self._policy.quiet_window

        delay = self._policy.delay_for(record.consecutive_failures, self._jitter())
        return record.last_failure_time + timedelta(seconds=delay)

    async def time_until_next_retry(self, operation: Operation) -> float:
        """Seconds until the operation is eligible, 0 if it already is."""
        eligible_at = await self.next_eligible_time(operation)
        if eligible_at is None:
            return 0.0
        return max(0.0, (eligible_at - self._clock()).total_seconds())

    async def record_failure(self, operation: Operation) -> RetryRecord:
        """
        Count one more consecutive failure.

        A record that has gone quiet restarts from zero.

        Returns:
            The updated record
        """
        previous = await self._active_record(operation)
        failures = (previous.consecutive_failures if previous else 0) + 1
        record = RetryRecord(consecutive_failures=failures, last_failure_time=self._clock())
        await self._store.put_retry_record(operation, record)

        delay = self._policy.delay_for(failures, self._jitter())
        logger.info(
            f"Operation {operation} failed {failures} times. Next retry in {delay:.1f} seconds"
        )
        return record

    async def record_success(self, operation: Operation) -> None:
        """Forget the failure history of the operation."""
        await self._store.clear_retry_record(operation)

    async def reset_all(self) -> None:
        """Clear the failure history of every operation."""
        for operation in Operation:
            await self._store.clear_retry_record(operation)

    async def failure_stats(self, operation: Operation) -> str:
        """One-line failure summary for debug dumps."""
        record = await self._active_record(operation)
        if record is None:
            return f"{operation}: No failures"

        wait = await self.time_until_next_retry(operation)
        return f"{operation}: {record.consecutive_failures} failures, next retry in {wait:.1f}s"
