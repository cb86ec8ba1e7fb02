"""SQLite-backed storage implementation for asaflow.

Design Pattern: Adapter Pattern
SqliteStateStore adapts a SQLite key/value table to the StateStore interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- IMMEDIATE transactions so every compound write lands as one unit
- Namespaced keys so the table can share a database with host data
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from asaflow.models import FlowState, Operation, RetryRecord
from asaflow.storage.base import (
    BOOL_FIELDS,
    REQUEST_COUNT_KEY,
    RETRY_PREFIX,
    STATE_FIELDS,
    STATE_PREFIX,
    ReadWriteLock,
    StateStore,
    StorageError,
    retry_failures_key,
    retry_last_failure_key,
    state_key,
)


class SqliteStateStore(StateStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first.
    This follows asyncio best practices (no async in __init__).

    Usage:
        store = SqliteStateStore("attribution.db")
        await store.connect()
        try:
            await store.set_user_created("42")
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = ReadWriteLock()

    @classmethod
    async def in_memory(cls) -> SqliteStateStore:
        """
        Create an in-memory SQLite storage for testing.

        Returns:
            Connected in-memory storage instance
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteStateStore(in-memory)"
        return f"SqliteStateStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create table
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit; transactions are explicit
        )

        # In-memory databases answer "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()

        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        # FULL: a committed write must survive power loss, not just a crash
        await self._connection.execute("PRAGMA synchronous=FULL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        # Untyped value column: booleans and counters stay INTEGER, ids TEXT,
        # timestamps REAL
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS asaflow_kv (
                key TEXT PRIMARY KEY,
                value
            )
        """)

    async def close(self) -> None:
        """Close storage connection.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Exclusive write section wrapped in one IMMEDIATE transaction."""
        self._check_connected()
        async with self._lock.write():
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield self._connection
            except BaseException:
                await self._connection.execute("ROLLBACK")
                raise
            await self._connection.execute("COMMIT")

    @staticmethod
    async def _put(conn: aiosqlite.Connection, key: str, value: Any) -> None:
        await conn.execute(
            """
            INSERT INTO asaflow_kv (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
            (key, value),
        )

    @staticmethod
    async def _get(conn: aiosqlite.Connection, key: str) -> Any:
        cursor = await conn.execute("SELECT value FROM asaflow_kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        await cursor.close()
        return None if row is None else row[0]

    # ========================================================================
    # Flow State
    # ========================================================================

    async def load(self) -> FlowState:
        self._check_connected()
        async with self._lock.read():
            cursor = await self._connection.execute(
                "SELECT key, value FROM asaflow_kv WHERE key LIKE ?", (f"{STATE_PREFIX}%",)
            )
            rows = await cursor.fetchall()
            await cursor.close()

        stored = {key[len(STATE_PREFIX) :]: value for key, value in rows}
        fields: dict[str, Any] = {}
        for name in STATE_FIELDS:
            if name not in stored:
                continue
            value = stored[name]
            fields[name] = bool(value) if name in BOOL_FIELDS else value
        return FlowState(**fields)

    async def set_user_created(self, user_id: str) -> bool:
        async with self._transaction() as conn:
            if await self._get(conn, state_key("user_created")):
                return False
            await self._put(conn, state_key("user_id"), user_id)
            await self._put(conn, state_key("user_created"), 1)
            return True

    async def set_attribution_resolved(self, is_asa_user: bool) -> None:
        async with self._transaction() as conn:
            await self._put(conn, state_key("is_asa_user"), int(is_asa_user))
            await self._put(conn, state_key("attribution_resolved"), 1)

    async def set_transaction_captured(self, transaction_id: str) -> bool:
        async with self._transaction() as conn:
            if await self._get(conn, state_key("transaction_captured")):
                return False
            await self._put(conn, state_key("original_transaction_id"), transaction_id)
            await self._put(conn, state_key("transaction_captured"), 1)
            return True

    async def set_association_complete(self) -> None:
        async with self._transaction() as conn:
            await self._put(conn, state_key("association_complete"), 1)

    async def set_install_type(self, is_first_install: bool) -> None:
        async with self._transaction() as conn:
            await self._put(conn, state_key("is_first_install"), int(is_first_install))
            await self._put(conn, state_key("install_type_resolved"), 1)

    async def reset(self) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM asaflow_kv WHERE key LIKE ? OR key LIKE ?",
                (f"{STATE_PREFIX}%", f"{RETRY_PREFIX}%"),
            )

    # ========================================================================
    # Retry Records
    # ========================================================================

    async def get_retry_record(self, operation: Operation) -> RetryRecord | None:
        self._check_connected()
        async with self._lock.read():
            failures = await self._get(self._connection, retry_failures_key(operation))
            last_failure = await self._get(self._connection, retry_last_failure_key(operation))

        if not failures:
            return None
        return RetryRecord(
            consecutive_failures=int(failures),
            last_failure_time=(
                datetime.fromtimestamp(last_failure, UTC) if last_failure is not None else None
            ),
        )

    async def put_retry_record(self, operation: Operation, record: RetryRecord) -> None:
        async with self._transaction() as conn:
            await self._put(conn, retry_failures_key(operation), record.consecutive_failures)
            last_failure = (
                record.last_failure_time.timestamp()
                if record.last_failure_time is not None
                else None
            )
            await self._put(conn, retry_last_failure_key(operation), last_failure)

    async def clear_retry_record(self, operation: Operation) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM asaflow_kv WHERE key IN (?, ?)",
                (retry_failures_key(operation), retry_last_failure_key(operation)),
            )

    # ========================================================================
    # Lifetime Request Counter
    # ========================================================================

    async def get_request_count(self) -> int:
        self._check_connected()
        async with self._lock.read():
            value = await self._get(self._connection, REQUEST_COUNT_KEY)
        return int(value or 0)

    async def try_increment_request_count(self, ceiling: int) -> int | None:
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO asaflow_kv (key, value) VALUES (?, 0)",
                (REQUEST_COUNT_KEY,),
            )
            cursor = await conn.execute(
                """
                UPDATE asaflow_kv
                SET value = value + 1
                WHERE key = ? AND value < ?
                RETURNING value
            """,
                (REQUEST_COUNT_KEY, ceiling),
            )
            row = await cursor.fetchone()
            await cursor.close()
            return None if row is None else int(row[0])
