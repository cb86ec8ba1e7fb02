"""Redis-based state store implementation.

Lets a host keep attribution progress in a Redis instance it already runs
(for example when the "install" is a server-side session shared by several
worker processes).

Data Structures:
- {namespace}:state (HASH): FlowState fields
- {namespace}:retry (HASH): {operation}.failures / {operation}.last_failure
- {namespace}:budget:lifetime_request_count (STRING): request counter

Key Features:
- Atomic compound writes: MULTI/EXEC pipelines
- First-value-wins writes and the counter ceiling: Lua scripts, so the
  check and the write are one server-side step
- Redis executes commands one at a time, which gives the reader/writer
  discipline of the StateStore contract without a client-side lock

Design: Adapter Pattern
Implements StateStore for Redis, adapting hashes and counters to the
StateStore interface.
"""

from __future__ import annotations

from datetime import UTC, datetime

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisStateStore. Install with: pip install redis")

from asaflow.models import FlowState, Operation, RetryRecord
from asaflow.storage.base import BOOL_FIELDS, KEY_NAMESPACE, STATE_FIELDS, StateStore, StorageError

# Sets a compound pair only if the guard field is not yet "1"
_SET_ONCE_SCRIPT = """
local key = KEYS[1]
local guard = ARGV[1]
local field = ARGV[2]
local value = ARGV[3]

if redis.call('HGET', key, guard) == '1' then
    return 0
end
redis.call('HSET', key, field, value, guard, '1')
return 1
"""

_INCREMENT_BELOW_SCRIPT = """
local key = KEYS[1]
local ceiling = tonumber(ARGV[1])
local current = tonumber(redis.call('GET', key) or '0')

if current >= ceiling then
    return -1
end
return redis.call('INCR', key)
"""


class RedisStateStore(StateStore):
    """Redis state store using connection pooling.

    All dependencies (Redis connection) passed explicitly.

    Usage:
        store = RedisStateStore("redis://localhost:6379", namespace="asaflow:install-1")
        await store.connect()
        state = await store.load()
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        namespace: str = KEY_NAMESPACE,
        max_connections: int = 4,
    ):
        """Initialize Redis state store.

        Args:
            redis_url: Redis connection URL
            namespace: Key prefix isolating this install from other data
            max_connections: Maximum pool size
        """
        self._redis_url = redis_url
        self._namespace = namespace
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisStateStore({self._redis_url}, namespace={self._namespace!r})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @property
    def _state_key(self) -> str:
        return f"{self._namespace}:state"

    @property
    def _retry_key(self) -> str:
        return f"{self._namespace}:retry"

    @property
    def _counter_key(self) -> str:
        return f"{self._namespace}:budget:lifetime_request_count"

    # ========================================================================
    # Flow State
    # ========================================================================

    async def load(self) -> FlowState:
        self._check_connected()
        data = await self._redis.hgetall(self._state_key)

        fields: dict[str, bool | str] = {}
        for name in STATE_FIELDS:
            if name not in data:
                continue
            fields[name] = data[name] == "1" if name in BOOL_FIELDS else data[name]
        return FlowState(**fields)

    async def set_user_created(self, user_id: str) -> bool:
        self._check_connected()
        stored = await self._redis.eval(
            _SET_ONCE_SCRIPT, 1, self._state_key, "user_created", "user_id", user_id
        )
        return stored == 1

    async def set_attribution_resolved(self, is_asa_user: bool) -> None:
        self._check_connected()
        await self._redis.hset(
            self._state_key,
            mapping={"is_asa_user": "1" if is_asa_user else "0", "attribution_resolved": "1"},
        )

    async def set_transaction_captured(self, transaction_id: str) -> bool:
        self._check_connected()
        stored = await self._redis.eval(
            _SET_ONCE_SCRIPT,
            1,
            self._state_key,
            "transaction_captured",
            "original_transaction_id",
            transaction_id,
        )
        return stored == 1

    async def set_association_complete(self) -> None:
        self._check_connected()
        await self._redis.hset(self._state_key, "association_complete", "1")

    async def set_install_type(self, is_first_install: bool) -> None:
        self._check_connected()
        await self._redis.hset(
            self._state_key,
            mapping={
                "is_first_install": "1" if is_first_install else "0",
                "install_type_resolved": "1",
            },
        )

    async def reset(self) -> None:
        self._check_connected()
        async with self._redis.pipeline(transaction=True) as pipe:
            await pipe.delete(self._state_key)
            await pipe.delete(self._retry_key)
            await pipe.execute()

    # ========================================================================
    # Retry Records
    # ========================================================================

    async def get_retry_record(self, operation: Operation) -> RetryRecord | None:
        self._check_connected()
        failures, last_failure = await self._redis.hmget(
            self._retry_key, f"{operation.value}.failures", f"{operation.value}.last_failure"
        )
        if not failures or int(failures) <= 0:
            return None
        return RetryRecord(
            consecutive_failures=int(failures),
            last_failure_time=(
                datetime.fromtimestamp(float(last_failure), UTC) if last_failure else None
            ),
        )

    async def put_retry_record(self, operation: Operation, record: RetryRecord) -> None:
        self._check_connected()
        mapping = {f"{operation.value}.failures": str(record.consecutive_failures)}
        async with self._redis.pipeline(transaction=True) as pipe:
            if record.last_failure_time is not None:
                mapping[f"{operation.value}.last_failure"] = repr(
                    record.last_failure_time.timestamp()
                )
            else:
                await pipe.hdel(self._retry_key, f"{operation.value}.last_failure")
            await pipe.hset(self._retry_key, mapping=mapping)
            await pipe.execute()

    async def clear_retry_record(self, operation: Operation) -> None:
        self._check_connected()
        await self._redis.hdel(
            self._retry_key, f"{operation.value}.failures", f"{operation.value}.last_failure"
        )

    # ========================================================================
    # Lifetime Request Counter
    # ========================================================================

    async def get_request_count(self) -> int:
        self._check_connected()
        value = await self._redis.get(self._counter_key)
        return int(value or 0)

    async def try_increment_request_count(self, ceiling: int) -> int | None:
        self._check_connected()
        result = await self._redis.eval(_INCREMENT_BELOW_SCRIPT, 1, self._counter_key, ceiling)
        return None if int(result) < 0 else int(result)
