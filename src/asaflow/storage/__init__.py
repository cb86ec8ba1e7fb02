"""Storage backends for durable attribution flow state.

Provides multiple storage implementations behind a common interface:
    - StateStore: Abstract interface
    - SqliteStateStore: SQLite-backed storage (default for a single install)
    - RedisStateStore: Redis-backed shared storage
    - InMemoryStateStore: In-memory storage for testing

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the StateStore interface.
    The orchestrator and ledger depend on the abstraction, not on
    concrete implementations.
"""

from asaflow.storage.base import ReadWriteLock, StateStore, StorageError

# Lazy imports: the Redis and SQLite drivers are only loaded on use


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryStateStore":
        from asaflow.storage.memory import InMemoryStateStore

        return InMemoryStateStore
    elif name == "RedisStateStore":
        from asaflow.storage.redis import RedisStateStore

        return RedisStateStore
    elif name == "SqliteStateStore":
        from asaflow.storage.sqlite import SqliteStateStore

        return SqliteStateStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "StateStore",
    "StorageError",
    "ReadWriteLock",
    "SqliteStateStore",
    "RedisStateStore",
    "InMemoryStateStore",
]
