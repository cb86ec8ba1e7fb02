"""Configuration for the attribution flow.

Default configuration works out of the box for a single install with a
SQLite state file; every value can be overridden from the environment:

    ASAFLOW_API_KEY                 backend api key
    ASAFLOW_BASE_URL                root of the backend function endpoints
    ASAFLOW_STATE_PATH              SQLite state file
    ASAFLOW_REDIS_URL               use Redis instead of SQLite when set
    ASAFLOW_REDIS_NAMESPACE         Redis key prefix
    ASAFLOW_DATA_DIR                directory whose age decides first install
    ASAFLOW_SETTLE_DELAY            seconds between a register reply and the next pass
    ASAFLOW_MAX_LIFETIME_REQUESTS   lifetime request ceiling
    ASAFLOW_REQUEST_TIMEOUT         per-request timeout in seconds
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from asaflow.client.budget import DEFAULT_MAX_LIFETIME_REQUESTS
from asaflow.client.http import DEFAULT_TIMEOUT
from asaflow.models import BackoffPolicy
from asaflow.storage.base import KEY_NAMESPACE, StateStore

DEFAULT_SETTLE_DELAY = 0.1


def _default_state_path() -> str:
    return str(Path.home() / ".asaflow" / "state.db")


@dataclass(frozen=True)
class FlowConfig:
    """Settings needed to wire an orchestrator.

    Example:
        config = FlowConfig.from_env()
        orchestrator = await build_orchestrator(config, provider, observer)
    """

    api_key: str = ""
    base_url: str = ""
    state_path: str = field(default_factory=_default_state_path)
    redis_url: str | None = None
    redis_namespace: str = KEY_NAMESPACE
    data_dir: str | None = None
    settle_delay: float = DEFAULT_SETTLE_DELAY
    max_lifetime_requests: int = DEFAULT_MAX_LIFETIME_REQUESTS
    request_timeout: float = DEFAULT_TIMEOUT
    backoff: BackoffPolicy = BackoffPolicy.DEFAULT

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> FlowConfig:
        """Build a config from ``ASAFLOW_*`` variables.

        Args:
            environ: Mapping to read instead of os.environ

        Raises:
            ValueError: If a numeric variable does not parse
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            api_key=env.get("ASAFLOW_API_KEY", defaults.api_key),
            base_url=env.get("ASAFLOW_BASE_URL", defaults.base_url),
            state_path=env.get("ASAFLOW_STATE_PATH", defaults.state_path),
            redis_url=env.get("ASAFLOW_REDIS_URL") or None,
            redis_namespace=env.get("ASAFLOW_REDIS_NAMESPACE", defaults.redis_namespace),
            data_dir=env.get("ASAFLOW_DATA_DIR") or None,
            settle_delay=float(env.get("ASAFLOW_SETTLE_DELAY", defaults.settle_delay)),
            max_lifetime_requests=int(
                env.get("ASAFLOW_MAX_LIFETIME_REQUESTS", defaults.max_lifetime_requests)
            ),
            request_timeout=float(env.get("ASAFLOW_REQUEST_TIMEOUT", defaults.request_timeout)),
        )


async def open_store(config: FlowConfig) -> StateStore:
    """Open and connect the state store selected by the config.

    Redis when ``redis_url`` is set, otherwise SQLite at ``state_path``.
    """
    if config.redis_url:
        from asaflow.storage.redis import RedisStateStore

        redis_store = RedisStateStore(config.redis_url, namespace=config.redis_namespace)
        await redis_store.connect()
        return redis_store

    from asaflow.storage.sqlite import SqliteStateStore

    sqlite_store = SqliteStateStore(config.state_path)
    await sqlite_store.connect()
    return sqlite_store
