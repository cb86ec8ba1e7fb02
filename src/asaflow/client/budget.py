"""Lifetime request budget.

A blunt safety valve: no matter what the flow logic decides, the install
never sends more than ``ceiling`` requests to the backend. The counter is
persisted by the state store, outside the flow state, so StateStore.reset()
does not refill it.
"""

import logging

from asaflow.client.base import BackendClient
from asaflow.client.errors import BudgetExceededError
from asaflow.models import AssociateResponse, RegisterResponse, ResolveResponse
from asaflow.storage.base import StateStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_LIFETIME_REQUESTS = 100


class RequestBudget:
    """Persisted monotonic counter with a hard ceiling.

    Usage:
        budget = RequestBudget(store)
        await budget.consume()  # raises BudgetExceededError at the ceiling
    """

    def __init__(self, store: StateStore, ceiling: int = DEFAULT_MAX_LIFETIME_REQUESTS):
        self._store = store
        self._ceiling = ceiling

    @property
    def ceiling(self) -> int:
        return self._ceiling

    async def count(self) -> int:
        return await self._store.get_request_count()

    async def remaining(self) -> int:
        return max(0, self._ceiling - await self.count())

    async def consume(self) -> int:
        """Take one request from the budget.

        Called immediately before every remote attempt, successful or not.

        Returns:
            The new request count

        Raises:
            BudgetExceededError: If the ceiling has been reached; the counter
                is left unchanged
        """
        count = await self._store.try_increment_request_count(self._ceiling)
        if count is None:
            logger.warning(f"Request blocked: lifetime limit reached ({self._ceiling})")
            raise BudgetExceededError(self._ceiling, self._ceiling)

        logger.debug(f"Request count: {count}/{self._ceiling}")
        if count >= self._ceiling:
            logger.warning(f"Lifetime request limit reached with this request ({count})")
        return count


class BudgetedBackendClient(BackendClient):
    """BackendClient decorator that charges every call to a RequestBudget.

    Composition - wraps any BackendClient, so every remote call path is
    metered regardless of which flow branch issued it.
    """

    def __init__(self, inner: BackendClient, budget: RequestBudget):
        self._inner = inner
        self._budget = budget

    @property
    def budget(self) -> RequestBudget:
        return self._budget

    async def register(self, token: str | None) -> RegisterResponse:
        await self._budget.consume()
        return await self._inner.register(token)

    async def resolve(self, user_id: str, token: str) -> ResolveResponse:
        await self._budget.consume()
        return await self._inner.resolve(user_id, token)

    async def associate(self, user_id: str, transaction_id: str) -> AssociateResponse:
        await self._budget.consume()
        return await self._inner.associate(user_id, transaction_id)

    async def close(self) -> None:
        await self._inner.close()
