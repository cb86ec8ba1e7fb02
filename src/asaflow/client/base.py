"""
Collaborator contracts consumed by the orchestrator.

Design Principle: Dependency Inversion (SOLID)
The orchestrator depends on these abstractions. The platform attribution
lookup and the platform transaction queue are implemented by the host;
the backend is usually HttpBackendClient wrapped in BudgetedBackendClient.

Design Principle: Interface Segregation (SOLID)
Each collaborator exposes only the calls the flow needs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable

from asaflow.models import (
    AssociateResponse,
    AttributionResult,
    RegisterResponse,
    ResolveResponse,
)

TransactionCallback = Callable[[str], None]


class AttributionProvider(ABC):
    """Source of campaign attribution tokens."""

    @abstractmethod
    async def fetch_attribution(self) -> AttributionResult:
        """
        Look up the attribution token once.

        No retries at this layer; the orchestrator decides when to ask again.

        Returns:
            AttributionToken, or AttributionUnavailable with a reason
        """
        pass


class TransactionObserver(ABC):
    """Source of the original purchase transaction id.

    Delivers at most one id per start()/stop() cycle, at any time and from
    any thread. Must accept start() again after stop().
    """

    @abstractmethod
    def start(self, on_captured: TransactionCallback) -> None:
        """Begin observing; call on_captured with the transaction id."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop observing; later deliveries are ignored by the orchestrator."""
        pass


class BackendClient(ABC):
    """The three remote calls of the attribution flow.

    Each call is a single attempt. Failures raise BackendError subclasses;
    anything else returned is a decoded reply, however partial.
    """

    @abstractmethod
    async def register(self, token: str | None) -> RegisterResponse:
        """Register a user, optionally resolving attribution in the same call."""
        pass

    @abstractmethod
    async def resolve(self, user_id: str, token: str) -> ResolveResponse:
        """Resolve campaign attribution for an existing user."""
        pass

    @abstractmethod
    async def associate(self, user_id: str, transaction_id: str) -> AssociateResponse:
        """Link the purchase to the user record."""
        pass

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None
