"""Collaborator contracts, remote call errors and the HTTP transport."""

from asaflow.client.base import (
    AttributionProvider,
    BackendClient,
    TransactionCallback,
    TransactionObserver,
)
from asaflow.client.budget import (
    DEFAULT_MAX_LIFETIME_REQUESTS,
    BudgetedBackendClient,
    RequestBudget,
)
from asaflow.client.errors import (
    BackendError,
    BackendStatusError,
    BudgetExceededError,
    DecodeError,
    TransportError,
)
from asaflow.client.http import HttpBackendClient

__all__ = [
    "AttributionProvider",
    "TransactionObserver",
    "TransactionCallback",
    "BackendClient",
    "HttpBackendClient",
    "RequestBudget",
    "BudgetedBackendClient",
    "DEFAULT_MAX_LIFETIME_REQUESTS",
    "BackendError",
    "TransportError",
    "BackendStatusError",
    "DecodeError",
    "BudgetExceededError",
]
