"""
asaflow: Client-side Apple Search Ads attribution flow

Registers a backend user for a fresh install, resolves whether the install
came from an Apple Search Ads campaign, and associates the first purchase
transaction with that user. All progress is persisted, so the flow resumes
across launches and never repeats a step that already succeeded.

Design Pattern: Façade Pattern
This module re-exports the pieces a host application needs, hiding the
storage, ledger and reconciliation details.

Example:
    ```python
    import asyncio
    from asaflow import FlowConfig, build_orchestrator

    async def main():
        config = FlowConfig.from_env()
        orchestrator = await build_orchestrator(config, MyAttributionProvider(), MyObserver())
        await orchestrator.start()
        await orchestrator.wait_idle()
        print(await orchestrator.debug_state())
        await orchestrator.close()

    asyncio.run(main())
    ```
"""

from asaflow.client import (
    AttributionProvider,
    BackendClient,
    BackendError,
    BackendStatusError,
    BudgetedBackendClient,
    BudgetExceededError,
    DecodeError,
    HttpBackendClient,
    RequestBudget,
    TransactionObserver,
    TransportError,
)
from asaflow.config import FlowConfig, open_store
from asaflow.executor import (
    DirectoryAgeDetector,
    FlowOrchestrator,
    RetryLedger,
    build_orchestrator,
)
from asaflow.models import (
    AssociateResponse,
    AttributionResult,
    AttributionToken,
    AttributionUnavailable,
    BackoffPolicy,
    CreationBasis,
    FlowPhase,
    FlowState,
    Operation,
    RegisterResponse,
    ResolveResponse,
    RetryRecord,
)
from asaflow.storage import (
    InMemoryStateStore,
    SqliteStateStore,
    StateStore,
    StorageError,
)

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "FlowOrchestrator",
    "build_orchestrator",
    "RetryLedger",
    "DirectoryAgeDetector",
    # Configuration
    "FlowConfig",
    "open_store",
    # Models
    "FlowState",
    "FlowPhase",
    "Operation",
    "CreationBasis",
    "BackoffPolicy",
    "RetryRecord",
    "AttributionResult",
    "AttributionToken",
    "AttributionUnavailable",
    "RegisterResponse",
    "ResolveResponse",
    "AssociateResponse",
    # Collaborators
    "AttributionProvider",
    "TransactionObserver",
    "BackendClient",
    "HttpBackendClient",
    "RequestBudget",
    "BudgetedBackendClient",
    # Errors
    "BackendError",
    "TransportError",
    "BackendStatusError",
    "DecodeError",
    "BudgetExceededError",
    # Storage
    "StateStore",
    "StorageError",
    "SqliteStateStore",
    "InMemoryStateStore",
]
