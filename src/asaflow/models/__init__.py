"""Core data models for the attribution flow.

Defines the persisted flow snapshot, retry timing, backend replies and
the enumerations the orchestrator switches on.

Design: Dependency-Free Models
These types have no dependencies on storage, client or executor modules
to prevent circular imports and enable clean layering.
"""

from asaflow.models.responses import (
    AssociateResponse,
    AttributionResult,
    AttributionToken,
    AttributionUnavailable,
    RegisterResponse,
    ResolveResponse,
)
from asaflow.models.retry import BackoffPolicy, RetryRecord
from asaflow.models.state import FlowState
from asaflow.models.status import CreationBasis, FlowPhase, Operation

__all__ = [
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
]
