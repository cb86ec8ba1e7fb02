"""
Executor module - Runtime engine for the attribution flow.

This module contains the execution components:
- orchestrator: Single-flight message loop (FlowOrchestrator)
- ledger: Per-operation retry/backoff bookkeeping (RetryLedger)
- reconcile: Interpretation of partial backend replies
- install: First-install detection
"""

from asaflow.executor.install import (
    FRESH_INSTALL_WINDOW,
    DirectoryAgeDetector,
    InstallTypeDetector,
    resolve_install_type,
)
from asaflow.executor.ledger import RetryLedger
from asaflow.executor.orchestrator import (
    AssociateFinished,
    Evaluate,
    FlowOrchestrator,
    RegisterFinished,
    ResolveFinished,
    TransactionCaptured,
    build_orchestrator,
)
from asaflow.executor.reconcile import (
    RegistrationOutcome,
    interpret_attribution,
    reconcile_registration,
    reconcile_resolution,
)

__all__ = [
    # Orchestrator
    "FlowOrchestrator",
    "build_orchestrator",
    # Messages
    "Evaluate",
    "RegisterFinished",
    "ResolveFinished",
    "AssociateFinished",
    "TransactionCaptured",
    # Ledger
    "RetryLedger",
    # Reconciliation
    "RegistrationOutcome",
    "interpret_attribution",
    "reconcile_registration",
    "reconcile_resolution",
    # Install type
    "FRESH_INSTALL_WINDOW",
    "DirectoryAgeDetector",
    "InstallTypeDetector",
    "resolve_install_type",
]
