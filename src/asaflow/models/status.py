"""Enumerations for attribution flow tracking.

Defines the remote operation kinds the retry ledger is keyed by and the
lifecycle phases a flow moves through. Phases are derived from the
persisted FlowState, never stored on their own.
"""

from enum import Enum


class Operation(Enum):
    """Remote operation kind.

    Each kind has its own retry record in the ledger, so a failing
    association never delays attribution resolution and vice versa.
    """

    CREATE_USER = "create_user"
    """Register a user with the backend (optionally with a token)."""

    RESOLVE_ATTRIBUTION = "resolve_attribution"
    """Resolve campaign attribution for an existing user."""

    ASSOCIATE_USER = "associate_user"
    """Link the captured transaction to the user record."""

    def __str__(self) -> str:
        return self.value


class FlowPhase(Enum):
    """Lifecycle phase of the attribution flow.

    Lifecycle:
        NO_USER → USER_PENDING_ATTRIBUTION → ASA_AWAITING_TRANSACTION
        → AWAITING_ASSOCIATION → TERMINAL_COMPLETE

        USER_PENDING_ATTRIBUTION → TERMINAL_NON_ASA

    Transaction capture is orthogonal: it can land in any phase and only
    moves ASA_AWAITING_TRANSACTION forward to AWAITING_ASSOCIATION.
    """

    NO_USER = "NO_USER"
    USER_PENDING_ATTRIBUTION = "USER_PENDING_ATTRIBUTION"
    ASA_AWAITING_TRANSACTION = "ASA_AWAITING_TRANSACTION"
    AWAITING_ASSOCIATION = "AWAITING_ASSOCIATION"
    TERMINAL_NON_ASA = "TERMINAL_NON_ASA"
    TERMINAL_COMPLETE = "TERMINAL_COMPLETE"

    @property
    def is_terminal(self) -> bool:
        """Check if no further remote calls are allowed in this phase."""
        return self in (FlowPhase.TERMINAL_NON_ASA, FlowPhase.TERMINAL_COMPLETE)

    def __str__(self) -> str:
        return self.value


class CreationBasis(Enum):
    """Why a register response was (or was not) treated as a created user."""

    EXPLICIT = "EXPLICIT"
    """Backend set the created flag."""

    INFERRED = "INFERRED"
    """Created flag missing, but the response resolved a campaign user."""

    NON_CAMPAIGN = "NON_CAMPAIGN"
    """User did not originate from the campaign and is not persisted."""

    UNCLEAR = "UNCLEAR"
    """Nothing in the response allows a decision."""

    def __str__(self) -> str:
        return self.value
