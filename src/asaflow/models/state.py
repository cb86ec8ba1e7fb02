"""
FlowState is the persisted progress record of one installed app.

Design principles:
- Snapshot value object: stores hand out copies, never live references
- Derived queries (should_terminate, can_associate, phase) are computed,
  not stored, so they can never disagree with the underlying fields
"""

from dataclasses import dataclass

from asaflow.models.status import FlowPhase


@dataclass(frozen=True)
class FlowState:
    """
    Snapshot of the attribution flow.

    Compound fields are always written together by the store:
    - user_created / user_id
    - attribution_resolved / is_asa_user
    - transaction_captured / original_transaction_id
    - install_type_resolved / is_first_install
    """

    user_created: bool = False
    user_id: str | None = None

    attribution_resolved: bool = False
    is_asa_user: bool = False
    """Only meaningful when attribution_resolved is True."""

    transaction_captured: bool = False
    original_transaction_id: str | None = None

    association_complete: bool = False

    install_type_resolved: bool = False
    is_first_install: bool = False

    @property
    def should_terminate(self) -> bool:
        """No further remote calls: non-campaign user, or flow complete."""
        return (self.attribution_resolved and not self.is_asa_user) or self.association_complete

    @property
    def can_associate(self) -> bool:
        """All inputs of the associate call are present."""
        return (
            self.user_created
            and self.attribution_resolved
            and self.is_asa_user
            and self.transaction_captured
            and self.user_id is not None
            and self.original_transaction_id is not None
        )

    @property
    def phase(self) -> FlowPhase:
        """Lifecycle phase derived from the stored fields."""
        if self.association_complete:
            return FlowPhase.TERMINAL_COMPLETE
        if self.attribution_resolved and not self.is_asa_user:
            return FlowPhase.TERMINAL_NON_ASA
        if not self.user_created:
            return FlowPhase.NO_USER
        if not self.attribution_resolved:
            return FlowPhase.USER_PENDING_ATTRIBUTION
        if not self.transaction_captured:
            return FlowPhase.ASA_AWAITING_TRANSACTION
        return FlowPhase.AWAITING_ASSOCIATION

    def describe(self) -> str:
        """Multi-line dump for debugging."""
        return "\n".join(
            [
                "Attribution flow state:",
                f"- User Created: {self.user_created}",
                f"- Attribution Resolved: {self.attribution_resolved}",
                f"- Is ASA User: {self.is_asa_user}",
                f"- Transaction Captured: {self.transaction_captured}",
                f"- Association Complete: {self.association_complete}",
                f"- User ID: {self.user_id}",
                f"- Original Transaction ID: {self.original_transaction_id}",
                f"- Install Type Resolved: {self.install_type_resolved}",
                f"- Is First Install: {self.is_first_install}",
                f"- Phase: {self.phase}",
                f"- Should Terminate: {self.should_terminate}",
                f"- Can Associate: {self.can_associate}",
            ]
        )
