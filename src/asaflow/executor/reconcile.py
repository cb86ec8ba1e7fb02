"""Interpretation of partial backend replies.

The backend does not always fill every field of its replies. The rules
that turn a partial reply into state changes live here, in one place, so
the heuristics stay auditable.

Attribution outcome (shared by register and resolve replies):

1. ``attribution_resolved is True``: the user is a campaign user exactly
   when ``originated is True``.
2. ``originated is False`` (resolved flag missing or false): the backend
   has ruled the user out; treated as resolved, non-campaign.
3. Anything else: no outcome, attribution stays unresolved.

A reply with ``attribution_resolved is True`` but no ``originated`` field is
read as non-campaign under rule 1. This is stricter than treating every
resolved reply as a campaign user unless the origin is explicitly false;
the stricter reading keeps the flow from linking purchases of users the
backend never confirmed. The orchestrator logs this case on its own.

User creation (register replies only), first matching rule wins:

1. EXPLICIT: a user id and ``user_created is True``.
2. INFERRED: a user id, the created flag missing or false, and rule 1 of
   the attribution outcome yields a campaign user. The backend omits the
   created flag in that case; it is logged separately so the compensation
   can be dropped once the backend is fixed.
3. NON_CAMPAIGN: ``originated is False``. Non-campaign users are not
   persisted server-side, so the client must not treat them as created.
4. UNCLEAR: nothing above applies.
"""

from __future__ import annotations

from dataclasses import dataclass

from asaflow.models import CreationBasis, RegisterResponse, ResolveResponse


def interpret_attribution(originated: bool | None, attribution_resolved: bool | None) -> bool | None:
    """
    Attribution outcome carried by a reply.

    Returns:
        True for a campaign user, False for a non-campaign user, None if the
        reply does not settle attribution
    """
    if attribution_resolved is True:
        return originated is True
    if originated is False:
        return False
    return None


@dataclass(frozen=True)
class RegistrationOutcome:
    """State changes implied by a register reply."""

    basis: CreationBasis
    user_id: str | None
    """Set only when the user must be recorded as created."""

    is_asa_user: bool | None
    """Attribution outcome, None when unresolved."""

    @property
    def user_created(self) -> bool:
        return self.user_id is not None

    @property
    def settles_registration(self) -> bool:
        """True if no further register call is needed: a user exists or the flow ends."""
        return self.user_created or self.is_asa_user is False


def reconcile_registration(response: RegisterResponse) -> RegistrationOutcome:
    """Apply the creation precedence rules to a register reply."""
    is_asa_user = interpret_attribution(response.originated, response.attribution_resolved)

    if response.user_id is not None and response.user_created is True:
        return RegistrationOutcome(CreationBasis.EXPLICIT, response.user_id, is_asa_user)

    if response.user_id is not None and response.attribution_resolved is True and is_asa_user:
        return RegistrationOutcome(CreationBasis.INFERRED, response.user_id, is_asa_user)

    if response.originated is False:
        return RegistrationOutcome(CreationBasis.NON_CAMPAIGN, None, False)

    return RegistrationOutcome(CreationBasis.UNCLEAR, None, is_asa_user)


def reconcile_resolution(response: ResolveResponse) -> bool | None:
    """Attribution outcome of a resolve reply (same rules as registration)."""
    return interpret_attribution(response.originated, response.attribution_resolved)
