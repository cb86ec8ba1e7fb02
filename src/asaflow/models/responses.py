"""Backend response payloads and attribution lookup results.

Every field the backend may omit is optional: the orchestrator's
reconciliation rules decide what a partial response means, the decoding
here only checks shapes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


def _optional_bool(payload: dict[str, Any], key: str) -> bool | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise TypeError(f"field {key!r} must be a boolean, got {type(value).__name__}")
    return value


def _optional_id(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    # bool is an int subclass; an id of True is a shape error
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise TypeError(f"field {key!r} must be an integer or string id")
    return str(value)


def _require_mapping(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise TypeError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


@dataclass(frozen=True)
class AttributionToken:
    """Opaque campaign attribution token from the platform."""

    token: str


@dataclass(frozen=True)
class AttributionUnavailable:
    """The platform could not supply a token."""

    reason: str


AttributionResult = AttributionToken | AttributionUnavailable


@dataclass(frozen=True)
class RegisterResponse:
    """Reply to a register call.

    Any of the fields may be missing; see reconcile_registration for how
    partial replies are interpreted.
    """

    user_id: str | None = None
    originated: bool | None = None
    attribution_resolved: bool | None = None
    user_created: bool | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> RegisterResponse:
        """Decode the backend JSON object.

        Raises:
            TypeError: If the payload or one of its fields has the wrong shape
        """
        data = _require_mapping(payload)
        return cls(
            user_id=_optional_id(data, "userId"),
            originated=_optional_bool(data, "didUserComeFromAsa"),
            attribution_resolved=_optional_bool(data, "asaAttributionResolved"),
            user_created=_optional_bool(data, "userCreated"),
        )


@dataclass(frozen=True)
class ResolveResponse:
    """Reply to a resolve call."""

    originated: bool | None = None
    attribution_resolved: bool | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> ResolveResponse:
        data = _require_mapping(payload)
        return cls(
            originated=_optional_bool(data, "didUserComeFromAsa"),
            attribution_resolved=_optional_bool(data, "asaAttributionResolved"),
        )


@dataclass(frozen=True)
class AssociateResponse:
    """Reply to an associate call.

    Only an explicit ``success=True`` completes the flow.
    """

    success: bool | None = None
    confirmed_user_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> AssociateResponse:
        data = _require_mapping(payload)
        user = data.get("user")
        confirmed = None
        if user is not None:
            confirmed = _optional_id(_require_mapping(user), "id")
        return cls(success=_optional_bool(data, "success"), confirmed_user_id=confirmed)
