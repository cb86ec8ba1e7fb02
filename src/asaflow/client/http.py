"""HTTP backend client.

Implements the three remote calls as JSON POSTs against the attribution
backend's function endpoints:

- create-user              {asa_attribution_token?}
- resolve-asa-attribution  {user_id, asa_attribution_token}
- associate-user           {user_id, transaction_id}

Each call is a single attempt; retry timing belongs to the orchestrator.
Wrap the client in BudgetedBackendClient so every call is metered.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

import httpx

from asaflow.client.base import BackendClient
from asaflow.client.errors import BackendStatusError, DecodeError, TransportError
from asaflow.models import AssociateResponse, RegisterResponse, ResolveResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 30.0


def _wire_user_id(user_id: str) -> int | str:
    """Backend user ids are integers; keep anything else as given."""
    return int(user_id) if user_id.isdecimal() else user_id


class HttpBackendClient(BackendClient):
    """httpx-based BackendClient.

    Usage:
        client = HttpBackendClient("https://example.test/functions/v1", api_key="...")
        try:
            response = await client.register(token=None)
        finally:
            await client.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Root of the function endpoints
            api_key: Sent in the ``apikey`` header
            timeout: Per-request timeout in seconds
            http_client: Preconfigured client (tests pass one with a MockTransport)
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    def __repr__(self) -> str:
        return f"HttpBackendClient({self._base_url})"

    async def register(self, token: str | None) -> RegisterResponse:
        body: dict[str, Any] = {}
        if token is not None:
            body["asa_attribution_token"] = token
        return await self._post("create-user", body, RegisterResponse.from_payload)

    async def resolve(self, user_id: str, token: str) -> ResolveResponse:
        body = {"user_id": _wire_user_id(user_id), "asa_attribution_token": token}
        return await self._post("resolve-asa-attribution", body, ResolveResponse.from_payload)

    async def associate(self, user_id: str, transaction_id: str) -> AssociateResponse:
        body = {"user_id": _wire_user_id(user_id), "transaction_id": transaction_id}
        return await self._post("associate-user", body, AssociateResponse.from_payload)

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _post(self, endpoint: str, body: dict[str, Any], decode: Callable[[Any], T]) -> T:
        """POST a JSON body and decode the reply.

        Raises:
            TransportError: No reply was received
            BackendStatusError: Reply status was not 200/201
            DecodeError: Reply body was not the expected JSON shape
        """
        url = f"{self._base_url}/{endpoint}"
        try:
            response = await self._http.post(
                url,
                json=body,
                headers={"apikey": self._api_key},
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"request to {endpoint} timed out") from e
        except httpx.RequestError as e:
            raise TransportError(f"request to {endpoint} failed: {e}") from e

        logger.debug(f"POST {endpoint} -> {response.status_code}")

        if response.status_code not in (200, 201):
            raise BackendStatusError(response.status_code, self._error_message(response))

        try:
            return decode(response.json())
        except ValueError as e:
            raise DecodeError(f"invalid JSON from {endpoint}: {e}") from e
        except TypeError as e:
            raise DecodeError(f"unexpected reply shape from {endpoint}: {e}") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str | None:
        """Extract ``{"error": "..."}`` from an error reply, if present."""
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("error"), str):
            return payload["error"]
        return None
