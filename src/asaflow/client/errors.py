"""
Remote call failures.

Taxonomy:
- TransportError: the request never produced an HTTP reply
- BackendStatusError: the backend answered with a non-success status
- DecodeError: the reply could not be decoded into the expected shape
- BudgetExceededError: the lifetime request budget is spent; raised
  locally, the network is never contacted

The first three are retryable and are booked against the operation's
retry ledger entry. BudgetExceededError is not.
"""

from __future__ import annotations


class BackendError(Exception):
    """
    Base class for remote call failures.

    Example:
        try:
            await backend.register(token)
        except BackendError as e:
            if e.is_retryable():
                await ledger.record_failure(Operation.CREATE_USER)
    """

    def is_retryable(self) -> bool:
        """
        Returns true if a later attempt of the same call may succeed.

        Returns:
            True if retryable, False if permanent
        """
        return True


class TransportError(BackendError):
    """Network failure: connection refused, timeout, TLS error."""

    pass


class BackendStatusError(BackendError):
    """Backend replied with a 4xx/5xx status."""

    def __init__(self, status_code: int, message: str | None = None):
        self.status_code = status_code
        self.message = message
        if message:
            super().__init__(f"backend error ({status_code}): {message}")
        else:
            super().__init__(f"unexpected status code: {status_code}")


class DecodeError(BackendError):
    """Reply body was not valid JSON or did not have the expected shape."""

    pass


class BudgetExceededError(BackendError):
    """Lifetime request ceiling reached; no request was sent."""

    def __init__(self, count: int, ceiling: int):
        self.count = count
        self.ceiling = ceiling
        super().__init__(f"lifetime request limit exceeded ({count}/{ceiling})")

    def is_retryable(self) -> bool:
        return False
