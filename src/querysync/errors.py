"""Error taxonomy for transport failures and library errors."""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorKind(str, Enum):
    """Classification every transport failure is mapped to."""

    NETWORK = "network-error"
    CLIENT = "client-error"
    SERVER = "server-error"
    CREDENTIAL_REJECTED = "credential-rejected"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.NETWORK, ErrorKind.SERVER)


class SyncError(Exception):
    """Base class for querysync errors."""


class TransportError(SyncError):
    """A classified transport failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.message = message

    def __repr__(self) -> str:
        return (
            f"TransportError(kind={self.kind.value!r}, status={self.status!r}, "
            f"message={self.message!r})"
        )

    @property
    def is_credential_failure(self) -> bool:
        return self.kind is ErrorKind.CREDENTIAL_REJECTED


class AccessPolicyError(SyncError):
    """Raised for unknown policies or registry misuse."""


class SubscriptionClosed(SyncError):
    """Raised when awaiting a query handle that was unsubscribed."""


def classify_status(status: int) -> ErrorKind:
    """Map an HTTP-style status code to an error kind."""
    if status == 401:
        return ErrorKind.CREDENTIAL_REJECTED
    if 400 <= status < 500:
        return ErrorKind.CLIENT
    return ErrorKind.SERVER


def classify_exception(exc: BaseException) -> TransportError:
    """Map anything raised by a transport to exactly one TransportError.

    A TransportError is returned as is; anything else is wrapped, with the
    original exception as ``__cause__``.
    """
    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        error = TransportError(classify_status(status), str(exc), status=status)
    elif isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        error = TransportError(ErrorKind.NETWORK, str(exc) or type(exc).__name__)
    else:
        error = TransportError(ErrorKind.SERVER, str(exc) or type(exc).__name__)
    error.__cause__ = exc
    return error
