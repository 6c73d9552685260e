"""Transport: one network call per described request."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import httpx

from querysync.errors import (
    ErrorKind,
    TransportError,
    classify_exception,
    classify_status,
)


@runtime_checkable
class Transport(Protocol):
    """Async transport interface. Owns no cache.

    Implementations raise TransportError (or anything classify_exception
    understands) on failure.
    """

    async def send(self, method: str, path: str, payload: Any = None) -> Any:
        """Issue a single call and return the decoded result."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for field in ("error", "message", "detail"):
            if isinstance(body.get(field), str):
                return str(body[field])
    return f"HTTP {response.status_code}"


class HttpTransport:
    """Transport over an httpx.AsyncClient.

    GET and DELETE payloads are sent as query parameters, everything else as
    a JSON body.
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Accept": "application/json", **(headers or {})},
            timeout=timeout,
        )

    async def send(self, method: str, path: str, payload: Any = None) -> Any:
        method = method.upper()
        try:
            if method in ("GET", "DELETE"):
                response = await self._client.request(method, path, params=payload)
            else:
                response = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise classify_exception(e) from e

        if not response.is_success:
            raise TransportError(
                classify_status(response.status_code),
                _error_message(response),
                status=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                ErrorKind.SERVER,
                "Response body is not valid JSON",
                status=response.status_code,
            ) from e

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
