"""Shared helpers for talking to the served application over httpx."""

from __future__ import annotations

from typing import Any

import httpx

from marginalia.errors import NotFoundError, PersistenceRejected, TransientNetworkError

_RETRYABLE_STATUS = frozenset({408, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS or 500 <= status_code <= 599


def _error_message(response: httpx.Response) -> str:
    message = f"HTTP {response.status_code}"
    try:
        data = response.json()
    except ValueError:
        return message
    if isinstance(data, dict):
        detail = data.get("error") or data.get("message")
        if isinstance(detail, str) and detail.strip():
            return f"{message}: {detail.strip()}"
    return message


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    entity: str = "resource",
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Send a request and decode a JSON object response.

    Args:
        client: The shared async client.
        method: HTTP method.
        url: Path relative to the client's base URL.
        entity: Label used in :class:`NotFoundError` for 404 responses.
        **kwargs: Forwarded to :meth:`httpx.AsyncClient.request`.

    Returns:
        The decoded body, or an empty dict for an empty body.

    Raises:
        TransientNetworkError: Connection failures, timeouts, 408/429 and 5xx.
        NotFoundError: 404 responses.
        PersistenceRejected: Any other non-2xx response or a non-object body.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientNetworkError(f"{method} {url} timed out") from exc
    except httpx.RequestError as exc:
        raise TransientNetworkError(f"{method} {url} failed: {exc}") from exc

    if response.status_code >= 400:
        message = _error_message(response)
        if is_retryable_status(response.status_code):
            raise TransientNetworkError(f"{method} {url}: {message}")
        if response.status_code == 404:
            params = kwargs.get("params") or {}
            raise NotFoundError(entity, str(params.get("id", url)))
        raise PersistenceRejected(f"{method} {url}: {message}")

    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError as exc:
        raise PersistenceRejected(f"{method} {url}: response is not JSON") from exc
    if not isinstance(data, dict):
        raise PersistenceRejected(f"{method} {url}: expected a JSON object")
    return data
