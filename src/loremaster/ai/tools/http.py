"""Shared plumbing for tool backends reached over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

__all__ = ["BackendError", "HttpBackend", "describe_http_error"]

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class BackendError(Exception):
    """A tool backend could not answer; the message is shown to the model."""


def describe_http_error(exc: httpx.HTTPError) -> str:
    """Short, model-readable description of a failed backend request."""

    if isinstance(exc, httpx.HTTPStatusError):
        body = exc.response.text.strip()[:200]
        message = f"HTTP {exc.response.status_code}"
        return f"{message}: {body}" if body else message
    if isinstance(exc, httpx.TimeoutException):
        return "request timed out"
    return str(exc) or type(exc).__name__


class HttpBackend:
    """Base for backends that GET JSON documents from a local service.

    The underlying :class:`httpx.AsyncClient` is created lazily unless one is
    supplied, in which case the caller keeps ownership of it.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
            self._owns_client = True
        return self._client

    async def _get_json(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        """GET ``path`` and decode the JSON body.

        Raises:
            BackendError: On connection failures, non-2xx responses, or a
                body that is not JSON.
        """
        client = self._get_http_client()
        query = {key: value for key, value in (params or {}).items() if value is not None}
        url = path if self._client_has_base(client) else f"{self._base_url}{path}"
        LOGGER.debug("GET %s %s", url, query)
        try:
            response = await client.get(url, params=query)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise BackendError(describe_http_error(exc)) from exc
        except ValueError as exc:
            raise BackendError(f"invalid JSON from {path}") from exc

    def _client_has_base(self, client: httpx.AsyncClient) -> bool:
        return bool(str(client.base_url).strip("/"))

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
