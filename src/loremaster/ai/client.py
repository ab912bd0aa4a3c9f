"""Async HTTP client streaming raw response bytes from the model backend."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from .orchestration.types import Message
from .wire import WireProtocol, build_request_payload

__all__ = ["AIClient", "ClientSettings", "TransportError", "ModelClient"]

LOGGER = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

# Overloaded / rate limited: the backend is busy rather than the cycle having failed.
RETRYABLE_STATUS_CODES = frozenset({429, 529})


class TransportError(Exception):
    """Non-2xx response from the model backend."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        detail = _error_detail(body)
        message = f"backend returned HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    protocol: WireProtocol = "anthropic"
    anthropic_version: str = ANTHROPIC_VERSION
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@runtime_checkable
class ModelClient(Protocol):
    """Structural interface the orchestrator depends on.

    Anything with a ``protocol`` attribute and a ``stream_chat`` async
    generator yielding raw byte chunks can stand in for :class:`AIClient`.
    """

    protocol: WireProtocol

    def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int = 8192,
        temperature: float | None = None,
    ) -> AsyncIterator[bytes]:
        ...


class AIClient:
    """Async client posting chat requests and streaming back raw bytes.

    Opening the stream is retried while the backend answers 429 or 529. Any
    other non-2xx status raises :class:`TransportError`; connection failures
    surface as :class:`httpx.HTTPError`. Neither is retried.
    """

    def __init__(self, settings: ClientSettings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def protocol(self) -> WireProtocol:
        return self._settings.protocol

    async def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int = 8192,
        temperature: float | None = None,
    ) -> AsyncIterator[bytes]:
        """Post ``messages`` and yield the response body chunk by chunk."""

        payload = build_request_payload(
            self.protocol,
            messages,
            model=self._settings.model,
            max_tokens=max_tokens,
            tools=tools,
            temperature=temperature,
            metadata=self._settings.metadata,
        )
        LOGGER.debug(
            "Starting streamed %s request via %s with %s message(s)",
            self.protocol,
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        response = await self._open_stream(payload)
        try:
            async for chunk in response.aiter_bytes():
                if chunk:
                    yield chunk
        finally:
            await response.aclose()

    async def _open_stream(self, payload: Mapping[str, Any]) -> httpx.Response:
        async for attempt in self._retrying():
            with attempt:
                request = self._http.build_request(
                    "POST",
                    self._endpoint(),
                    json=payload,
                    headers=self._headers(),
                )
                response = await self._http.send(request, stream=True)
                if response.status_code >= 400:
                    body = await response.aread()
                    await response.aclose()
                    raise TransportError(response.status_code, body.decode("utf-8", errors="replace"))
                return response
        raise RuntimeError("retry loop exited without a response")  # pragma: no cover

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(lambda exc: isinstance(exc, TransportError) and exc.retryable),
            before_sleep=_log_retry,
        )

    def _endpoint(self) -> str:
        base = str(self._http.base_url).rstrip("/")
        if self.protocol == "openai":
            return "/chat/completions"
        return "/messages" if base.endswith("/v1") else "/v1/messages"

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"content-type": "application/json"}
        if self.protocol == "anthropic":
            headers["anthropic-version"] = self._settings.anthropic_version
            if self._settings.api_key:
                headers["x-api-key"] = self._settings.api_key
        elif self._settings.api_key:
            headers["authorization"] = f"Bearer {self._settings.api_key}"
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        return headers

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""

        if self._owns_client:
            await self._http.aclose()


def _log_retry(state: RetryCallState) -> None:
    outcome = state.outcome
    error = outcome.exception() if outcome is not None else None
    LOGGER.warning("Backend busy (%s); retrying attempt %d", error, state.attempt_number + 1)


def _error_detail(body: str) -> str:
    if not body:
        return ""
    try:
        payload = json.loads(body)
    except ValueError:
        return body.strip()[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return body.strip()[:200]
