"""Dispatch completed tool calls to their registered handlers.

:meth:`ToolDispatcher.dispatch` is total: whatever goes wrong (unknown tool,
unparseable arguments, schema violations, handler exceptions, timeouts,
cancellation) comes back as a :class:`ToolFailure`, never as an exception.
The only exception that escapes is :class:`asyncio.CancelledError` when the
awaiting task itself is cancelled.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from typing import Any, Mapping

from ..types import DocumentPreview, ToolCall
from .registry import ToolRegistration, ToolRegistry
from .results import ToolFailure, ToolResult
from .types import CancelToken, ToolContext, ToolInvocation

__all__ = ["ToolDispatcher", "parse_tool_arguments", "MAX_SCHEMA_ERRORS"]

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 3


class _DispatchCancelled(Exception):
    pass


class _DispatchTimeout(Exception):
    pass


def parse_tool_arguments(arguments: str) -> dict[str, Any]:
    """Parse tool arguments from a JSON string.

    Raises:
        ValueError: If the text is not a JSON object.
    """
    if not arguments or arguments.strip() in ("", "{}"):
        return {}

    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid JSON ({e.msg} at position {e.pos})") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


class ToolDispatcher:
    """Runs :class:`ToolCall` objects against a :class:`ToolRegistry`."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        timeout_seconds: float | None = 30.0,
        validate_arguments: bool = True,
    ) -> None:
        self._registry = registry
        self._timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
        self._validate = validate_arguments

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def dispatch(
        self,
        call: ToolCall,
        *,
        context: ToolContext | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ToolResult:
        start_time = time.perf_counter()
        result = await self._dispatch(call, context or ToolContext(), cancel_token or CancelToken())
        duration_ms = (time.perf_counter() - start_time) * 1000
        return result.with_duration(duration_ms)

    def preview(self, call: ToolCall) -> DocumentPreview | None:
        """Extract a live preview from the partial arguments of ``call``."""

        registration = self._registry.get_registration(call.name)
        if registration is None or registration.spec.preview is None:
            return None
        try:
            extracted = registration.spec.preview(call.arguments)
        except Exception:
            LOGGER.debug("Preview extraction failed for %s", call.name, exc_info=True)
            return None
        if not extracted:
            return None
        title, html = extracted
        return DocumentPreview(call_id=call.id, tool_name=call.name, title=title, html=html)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _dispatch(self, call: ToolCall, context: ToolContext, token: CancelToken) -> ToolResult:
        registration = self._registry.get_registration(call.name)
        if registration is None:
            LOGGER.warning("Model requested unknown tool %r", call.name)
            call.mark_error()
            return self._failure(call, f"unknown tool: {call.name or '<unnamed>'}")
        if token.cancelled:
            return self._failure(call, "cancelled")

        arguments, recovered, problem = self._prepare_arguments(call, registration)
        if problem is not None:
            LOGGER.warning("Rejected arguments for tool %s: %s", call.name, problem)
            call.mark_error()
            return self._failure(call, f"malformed arguments: {problem}")

        invocation = ToolInvocation(
            call_id=call.id,
            tool_name=call.name,
            cancel_token=token,
            context=context,
            arguments_recovered=recovered,
        )
        try:
            result = await self._run(registration, arguments, invocation, token)
        except _DispatchTimeout:
            LOGGER.warning("Tool %s timed out after %.1fs", call.name, self._timeout or 0.0)
            return self._failure(call, f"timed out after {self._timeout or 0.0:g}s")
        except _DispatchCancelled:
            LOGGER.debug("Tool %s cancelled", call.name)
            return self._failure(call, "cancelled")
        except Exception as e:
            error_msg = str(e) if str(e) else type(e).__name__
            LOGGER.warning("Tool %s failed: %s", call.name, error_msg)
            return self._failure(call, error_msg)

        if not isinstance(result, ToolResult):
            LOGGER.warning("Tool %s returned %s instead of a ToolResult", call.name, type(result).__name__)
            return self._failure(call, f"tool returned unsupported result type {type(result).__name__}")
        if result.call_id != call.id or result.tool_name != call.name:
            result = dataclasses.replace(result, call_id=call.id, tool_name=call.name)
        return result

    def _prepare_arguments(
        self, call: ToolCall, registration: ToolRegistration
    ) -> tuple[dict[str, Any], bool, str | None]:
        recovered = False
        try:
            arguments = parse_tool_arguments(call.arguments)
        except ValueError as exc:
            salvaged = self._recover(call, registration)
            if salvaged is None:
                return {}, False, str(exc)
            arguments = salvaged
            recovered = True
            LOGGER.info("Recovered truncated arguments for tool %s", call.name)

        if self._validate and registration.validator is not None:
            issues = []
            for issue in registration.validator.iter_errors(arguments):
                path = ".".join(str(part) for part in issue.absolute_path)
                issues.append(f"{path}: {issue.message}" if path else issue.message)
                if len(issues) >= MAX_SCHEMA_ERRORS:
                    break
            if issues:
                return arguments, recovered, "; ".join(issues)
        return arguments, recovered, None

    def _recover(self, call: ToolCall, registration: ToolRegistration) -> dict[str, Any] | None:
        recover = registration.spec.recover_arguments
        if recover is None:
            return None
        try:
            salvaged = recover(call.arguments)
        except Exception:
            LOGGER.debug("Argument recovery failed for %s", call.name, exc_info=True)
            return None
        if not isinstance(salvaged, Mapping):
            return None
        return dict(salvaged)

    async def _run(
        self,
        registration: ToolRegistration,
        arguments: Mapping[str, Any],
        invocation: ToolInvocation,
        token: CancelToken,
    ) -> Any:
        handler_task = asyncio.ensure_future(registration.tool.execute(arguments, invocation))
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {handler_task, cancel_task},
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            handler_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if handler_task in done:
            return handler_task.result()
        handler_task.cancel()
        handler_task.add_done_callback(_consume_outcome)
        if cancel_task in done:
            raise _DispatchCancelled()
        raise _DispatchTimeout()

    @staticmethod
    def _failure(call: ToolCall, error: str) -> ToolFailure:
        return ToolFailure(call_id=call.id, tool_name=call.name, error=error)


def _consume_outcome(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.debug("Abandoned tool task finished with %r", exc)
