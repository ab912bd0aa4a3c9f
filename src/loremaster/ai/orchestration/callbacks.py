"""Fire-and-forget invocation of caller-supplied progress callbacks."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

__all__ = ["fire_and_forget", "CallbackGate"]

LOGGER = logging.getLogger(__name__)

# Strong references to scheduled callback tasks until they finish.
_PENDING: set[asyncio.Task[Any]] = set()


def fire_and_forget(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke ``callback`` without letting it affect the caller.

    Plain callables run inline; exceptions are logged and dropped. If the
    callback returns an awaitable it is scheduled on the running loop and
    never awaited by the caller.
    """

    if callback is None:
        return
    try:
        result = callback(*args)
    except Exception:
        LOGGER.debug("Progress callback %r raised", callback, exc_info=True)
        return
    if inspect.isawaitable(result):
        _schedule(result)


def _schedule(awaitable: Any) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        LOGGER.debug("Dropping awaitable callback result outside of an event loop")
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        return
    task = loop.create_task(_guard(awaitable))
    _PENDING.add(task)
    task.add_done_callback(_PENDING.discard)


async def _guard(awaitable: Any) -> None:
    try:
        await awaitable
    except asyncio.CancelledError:
        raise
    except Exception:
        LOGGER.debug("Async progress callback raised", exc_info=True)


class CallbackGate:
    """Forwards callbacks until closed.

    Once :meth:`close` is called, or the optional cancel token fires, no
    further callbacks are delivered.
    """

    __slots__ = ("_open", "_token")

    def __init__(self, cancel_token: Any = None) -> None:
        self._open = True
        self._token = cancel_token

    @property
    def is_open(self) -> bool:
        if self._token is not None and self._token.cancelled:
            return False
        return self._open

    def close(self) -> None:
        self._open = False

    def emit(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if self.is_open:
            fire_and_forget(callback, *args)
