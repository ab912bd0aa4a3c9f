"""Automatic continuation of responses cut off by the output token limit."""

from __future__ import annotations

import enum
import logging
from typing import Sequence

from .types import Message, StopReason

__all__ = [
    "CONTINUE_INSTRUCTION",
    "DEFAULT_MAX_CONTINUATIONS",
    "ContinuationController",
    "ContinuationState",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CONTINUATIONS = 5

CONTINUE_INSTRUCTION = (
    "Your previous response was cut off by the output length limit. Continue exactly where "
    "it stopped, without repeating anything you already wrote. Do not call tools again for "
    "results that are already available above."
)


class ContinuationState(str, enum.Enum):
    RUNNING = "running"
    CONTINUING = "continuing"
    DONE = "done"


class ContinuationController:
    """Decides whether a cycle ending in ``max_tokens`` gets another cycle.

    States move ``RUNNING -> CONTINUING -> RUNNING`` for each continuation and
    end in ``DONE``. Every ``max_tokens`` stop triggers a continuation until
    ``max_continuations`` have been issued; after that the turn is reported as
    truncated. Whether the truncated cycle produced tool calls does not matter.
    """

    def __init__(self, max_continuations: int = DEFAULT_MAX_CONTINUATIONS) -> None:
        if max_continuations < 0:
            raise ValueError("max_continuations must be >= 0")
        self._max = max_continuations
        self._used = 0
        self._state = ContinuationState.RUNNING
        self._truncated = False

    @property
    def state(self) -> ContinuationState:
        return self._state

    @property
    def continuations_used(self) -> int:
        return self._used

    @property
    def max_continuations(self) -> int:
        return self._max

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def done(self) -> bool:
        return self._state is ContinuationState.DONE

    def on_cycle_end(self, reason: StopReason) -> bool:
        """Record how a cycle ended; returns ``True`` when a continuation is due."""

        if self._state is not ContinuationState.RUNNING:
            raise RuntimeError(f"cycle ended while continuation state is {self._state.value}")
        if reason is StopReason.TOOL_USE:
            return False
        if reason is StopReason.MAX_TOKENS:
            if self._used < self._max:
                self._used += 1
                self._state = ContinuationState.CONTINUING
                LOGGER.info("Response truncated; continuation %d/%d", self._used, self._max)
                return True
            LOGGER.warning("Response still truncated after %d continuation(s)", self._used)
            self._truncated = True
        self._state = ContinuationState.DONE
        return False

    def build_request(self, transcript: Sequence[Message]) -> list[Message]:
        """Return the continuation request and move back to ``RUNNING``.

        ``transcript`` must already hold the partial assistant output, its tool
        calls and the tool results gathered so far.
        """

        if self._state is not ContinuationState.CONTINUING:
            raise RuntimeError("no continuation is pending")
        self._state = ContinuationState.RUNNING
        return [*transcript, self.instruction()]

    def finish(self) -> None:
        """Mark the controller done without a further cycle (error or cancel)."""
        self._state = ContinuationState.DONE

    @staticmethod
    def instruction() -> Message:
        return Message.user(CONTINUE_INSTRUCTION, continuation=True)

    @staticmethod
    def merge_text(prior: str, addition: str) -> str:
        """Continuation text is appended as-is; the model resumes mid-sentence."""
        return prior + addition
