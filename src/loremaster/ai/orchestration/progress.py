"""Append-only progress log for a running turn."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from .callbacks import fire_and_forget

__all__ = ["ThinkingStep", "ThinkingStepType", "ProgressRecorder", "ProgressObserver"]

LOGGER = logging.getLogger(__name__)


class ThinkingStepType:
    """Standard step types recorded by the orchestrator."""

    TURN_STARTED = "turn_started"
    STREAMING = "streaming"
    ITERATION = "iteration"
    TOOL_STARTED = "tool_started"
    TOOL_FINISHED = "tool_finished"
    CONTINUATION = "continuation"
    TURN_FINISHED = "turn_finished"


@dataclass(slots=True, frozen=True)
class ThinkingStep:
    """One entry of the progress log.

    Attributes:
        type: Step type, see :class:`ThinkingStepType`.
        iteration: Request cycle the step belongs to (1-based).
        tool_name: Tool involved, if any.
        detail: Free-form description.
        timestamp_ms: Milliseconds since the epoch; non-decreasing within a log.
    """

    type: str
    iteration: int = 0
    tool_name: str | None = None
    detail: str | None = None
    timestamp_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "iteration": self.iteration,
            "tool_name": self.tool_name,
            "detail": self.detail,
            "timestamp_ms": self.timestamp_ms,
        }


ProgressObserver = Callable[[ThinkingStep], Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


class ProgressRecorder:
    """Collects :class:`ThinkingStep` entries in append order.

    Timestamps are clamped so they never run backwards, even if the wall clock
    does. The optional observer is notified fire-and-forget; it cannot fail or
    slow down the turn that is recording.
    """

    def __init__(self, observer: ProgressObserver | None = None, *, clock: Callable[[], int] = _now_ms) -> None:
        self._observer = observer
        self._clock = clock
        self._steps: list[ThinkingStep] = []
        self._last_ms = 0
        self._lock = threading.Lock()

    def record(self, step: ThinkingStep) -> ThinkingStep:
        with self._lock:
            stamp = max(self._last_ms, step.timestamp_ms or self._clock())
            if stamp != step.timestamp_ms:
                step = ThinkingStep(
                    type=step.type,
                    iteration=step.iteration,
                    tool_name=step.tool_name,
                    detail=step.detail,
                    timestamp_ms=stamp,
                )
            self._last_ms = stamp
            self._steps.append(step)
        fire_and_forget(self._observer, step)
        return step

    def step(
        self,
        type: str,
        *,
        iteration: int = 0,
        tool_name: str | None = None,
        detail: str | None = None,
    ) -> ThinkingStep:
        """Record a step stamped with the current time."""
        return self.record(ThinkingStep(type=type, iteration=iteration, tool_name=tool_name, detail=detail))

    def silence(self) -> None:
        """Stop notifying the observer; steps are still recorded."""
        self._observer = None

    @property
    def steps(self) -> tuple[ThinkingStep, ...]:
        with self._lock:
            return tuple(self._steps)

    def __len__(self) -> int:
        return len(self._steps)
