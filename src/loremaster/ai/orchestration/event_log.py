"""Debug event logging for conversation runs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ...utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return Path.home() / ".loremaster" / "logs" / "events"


@dataclass(slots=True)
class _NullChatEventLogRun:
    """No-op implementation used when event logging is disabled."""

    path: Path | None = None

    def log_cycle(self, *_: Any, **__: Any) -> None:
        return

    def log_tool_batch(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class ChatEventLogRun:
    """Writes structured JSONL entries for one conversation turn."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry("start", context)

    def close(self) -> None:
        if self._file.closed:
            return
        try:
            self._file.close()
        except OSError:
            LOGGER.debug("Failed to close chat event log %s", self.path, exc_info=True)

    def log_cycle(
        self,
        *,
        iteration: int,
        continuation: bool,
        response_text: str,
        tool_calls: Sequence[Mapping[str, Any]] | None,
        stop_reason: str,
        detail: str | None = None,
    ) -> None:
        payload = {
            "iteration": iteration,
            "continuation": continuation,
            "response_text": response_text,
            "tool_calls": list(tool_calls or ()),
            "stop_reason": stop_reason,
            "detail": detail,
        }
        self._write_entry("cycle", payload)

    def log_tool_batch(self, *, iteration: int, results: Sequence[Mapping[str, Any]]) -> None:
        if not results:
            return
        self._write_entry("tools", {"iteration": iteration, "results": list(results)})

    def log_completion(self, *, turn: Mapping[str, Any]) -> None:
        if self._finalized:
            return
        payload = {
            "status": "cancelled" if turn.get("cancelled") else "success",
            "turn": dict(turn),
        }
        self._write_entry("completion", payload)
        self._finalized = True
        self.close()

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        if self._finalized:
            return
        payload: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            payload["details"] = dict(details)
        self._write_entry("failure", payload)
        self._finalized = True
        self.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                entry[key] = self._safe_json(value)
        if self._file.closed:
            return
        try:
            json.dump(entry, self._file, ensure_ascii=False)
            self._file.write("\n")
            self._file.flush()
        except OSError:
            LOGGER.warning("Chat event log %s stopped after a write failure", self.path, exc_info=True)
            self.close()

    def _safe_json(self, value: Any, *, depth: int = 0) -> Any:
        if depth > 6:
            return repr(value)
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, Mapping):
            return {str(key): self._safe_json(val, depth=depth + 1) for key, val in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._safe_json(item, depth=depth + 1) for item in value]
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return repr(value)


class ChatEventLogger:
    """Factory for per-turn event logs when debug event logging is enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_run(
        self,
        *,
        run_id: str,
        prompt: str,
        history_length: int,
        tools: Sequence[str],
        metadata: Mapping[str, Any] | None = None,
    ) -> ChatEventLogRun | _NullChatEventLogRun:
        if not self.enabled:
            return _NullChatEventLogRun()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(run_id)
            context = {
                "run_id": run_id,
                "prompt": prompt,
                "history_length": history_length,
                "tools": list(tools),
                "metadata": dict(metadata or {}),
            }
            log_run = ChatEventLogRun(path, context=context)
        except OSError:
            LOGGER.debug("Failed to start chat event log", exc_info=True)
            return _NullChatEventLogRun()
        LOGGER.debug("AI event log started: %s", path)
        return log_run

    def _allocate_path(self, run_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_run_id = "".join(ch for ch in run_id if ch.isalnum())[:16] or "run"
        return self._base_dir / f"chat-{timestamp}-{safe_run_id}.jsonl"


__all__ = [
    "ChatEventLogger",
    "ChatEventLogRun",
]
