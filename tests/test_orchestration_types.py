"""Unit tests for orchestration types."""

from __future__ import annotations

import asyncio

import pytest

from loremaster.ai.orchestration.tools import CancelToken, DataQueryResult, ToolFailure
from loremaster.ai.orchestration.types import (
    ConversationTurn,
    DocumentPreview,
    Message,
    ToolCall,
    ToolCallStatus,
    TurnConfig,
)
from loremaster.services.settings import Settings


# =============================================================================
# Message Tests
# =============================================================================


class TestMessage:
    def test_factories(self) -> None:
        assert Message.system("rules").role == "system"
        assert Message.user("hi", continuation=True).metadata == {"continuation": True}
        assert Message.assistant("ok", tool_calls=[]).tool_calls is None

    def test_tool_message_chat_param(self) -> None:
        message = Message.tool('{"rows": []}', tool_call_id="call_1", name="query_data", is_error=False)

        assert message.to_chat_param() == {"role": "tool", "content": '{"rows": []}', "tool_call_id": "call_1"}

    def test_chat_param_round_trip_keeps_tool_calls(self) -> None:
        call = {"id": "c1", "type": "function", "function": {"name": "lookup", "arguments": "{}"}}
        message = Message.assistant("Checking.", tool_calls=[call])

        restored = Message.from_chat_param(message.to_chat_param())

        assert restored.tool_calls == (call,)
        assert restored.content == "Checking."

    def test_messages_are_immutable(self) -> None:
        message = Message.user("hi")

        with pytest.raises(AttributeError):
            message.content = "changed"  # type: ignore[misc]


# =============================================================================
# ToolCall Tests
# =============================================================================


class TestToolCall:
    def test_fragments_accumulate_until_ready(self) -> None:
        call = ToolCall(id="toolu_1", name="lookup")
        call.append('{"key": ')
        call.append('"x"}')
        call.mark_ready()

        assert call.is_ready
        assert call.arguments == '{"key": "x"}'
        with pytest.raises(RuntimeError, match="already ready"):
            call.append("more")

    def test_empty_arguments_render_as_object(self) -> None:
        call = ToolCall(id="toolu_2", name="lookup", status=ToolCallStatus.ERROR)

        assert call.to_chat_param()["function"]["arguments"] == "{}"
        assert not call.is_ready


# =============================================================================
# TurnConfig Tests
# =============================================================================


class TestTurnConfig:
    def test_defaults(self) -> None:
        config = TurnConfig()

        assert (config.max_iterations, config.max_continuations, config.max_output_tokens) == (8, 5, 8192)
        assert config.system_prompt is None
        assert not config.replay_raw_history

    def test_with_updates_returns_new_config(self) -> None:
        config = TurnConfig()

        updated = config.with_updates(max_iterations=2, system_prompt="Be brief.")

        assert updated.max_iterations == 2
        assert updated.system_prompt == "Be brief."
        assert config.max_iterations == 8

    def test_from_settings_clamps_values(self) -> None:
        settings = Settings(max_tool_iterations=0, max_continuations=-3, max_output_tokens=2048, tool_timeout=5)

        config = TurnConfig.from_settings(settings, temperature=0.1)

        assert config.max_iterations == 1
        assert config.max_continuations == 0
        assert config.max_output_tokens == 2048
        assert config.tool_timeout_seconds == 5.0
        assert config.temperature == 0.1


# =============================================================================
# ConversationTurn Tests
# =============================================================================


class TestConversationTurn:
    def test_history_messages(self) -> None:
        raw = (Message.assistant("", tool_calls=[{"id": "t1"}]), Message.tool("{}", tool_call_id="t1"))
        turn = ConversationTurn(id="turn-1", role="assistant", text="Answer", raw_messages=raw)

        assert turn.history_messages() == [Message.assistant("Answer")]
        assert turn.history_messages(replay_raw=True) == list(raw)
        assert ConversationTurn.user("").history_messages() == []
        assert ConversationTurn(id="t", role="assistant", text="").history_messages() == []

    def test_succeeded(self) -> None:
        assert ConversationTurn(id="t", role="assistant", text="x").succeeded
        assert not ConversationTurn(id="t", role="assistant", text="x", error="boom").succeeded
        assert not ConversationTurn(id="t", role="assistant", text="x", cancelled=True).succeeded

    def test_to_dict(self) -> None:
        results = (
            DataQueryResult(call_id="c1", tool_name="query_data", rows=((1,),), row_count=1),
            ToolFailure(call_id="c2", tool_name="nope", error="unknown tool: nope"),
        )
        turn = ConversationTurn(
            id="turn-9",
            role="assistant",
            text="done",
            tool_results=results,
            metadata={"max_iterations_reached": True, "odd": object()},
        )

        payload = turn.to_dict()

        assert payload["id"] == "turn-9"
        assert [result["kind"] for result in payload["tool_results"]] == ["data_query", "tool_error"]
        assert payload["metadata"]["max_iterations_reached"] is True
        assert payload["metadata"]["odd"].startswith("<object")

    def test_preview_char_count(self) -> None:
        preview = DocumentPreview(call_id="c", tool_name="create_document", title="T", html="<p>x</p>")

        assert preview.char_count == 8
        assert not preview.complete


# =============================================================================
# CancelToken Tests
# =============================================================================


class TestCancelToken:
    def test_cancel_is_one_shot(self) -> None:
        token = CancelToken()
        fired: list[str] = []
        token.add_callback(lambda: fired.append("first"))

        assert token.cancel("stop")
        assert not token.cancel("again")
        assert token.reason == "stop"
        assert fired == ["first"]

    def test_callback_after_cancel_runs_immediately(self) -> None:
        token = CancelToken()
        token.cancel()
        fired: list[bool] = []

        token.add_callback(lambda: fired.append(True))

        assert fired == [True]

    def test_removed_callback_does_not_fire(self) -> None:
        token = CancelToken()
        fired: list[bool] = []
        remove = token.add_callback(lambda: fired.append(True))

        remove()
        token.cancel()

        assert fired == []

    def test_raise_if_cancelled(self) -> None:
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel("user")

        with pytest.raises(asyncio.CancelledError):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait(self) -> None:
        token = CancelToken()
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel()

        await asyncio.wait_for(waiter, timeout=1)
        assert token.cancelled
