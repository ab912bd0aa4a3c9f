"""Tests for the conversation orchestrator."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Mapping

import httpx
import pytest

from loremaster.ai.client import TransportError
from loremaster.ai.orchestration import (
    ChatEventLogger,
    ConversationOrchestrator,
    ConversationTurn,
    TurnConfig,
)
from loremaster.ai.orchestration.continuation import CONTINUE_INSTRUCTION
from loremaster.ai.orchestration.orchestrator import create_orchestrator
from loremaster.ai.orchestration.progress import ThinkingStepType
from loremaster.ai.orchestration.tools import (
    CancelToken,
    DataQueryResult,
    DocumentCreateResult,
    ToolContext,
    ToolDispatcher,
    ToolFailure,
    ToolInvocation,
    ToolRegistry,
    ToolSpec,
)
from loremaster.ai.orchestration.types import Message
from loremaster.ai.tools import TRUNCATION_MARKER, create_document_tool, create_patch_document_tool
from loremaster.editor.documents import DocumentStore
from tests.helpers import (
    OPENAI_DONE,
    FakeModelClient,
    anthropic_stream,
    openai_chunk,
    recorder,
    sse_event,
    tool_use,
)

LOOKUP_CALL = {"id": "t1", "type": "function", "function": {"name": "lookup", "arguments": "{}"}}

LOOKUP_SPEC = ToolSpec(
    name="lookup",
    description="Look up one value.",
    parameters={
        "type": "object",
        "properties": {"key": {"type": "string"}},
        "required": ["key"],
    },
)


def _lookup(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DataQueryResult:
    return DataQueryResult(
        call_id=invocation.call_id,
        tool_name=invocation.tool_name,
        query=arguments["key"],
        columns=("value",),
        rows=((42,),),
        row_count=1,
    )


def _registry(*extra: tuple[ToolSpec, Any]) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register_function(LOOKUP_SPEC, _lookup)
    registry.register(create_document_tool())
    registry.register(create_patch_document_tool())
    for spec, handler in extra:
        registry.register_function(spec, handler)
    return registry.freeze()


def _orchestrator(
    client: FakeModelClient, registry: ToolRegistry | None = None, **config: Any
) -> ConversationOrchestrator:
    return ConversationOrchestrator(
        client,
        registry if registry is not None else _registry(),
        config=TurnConfig(**config),
    )


# =============================================================================
# Plain text
# =============================================================================


class TestText:
    @pytest.mark.asyncio
    async def test_text_is_reported_cumulatively(self) -> None:
        client = FakeModelClient([anthropic_stream(text=["A", "B"])])
        texts, on_text = recorder()

        turn = await _orchestrator(client).run("hi", on_text_delta=on_text)

        assert turn.text == "AB"
        assert texts == ["A", "AB"]
        assert turn.succeeded
        assert turn.iteration_count == 1
        assert turn.continuation_count == 0
        assert turn.tool_results == ()
        assert [message.role for message in client.messages[0]] == ["user"]

    @pytest.mark.asyncio
    async def test_request_settings_are_forwarded(self) -> None:
        client = FakeModelClient([anthropic_stream(text=["ok"])])

        await _orchestrator(client, system_prompt="Be brief.", max_output_tokens=1024, temperature=0.2).run("hi")

        request = client.requests[0]
        assert request["max_tokens"] == 1024
        assert request["temperature"] == 0.2
        assert [tool["name"] for tool in request["tools"]] == ["lookup", "create_document", "patch_document"]
        assert [(m.role, m.content) for m in request["messages"]] == [("system", "Be brief."), ("user", "hi")]

    @pytest.mark.asyncio
    async def test_openai_protocol(self) -> None:
        client = FakeModelClient(
            [[openai_chunk(content="Hi"), openai_chunk(content=" there", finish_reason="stop"), OPENAI_DONE]],
            protocol="openai",
        )

        turn = await _orchestrator(client).run("hello")

        assert turn.text == "Hi there"
        assert client.requests[0]["tools"][0]["type"] == "function"

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_the_turn(self) -> None:
        def explode(_text: str) -> None:
            raise RuntimeError("ui gone")

        client = FakeModelClient([anthropic_stream(text=["fine"])])

        turn = await _orchestrator(client).run("hi", on_text_delta=explode)

        assert turn.succeeded
        assert turn.text == "fine"

    @pytest.mark.asyncio
    async def test_tool_use_stop_without_calls_ends_the_turn(self) -> None:
        client = FakeModelClient([anthropic_stream(text=["I will check."], stop_reason="tool_use")])

        turn = await _orchestrator(client).run("hi")

        assert turn.text == "I will check."
        assert len(client.requests) == 1


# =============================================================================
# Tools
# =============================================================================


class TestToolCycles:
    @pytest.mark.asyncio
    async def test_tool_results_are_fed_back(self) -> None:
        client = FakeModelClient(
            [
                tool_use("toolu_1", "lookup", {"key": "x"}, text=["Checking."]),
                anthropic_stream(text=["Found it."]),
            ]
        )
        results, on_result = recorder()
        texts, on_text = recorder()

        turn = await _orchestrator(client).run("hi", on_tool_result=on_result, on_text_delta=on_text)

        assert turn.text == "Checking.\n\nFound it."
        assert texts[-1] == turn.text
        assert turn.iteration_count == 2
        assert len(turn.tool_results) == 1
        assert results == list(turn.tool_results)
        assert isinstance(turn.tool_results[0], DataQueryResult)

        user, assistant, tool_message = client.messages[1]
        assert user.content == "hi"
        assert assistant.role == "assistant"
        assert assistant.content == "Checking."
        assert assistant.tool_calls == (
            {"id": "toolu_1", "type": "function", "function": {"name": "lookup", "arguments": '{"key": "x"}'}},
        )
        assert tool_message.role == "tool"
        assert tool_message.tool_call_id == "toolu_1"
        assert tool_message.name == "lookup"
        assert tool_message.metadata["is_error"] is False
        assert json.loads(tool_message.content)["rows"] == [[42]]
        assert turn.raw_messages == (assistant, tool_message, Message.assistant("Found it."))

    @pytest.mark.asyncio
    async def test_no_separator_when_first_cycle_has_no_text(self) -> None:
        client = FakeModelClient([tool_use("toolu_1", "lookup", {"key": "x"}), anthropic_stream(text=["Done."])])

        turn = await _orchestrator(client).run("hi")

        assert turn.text == "Done."

    @pytest.mark.asyncio
    async def test_unknown_tool_becomes_failure(self) -> None:
        client = FakeModelClient([tool_use("toolu_9", "nope", {}), anthropic_stream(text=["Sorry."])])

        turn = await _orchestrator(client).run("hi")

        failure = turn.tool_results[0]
        assert isinstance(failure, ToolFailure)
        assert failure.error == "unknown tool: nope"
        tool_message = client.messages[1][-1]
        assert tool_message.metadata["is_error"] is True
        assert json.loads(tool_message.content) == {"error": "unknown tool: nope"}
        assert turn.succeeded

    @pytest.mark.asyncio
    async def test_parallel_calls_keep_stream_order(self) -> None:
        async def slow(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DataQueryResult:
            await asyncio.sleep(0.01)
            return _lookup(arguments, invocation)

        registry = _registry((ToolSpec(name="slow", description="Slow lookup."), slow))
        client = FakeModelClient(
            [
                anthropic_stream(
                    tools=[("toolu_a", "slow", ['{"key": "a"}']), ("toolu_b", "lookup", ['{"key": "b"}'])],
                    stop_reason="tool_use",
                ),
                anthropic_stream(text=["Both done."]),
            ]
        )

        turn = await _orchestrator(client, registry).run("hi")

        assert [result.call_id for result in turn.tool_results] == ["toolu_b", "toolu_a"]
        tool_messages = [message for message in client.messages[1] if message.role == "tool"]
        assert [message.tool_call_id for message in tool_messages] == ["toolu_a", "toolu_b"]

    @pytest.mark.asyncio
    async def test_iteration_cap(self) -> None:
        client = FakeModelClient(
            [tool_use("toolu_1", "lookup", {"key": "a"}), tool_use("toolu_2", "lookup", {"key": "b"})]
        )

        turn = await _orchestrator(client, max_iterations=2).run("hi")

        assert turn.metadata["max_iterations_reached"] is True
        assert turn.iteration_count == 2
        assert len(client.requests) == 2
        assert len(turn.tool_results) == 2
        assert turn.error is None


# =============================================================================
# Continuations
# =============================================================================


class TestContinuation:
    @pytest.mark.asyncio
    async def test_truncated_text_is_continued_and_merged(self) -> None:
        client = FakeModelClient(
            [anthropic_stream(text=["Hel"], stop_reason="max_tokens"), anthropic_stream(text=["lo"])]
        )
        texts, on_text = recorder()

        turn = await _orchestrator(client).run("hi", on_text_delta=on_text)

        assert turn.text == "Hello"
        assert texts == ["Hel", "Hello"]
        assert turn.continuation_count == 1
        assert turn.iteration_count == 1
        assert not turn.truncated
        user, partial, instruction = client.messages[1]
        assert (partial.role, partial.content) == ("assistant", "Hel")
        assert (instruction.role, instruction.content) == ("user", CONTINUE_INSTRUCTION)
        assert instruction.metadata == {"continuation": True}

    @pytest.mark.asyncio
    async def test_continuation_budget(self) -> None:
        client = FakeModelClient([anthropic_stream(text=["x"], stop_reason="max_tokens") for _ in range(6)])

        turn = await _orchestrator(client, max_continuations=5).run("hi")

        assert len(client.requests) == 6
        assert turn.continuation_count == 5
        assert turn.truncated
        assert turn.text == "xxxxxx"

    @pytest.mark.asyncio
    async def test_truncated_document_is_recovered_then_continued(self) -> None:
        store = DocumentStore()
        client = FakeModelClient(
            [
                anthropic_stream(
                    tools=[("toolu_doc", "create_document", ['{"title": "Drops", "description": "d", "html": "<p>cut'])],
                    stop_reason="max_tokens",
                ),
                anthropic_stream(text=["Summary."]),
            ]
        )

        turn = await _orchestrator(client).run("make a sheet", tool_context=ToolContext(documents=store))

        result = turn.tool_results[0]
        assert isinstance(result, DocumentCreateResult)
        assert result.recovered
        assert result.html.endswith(TRUNCATION_MARKER)
        assert store.latest().html == "<p>cut" + TRUNCATION_MARKER
        assert turn.continuation_count == 1
        assert turn.text == "Summary."
        roles = [message.role for message in client.messages[1]]
        assert roles == ["user", "assistant", "tool", "user"]
        assert client.messages[1][-1].content == CONTINUE_INSTRUCTION


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_transport_error_is_reported_on_the_turn(self) -> None:
        client = FakeModelClient([TransportError(500, "boom")])

        turn = await _orchestrator(client).run("hi")

        assert turn.error == "backend returned HTTP 500: boom"
        assert not turn.succeeded
        assert turn.text == ""

    @pytest.mark.asyncio
    async def test_connection_drop_keeps_partial_text(self) -> None:
        chunks = anthropic_stream(text=["Partial"])[:3] + [httpx.ReadError("connection reset")]
        client = FakeModelClient([chunks])

        turn = await _orchestrator(client).run("hi")

        assert turn.text == "Partial"
        assert turn.error == "connection reset"

    @pytest.mark.asyncio
    async def test_error_event_in_stream(self) -> None:
        chunks = [
            sse_event("message_start", {"type": "message_start", "message": {"id": "m"}}),
            sse_event("error", {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}),
        ]
        client = FakeModelClient([chunks])

        turn = await _orchestrator(client).run("hi")

        assert turn.error is not None
        assert "Overloaded" in turn.error

    @pytest.mark.asyncio
    async def test_tool_call_cut_off_by_connection_drop_is_reported(self) -> None:
        stream = anthropic_stream(tools=[("toolu_1", "lookup", ['{"key": ', '"x"}'])], stop_reason="tool_use")
        client = FakeModelClient([stream[:3] + [httpx.ReadError("reset")]])
        results, on_result = recorder()

        turn = await _orchestrator(client).run("hi", on_tool_result=on_result)

        assert turn.error == "reset"
        (failure,) = turn.tool_results
        assert isinstance(failure, ToolFailure)
        assert failure.call_id == "toolu_1"
        assert failure.tool_name == "lookup"
        assert failure.error == "tool call interrupted: reset"
        assert results == [failure]
        assert [message.role for message in turn.raw_messages] == ["assistant", "tool"]
        assert turn.raw_messages[1].tool_call_id == "toolu_1"


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_while_streaming(self) -> None:
        token = CancelToken()

        async def cancel_and_stall() -> None:
            token.cancel()
            await asyncio.sleep(1)

        stream = anthropic_stream(text=["Hel", "lo", " world"])
        # message_start, block start, "Hel", "lo", then cancel before " world".
        client = FakeModelClient([stream[:4] + [cancel_and_stall] + stream[4:]])
        texts, on_text = recorder()

        turn = await _orchestrator(client).run("hi", on_text_delta=on_text, cancel_token=token)

        assert turn.cancelled
        assert turn.text == "Hello"
        assert texts == ["Hel", "Hello"]
        assert turn.error is None
        assert not turn.succeeded
        assert ThinkingStepType.TURN_FINISHED not in [step.type for step in turn.thinking_steps]

    @pytest.mark.asyncio
    async def test_cancel_while_tool_runs(self) -> None:
        async def stuck(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DataQueryResult:
            invocation.cancel_token.cancel()
            await asyncio.sleep(10)
            return _lookup(arguments, invocation)

        registry = _registry((ToolSpec(name="stuck", description="Never returns."), stuck))
        client = FakeModelClient([tool_use("toolu_1", "stuck", {})])
        results, on_result = recorder()

        turn = await _orchestrator(client, registry).run("hi", on_tool_result=on_result)

        assert turn.cancelled
        assert results == []
        assert len(turn.tool_results) == 1
        assert isinstance(turn.tool_results[0], ToolFailure)
        assert turn.tool_results[0].error == "cancelled"
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self) -> None:
        token = CancelToken()
        token.cancel()
        client = FakeModelClient([anthropic_stream(text=["never"])])
        texts, on_text = recorder()

        turn = await _orchestrator(client).run("hi", on_text_delta=on_text, cancel_token=token)

        assert turn.cancelled
        assert texts == []


# =============================================================================
# Document previews
# =============================================================================


class TestDocumentPreviews:
    @pytest.mark.asyncio
    async def test_partial_previews_then_complete(self) -> None:
        fragments = ['{"title": "Drops", "description": "d", "html": "', "<p>" + "a" * 300, "b" * 300, '</p>"}']
        client = FakeModelClient(
            [
                anthropic_stream(tools=[("toolu_doc", "create_document", fragments)], stop_reason="tool_use"),
                anthropic_stream(text=["Done."]),
            ]
        )
        previews, on_preview = recorder()

        turn = await _orchestrator(client).run(
            "sheet",
            tool_context=ToolContext(documents=DocumentStore()),
            on_document_preview=on_preview,
        )

        assert turn.succeeded
        assert [preview.complete for preview in previews] == [False, False, True]
        assert previews[0].title == "Drops"
        assert previews[0].html == "<p>" + "a" * 300
        assert previews[1].html == "<p>" + "a" * 300 + "b" * 300
        assert previews[2].html == "<p>" + "a" * 300 + "b" * 300 + "</p>"
        assert {preview.call_id for preview in previews} == {"toolu_doc"}

    @pytest.mark.asyncio
    async def test_patch_emits_complete_preview(self) -> None:
        store = DocumentStore()
        store.create("Drops", "<p>HP 10</p>")
        client = FakeModelClient(
            [
                tool_use("toolu_p", "patch_document", {"patches": [{"find": "HP 10", "replace": "HP 12"}]}),
                anthropic_stream(text=["Updated."]),
            ]
        )
        previews, on_preview = recorder()

        await _orchestrator(client).run("bump hp", tool_context=ToolContext(documents=store), on_document_preview=on_preview)

        assert len(previews) == 1
        assert previews[0].complete
        assert previews[0].html == "<p>HP 12</p>"


# =============================================================================
# History, progress and event log
# =============================================================================


class TestHistory:
    @staticmethod
    def _history() -> list[Any]:
        raw = (
            Message.assistant("", tool_calls=[LOOKUP_CALL]),
            Message.tool('{"rows": []}', tool_call_id="t1", name="lookup"),
            Message.assistant("Answer one."),
        )
        prior = ConversationTurn(id="turn-1", role="assistant", text="Answer one.", raw_messages=raw)
        return [ConversationTurn.user("Question one?"), prior, Message.user("Also this.")]

    @pytest.mark.asyncio
    async def test_history_is_replayed_as_text(self) -> None:
        client = FakeModelClient([anthropic_stream(text=["ok"])])

        await _orchestrator(client).run("Question two?", self._history())

        assert [(m.role, m.content) for m in client.messages[0]] == [
            ("user", "Question one?"),
            ("assistant", "Answer one."),
            ("user", "Also this."),
            ("user", "Question two?"),
        ]

    @pytest.mark.asyncio
    async def test_raw_history_replay(self) -> None:
        client = FakeModelClient([anthropic_stream(text=["ok"])])

        await _orchestrator(client, replay_raw_history=True).run("Question two?", self._history())

        assert [m.role for m in client.messages[0]] == ["user", "assistant", "tool", "assistant", "user", "user"]


class TestProgress:
    @pytest.mark.asyncio
    async def test_thinking_steps(self) -> None:
        client = FakeModelClient(
            [
                tool_use("toolu_1", "lookup", {"key": "x"}, text=["Checking."]),
                anthropic_stream(text=["Found it."]),
            ]
        )
        steps, on_step = recorder()

        turn = await _orchestrator(client).run("hi", on_thinking_step=on_step)

        assert [step.type for step in turn.thinking_steps] == [
            ThinkingStepType.TURN_STARTED,
            ThinkingStepType.ITERATION,
            ThinkingStepType.STREAMING,
            ThinkingStepType.TOOL_STARTED,
            ThinkingStepType.TOOL_FINISHED,
            ThinkingStepType.ITERATION,
            ThinkingStepType.STREAMING,
            ThinkingStepType.TURN_FINISHED,
        ]
        assert steps == list(turn.thinking_steps)
        assert turn.thinking_steps[3].tool_name == "lookup"
        timestamps = [step.timestamp_ms for step in turn.thinking_steps]
        assert timestamps == sorted(timestamps)

    @pytest.mark.asyncio
    async def test_continuation_step(self) -> None:
        client = FakeModelClient(
            [anthropic_stream(text=["Hel"], stop_reason="max_tokens"), anthropic_stream(text=["lo"])]
        )

        turn = await _orchestrator(client, max_continuations=3).run("hi")

        continuation = [step for step in turn.thinking_steps if step.type == ThinkingStepType.CONTINUATION]
        assert [step.detail for step in continuation] == ["1/3"]


class TestEventLog:
    @pytest.mark.asyncio
    async def test_enabled_event_log_records_the_turn(self, tmp_path: Path) -> None:
        client = FakeModelClient(
            [tool_use("toolu_1", "lookup", {"key": "x"}), anthropic_stream(text=["Found it."])]
        )
        orchestrator = ConversationOrchestrator(
            client,
            _registry(),
            event_logger=ChatEventLogger(enabled=True, base_dir=tmp_path),
        )

        turn = await orchestrator.run("hi")

        (log_file,) = list(tmp_path.iterdir())
        entries = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        assert [entry["event"] for entry in entries] == ["start", "cycle", "tools", "cycle", "completion"]
        assert entries[0]["prompt"] == "hi"
        assert entries[1]["stop_reason"] == "tool_use"
        assert entries[-1]["status"] == "success"
        assert entries[-1]["turn"]["id"] == turn.id

    @pytest.mark.asyncio
    async def test_failing_event_log_does_not_break_the_turn(self, tmp_path: Path) -> None:
        class _FullDisk:
            closed = False

            def write(self, _: str) -> int:
                raise OSError(28, "No space left on device")

            def flush(self) -> None:
                return

            def close(self) -> None:
                self.closed = True

        class _FullDiskLogger(ChatEventLogger):
            def start_run(self, **kwargs: Any) -> Any:
                run = super().start_run(**kwargs)
                run._file.close()
                run._file = _FullDisk()
                return run

        client = FakeModelClient([anthropic_stream(text=["Still fine."])])
        orchestrator = ConversationOrchestrator(
            client,
            _registry(),
            event_logger=_FullDiskLogger(enabled=True, base_dir=tmp_path),
        )

        turn = await orchestrator.run("hi")

        assert turn.succeeded
        assert turn.text == "Still fine."


class TestFactory:
    def test_create_orchestrator_freezes_registry(self) -> None:
        registry = ToolRegistry()

        orchestrator = create_orchestrator(FakeModelClient([]), registry)

        assert registry.frozen
        assert orchestrator.registry is registry

    def test_with_config_keeps_client_and_registry(self) -> None:
        orchestrator = _orchestrator(FakeModelClient([]))

        updated = orchestrator.with_config(TurnConfig(max_iterations=3))

        assert updated.client is orchestrator.client
        assert updated.registry is orchestrator.registry
        assert updated.config.max_iterations == 3

    def test_with_config_keeps_an_injected_dispatcher(self) -> None:
        registry = _registry()
        dispatcher = ToolDispatcher(registry, timeout_seconds=1.0)
        orchestrator = ConversationOrchestrator(FakeModelClient([]), registry, dispatcher=dispatcher)

        updated = orchestrator.with_config(TurnConfig(max_iterations=3))

        assert updated.dispatcher is dispatcher

    def test_with_config_rebuilds_the_default_dispatcher(self) -> None:
        orchestrator = _orchestrator(FakeModelClient([]))

        updated = orchestrator.with_config(TurnConfig(tool_timeout_seconds=5.0))

        assert updated.dispatcher is not orchestrator.dispatcher
