"""Conversation orchestrator: drives one logical turn against the model.

A turn may span several request cycles. Each cycle streams the response
through a fresh :class:`StreamDecoder`; completed tool calls are dispatched
as tasks while the stream keeps flowing. When a cycle ends with
``tool_use`` the results are fed back in a new cycle, when it ends with
``max_tokens`` the :class:`ContinuationController` decides whether to ask
the model to keep going. The caller always receives a sealed
:class:`ConversationTurn`; transport, stream and tool failures are reported
on it rather than raised.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

import httpx

from ..client import ModelClient, TransportError
from .callbacks import CallbackGate
from .continuation import ContinuationController
from .event_log import ChatEventLogger
from .progress import ProgressRecorder, ThinkingStep, ThinkingStepType
from .stream_decoder import StreamDecoder, StreamEvent, TextDelta, ToolArgDelta, ToolStart, ToolStop, TurnStop
from .tools.dispatcher import ToolDispatcher
from .tools.registry import ToolRegistry
from .tools.results import DocumentCreateResult, DocumentPatchResult, ToolFailure, ToolResult
from .tools.types import CancelToken, ToolContext
from .types import (
    ConversationTurn,
    DocumentPreview,
    Message,
    StopReason,
    ToolCall,
    ToolCallStatus,
    TurnConfig,
    new_turn_id,
)

__all__ = [
    "ConversationOrchestrator",
    "TextCallback",
    "ToolResultCallback",
    "PreviewCallback",
    "ThinkingCallback",
    "create_orchestrator",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Callback Types
# -----------------------------------------------------------------------------

# Receives the full text of the turn so far, not a diff.
TextCallback = Callable[[str], Any]

ToolResultCallback = Callable[[ToolResult], Any]

PreviewCallback = Callable[[DocumentPreview], Any]

ThinkingCallback = Callable[[ThinkingStep], Any]

# Minimum growth of streamed arguments between two previews of the same call.
PREVIEW_MIN_GROWTH = 256

TEXT_SEPARATOR = "\n\n"


# -----------------------------------------------------------------------------
# Run state
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class _TurnDraft:
    """Mutable turn under construction; sealed into a ConversationTurn."""

    id: str
    text: str = ""
    tool_results: list[ToolResult] = field(default_factory=list)
    transcript: list[Message] = field(default_factory=list)
    error: str | None = None
    truncated: bool = False
    cancelled: bool = False
    continuation_count: int = 0
    iteration_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def seal(self, steps: Sequence[ThinkingStep]) -> ConversationTurn:
        return ConversationTurn(
            id=self.id,
            role="assistant",
            text=self.text,
            tool_results=tuple(self.tool_results),
            raw_messages=tuple(self.transcript),
            error=self.error,
            truncated=self.truncated,
            cancelled=self.cancelled,
            continuation_count=self.continuation_count,
            iteration_count=self.iteration_count,
            thinking_steps=tuple(steps),
            metadata=dict(self.metadata),
        )


@dataclass(slots=True)
class _Cycle:
    """One request/response cycle."""

    iteration: int
    continuation: bool
    text: str = ""
    calls: dict[str, ToolCall] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)
    results: dict[str, ToolResult] = field(default_factory=dict)
    tasks: list[asyncio.Task[ToolResult]] = field(default_factory=list)
    preview_marks: dict[str, int] = field(default_factory=dict)
    stop: TurnStop | None = None
    streaming_reported: bool = False

    def completed_calls(self) -> list[ToolCall]:
        return [self.calls[call_id] for call_id in self.order if call_id in self.results]


@dataclass(slots=True)
class _RunState:
    draft: _TurnDraft
    token: CancelToken
    gate: CallbackGate
    recorder: ProgressRecorder
    context: ToolContext
    on_tool_result: ToolResultCallback | None
    on_text_delta: TextCallback | None
    on_document_preview: PreviewCallback | None
    needs_separator: bool = False
    cycle: _Cycle | None = None


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------


class ConversationOrchestrator:
    """Runs conversation turns against a model client and a tool registry.

    Example:
        orchestrator = ConversationOrchestrator(client, registry.freeze())
        turn = await orchestrator.run("Which items drop from bosses?", history, context)
    """

    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        *,
        config: TurnConfig | None = None,
        dispatcher: ToolDispatcher | None = None,
        event_logger: ChatEventLogger | None = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._config = config or TurnConfig()
        # A default dispatcher follows the config's tool timeout; an injected one is kept as is.
        self._custom_dispatcher = dispatcher is not None
        self._dispatcher = dispatcher or ToolDispatcher(
            registry,
            timeout_seconds=self._config.tool_timeout_seconds,
        )
        self._event_logger = event_logger or ChatEventLogger(enabled=False)

    @property
    def client(self) -> ModelClient:
        return self._client

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> TurnConfig:
        return self._config

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    def with_config(self, config: TurnConfig) -> ConversationOrchestrator:
        """Return a new orchestrator sharing client and registry with ``config``."""
        return ConversationOrchestrator(
            self._client,
            self._registry,
            config=config,
            dispatcher=self._dispatcher if self._custom_dispatcher else None,
            event_logger=self._event_logger,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def run(
        self,
        user_text: str,
        history: Sequence[ConversationTurn | Message] = (),
        tool_context: ToolContext | None = None,
        *,
        on_tool_result: ToolResultCallback | None = None,
        on_text_delta: TextCallback | None = None,
        on_document_preview: PreviewCallback | None = None,
        on_thinking_step: ThinkingCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ConversationTurn:
        """Run one turn and return it sealed.

        Callbacks are optional and fire-and-forget. Cancelling ``cancel_token``
        closes the stream, cancels outstanding tool calls and returns a turn
        flagged ``cancelled``; no text or tool-result callback fires after
        that point.
        """

        token = cancel_token or CancelToken()
        state = _RunState(
            draft=_TurnDraft(id=new_turn_id()),
            token=token,
            gate=CallbackGate(token),
            recorder=ProgressRecorder(on_thinking_step),
            context=tool_context or ToolContext(),
            on_tool_result=on_tool_result,
            on_text_delta=on_text_delta,
            on_document_preview=on_document_preview,
        )
        base_messages = self._build_messages(history, user_text)
        log_run = self._event_logger.start_run(
            run_id=state.draft.id,
            prompt=user_text,
            history_length=len(history),
            tools=self._registry.list_names(),
        )
        started = time.perf_counter()
        LOGGER.debug("Turn %s started with %d prior message(s)", state.draft.id, len(base_messages) - 1)

        try:
            await self._run_loop(state, base_messages, log_run)
        except asyncio.CancelledError:
            LOGGER.info("Turn %s task cancelled", state.draft.id)
            await self._abandon(state)
            log_run.log_failure(message="task cancelled")
            raise
        except Exception as exc:
            LOGGER.exception("Turn %s failed with exception", state.draft.id)
            state.draft.error = str(exc) or type(exc).__name__
            await self._cancel_tool_tasks(state)

        draft = state.draft
        draft.metadata.setdefault("duration_ms", round((time.perf_counter() - started) * 1000, 3))
        if not draft.cancelled:
            state.recorder.step(
                ThinkingStepType.TURN_FINISHED,
                iteration=draft.iteration_count,
                detail=draft.error or ("truncated" if draft.truncated else None),
            )
        turn = draft.seal(state.recorder.steps)
        if turn.error and not turn.cancelled:
            log_run.log_failure(message=turn.error, details={"turn": turn.to_dict()})
        else:
            log_run.log_completion(turn=turn.to_dict())
        LOGGER.debug(
            "Turn %s finished: %d chars, %d tool result(s), %d iteration(s), %d continuation(s)",
            turn.id,
            len(turn.text),
            len(turn.tool_results),
            turn.iteration_count,
            turn.continuation_count,
        )
        return turn

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------
    async def _run_loop(self, state: _RunState, base_messages: list[Message], log_run: Any) -> None:
        config = self._config
        draft = state.draft
        controller = ContinuationController(config.max_continuations)
        wire_tools = self._registry.get_wire_tools(self._client.protocol)
        state.recorder.step(ThinkingStepType.TURN_STARTED, detail=f"{len(wire_tools)} tool(s) available")

        continuing = False
        iteration = 0
        while True:
            if continuing:
                request = controller.build_request(base_messages + draft.transcript)
                draft.transcript.append(request[-1])
                draft.continuation_count = controller.continuations_used
                state.recorder.step(
                    ThinkingStepType.CONTINUATION,
                    iteration=iteration,
                    detail=f"{controller.continuations_used}/{controller.max_continuations}",
                )
            else:
                if iteration >= config.max_iterations:
                    LOGGER.warning("Turn %s reached max iterations (%d)", draft.id, config.max_iterations)
                    draft.metadata["max_iterations_reached"] = True
                    controller.finish()
                    return
                iteration += 1
                draft.iteration_count = iteration
                state.needs_separator = iteration > 1
                request = base_messages + draft.transcript
                state.recorder.step(ThinkingStepType.ITERATION, iteration=iteration)

            cycle = _Cycle(iteration=iteration, continuation=continuing)
            state.cycle = cycle
            completed = await self._run_cycle(state, cycle, request, wire_tools)
            if not completed:
                controller.finish()
                log_run.log_failure(message="cancelled by caller")
                return

            calls = cycle.completed_calls()
            self._record_cycle(draft, cycle, calls)
            stop = cycle.stop or TurnStop(StopReason.END_TURN)
            log_run.log_cycle(
                iteration=iteration,
                continuation=continuing,
                response_text=cycle.text,
                tool_calls=[call.to_chat_param() for call in calls],
                stop_reason=stop.reason.value,
                detail=stop.detail,
            )
            log_run.log_tool_batch(
                iteration=iteration,
                results=[cycle.results[call.id].to_dict() for call in calls],
            )

            if stop.reason is StopReason.ERROR:
                draft.error = stop.detail or "response stream failed"
                controller.finish()
                return

            continuing = controller.on_cycle_end(stop.reason)
            if continuing:
                continue
            if stop.reason is StopReason.TOOL_USE:
                if calls:
                    continue
                LOGGER.warning("Turn %s stopped for tool use without any tool call", draft.id)
                controller.finish()
            draft.truncated = controller.truncated
            return

    async def _run_cycle(
        self,
        state: _RunState,
        cycle: _Cycle,
        request: list[Message],
        wire_tools: list[dict[str, Any]],
    ) -> bool:
        """Stream one cycle and join its tool tasks. Returns ``False`` if cancelled."""

        consumer = asyncio.ensure_future(self._consume_stream(state, cycle, request, wire_tools))
        if not await self._await_or_cancel(state, consumer):
            return False
        if cycle.tasks:
            joiner = asyncio.ensure_future(asyncio.gather(*cycle.tasks))
            if not await self._await_or_cancel(state, joiner):
                return False
        return True

    async def _consume_stream(
        self,
        state: _RunState,
        cycle: _Cycle,
        request: list[Message],
        wire_tools: list[dict[str, Any]],
    ) -> None:
        decoder = StreamDecoder(self._client.protocol)
        stream = self._client.stream_chat(
            request,
            tools=wire_tools or None,
            max_tokens=self._config.max_output_tokens,
            temperature=self._config.temperature,
        )
        try:
            async for chunk in stream:
                self._handle_events(state, cycle, decoder.decode(chunk))
                if decoder.finished:
                    break
            self._handle_events(state, cycle, decoder.finish())
        except (TransportError, httpx.HTTPError) as exc:
            detail = str(exc) or type(exc).__name__
            LOGGER.warning("Request cycle %d of turn %s failed: %s", cycle.iteration, state.draft.id, detail)
            if cycle.stop is None or cycle.stop.reason is not StopReason.ERROR:
                self._handle_events(state, cycle, [TurnStop(StopReason.ERROR, detail)])
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    def _handle_events(self, state: _RunState, cycle: _Cycle, events: Sequence[StreamEvent]) -> None:
        for event in events:
            if isinstance(event, TextDelta):
                self._on_text(state, cycle, event.text)
            elif isinstance(event, ToolStart):
                call = ToolCall(id=event.id, name=event.name)
                cycle.calls[event.id] = call
                cycle.order.append(event.id)
                state.recorder.step(ThinkingStepType.TOOL_STARTED, iteration=cycle.iteration, tool_name=event.name)
            elif isinstance(event, ToolArgDelta):
                call = cycle.calls.get(event.id)
                if call is None or call.status is not ToolCallStatus.PENDING:
                    LOGGER.debug("Ignoring argument fragment for unknown tool call %s", event.id)
                    continue
                call.append(event.fragment)
                self._maybe_preview(state, cycle, call)
            elif isinstance(event, ToolStop):
                call = cycle.calls.get(event.id)
                if call is None or call.status is not ToolCallStatus.PENDING:
                    continue
                call.mark_ready()
                task = asyncio.ensure_future(self._dispatch(state, cycle, call))
                cycle.tasks.append(task)
            elif isinstance(event, TurnStop):
                cycle.stop = event
                for call_id in cycle.order:
                    call = cycle.calls[call_id]
                    if call.status is ToolCallStatus.PENDING:
                        LOGGER.warning("Tool call %s (%s) never completed", call.id, call.name)
                        call.mark_error()
                        self._interrupt(state, cycle, call, event.detail or event.reason.value)

    def _interrupt(self, state: _RunState, cycle: _Cycle, call: ToolCall, detail: str) -> None:
        failure = ToolFailure(call_id=call.id, tool_name=call.name, error=f"tool call interrupted: {detail}")
        cycle.results[call.id] = failure
        state.draft.tool_results.append(failure)
        state.recorder.step(
            ThinkingStepType.TOOL_FINISHED,
            iteration=cycle.iteration,
            tool_name=call.name,
            detail=failure.error,
        )
        state.gate.emit(state.on_tool_result, failure)

    def _on_text(self, state: _RunState, cycle: _Cycle, text: str) -> None:
        if not text:
            return
        draft = state.draft
        if state.needs_separator:
            if draft.text:
                draft.text += TEXT_SEPARATOR
            state.needs_separator = False
        draft.text = ContinuationController.merge_text(draft.text, text)
        cycle.text += text
        if not cycle.streaming_reported:
            cycle.streaming_reported = True
            state.recorder.step(ThinkingStepType.STREAMING, iteration=cycle.iteration)
        state.gate.emit(state.on_text_delta, draft.text)

    def _maybe_preview(self, state: _RunState, cycle: _Cycle, call: ToolCall) -> None:
        if state.on_document_preview is None:
            return
        last = cycle.preview_marks.get(call.id, 0)
        if len(call.arguments) - last < PREVIEW_MIN_GROWTH:
            return
        preview = self._dispatcher.preview(call)
        if preview is None:
            return
        cycle.preview_marks[call.id] = len(call.arguments)
        state.gate.emit(state.on_document_preview, preview)

    async def _dispatch(self, state: _RunState, cycle: _Cycle, call: ToolCall) -> ToolResult:
        result = await self._dispatcher.dispatch(call, context=state.context, cancel_token=state.token)
        cycle.results[call.id] = result
        state.draft.tool_results.append(result)
        state.recorder.step(
            ThinkingStepType.TOOL_FINISHED,
            iteration=cycle.iteration,
            tool_name=call.name,
            detail=result.error or f"{result.duration_ms:.0f}ms",
        )
        state.gate.emit(state.on_tool_result, result)
        if isinstance(result, (DocumentCreateResult, DocumentPatchResult)) and result.ok:
            state.gate.emit(
                state.on_document_preview,
                DocumentPreview(
                    call_id=call.id,
                    tool_name=call.name,
                    title=result.title,
                    html=result.html,
                    complete=True,
                ),
            )
        return result

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------
    def _build_messages(self, history: Sequence[ConversationTurn | Message], user_text: str) -> list[Message]:
        messages: list[Message] = []
        if self._config.system_prompt:
            messages.append(Message.system(self._config.system_prompt))
        for entry in history:
            if isinstance(entry, ConversationTurn):
                messages.extend(entry.history_messages(replay_raw=self._config.replay_raw_history))
            else:
                messages.append(entry)
        messages.append(Message.user(user_text))
        return messages

    @staticmethod
    def _record_cycle(draft: _TurnDraft, cycle: _Cycle, calls: list[ToolCall]) -> None:
        if cycle.text or calls:
            draft.transcript.append(
                Message.assistant(cycle.text, tool_calls=[call.to_chat_param() for call in calls])
            )
        for call in calls:
            result = cycle.results[call.id]
            draft.transcript.append(
                Message.tool(
                    result.to_model_content(),
                    tool_call_id=call.id,
                    name=call.name,
                    is_error=not result.ok,
                )
            )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    async def _await_or_cancel(self, state: _RunState, task: asyncio.Future[Any]) -> bool:
        """Wait for ``task`` unless the cancel token fires first."""

        if not state.token.cancelled:
            waiter = asyncio.ensure_future(state.token.wait())
            try:
                done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                waiter.cancel()
            if task in done and not state.token.cancelled:
                task.result()
                return True
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await self._abandon(state)
        return False

    async def _abandon(self, state: _RunState) -> None:
        """Mark the turn cancelled and stop all outstanding work."""

        draft = state.draft
        if draft.cancelled:
            return
        draft.cancelled = True
        state.gate.close()
        state.recorder.silence()
        state.token.cancel("turn cancelled")
        await self._cancel_tool_tasks(state)
        cycle = state.cycle
        if cycle is not None:
            for call_id in cycle.order:
                call = cycle.calls[call_id]
                if call.is_ready and call_id not in cycle.results:
                    failure = ToolFailure(call_id=call.id, tool_name=call.name, error="cancelled")
                    cycle.results[call_id] = failure
                    draft.tool_results.append(failure)
        LOGGER.info("Turn %s cancelled", draft.id)

    @staticmethod
    async def _cancel_tool_tasks(state: _RunState) -> None:
        cycle = state.cycle
        if cycle is None:
            return
        pending = [task for task in cycle.tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def create_orchestrator(
    client: ModelClient,
    registry: ToolRegistry,
    *,
    config: TurnConfig | None = None,
    event_logger: ChatEventLogger | None = None,
) -> ConversationOrchestrator:
    """Factory freezing ``registry`` before sharing it with the orchestrator."""

    if not registry.frozen:
        registry.freeze()
    return ConversationOrchestrator(client, registry, config=config, event_logger=event_logger)
