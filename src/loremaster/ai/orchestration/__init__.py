"""Conversation orchestration: stream decoding, tool dispatch, continuation."""

from .types import (
    ConversationTurn,
    DocumentPreview,
    Message,
    StopReason,
    ToolCall,
    ToolCallStatus,
    TurnConfig,
)
from .progress import ProgressRecorder, ThinkingStep, ThinkingStepType
from .stream_decoder import (
    StreamDecoder,
    StreamEvent,
    TextDelta,
    ToolArgDelta,
    ToolStart,
    ToolStop,
    TurnStop,
)
from .tools import (
    CancelToken,
    ToolContext,
    ToolDispatcher,
    ToolRegistry,
    ToolResult,
    ToolSpec,
)
from .continuation import ContinuationController, ContinuationState
from .event_log import ChatEventLogger
from .orchestrator import ConversationOrchestrator, create_orchestrator

__all__ = [
    "CancelToken",
    "ChatEventLogger",
    "ContinuationController",
    "ContinuationState",
    "ConversationOrchestrator",
    "ConversationTurn",
    "DocumentPreview",
    "Message",
    "ProgressRecorder",
    "StopReason",
    "StreamDecoder",
    "StreamEvent",
    "TextDelta",
    "ThinkingStep",
    "ThinkingStepType",
    "ToolArgDelta",
    "ToolCall",
    "ToolCallStatus",
    "ToolContext",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "ToolStart",
    "ToolStop",
    "TurnConfig",
    "TurnStop",
    "create_orchestrator",
]
