"""AI client, orchestration engine, and tool wiring."""

# The orchestration package must be imported before the client module.
from .orchestration import ConversationOrchestrator, ConversationTurn, TurnConfig
from .client import AIClient, ClientSettings, TransportError

__all__ = [
    "AIClient",
    "ClientSettings",
    "ConversationOrchestrator",
    "ConversationTurn",
    "TransportError",
    "TurnConfig",
]
