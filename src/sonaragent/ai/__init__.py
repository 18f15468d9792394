"""AI client, conversation state, orchestration and tool wiring."""

from .cancellation import CancelSignal, CancelledByUser
from .chat import ConversationChat, GenerationConfig
from .client import AIClient, ClientSettings
from .orchestration.scheduler import ApprovalMode, ToolCallScheduler
from .orchestration.session import AgentSession, SessionConfig, SubmissionInFlightError
from .orchestration.turn import Turn
from .providers import ProviderKind, create_provider

__all__ = [
    "AIClient",
    "ClientSettings",
    "ConversationChat",
    "GenerationConfig",
    "CancelSignal",
    "CancelledByUser",
    "Turn",
    "ToolCallScheduler",
    "ApprovalMode",
    "AgentSession",
    "SessionConfig",
    "SubmissionInFlightError",
    "ProviderKind",
    "create_provider",
]
