"""Streaming agent runtime for OpenAI-compatible chat completion APIs."""

__version__ = "0.1.0"

from .ai import AgentSession, AIClient, ClientSettings, ConversationChat, SessionConfig  # noqa: E402

__all__ = ["__version__", "AgentSession", "AIClient", "ClientSettings", "ConversationChat", "SessionConfig"]
