"""Agent backends."""

from .base import AgentAdapter, ChatHandle, ProbeOutput
from .claude_code import ClaudeChatParser, ClaudeCodeAdapter, ClaudeStreamParser
from .gemini import GeminiAdapter
from .mock import MockAdapter
from .openrouter import OpenRouterAdapter

__all__ = [
    "AgentAdapter",
    "ChatHandle",
    "ProbeOutput",
    "ClaudeCodeAdapter",
    "ClaudeStreamParser",
    "ClaudeChatParser",
    "GeminiAdapter",
    "MockAdapter",
    "OpenRouterAdapter",
]
