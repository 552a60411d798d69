"""API routes."""

from . import agents, chat, health, tasks, usage_limit, ws

__all__ = ["agents", "chat", "health", "tasks", "usage_limit", "ws"]
