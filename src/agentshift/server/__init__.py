"""HTTP and WebSocket server for agentshift."""

from agentshift import __version__

__all__ = ["__version__"]
