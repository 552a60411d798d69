"""agentshift - orchestration layer for command-line AI coding agents."""

__version__ = "0.4.0"
