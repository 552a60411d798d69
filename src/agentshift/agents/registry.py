"""Adapter registry: every known backend plus the default selection."""

from __future__ import annotations

import logging
import os
from typing import Iterable

from agentshift.util.config_manager import ConfigManager
from agentshift.util.credentials import CredentialStore
from agentshift.util.process_registry import ProcessRegistry

from .adapters import AgentAdapter, ClaudeCodeAdapter, GeminiAdapter, MockAdapter, OpenRouterAdapter
from .types import AdapterNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = ClaudeCodeAdapter.id


class AgentRegistry:
    """Holds adapters by id. Constructed explicitly; there is no module-level instance."""

    def __init__(self, adapters: Iterable[AgentAdapter] = (), default_id: str = DEFAULT_AGENT_ID):
        self._adapters: dict[str, AgentAdapter] = {}
        for adapter in adapters:
            self.register(adapter)
        self._default_id = default_id

    def register(self, adapter: AgentAdapter) -> None:
        if adapter.id in self._adapters:
            logger.debug("Replacing registered adapter %s", adapter.id)
        self._adapters[adapter.id] = adapter

    def get(self, agent_id: str) -> AgentAdapter | None:
        return self._adapters.get(agent_id)

    def require(self, agent_id: str | None = None) -> AgentAdapter:
        """Adapter for ``agent_id``, or the default when it is None.

        Raises:
            AdapterNotFoundError: If no such adapter is registered
        """
        if agent_id is None:
            return self.get_default()
        adapter = self._adapters.get(agent_id)
        if adapter is None:
            raise AdapterNotFoundError(f"Adapter '{agent_id}' not registered")
        return adapter

    def get_all(self) -> list[AgentAdapter]:
        return list(self._adapters.values())

    async def get_available(self) -> list[AgentAdapter]:
        """Adapters whose CLI answers ``--version``; probe failures count as unavailable."""
        available = []
        for adapter in self._adapters.values():
            try:
                if await adapter.is_available():
                    available.append(adapter)
            except Exception as e:
                logger.warning("Availability check for %s failed: %s", adapter.id, e)
        return available

    @property
    def default_id(self) -> str:
        return self._default_id

    def get_default(self) -> AgentAdapter:
        adapter = self._adapters.get(self._default_id)
        if adapter is None:
            raise AdapterNotFoundError(f"Default adapter '{self._default_id}' not registered")
        return adapter

    def set_default(self, agent_id: str) -> None:
        if agent_id not in self._adapters:
            raise AdapterNotFoundError(f"Cannot set default: adapter '{agent_id}' not registered")
        self._default_id = agent_id
        logger.info("Default agent set to %s", agent_id)


def build_registry(
    config_manager: ConfigManager | None = None,
    store: CredentialStore | None = None,
    process_registry: ProcessRegistry | None = None,
    include_mock: bool | None = None,
) -> AgentRegistry:
    """Registry with the built-in backends, configured from the config file.

    Custom executable paths, the Gemini rate tier and the default agent come
    from ``config_manager``. The mock agent is included when ``include_mock``
    is set or ``AGENTSHIFT_MOCK_AGENT=1``.
    """
    common = {"store": store, "process_registry": process_registry}
    tier = config_manager.get_gemini_rate_tier() if config_manager else "FREE"
    adapters: list[AgentAdapter] = [
        ClaudeCodeAdapter(**common),
        GeminiAdapter(tier=tier, **common),
        OpenRouterAdapter(**common),
    ]
    if include_mock is None:
        include_mock = os.environ.get("AGENTSHIFT_MOCK_AGENT") == "1"
    if include_mock:
        adapters.append(MockAdapter(**common))

    registry = AgentRegistry(adapters)
    if config_manager is None:
        return registry

    for adapter in adapters:
        custom_path = config_manager.get_custom_path(adapter.id)
        if custom_path:
            adapter.set_custom_path(custom_path)

    default_id = config_manager.get_default_agent()
    if default_id:
        try:
            registry.set_default(default_id)
        except AdapterNotFoundError:
            logger.warning("Configured default agent %s is not registered; using %s", default_id, registry.default_id)
    return registry
