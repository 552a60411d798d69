"""OpenRouter adapter: the Claude CLI pointed at an OpenRouter-compatible endpoint."""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from agentshift.util.credentials import CredentialResolver, CredentialStore

from ..output_parser import OutputParser
from ..types import (
    AgentCapabilities,
    AuthValidationResult,
    CredentialsMissingError,
    InvokeOptions,
    ModelInfo,
    ReauthResult,
    UsageLimitCheckResult,
    UsagePercentageResult,
    UsageWindow,
)
from .base import AgentAdapter, extract_tier, extract_version
from .claude_code import STREAM_ARGS, ClaudeStreamParser

logger = logging.getLogger(__name__)

API_BASE = "https://openrouter.ai/api/v1"
KEY_URL = f"{API_BASE}/auth/key"
MODELS_URL = f"{API_BASE}/models"

DEFAULT_BASE_URL = "https://openrouter.ai/api"

MODEL_FAMILIES = ("claude", "gpt-4", "gemini", "llama", "deepseek", "mistral", "codestral")

_PROVIDER_RANK = {"anthropic": 5, "openai": 4, "google": 3, "meta-llama": 2}
_TIER_RANK = {"opus": 5, "sonnet": 4, "haiku": 3, "pro": 3, "flash": 2}


def _model_rank(model_id: str) -> tuple[int, int, tuple[int, int]]:
    provider = model_id.split("/", 1)[0]
    tier = extract_tier(model_id)
    return _PROVIDER_RANK.get(provider, 1), _TIER_RANK.get(tier or "", 1), extract_version(model_id)


class OpenRouterAdapter(AgentAdapter):
    id = "openrouter"
    name = "OpenRouter"
    cli_command = "claude"
    capabilities = AgentCapabilities(
        skills=True,
        project_config=True,
        context_files=True,
        non_interactive=True,
        pause_resume=False,
    )
    project_config_files = ("CLAUDE.md", ".claude/settings.json", ".claude/commands")
    default_models = (
        ModelInfo("anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5", is_default=True, tier="sonnet"),
        ModelInfo("anthropic/claude-opus-4.1", "Claude Opus 4.1", tier="opus"),
        ModelInfo("google/gemini-2.5-pro", "Gemini 2.5 Pro", tier="pro"),
        ModelInfo("openai/gpt-4o", "GPT-4o"),
    )
    rate_limit_patterns = (r"requests per minute",)
    usage_limit_patterns = (r"credit balance", r"payment required")
    auth_error_patterns = (r"invalid credentials", r"api key.*(?:invalid|expired)")

    def __init__(self, *, base_url: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url or os.environ.get("AGENTSHIFT_OPENROUTER_BASE_URL", DEFAULT_BASE_URL)
        self._models_cache: list[ModelInfo] | None = None

    def build_credential_resolver(self, store: CredentialStore | None) -> CredentialResolver:
        return CredentialResolver(agent_id=self.id, env_vars=("OPENROUTER_API_KEY",), store=store)

    def credential_env(self, credential: str) -> dict[str, str]:
        return {
            "ANTHROPIC_BASE_URL": self.base_url,
            "OPENROUTER_API_KEY": credential,
            "ANTHROPIC_AUTH_TOKEN": credential,
            "ANTHROPIC_API_KEY": "",
        }

    async def build_env(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        """Environment for a run.

        Raises:
            CredentialsMissingError: If no OpenRouter key resolves
        """
        credential = await self.credentials.resolve()
        if not credential:
            raise CredentialsMissingError("OpenRouter API key not configured")
        env = {**os.environ, "CI": "true", "TERM": "dumb", **self.credential_env(credential)}
        if extra:
            env.update(extra)
        return env

    def build_invoke_args(self, options: InvokeOptions) -> list[str]:
        args = list(STREAM_ARGS)
        if options.model:
            args += ["--model", options.model]
        for path in options.context_files:
            args += ["--add-dir", path]
        return args

    def output_parser(self) -> OutputParser:
        return ClaudeStreamParser(self.detector, self.clock)

    async def _key_info(self, api_key: str) -> httpx.Response:
        async with self.http_client() as client:
            return await client.get(KEY_URL, headers={"Authorization": f"Bearer {api_key}"})

    @staticmethod
    def _key_data(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json().get("data")
        except (ValueError, AttributeError):
            return {}
        return data if isinstance(data, dict) else {}

    async def check_usage_limits(self) -> UsageLimitCheckResult:
        api_key = await self.credentials.resolve()
        if not api_key:
            return UsageLimitCheckResult(can_proceed=False, message="OpenRouter API key not configured")
        try:
            response = await self._key_info(api_key)
        except httpx.HTTPError as e:
            logger.warning("[%s] usage check failed: %s", self.name, e)
            return UsageLimitCheckResult(can_proceed=True)

        if response.status_code in (401, 403):
            return UsageLimitCheckResult(can_proceed=False, message="Invalid OpenRouter API key")
        if response.status_code != 200:
            return UsageLimitCheckResult(can_proceed=True)

        remaining = self._key_data(response).get("limit_remaining")
        if isinstance(remaining, (int, float)) and remaining <= 0:
            return UsageLimitCheckResult(
                can_proceed=False,
                message="OpenRouter credit limit reached. Please add credits at https://openrouter.ai/credits",
            )
        return UsageLimitCheckResult(can_proceed=True)

    async def validate_auth(self) -> AuthValidationResult:
        api_key = await self.credentials.resolve()
        if not api_key:
            return AuthValidationResult(
                is_valid=False,
                requires_reauth=True,
                error="No OpenRouter API key found. Please add your API key.",
            )
        try:
            response = await self._key_info(api_key)
        except httpx.HTTPError as e:
            return AuthValidationResult(is_valid=True, requires_reauth=False, error=f"Could not validate auth: {e}")

        if response.status_code in (401, 403):
            return AuthValidationResult(
                is_valid=False,
                requires_reauth=True,
                error="Invalid OpenRouter API key. Please check your API key at https://openrouter.ai/keys",
            )
        if response.status_code != 200:
            return AuthValidationResult(
                is_valid=True,
                requires_reauth=False,
                error=f"API returned {response.status_code}, but key may still be valid",
            )
        return AuthValidationResult(is_valid=True, requires_reauth=False)

    async def get_usage_percentage(self) -> UsagePercentageResult:
        api_key = await self.credentials.resolve()
        if not api_key:
            return UsagePercentageResult(error="OpenRouter API key not configured")
        try:
            response = await self._key_info(api_key)
        except httpx.HTTPError as e:
            return UsagePercentageResult(error=str(e))
        if response.status_code != 200:
            return UsagePercentageResult(error=f"API returned {response.status_code}")

        data = self._key_data(response)
        limit, usage = data.get("limit"), data.get("usage")
        if limit and isinstance(usage, (int, float)):
            # Credit based, so there is no reset time
            return UsagePercentageResult(five_hour=UsageWindow(utilization=usage / limit * 100))
        return UsagePercentageResult()

    async def trigger_reauth(self, project_path: str | None = None) -> ReauthResult:
        return ReauthResult(
            success=False,
            error="Store a new key for the 'openrouter' agent. Keys: https://openrouter.ai/keys",
        )

    async def fetch_available_models(self) -> list[ModelInfo]:
        if self._models_cache is not None:
            return self._models_cache

        api_key = await self.credentials.resolve()
        if not api_key:
            return list(self.default_models)
        try:
            async with self.http_client() as client:
                response = await client.get(MODELS_URL, headers={"Authorization": f"Bearer {api_key}"})
            if response.status_code != 200:
                logger.warning("[%s] models API error: %s", self.name, response.status_code)
                return list(self.default_models)
            raw_models = response.json().get("data")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("[%s] failed to fetch models: %s", self.name, e)
            return list(self.default_models)

        if not isinstance(raw_models, list):
            return list(self.default_models)

        candidates = [
            (raw["id"], raw.get("name") or raw["id"])
            for raw in raw_models
            if isinstance(raw, dict)
            and isinstance(raw.get("id"), str)
            and any(family in raw["id"].lower() for family in MODEL_FAMILIES)
        ]
        if not candidates:
            return list(self.default_models)

        candidates.sort(key=lambda c: _model_rank(c[0]), reverse=True)
        sonnets = [c[0] for c in candidates if c[0].startswith("anthropic/") and extract_tier(c[0]) == "sonnet"]
        default_id = max(sonnets, key=extract_version) if sonnets else candidates[0][0]
        self._models_cache = [
            ModelInfo(id=model_id, name=name, is_default=model_id == default_id, tier=extract_tier(model_id))
            for model_id, name in candidates
        ]
        return self._models_cache
