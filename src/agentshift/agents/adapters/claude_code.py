"""Claude Code CLI adapter."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import httpx

from agentshift.util.credentials import CredentialFile, CredentialResolver, CredentialStore, KeychainEntry

from ..output_parser import OutputParser, error_text
from ..types import (
    AgentCapabilities,
    AgentOutputEvent,
    AuthValidationResult,
    ChatOptions,
    InvokeOptions,
    ModelInfo,
    TokenUsage,
    UsageLimitCheckResult,
    UsagePercentageResult,
    UsageWindow,
)
from .base import AgentAdapter, ProbeOutput, extract_tier

logger = logging.getLogger(__name__)

USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
MODELS_API_URL = "https://api.anthropic.com/v1/models"
USER_AGENT = "claude-code/2.0.32"
ANTHROPIC_BETA = "oauth-2025-04-20"

PROBE_ARGS = ("-p", "--output-format", "json", "Reply with only the word: ok")

STREAM_ARGS = ("-p", "--verbose", "--output-format", "stream-json", "--dangerously-skip-permissions")

REAUTH_MESSAGE = "Authentication required. Please run Claude Code in a terminal to authenticate."


def oauth_credential_files() -> list[CredentialFile]:
    home = Path.home()
    files = [
        CredentialFile(home / ".claude" / ".credentials.json", "claudeAiOauth.accessToken"),
        CredentialFile(home / ".config" / "claude-code" / "credentials.json", "claudeAiOauth.accessToken"),
    ]
    if sys.platform == "win32":
        for env_name in ("LOCALAPPDATA", "APPDATA"):
            base = os.environ.get(env_name)
            if base:
                for folder in ("claude-code", "Claude Code"):
                    files.append(CredentialFile(Path(base) / folder / "credentials.json", "claudeAiOauth.accessToken"))
    return files


def describe_tool_input(tool: str, tool_input: Any) -> str:
    """Short human-readable target of a tool call (file, command or pattern)."""
    if not isinstance(tool_input, dict):
        return ""
    if tool in ("Read", "Edit", "Write", "MultiEdit", "NotebookEdit"):
        return str(tool_input.get("file_path", ""))
    if tool == "Bash":
        return str(tool_input.get("command", ""))[:50]
    if tool in ("Glob", "Grep"):
        return str(tool_input.get("pattern", ""))
    for key in ("file_path", "path", "pattern", "url", "query", "description"):
        value = tool_input.get(key)
        if value:
            return str(value)[:80]
    return ""


def token_usage(payload: dict[str, Any]) -> TokenUsage | None:
    usage = payload.get("usage")
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        input_tokens=usage.get("input_tokens") or 0,
        output_tokens=usage.get("output_tokens") or 0,
        cache_creation_input_tokens=usage.get("cache_creation_input_tokens") or 0,
        cache_read_input_tokens=usage.get("cache_read_input_tokens") or 0,
        cost_usd=payload.get("total_cost_usd"),
    )


class ClaudeStreamParser(OutputParser):
    """Task-mode parser for ``--output-format stream-json``.

    Messages keep the raw JSON line so log viewers can render it.
    """

    def parse_json(self, obj: dict[str, Any], line: str) -> list[AgentOutputEvent]:
        session_id = obj.get("session_id")
        if obj.get("type") == "error" or obj.get("error"):
            event = self.classify_error_text(error_text(obj, line))
            return [self.event(event.kind, line, reset_at=event.reset_at, conversation_id=session_id)]
        if obj.get("type") == "result":
            return [self.event("complete", line, conversation_id=session_id, usage=token_usage(obj))]
        return [self.event("log", line, conversation_id=session_id)]


class ClaudeChatParser(OutputParser):
    """Chat-mode parser: assistant text, tool activity, completion and errors.

    One instance per chat turn; the conversation id from the first line that
    carries one is stamped on every later event.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.conversation_id: str | None = None

    def parse_text(self, line: str) -> list[AgentOutputEvent]:
        # Plain diagnostics never enter the transcript; only limit lines surface
        events = super().parse_text(line)
        return [e for e in events if e.kind in ("usage-limit", "rate-limit")]

    def parse_json(self, obj: dict[str, Any], line: str) -> list[AgentOutputEvent]:
        if obj.get("session_id") and not self.conversation_id:
            self.conversation_id = obj["session_id"]
            logger.debug("Chat conversation id: %s", self.conversation_id)
        cid = self.conversation_id

        msg_type = obj.get("type")
        if msg_type == "assistant":
            events = []
            content = (obj.get("message") or {}).get("content") or []
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    events.append(self.event("log", block["text"], conversation_id=cid))
                elif block.get("type") == "tool_use":
                    tool = block.get("name", "unknown")
                    target = describe_tool_input(tool, block.get("input"))
                    events.append(
                        self.event(
                            "tool-activity",
                            f"{tool}: {target}" if target else tool,
                            tool=tool,
                            target=target,
                            conversation_id=cid,
                        )
                    )
            return events
        if msg_type == "result":
            return [self.event("complete", str(obj.get("result", "")), conversation_id=cid, usage=token_usage(obj))]
        if msg_type == "error" or obj.get("error"):
            event = self.classify_error_text(error_text(obj, "Unknown error"))
            return [self.event(event.kind, event.message, reset_at=event.reset_at, conversation_id=cid)]
        return []


class ClaudeCodeAdapter(AgentAdapter):
    """Runs the ``claude`` CLI in print mode with streaming JSON output."""

    id = "claude-code"
    name = "Claude Code"
    cli_command = "claude"
    supports_chat = True
    capabilities = AgentCapabilities(
        skills=True,
        project_config=True,
        context_files=True,
        non_interactive=True,
        pause_resume=False,
    )
    project_config_files = ("CLAUDE.md", ".claude/settings.json", ".claude/commands")
    default_models = (
        ModelInfo("claude-sonnet-4-5", "Claude Sonnet 4.5", is_default=True, tier="sonnet"),
        ModelInfo("claude-opus-4-1", "Claude Opus 4.1", tier="opus"),
        ModelInfo("claude-haiku-4-5", "Claude Haiku 4.5", tier="haiku"),
    )
    auth_error_patterns = (
        r"oauth.*(?:error|failed)",
        r"(?:error|failed).*oauth",
        r"credential.*(?:invalid|expired)",
        r"(?:invalid|expired).*credential",
    )

    def __init__(self, *, oauth: CredentialResolver | None = None, **kwargs):
        super().__init__(**kwargs)
        self.oauth = oauth or CredentialResolver(
            agent_id=f"{self.id}-oauth",
            keychain_entry=KeychainEntry("Claude Code-credentials", "claudeAiOauth.accessToken"),
            credential_files=oauth_credential_files(),
        )
        self._models_cache: list[ModelInfo] | None = None

    def build_credential_resolver(self, store: CredentialStore | None) -> CredentialResolver:
        return CredentialResolver(agent_id=self.id, env_vars=("ANTHROPIC_API_KEY",), store=store)

    def credential_env(self, credential: str) -> dict[str, str]:
        return {"ANTHROPIC_API_KEY": credential}

    def build_invoke_args(self, options: InvokeOptions) -> list[str]:
        args = list(STREAM_ARGS)
        if options.model:
            args += ["--model", options.model]
        for path in options.context_files:
            args += ["--add-dir", path]
        return args

    def build_chat_args(self, options: ChatOptions) -> list[str]:
        args = list(STREAM_ARGS)
        if options.model:
            args += ["--model", options.model]
        if options.conversation_id:
            args += ["--resume", options.conversation_id]
        return args

    def output_parser(self) -> OutputParser:
        return ClaudeStreamParser(self.detector, self.clock)

    def chat_parser(self) -> OutputParser:
        return ClaudeChatParser(self.detector, self.clock)

    def _probe_error_text(self, probe: ProbeOutput) -> str | None:
        """Error text of a probe, or None when it succeeded cleanly.

        Exit code 0 can still carry a JSON error payload; non-JSON output on
        success is treated as suspect and checked too.
        """
        if probe.returncode != 0:
            return probe.stderr.strip() or probe.stdout.strip() or f"Process exited with code {probe.returncode}"
        output = probe.stdout.strip()
        try:
            payload = json.loads(output)
        except ValueError:
            return output or None
        if isinstance(payload, dict) and (payload.get("type") == "error" or payload.get("is_error")):
            return error_text(payload, str(payload.get("result") or output))
        return None

    async def check_usage_limits(self) -> UsageLimitCheckResult:
        if not await self.get_executable_path():
            return UsageLimitCheckResult(can_proceed=False, message="Claude Code CLI not found")

        probe = await self.run_cli_probe(PROBE_ARGS)
        if probe is None:
            return UsageLimitCheckResult(can_proceed=True)

        text = self._probe_error_text(probe)
        if text:
            match = self.detect_usage_limit(text)
            if match.matched:
                return UsageLimitCheckResult(can_proceed=False, reset_at=match.reset_at, message=text)
            if probe.returncode != 0:
                logger.warning("[%s] usage check hit a non-limit error: %.200s", self.name, text)
        return UsageLimitCheckResult(can_proceed=True)

    async def validate_auth(self) -> AuthValidationResult:
        if not await self.get_executable_path():
            return AuthValidationResult(is_valid=False, requires_reauth=False, error="Claude Code CLI not found")

        probe = await self.run_cli_probe(PROBE_ARGS)
        if probe is None:
            return AuthValidationResult(is_valid=True, requires_reauth=False)

        combined = "\n".join(part for part in (probe.stdout, probe.stderr) if part)
        if self.detect_auth_error(combined):
            logger.warning("[%s] auth probe detected auth error: %.200s", self.name, combined)
            return AuthValidationResult(is_valid=False, requires_reauth=True, error=REAUTH_MESSAGE)
        if probe.returncode != 0:
            logger.warning("[%s] auth probe exited %s without an auth error", self.name, probe.returncode)
        return AuthValidationResult(is_valid=True, requires_reauth=False)

    def _api_headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "anthropic-beta": ANTHROPIC_BETA,
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }

    async def get_usage_percentage(self) -> UsagePercentageResult:
        token = await self.oauth.resolve()
        if not token:
            return UsagePercentageResult()
        try:
            async with self.http_client() as client:
                response = await client.get(USAGE_API_URL, headers=self._api_headers(token))
            if response.status_code != 200:
                return UsagePercentageResult()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("[%s] usage API unavailable: %s", self.name, e)
            return UsagePercentageResult()

        def window(key: str) -> UsageWindow | None:
            raw = data.get(key)
            if not isinstance(raw, dict) or raw.get("utilization") is None:
                return None
            try:
                return UsageWindow(utilization=float(raw["utilization"]), resets_at=raw.get("resets_at"))
            except (TypeError, ValueError):
                return None

        return UsagePercentageResult(five_hour=window("five_hour"), seven_day=window("seven_day"))

    async def fetch_available_models(self) -> list[ModelInfo]:
        if self._models_cache is not None:
            return self._models_cache

        token = await self.oauth.resolve()
        if not token:
            return list(self.default_models)
        headers = {**self._api_headers(token), "anthropic-version": "2023-06-01"}
        try:
            async with self.http_client() as client:
                response = await client.get(MODELS_API_URL, headers=headers)
            if response.status_code != 200:
                logger.warning("[%s] models API error: %s", self.name, response.status_code)
                return list(self.default_models)
            data = response.json().get("data")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("[%s] models API unavailable: %s", self.name, e)
            return list(self.default_models)

        if not isinstance(data, list):
            return list(self.default_models)

        default_id = next(m.id for m in self.default_models if m.is_default)
        models = [
            ModelInfo(
                id=item["id"],
                name=item.get("display_name") or item["id"],
                is_default=item["id"] == default_id,
                tier=extract_tier(item["id"]),
            )
            for item in data
            if isinstance(item, dict) and item.get("id") and extract_tier(item["id"]) in ("sonnet", "opus", "haiku")
        ]
        if not models:
            return list(self.default_models)
        self._models_cache = models
        return models
