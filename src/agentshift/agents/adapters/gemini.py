"""Gemini CLI adapter with local rate-tier accounting.

The free tier is easy to exhaust, so requests are counted locally against the
configured tier's per-minute and per-day ceilings and the pre-flight check
refuses before a network probe when a ceiling is nearly reached.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import httpx

from agentshift.util.credentials import CredentialFile, CredentialResolver, CredentialStore

from ..limits import next_utc_midnight
from ..output_parser import error_text
from ..process import AgentProcess
from ..types import (
    AgentCapabilities,
    AuthValidationResult,
    InvokeOptions,
    ModelInfo,
    ReauthResult,
    UsageLimitCheckResult,
    UsagePercentageResult,
    UsageWindow,
)
from .base import AgentAdapter, extract_tier, extract_version

logger = logging.getLogger(__name__)

MODELS_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"

DEFAULT_MODEL = "gemini-2.5-pro"

PROBE_ARGS = ("--output-format", "json", "Reply with only the word: ok")

NEAR_LIMIT_PERCENT = 80.0
REFUSE_PERCENT = 95.0


@dataclass(frozen=True)
class RateTier:
    rpm: int
    rpd: int


RATE_TIERS: dict[str, RateTier] = {
    "FREE": RateTier(rpm=15, rpd=1500),
    "TIER_1": RateTier(rpm=500, rpd=10000),
    "TIER_2": RateTier(rpm=1000, rpd=50000),
    "TIER_3": RateTier(rpm=2000, rpd=100000),
}


@dataclass(frozen=True)
class RateCounter:
    current: int
    limit: int

    @property
    def percentage(self) -> float:
        return self.current / self.limit * 100


@dataclass(frozen=True)
class RateLimitStatus:
    rpm: RateCounter
    rpd: RateCounter

    @property
    def is_near_limit(self) -> bool:
        return self.rpm.percentage >= NEAR_LIMIT_PERCENT or self.rpd.percentage >= NEAR_LIMIT_PERCENT

    @property
    def can_proceed(self) -> bool:
        return self.rpm.percentage < REFUSE_PERCENT and self.rpd.percentage < REFUSE_PERCENT


def gemini_credential_files() -> list[CredentialFile]:
    home = Path.home()
    if sys.platform == "win32":
        first = Path(os.environ.get("APPDATA", home)) / "gemini" / "credentials.json"
    else:
        first = home / ".config" / "gemini" / "credentials.json"
    return [CredentialFile(first, "apiKey"), CredentialFile(home / ".gemini" / "credentials.json", "apiKey")]


def include_directories(context_files: list[str]) -> list[str]:
    """Unique parent directories of ``context_files``, in first-seen order."""
    seen: dict[str, None] = {}
    for file in context_files:
        directory = file.rsplit("/", 1)[0] if file.rfind("/") > 0 else file
        seen.setdefault(directory, None)
    return list(seen)


class GeminiAdapter(AgentAdapter):
    id = "gemini"
    name = "Gemini"
    cli_command = "gemini"
    capabilities = AgentCapabilities(
        skills=False,
        project_config=True,
        context_files=True,
        non_interactive=True,
        pause_resume=False,
    )
    project_config_files = ("GEMINI.md", ".gemini/config.json", ".gemini/settings.json")
    default_models = (
        ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", tier="pro"),
        ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", is_default=True, tier="flash"),
        ModelInfo("gemini-2.0-flash", "Gemini 2.0 Flash", tier="flash"),
    )
    rate_limit_patterns = (
        r"requests per minute",
        r"rpm limit",
        r"tpm limit",
        r"rpd limit",
    )
    usage_limit_patterns = (
        r"daily_limit",
        r"resource exhausted",
        r"upgrade your plan",
    )
    auth_error_patterns = (
        r"permission denied",
        r"invalid credentials",
        r"api key.*(?:invalid|expired|missing)",
        r"(?:invalid|expired|missing).*api key",
        r"authentication.*(?:failed|error|required)",
    )

    def __init__(self, *, tier: str = "FREE", **kwargs):
        super().__init__(**kwargs)
        self.set_tier(tier)
        now = self.clock()
        self._requests_this_minute = 0
        self._requests_today = 0
        self._minute_start = now
        self._day_start = now
        self._models_cache: list[ModelInfo] | None = None

    def build_credential_resolver(self, store: CredentialStore | None) -> CredentialResolver:
        return CredentialResolver(
            agent_id=self.id,
            env_vars=("GOOGLE_AI_API_KEY", "GEMINI_API_KEY"),
            credential_files=gemini_credential_files(),
            store=store,
        )

    def credential_env(self, credential: str) -> dict[str, str]:
        return {"GEMINI_API_KEY": credential}

    def build_invoke_args(self, options: InvokeOptions) -> list[str]:
        args = ["--model", options.model or DEFAULT_MODEL, "--output-format", "stream-json", "-y"]
        for directory in include_directories(options.context_files):
            args += ["--include-directories", directory]
        return args

    async def invoke(self, options: InvokeOptions) -> AgentProcess:
        process = await super().invoke(options)
        self.track_request()
        return process

    # Local rate accounting

    def set_tier(self, tier: str) -> None:
        if tier not in RATE_TIERS:
            raise ValueError(f"Unknown Gemini rate tier: {tier}. Valid: {', '.join(RATE_TIERS)}")
        self.tier = tier
        logger.debug("[%s] rate tier set to %s", self.name, tier)

    def _roll_windows(self, now: datetime) -> None:
        if now - self._minute_start >= timedelta(minutes=1):
            self._requests_this_minute = 0
            self._minute_start = now
        if now - self._day_start >= timedelta(days=1):
            self._requests_today = 0
            self._day_start = now

    def track_request(self) -> None:
        self._roll_windows(self.clock())
        self._requests_this_minute += 1
        self._requests_today += 1

    def get_rate_limit_status(self) -> RateLimitStatus:
        self._roll_windows(self.clock())
        limits = RATE_TIERS[self.tier]
        return RateLimitStatus(
            rpm=RateCounter(self._requests_this_minute, limits.rpm),
            rpd=RateCounter(self._requests_today, limits.rpd),
        )

    async def get_usage_percentage(self) -> UsagePercentageResult:
        status = self.get_rate_limit_status()
        minute_reset = self._minute_start + timedelta(minutes=1)
        return UsagePercentageResult(
            five_hour=UsageWindow(status.rpm.percentage, minute_reset.isoformat()),
            seven_day=UsageWindow(status.rpd.percentage, next_utc_midnight(self.clock()).isoformat()),
        )

    # Probes

    async def check_usage_limits(self) -> UsageLimitCheckResult:
        if not await self.get_executable_path():
            return UsageLimitCheckResult(can_proceed=False, message="Gemini CLI not found")

        status = self.get_rate_limit_status()
        if not status.can_proceed:
            if status.rpm.percentage >= REFUSE_PERCENT:
                return UsageLimitCheckResult(
                    can_proceed=False,
                    reset_at=self._minute_start + timedelta(minutes=1),
                    message=(
                        f"Approaching rate limit: {status.rpm.current}/{status.rpm.limit} "
                        f"requests per minute ({self.tier} tier)"
                    ),
                )
            return UsageLimitCheckResult(
                can_proceed=False,
                reset_at=next_utc_midnight(self.clock()),
                message=(
                    f"Approaching daily limit: {status.rpd.current}/{status.rpd.limit} "
                    f"requests per day ({self.tier} tier)"
                ),
            )

        probe = await self.run_cli_probe(PROBE_ARGS)
        if probe is None:
            return UsageLimitCheckResult(can_proceed=True)

        if probe.returncode == 0:
            output = probe.stdout or probe.stderr
            try:
                payload = json.loads(output)
            except ValueError:
                text = output
            else:
                if not isinstance(payload, dict) or not payload.get("error"):
                    return UsageLimitCheckResult(can_proceed=True)
                text = error_text(payload, output)
        else:
            text = probe.stderr or probe.stdout or f"Process exited with code {probe.returncode}"

        match = self.detect_usage_limit(text)
        if match.matched or self.detect_rate_limit(text):
            return UsageLimitCheckResult(can_proceed=False, reset_at=match.reset_at, message=text)
        if probe.returncode != 0:
            logger.warning("[%s] usage check hit a non-limit error: %.200s", self.name, text)
        return UsageLimitCheckResult(can_proceed=True)

    async def _list_models(self, api_key: str) -> httpx.Response:
        async with self.http_client() as client:
            return await client.get(MODELS_API_URL, params={"key": api_key})

    async def validate_auth(self) -> AuthValidationResult:
        api_key = await self.credentials.resolve()
        if not api_key:
            return AuthValidationResult(
                is_valid=False,
                requires_reauth=True,
                error="No API key found. Please configure your Gemini API key.",
            )
        try:
            response = await self._list_models(api_key)
        except httpx.HTTPError as e:
            logger.warning("[%s] auth validation error: %s", self.name, e)
            return AuthValidationResult(is_valid=True, requires_reauth=False, error=f"Could not validate auth: {e}")

        if response.status_code in (401, 403):
            logger.warning("[%s] auth validation failed: %s", self.name, response.status_code)
            return AuthValidationResult(
                is_valid=False,
                requires_reauth=True,
                error=f"Authentication failed ({response.status_code}). Please check your API key.",
            )
        if response.status_code != 200:
            return AuthValidationResult(
                is_valid=True,
                requires_reauth=False,
                error=f"API returned {response.status_code}, but auth may still be valid",
            )
        return AuthValidationResult(is_valid=True, requires_reauth=False)

    async def trigger_reauth(self, project_path: str | None = None) -> ReauthResult:
        return ReauthResult(
            success=False,
            error="Gemini uses an API key; store a new key for the 'gemini' agent. Keys: https://aistudio.google.com/apikey",
        )

    async def fetch_available_models(self) -> list[ModelInfo]:
        if self._models_cache is not None:
            return self._models_cache

        api_key = await self.credentials.resolve()
        if not api_key:
            return list(self.default_models)
        try:
            response = await self._list_models(api_key)
            if response.status_code != 200:
                logger.warning("[%s] models API error: %s", self.name, response.status_code)
                return list(self.default_models)
            raw_models = response.json().get("models")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("[%s] failed to fetch models: %s", self.name, e)
            return list(self.default_models)

        if not isinstance(raw_models, list):
            return list(self.default_models)

        candidates = []
        for raw in raw_models:
            if not isinstance(raw, dict):
                continue
            full_name = str(raw.get("name", ""))
            lower = full_name.lower()
            if "gemini" not in lower or "generateContent" not in (raw.get("supportedGenerationMethods") or []):
                continue
            if any(skip in lower for skip in ("embedding", "aqa", "vision")):
                continue
            model_id = full_name.removeprefix("models/")
            candidates.append((model_id, raw.get("displayName") or model_id))
        if not candidates:
            return list(self.default_models)

        def rank(model_id: str) -> tuple[tuple[int, int], int]:
            kind = 3 if "pro" in model_id else 1 if "flash-lite" in model_id else 2 if "flash" in model_id else 0
            return extract_version(model_id), kind

        candidates.sort(key=lambda c: rank(c[0]), reverse=True)
        flash = [c for c in candidates if extract_tier(c[0]) == "flash"]
        default_id = max(flash, key=lambda c: extract_version(c[0]))[0] if flash else candidates[0][0]
        self._models_cache = [
            ModelInfo(id=model_id, name=name, is_default=model_id == default_id, tier=extract_tier(model_id))
            for model_id, name in candidates
        ]
        return self._models_cache
