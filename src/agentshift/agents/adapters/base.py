"""Base adapter: the one interface every agent backend implements.

Callers only talk to :class:`AgentAdapter`; backend differences (argv,
environment, output dialect, probes) live in the subclasses.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Sequence

import httpx

from agentshift.util.config_manager import get_env_float
from agentshift.util.credentials import CredentialResolver, CredentialStore
from agentshift.util.executables import ExecutableResolver, resolve_cli_execution
from agentshift.util.process_registry import ProcessRegistry
from agentshift.util.terminal import TerminalLauncher

from ..limits import DEFAULT_DETECTOR, LimitDetector
from ..output_parser import ByteStream, OutputParser, StderrParser
from ..process import AgentProcess, spawn_agent_process
from ..types import (
    AgentCapabilities,
    AgentOutputEvent,
    AuthValidationResult,
    ChatOptions,
    CliTestResult,
    ExecutableNotFoundError,
    InvokeOptions,
    ModelInfo,
    ReauthResult,
    UsageLimitCheckResult,
    UsageLimitMatch,
    UsagePercentageResult,
    local_now,
)

logger = logging.getLogger(__name__)


PROBE_TIMEOUT = get_env_float("AGENTSHIFT_PROBE_TIMEOUT", 30.0)

MODEL_TIERS = ("sonnet", "opus", "haiku", "flash", "pro")


@dataclass
class ChatHandle:
    """A running chat turn: the process plus its lazy event sequence."""

    process: AgentProcess
    events: AsyncIterator[AgentOutputEvent]


@dataclass(frozen=True)
class ProbeOutput:
    returncode: int
    stdout: str
    stderr: str


def extract_tier(model_id: str) -> str | None:
    lower = model_id.lower()
    for tier in MODEL_TIERS:
        if tier in lower:
            return tier
    return None


def extract_version(model_id: str) -> tuple[int, int]:
    """Version of a model id as ``(major, minor)``: ``claude-sonnet-4-5`` → ``(4, 5)``."""
    match = re.search(r"(\d+)[-.](\d+)", model_id)
    if match:
        return int(match.group(1)), int(match.group(2))
    match = re.search(r"(\d+)", model_id)
    return (int(match.group(1)), 0) if match else (0, 0)


class AgentAdapter(ABC):
    """Shared agent contract plus the common spawn/parse/probe plumbing.

    Subclasses set the class attributes and implement ``build_invoke_args``
    and the probes. ``chat`` is optional; adapters that support it set
    ``supports_chat``.
    """

    id: str
    name: str
    cli_command: str
    capabilities: AgentCapabilities = AgentCapabilities()
    project_config_files: tuple[str, ...] = ()
    default_models: tuple[ModelInfo, ...] = ()
    supports_chat: bool = False

    # Backend-specific wording appended to the shared detector tables
    rate_limit_patterns: tuple[str, ...] = ()
    usage_limit_patterns: tuple[str, ...] = ()
    auth_error_patterns: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        resolver: ExecutableResolver | None = None,
        credentials: CredentialResolver | None = None,
        store: CredentialStore | None = None,
        process_registry: ProcessRegistry | None = None,
        terminal: TerminalLauncher | None = None,
        clock: Callable[[], datetime] = local_now,
        probe_timeout: float | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.resolver = resolver or ExecutableResolver(self.cli_command)
        self.credentials = credentials or self.build_credential_resolver(store)
        self.process_registry = process_registry
        self.terminal = terminal or TerminalLauncher()
        self.clock = clock
        self.probe_timeout = PROBE_TIMEOUT if probe_timeout is None else probe_timeout
        self.http_transport = http_transport
        self.detector: LimitDetector = DEFAULT_DETECTOR.extended(
            rate_limit=self.rate_limit_patterns,
            usage_limit=self.usage_limit_patterns,
            auth_error=self.auth_error_patterns,
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id!r})"

    # Executable resolution

    async def get_executable_path(self) -> str | None:
        return await self.resolver.resolve()

    def set_custom_path(self, path: str | None) -> None:
        self.resolver.set_custom_path(path)

    async def is_available(self) -> bool:
        version, _ = await self.resolver.get_version()
        return version is not None

    async def test_cli(self) -> CliTestResult:
        version, error = await self.resolver.get_version()
        if version is None:
            return CliTestResult(success=False, error=error)
        return CliTestResult(success=True, version=version)

    def require_executable(self) -> str:
        """Return the resolved executable.

        Raises:
            ExecutableNotFoundError: If ``get_executable_path`` never resolved one
        """
        path = self.resolver.cached_path
        if not path:
            raise ExecutableNotFoundError(
                f"{self.name} CLI not found. Ensure get_executable_path() is awaited before invoking."
            )
        return path

    # Credentials and environment

    def build_credential_resolver(self, store: CredentialStore | None) -> CredentialResolver:
        """Credential sources for this backend; none by default."""
        return CredentialResolver(agent_id=self.id, store=store)

    def credential_env(self, credential: str) -> dict[str, str]:
        """Environment variables carrying a resolved credential."""
        return {}

    async def build_env(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        env = {**os.environ, "CI": "true", "TERM": "dumb"}
        credential = await self.credentials.resolve()
        if credential:
            env.update(self.credential_env(credential))
        if extra:
            env.update(extra)
        return env

    # Invocation

    def prompt_via_stdin(self) -> bool:
        """Windows shells mangle multi-line arguments, so the prompt goes through stdin there."""
        return sys.platform == "win32"

    @abstractmethod
    def build_invoke_args(self, options: InvokeOptions) -> list[str]:
        """Backend argv for a task run, excluding the executable and prompt."""

    def build_chat_args(self, options: ChatOptions) -> list[str]:
        raise NotImplementedError(f"{self.name} does not support chat")

    async def _spawn(
        self,
        args: list[str],
        prompt: str,
        cwd: Path | str,
        extra_env: dict[str, str] | None,
        mode: str,
    ) -> AgentProcess:
        executable = self.require_executable()
        stdin_text = None
        if self.prompt_via_stdin():
            stdin_text = prompt
        else:
            args = [*args, prompt]
        env = await self.build_env(extra_env)
        command, prepend = resolve_cli_execution(executable)
        logger.debug("[%s] %s args: %s", self.name, mode, " ".join(args[:-1] if stdin_text is None else args))
        return await spawn_agent_process(
            command,
            [*prepend, *args],
            cwd=cwd,
            env=env,
            stdin_text=stdin_text,
            description=f"{self.id}:{mode}",
            registry=self.process_registry,
        )

    async def invoke(self, options: InvokeOptions) -> AgentProcess:
        """Start a task run.

        Raises:
            ExecutableNotFoundError: If the executable was never resolved
            SpawnError: If the OS refuses to launch it
        """
        args = self.build_invoke_args(options)
        return await self._spawn(args, options.prompt, options.working_directory, options.env, "invoke")

    async def chat(self, options: ChatOptions) -> ChatHandle:
        """Start a chat turn, resuming ``options.conversation_id`` when set.

        Raises:
            NotImplementedError: If the backend has no chat mode
            ExecutableNotFoundError: If the executable was never resolved
        """
        if not self.supports_chat:
            raise NotImplementedError(f"{self.name} does not support chat")
        args = self.build_chat_args(options)
        process = await self._spawn(args, options.message, options.working_directory, None, "chat")
        return ChatHandle(process=process, events=self.chat_parser().parse(process.stdout))

    # Output classification

    def output_parser(self) -> OutputParser:
        return OutputParser(self.detector, self.clock)

    def chat_parser(self) -> OutputParser:
        return self.output_parser()

    def parse_output(self, stream: ByteStream) -> AsyncIterator[AgentOutputEvent]:
        return self.output_parser().parse(stream)

    def parse_stderr(self, stream: ByteStream) -> AsyncIterator[AgentOutputEvent]:
        return StderrParser(self.detector, self.clock).parse(stream)

    def detect_rate_limit(self, text: str) -> bool:
        return self.detector.detect_rate_limit(text)

    def detect_usage_limit(self, text: str) -> UsageLimitMatch:
        return self.detector.detect_usage_limit(text, now=self.clock())

    def detect_auth_error(self, text: str) -> bool:
        return self.detector.detect_auth_error(text)

    # Probes

    def http_client(self, timeout: float = 10.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.http_transport)

    async def run_cli_probe(self, args: Sequence[str]) -> ProbeOutput | None:
        """Run the CLI with ``args`` under the probe timeout.

        Returns:
            The captured output, or None on spawn failure or timeout
        """
        path = await self.get_executable_path()
        if not path:
            return None
        command, prepend = resolve_cli_execution(path)
        env = await self.build_env()
        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *prepend,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            logger.warning("[%s] probe spawn error: %s", self.name, e)
            return None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("[%s] probe timed out after %ss", self.name, self.probe_timeout)
            return None
        return ProbeOutput(
            returncode=proc.returncode if proc.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    @abstractmethod
    async def check_usage_limits(self) -> UsageLimitCheckResult:
        """Cheap pre-flight probe; only refuses when a limit is known."""

    @abstractmethod
    async def validate_auth(self) -> AuthValidationResult:
        """Auth probe; ambiguous failures are reported as valid."""

    @abstractmethod
    async def get_usage_percentage(self) -> UsagePercentageResult:
        """Current quota utilization, where the backend exposes it."""

    def reauth_command(self, executable: str) -> list[str]:
        """Command a user runs interactively to log in again."""
        return [executable]

    async def trigger_reauth(self, project_path: str | None = None) -> ReauthResult:
        path = await self.get_executable_path()
        if not path:
            return ReauthResult(success=False, error=f"{self.name} CLI not found")
        cwd = Path(project_path) if project_path else Path.home()
        ok, error = self.terminal.launch(self.reauth_command(path), cwd=cwd)
        if not ok:
            return ReauthResult(success=False, error=f"Failed to launch terminal: {error}")
        return ReauthResult(success=True)

    # Models and static metadata

    async def fetch_available_models(self) -> list[ModelInfo]:
        return list(self.default_models)

    async def resolve_model_alias(self, alias_or_id: str) -> str:
        """Resolve a tier alias (``sonnet``) to the newest model id of that tier.

        Ids containing ``-`` or ``/`` are returned unchanged. Unknown aliases
        fall back to the default model, then to the input itself.
        """
        if "-" in alias_or_id or "/" in alias_or_id:
            return alias_or_id

        alias = alias_or_id.lower()
        models = await self.fetch_available_models()
        matching = [m for m in models if (m.tier or extract_tier(m.id)) == alias or alias in m.id.lower()]
        if not matching:
            default = next((m for m in models if m.is_default), None)
            return default.id if default else alias_or_id
        return max(matching, key=lambda m: extract_version(m.id)).id

    def get_project_config_files(self) -> list[str]:
        return list(self.project_config_files)

    def get_capabilities(self) -> AgentCapabilities:
        return self.capabilities
