"""Shared types for agent adapters: output events, capabilities, probe results and errors."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal


OutputKind = Literal["log", "error", "rate-limit", "usage-limit", "complete", "tool-activity"]


def local_now() -> datetime:
    """Current time as a timezone-aware datetime in the local zone."""
    return datetime.now().astimezone()


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting reported by a backend when a run completes."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    cost_usd: float | None = None


@dataclass(frozen=True)
class AgentOutputEvent:
    """One classified line of agent output.

    Created once per parsed line and handed straight to the consumer.
    ``reset_at`` is only meaningful for ``usage-limit`` events, ``tool`` and
    ``target`` only for ``tool-activity`` events.
    """

    kind: OutputKind
    message: str
    timestamp: datetime = field(default_factory=local_now)
    reset_at: datetime | None = None
    tool: str | None = None
    target: str | None = None
    conversation_id: str | None = None
    usage: TokenUsage | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        d["reset_at"] = self.reset_at.isoformat() if self.reset_at else None
        return d


@dataclass(frozen=True)
class AgentCapabilities:
    """Static description of what an adapter supports."""

    skills: bool = False
    project_config: bool = False
    context_files: bool = False
    non_interactive: bool = True
    pause_resume: bool = False


@dataclass
class InvokeOptions:
    """Options for a single task invocation."""

    prompt: str
    working_directory: Path | str
    model: str | None = None
    context_files: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ChatOptions:
    """Options for one chat turn, optionally resuming a prior conversation."""

    message: str
    working_directory: Path | str
    conversation_id: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class ExitResult:
    """How a process ended. ``signal`` is set when it was killed by one."""

    exit_code: int
    signal: int | None = None


@dataclass(frozen=True)
class UsageLimitMatch:
    """Result of usage-limit detection on one piece of text."""

    matched: bool
    reset_at: datetime | None = None


@dataclass(frozen=True)
class UsageLimitCheckResult:
    """Result of a pre-flight usage probe."""

    can_proceed: bool
    reset_at: datetime | None = None
    message: str | None = None


@dataclass(frozen=True)
class AuthValidationResult:
    """Result of an auth probe. Ambiguous failures report ``is_valid=True``."""

    is_valid: bool
    requires_reauth: bool
    error: str | None = None


@dataclass(frozen=True)
class UsageWindow:
    utilization: float
    resets_at: str | None = None


@dataclass(frozen=True)
class UsagePercentageResult:
    five_hour: UsageWindow | None = None
    seven_day: UsageWindow | None = None
    error: str | None = None

    @property
    def peak(self) -> float | None:
        """Highest utilization across the reported windows, or None if none were reported."""
        values = [w.utilization for w in (self.five_hour, self.seven_day) if w is not None]
        return max(values) if values else None


@dataclass(frozen=True)
class CliTestResult:
    success: bool
    version: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ReauthResult:
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class ModelInfo:
    """A model a backend can run."""

    id: str
    name: str
    is_default: bool = False
    tier: str | None = None


class AgentError(Exception):
    """Base class for agent orchestration failures."""


class ExecutableNotFoundError(AgentError):
    """The backend executable was never resolved or could not be found."""


class SpawnError(AgentError):
    """The OS refused to launch the backend process."""


class CredentialsMissingError(AgentError):
    """A backend that needs a credential has none from any source."""


class SessionBusyError(AgentError):
    """A session already has an in-flight invocation."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already has an active chat")
        self.session_id = session_id


class AdapterNotFoundError(AgentError, KeyError):
    """No adapter is registered under the requested id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Adapter not found"


class UsageLimitPausedError(AgentError):
    """Work was refused because the usage-limit pause is active."""

    def __init__(self, resume_at: datetime | None):
        when = resume_at.isoformat() if resume_at else "manual clear"
        super().__init__(f"Usage limit reached; paused until {when}")
        self.resume_at = resume_at
