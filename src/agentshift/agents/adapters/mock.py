"""Scripted stand-in agent for local development and tests.

Runs the current Python interpreter with a tiny program that prints a script
of output lines (Claude-style stream JSON by default), so the whole pipeline
can be exercised without any real agent CLI installed.
"""

from __future__ import annotations

import json
import sys
from typing import Sequence

from agentshift.util.executables import ExecutableResolver

from ..output_parser import OutputParser
from ..types import (
    AgentCapabilities,
    AuthValidationResult,
    ChatOptions,
    InvokeOptions,
    ModelInfo,
    UsageLimitCheckResult,
    UsagePercentageResult,
)
from .base import AgentAdapter
from .claude_code import ClaudeChatParser, ClaudeStreamParser

# argv: script-json delay exit-code [prompt]; the prompt comes from stdin when absent
MOCK_PROGRAM = """\
import json, sys, time
lines = json.loads(sys.argv[1])
delay = float(sys.argv[2])
code = int(sys.argv[3])
prompt = sys.argv[4] if len(sys.argv) > 4 else sys.stdin.read()
escaped = json.dumps(prompt)[1:-1]
for line in lines:
    stream = sys.stderr if line.startswith("!") else sys.stdout
    print(line.lstrip("!").replace("{prompt}", escaped), file=stream, flush=True)
    if delay:
        time.sleep(delay)
sys.exit(code)
"""

DEFAULT_SCRIPT = (
    json.dumps({"type": "system", "subtype": "init", "session_id": "mock-session"}),
    json.dumps(
        {
            "type": "assistant",
            "session_id": "mock-session",
            "message": {"content": [{"type": "text", "text": "Mock reply to: {prompt}"}]},
        }
    ),
    json.dumps({"type": "result", "result": "done", "session_id": "mock-session"}),
)


class MockAdapter(AgentAdapter):
    """Agent whose output is a fixed script.

    Args:
        script: Lines to print; ``{prompt}`` is replaced with the prompt and a
            leading ``!`` sends the line to stderr
        delay: Seconds to sleep after each line
        exit_code: Exit status of the scripted process
    """

    id = "mock"
    name = "Mock Agent"
    cli_command = "python"
    supports_chat = True
    capabilities = AgentCapabilities(non_interactive=True)
    default_models = (ModelInfo("mock-1-0", "Mock 1.0", is_default=True),)

    def __init__(
        self,
        *,
        script: Sequence[str] = DEFAULT_SCRIPT,
        delay: float = 0.0,
        exit_code: int = 0,
        **kwargs,
    ):
        kwargs.setdefault("resolver", ExecutableResolver("python", search_patterns=[], custom_path=sys.executable))
        super().__init__(**kwargs)
        self.script = list(script)
        self.delay = delay
        self.exit_code = exit_code

    def _program_args(self) -> list[str]:
        return ["-c", MOCK_PROGRAM, json.dumps(self.script), str(self.delay), str(self.exit_code)]

    def build_invoke_args(self, options: InvokeOptions) -> list[str]:
        return self._program_args()

    def build_chat_args(self, options: ChatOptions) -> list[str]:
        return self._program_args()

    def output_parser(self) -> OutputParser:
        return ClaudeStreamParser(self.detector, self.clock)

    def chat_parser(self) -> OutputParser:
        return ClaudeChatParser(self.detector, self.clock)

    async def check_usage_limits(self) -> UsageLimitCheckResult:
        return UsageLimitCheckResult(can_proceed=True)

    async def validate_auth(self) -> AuthValidationResult:
        return AuthValidationResult(is_valid=True, requires_reauth=False)

    async def get_usage_percentage(self) -> UsagePercentageResult:
        return UsagePercentageResult()
