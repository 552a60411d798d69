"""Tests for the scripted mock agent running as a real subprocess."""

import pytest

from agentshift.agents.adapters.mock import MockAdapter
from agentshift.agents.types import ChatOptions, ExecutableNotFoundError, InvokeOptions


class TestMockAdapter:
    @pytest.mark.asyncio
    async def test_requires_resolved_executable(self, tmp_path):
        adapter = MockAdapter()
        with pytest.raises(ExecutableNotFoundError):
            await adapter.invoke(InvokeOptions(prompt="x", working_directory=tmp_path))

    @pytest.mark.asyncio
    async def test_invoke_streams_script(self, tmp_path):
        adapter = MockAdapter()
        await adapter.get_executable_path()

        process = await adapter.invoke(InvokeOptions(prompt="hello", working_directory=tmp_path))
        events = [e async for e in adapter.parse_output(process.stdout)]
        result = await process.wait()

        assert [e.kind for e in events] == ["log", "log", "complete"]
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_chat_quotes_prompt_safely(self, tmp_path):
        adapter = MockAdapter()
        await adapter.get_executable_path()

        handle = await adapter.chat(ChatOptions(message='say "hi"\nthen stop', working_directory=tmp_path))
        events = [e async for e in handle.events]
        await handle.process.wait()

        assert events[0].message == 'Mock reply to: say "hi"\nthen stop'
        assert events[0].conversation_id == "mock-session"

    @pytest.mark.asyncio
    async def test_stderr_lines_and_exit_code(self, tmp_path):
        adapter = MockAdapter(script=["!usage limit reached, resets in 10 minutes"], exit_code=4)
        await adapter.get_executable_path()

        process = await adapter.invoke(InvokeOptions(prompt="x", working_directory=tmp_path))
        stderr = [e async for e in adapter.parse_stderr(process.stderr)]
        stdout = [e async for e in adapter.parse_output(process.stdout)]
        result = await process.wait()

        assert [e.kind for e in stderr] == ["usage-limit"]
        assert stderr[0].reset_at is not None
        assert stdout == []
        assert result.exit_code == 4

    @pytest.mark.asyncio
    async def test_available(self):
        adapter = MockAdapter()
        await adapter.get_executable_path()
        assert await adapter.is_available() is True
        assert (await adapter.test_cli()).success is True
