"""Tests for the agentshift HTTP and WebSocket API."""

import time

import pytest
from fastapi.testclient import TestClient

from agentshift import __version__
from agentshift.agents.adapters.mock import MockAdapter
from agentshift.agents.registry import AgentRegistry
from agentshift.agents.types import AuthValidationResult, UsagePercentageResult, UsageWindow
from agentshift.server import state
from agentshift.server.main import create_app


class NoChatMock(MockAdapter):
    id = "no-chat"
    name = "No Chat"
    supports_chat = False


class MeteredMock(MockAdapter):
    """Mock agent reporting fixed quota utilization."""

    def __init__(self, five_hour, seven_day=10.0, **kwargs):
        super().__init__(**kwargs)
        self.windows = (five_hour, seven_day)

    async def get_usage_percentage(self):
        return UsagePercentageResult(
            five_hour=UsageWindow(self.windows[0], "2025-03-14T15:00:00+00:00"),
            seven_day=UsageWindow(self.windows[1]),
        )


class ExpiredAuthMock(MockAdapter):
    async def validate_auth(self):
        return AuthValidationResult(is_valid=False, requires_reauth=True, error="Token expired")


@pytest.fixture
def adapter():
    return MockAdapter()


@pytest.fixture
def client(adapter, monkeypatch):
    """Test client whose registry holds only scripted agents."""
    state.reset_state()
    monkeypatch.setattr(state, "_registry", AgentRegistry([adapter, NoChatMock()], default_id="mock"))

    with TestClient(create_app()) as test_client:
        yield test_client

    state.reset_state()


def wait_until_idle(client, session_id, timeout=15.0):
    """Poll the transcript until the session's turn has finished."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/api/v1/chat/{session_id}/messages").json()
        if not body["active"]:
            return body
        time.sleep(0.05)
    raise AssertionError(f"Chat {session_id} still active after {timeout}s")


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert data["uptime_seconds"] >= 0
        assert data["active_chats"] == 0
        assert data["running_tasks"] == 0

    def test_health_reports_usage_pause(self, client):
        state.get_usage_limit_controller().on_usage_limit_detected(None, triggered_by="test")
        assert client.get("/health").json()["status"] == "paused"


class TestAgents:
    """Agent listing, default selection and the usage check."""

    def test_list_agents(self, client):
        response = client.get("/api/v1/agents")
        assert response.status_code == 200
        data = response.json()
        assert data["default_agent"] == "mock"

        agents = {a["id"]: a for a in data["agents"]}
        assert agents["mock"]["available"] is True
        assert agents["mock"]["is_default"] is True
        assert agents["mock"]["supports_chat"] is True
        assert agents["mock"]["capabilities"]["non_interactive"] is True
        assert agents["no-chat"]["supports_chat"] is False

    def test_set_default_agent(self, client):
        response = client.put("/api/v1/agents/default", json={"agent_id": "no-chat"})
        assert response.status_code == 200
        assert response.json()["default_agent"] == "no-chat"
        assert state.get_config_manager().get_default_agent() == "no-chat"

    def test_set_unknown_default(self, client):
        response = client.put("/api/v1/agents/default", json={"agent_id": "nope"})
        assert response.status_code == 404

    def test_usage_check(self, client):
        response = client.post("/api/v1/agents/mock/usage-check")
        assert response.status_code == 200
        assert response.json() == {"agent_id": "mock", "can_proceed": True, "reset_at": None, "message": None}

    def test_usage_check_unknown_agent(self, client):
        assert client.post("/api/v1/agents/nope/usage-check").status_code == 404


class TestAgentUsageAndAuth:
    """Utilization thresholds, auth validation and the reauth terminal."""

    def test_usage_without_windows_is_ok(self, client):
        data = client.get("/api/v1/agents/mock/usage").json()
        assert data["level"] == "ok"
        assert data["peak"] is None
        assert data["five_hour"] is None

    @pytest.mark.parametrize("adapter", [MeteredMock(85.0)])
    def test_usage_warning_leaves_queue_running(self, client):
        data = client.get("/api/v1/agents/mock/usage").json()
        assert data["level"] == "warning"
        assert data["peak"] == 85.0
        assert data["five_hour"] == {"utilization": 85.0, "resets_at": "2025-03-14T15:00:00+00:00"}
        assert client.get("/api/v1/usage-limit").json()["is_paused"] is False

    @pytest.mark.parametrize("adapter", [MeteredMock(40.0, seven_day=95.0)])
    def test_usage_at_auto_stop_pauses_queue(self, client):
        data = client.get("/api/v1/agents/mock/usage").json()
        assert data["level"] == "auto_stop"
        assert data["peak"] == 95.0

        paused = client.get("/api/v1/usage-limit").json()
        assert paused["is_paused"] is True
        assert paused["triggered_by"] == "usage:mock"
        assert paused["resume_at"] is None

    def test_usage_unknown_agent(self, client):
        assert client.get("/api/v1/agents/nope/usage").status_code == 404

    def test_validate_auth(self, client):
        response = client.post("/api/v1/agents/mock/validate-auth")
        assert response.status_code == 200
        assert response.json() == {"agent_id": "mock", "is_valid": True, "requires_reauth": False, "error": None}

    @pytest.mark.parametrize("adapter", [ExpiredAuthMock()])
    def test_validate_auth_requires_reauth(self, client):
        data = client.post("/api/v1/agents/mock/validate-auth").json()
        assert data["is_valid"] is False
        assert data["requires_reauth"] is True
        assert data["error"] == "Token expired"

    def test_reauth_reports_terminal_failure(self, client):
        response = client.post("/api/v1/agents/mock/reauth", json={"project_path": "/tmp"})
        assert response.status_code == 200
        assert response.json() == {
            "agent_id": "mock",
            "success": False,
            "error": "Failed to launch terminal: terminal disabled in tests",
        }

    def test_reauth_without_body(self, client, monkeypatch):
        launched = []
        monkeypatch.setattr(
            "agentshift.util.terminal.TerminalLauncher.launch",
            lambda self, command, cwd=None: launched.append(cwd) or (True, None),
        )
        response = client.post("/api/v1/agents/mock/reauth")
        assert response.json()["success"] is True
        assert len(launched) == 1

    def test_reauth_unknown_agent(self, client):
        assert client.post("/api/v1/agents/nope/reauth").status_code == 404


class TestUsageLimit:
    def test_not_paused(self, client):
        data = client.get("/api/v1/usage-limit").json()
        assert data["is_paused"] is False
        assert data["resume_at"] is None

    def test_manual_clear(self, client):
        state.get_usage_limit_controller().on_usage_limit_detected(None, triggered_by="test")

        paused = client.get("/api/v1/usage-limit").json()
        assert paused["is_paused"] is True
        assert paused["triggered_by"] == "test"

        cleared = client.post("/api/v1/usage-limit/clear").json()
        assert cleared["is_paused"] is False
        assert client.get("/api/v1/usage-limit").json()["is_paused"] is False


class TestChat:
    """Chat turns are accepted at once and finish in the background."""

    def test_message_round_trip(self, client, tmp_path):
        response = client.post("/api/v1/chat/s1/messages", json={"message": "hello", "working_directory": str(tmp_path)})
        assert response.status_code == 202
        assert response.json() == {"session_id": "s1", "status": "accepted", "interrupted": False}

        body = wait_until_idle(client, "s1")
        assert body["conversation_id"] == "mock-session"
        assert [(m["role"], m["content"]) for m in body["messages"]] == [
            ("user", "hello"),
            ("assistant", "Mock reply to: hello"),
        ]

    @pytest.mark.parametrize("adapter", [MockAdapter(delay=1.0)])
    def test_busy_session_conflict(self, client, tmp_path):
        payload = {"message": "first", "working_directory": str(tmp_path)}
        assert client.post("/api/v1/chat/s1/messages", json=payload).status_code == 202

        response = client.post("/api/v1/chat/s1/messages", json={**payload, "message": "second"})
        assert response.status_code == 409

        cancel = client.post("/api/v1/chat/s1/cancel")
        assert cancel.json() == {"session_id": "s1", "cancelled": True}
        wait_until_idle(client, "s1")

    @pytest.mark.parametrize("adapter", [MockAdapter(delay=1.0)])
    def test_interrupt_running_turn(self, client, tmp_path):
        payload = {"message": "first", "working_directory": str(tmp_path)}
        client.post("/api/v1/chat/s1/messages", json=payload)

        response = client.post("/api/v1/chat/s1/interrupt", json={**payload, "message": "instead"})
        assert response.status_code == 202
        assert response.json()["interrupted"] is True

        body = wait_until_idle(client, "s1")
        assert body["messages"][-1]["content"] == "Mock reply to: instead"

    def test_cancel_idle_session(self, client):
        assert client.post("/api/v1/chat/s1/cancel").json()["cancelled"] is False

    def test_unknown_agent(self, client, tmp_path):
        response = client.post(
            "/api/v1/chat/s1/messages",
            json={"message": "hi", "working_directory": str(tmp_path), "agent_id": "nope"},
        )
        assert response.status_code == 404

    def test_agent_without_chat(self, client, tmp_path):
        response = client.post(
            "/api/v1/chat/s1/messages",
            json={"message": "hi", "working_directory": str(tmp_path), "agent_id": "no-chat"},
        )
        assert response.status_code == 400

    def test_missing_working_directory(self, client, tmp_path):
        response = client.post(
            "/api/v1/chat/s1/messages",
            json={"message": "hi", "working_directory": str(tmp_path / "missing")},
        )
        assert response.status_code == 400

    def test_empty_message(self, client, tmp_path):
        response = client.post("/api/v1/chat/s1/messages", json={"message": "", "working_directory": str(tmp_path)})
        assert response.status_code == 422

    def test_empty_transcript(self, client):
        body = client.get("/api/v1/chat/unknown/messages").json()
        assert body == {"session_id": "unknown", "active": False, "conversation_id": None, "messages": []}


class TestTasks:
    def test_list_empty(self, client):
        data = client.get("/api/v1/tasks").json()
        assert data == {"tasks": [], "running": 0, "max_concurrent": 1}

    def test_cancel_unknown_task(self, client):
        assert client.post("/api/v1/tasks/nope/cancel").status_code == 404


class TestWebSocket:
    def test_ping_pong(self, client):
        with client.websocket_connect("/api/v1/ws") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

    def test_receives_usage_limit_events(self, client):
        with client.websocket_connect("/api/v1/ws") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "pong"

            client.post("/api/v1/usage-limit/clear")

            event = websocket.receive_json()
            assert event["type"] == "usage-limit"
            assert event["data"]["is_paused"] is False

    def test_receives_chat_events(self, client, tmp_path):
        with client.websocket_connect("/api/v1/ws") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json()["type"] == "pong"

            client.post("/api/v1/chat/s1/messages", json={"message": "hi", "working_directory": str(tmp_path)})

            types = []
            while not types or types[-1] != "complete":
                event = websocket.receive_json()
                assert event["session_id"] == "s1"
                types.append(event["type"])
            assert types == ["stream-start", "chunk", "complete"]
