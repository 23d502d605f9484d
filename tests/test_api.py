"""Tests for the REST API, with the orchestrator replaced by one over a scripted transport."""

import asyncio
import json

import pytest
from conftest import ScriptedTransport
from fastapi.testclient import TestClient

from autoloop.agent.orchestrator import ChatOrchestrator
from autoloop.api import app as api
from autoloop.config import settings
from autoloop.core.cancellation import CancellationToken
from autoloop.core.schema import (
    ToolCallRequest,
    TurnResponse,
)
from autoloop.store.tool_store import (
    StoredTool,
    ToolStore,
)

AGENT = {"max_retries": 2, "retry_delay": 0, "enable_streaming": False, "enable_progress_tracking": True}


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def client(transport, tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATA_DIR", str(tmp_path))
    store = ToolStore(tmp_path / "stored_tools.json")
    store.add(StoredTool(name="shout", description="Upper-case text", body="def implementation(args):\n    return 1\n"))
    orchestrator = ChatOrchestrator(transport=transport, tool_store=store)

    async def override() -> ChatOrchestrator:
        return orchestrator

    api.app.dependency_overrides[api.get_orchestrator] = override
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()
    api.sessions.clear()
    api.active_runs.clear()


def test_health_and_root(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    assert "autoloop" in client.get("/").json()["message"]


def test_sessions(client) -> None:
    session_id = client.post("/sessions").json()["session_id"]
    assert session_id in client.get("/sessions").json()


def test_tools_lists_builtin_and_stored(client) -> None:
    tools = {tool["name"]: tool for tool in client.get("/tools").json()}

    assert tools["echo"]["implementation"] == "builtin"
    assert tools["shout"]["implementation"] == "stored"
    assert tools["shout"]["description"] == "Upper-case text"


def test_agent_endpoint_runs_and_records_history(client, transport, tmp_path) -> None:
    transport.turns = [
        TurnResponse(tool_calls=[ToolCallRequest(id="c1", name="echo", arguments='{"text": "hi"}')]),
        TurnResponse(content="Echoed hi."),
        TurnResponse(content="Second answer."),
    ]

    first = client.post("/agent", json={"message": "echo hi", "agent": AGENT}).json()
    session_id = first["session_id"]
    message = first["message"]

    assert message["role"] == "assistant"
    assert message["content"] == "Echoed hi."
    assert message["metadata"]["tools_used"] == ["echo"]
    assert message["metadata"]["steps_consumed"] == 2

    second = client.post(
        "/agent", json={"message": "again", "session_id": session_id, "enable_tools": False, "agent": AGENT}
    ).json()
    assert second["session_id"] == session_id
    replayed = [(msg.role.value, msg.content) for msg in transport.requests[-1]["messages"][1:]]
    assert replayed == [("user", "echo hi"), ("assistant", "Echoed hi."), ("user", "again")]

    log_lines = (tmp_path / "autoloop_turns.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["user_message"] for line in log_lines] == ["echo hi", "again"]


def test_agent_stream_emits_chunks_then_final(client, transport) -> None:
    transport.turns = [TurnResponse(content="Streamed reply.")]

    response = client.post("/agent/stream", json={"message": "hi", "enable_tools": False, "agent": AGENT})

    assert response.status_code == 200
    events = [json.loads(line) for line in response.text.splitlines() if line.strip()]
    assert events[-1]["type"] == "final"
    assert events[-1]["message"]["content"] == "Streamed reply."
    chunks = [event["content"] for event in events[:-1]]
    assert all(event["type"] == "chunk" for event in events[:-1])
    assert "Streamed reply." in chunks
    assert any("Autonomous Agent Activated" in chunk for chunk in chunks)
    assert events[-1]["session_id"] in api.sessions


def test_stop_unknown_session_is_404(client) -> None:
    assert client.post("/sessions/nope/stop").status_code == 404


def test_stop_cancels_the_run_in_flight(client) -> None:
    session_id = client.post("/sessions").json()["session_id"]
    assert client.post(f"/sessions/{session_id}/stop").json() == {"session_id": session_id, "stopped": False}

    token = CancellationToken()
    api.active_runs[session_id] = token
    assert client.post(f"/sessions/{session_id}/stop").json()["stopped"] is True
    assert token.is_cancelled


# ---------------------------------------------------------------------------
# Protocol client lifecycle
# ---------------------------------------------------------------------------
class RecordingProtocolClient:
    """Stands in for MCPToolClient and records the task each lifecycle call ran in."""

    instances: list = []

    def __init__(self, configs) -> None:
        self.configs = configs
        self.started_in = None
        self.closed_in = None
        RecordingProtocolClient.instances.append(self)

    async def start(self) -> None:
        self.started_in = asyncio.current_task()

    async def close(self) -> None:
        self.closed_in = asyncio.current_task()


def test_lifespan_starts_and_closes_protocol_servers_in_one_task(tmp_path, monkeypatch) -> None:
    RecordingProtocolClient.instances.clear()
    monkeypatch.setattr(settings, "DATA_DIR", str(tmp_path))
    monkeypatch.setattr(settings, "ENABLE_PROTOCOL_TOOLS", True)
    monkeypatch.setattr(settings, "TRANSPORT", "http")
    monkeypatch.setattr(api, "MCPToolClient", RecordingProtocolClient)

    with TestClient(api.app) as client:
        assert client.get("/health").json() == {"status": "ok"}
        [protocol_client] = RecordingProtocolClient.instances
        assert protocol_client.started_in is not None
        assert protocol_client.closed_in is None
        assert api._orchestrator.protocol_client is protocol_client

    assert protocol_client.closed_in is protocol_client.started_in
    assert api._orchestrator is None
