"""Shared fakes: a scripted transport, a protocol tool client and a sandbox stand-in."""

from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

import pytest

from autoloop.agent.transport import BaseTransport
from autoloop.config import AgentConfig
from autoloop.core.schema import (
    ChatMessage,
    ProviderConfig,
    StreamDelta,
    TurnResponse,
)
from autoloop.protocol.client import (
    ProtocolToolCall,
    ProtocolToolInfo,
    ProtocolToolResult,
    ServerAvailability,
)

LOCAL_PROVIDER = ProviderConfig(id="local", type="ollama", base_url="http://localhost:11434/v1")
HOSTED_PROVIDER = ProviderConfig(id="hosted", type="openai", base_url="https://api.openai.com/v1")


class ScriptedTransport(BaseTransport):
    """
    Replays scripted turns.

    ``turns`` feeds :meth:`send_turn` (each entry a :class:`TurnResponse` or an exception to
    raise), ``streams`` feeds :meth:`stream_turn` (each entry a list of :class:`StreamDelta` or an
    exception).  Every request is recorded in ``requests`` with a snapshot of the messages.
    """

    def __init__(
        self,
        turns: Sequence[Any] = (),
        streams: Sequence[Any] = (),
        provider: ProviderConfig = LOCAL_PROVIDER,
    ) -> None:
        super().__init__(provider)
        self.turns = list(turns)
        self.streams = list(streams)
        self.requests: List[Dict[str, Any]] = []

    def _record(self, mode: str, messages: Sequence[ChatMessage], tools) -> None:
        self.requests.append(
            {
                "mode": mode,
                "messages": [msg.model_copy(deep=True) for msg in messages],
                "tools": list(tools or []),
            }
        )

    async def send_turn(self, model, messages, options, tools=None) -> TurnResponse:
        self._record("plain", messages, tools)
        if not self.turns:
            return TurnResponse(content="(script exhausted)")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn

    async def stream_turn(self, model, messages, options, tools=None):
        self._record("stream", messages, tools)
        script = self.streams.pop(0) if self.streams else [StreamDelta(content="(script exhausted)")]
        if isinstance(script, Exception):
            raise script
        for delta in script:
            yield delta


class FakeProtocolClient:
    """In-memory protocol tool client with canned results per remote tool name."""

    def __init__(
        self,
        tools: Sequence[ProtocolToolInfo] = (),
        results: Dict[str, Any] | None = None,
        unavailable: Dict[str, str] | None = None,
    ) -> None:
        self.tools = list(tools)
        self.results = results or {}
        self.unavailable = unavailable or {}
        self.calls: List[ProtocolToolCall] = []

    async def list_available_tools(self, server_filter=None) -> List[ProtocolToolInfo]:
        return [tool for tool in self.tools if not server_filter or tool.server in server_filter]

    async def invoke(self, call: ProtocolToolCall) -> ProtocolToolResult:
        self.calls.append(call)
        result = self.results.get(call.name)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return ProtocolToolResult(success=False, error=f"no result scripted for {call.name}")
        return result

    def server_availability(self, server_filter=None) -> ServerAvailability:
        servers = sorted({tool.server for tool in self.tools})
        return ServerAvailability(
            available=servers,
            unavailable=dict(self.unavailable),
            total_tools=len(self.tools),
        )


class FakeSandbox:
    """Records stored-tool evaluations and returns canned values (or raises)."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.runs: List[Dict[str, Any]] = []

    async def run(self, body: str, bindings: Dict[str, Any]) -> Any:
        self.runs.append({"body": body, "bindings": bindings})
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def agent_config() -> AgentConfig:
    """Fast, plain (non-streaming) policy for loop tests."""
    return AgentConfig(
        max_retries=3,
        retry_delay=0,
        max_tool_calls=10,
        enable_progress_tracking=True,
        enable_streaming=False,
    )
