"""
End-to-end behaviour of the agent loop against a scripted transport.

Run with:
$ pytest -q
"""

from typing import (
    Dict,
    List,
)

import pytest
from conftest import (
    HOSTED_PROVIDER,
    ScriptedTransport,
)

from autoloop.agent.agent_loop import (
    AgentLoop,
    is_duplicate_id_error,
    step_budget,
)
from autoloop.agent.result_assembler import EMPTY_RUN_FALLBACK
from autoloop.agent.transport import TransportError
from autoloop.agent.turn_executor import TurnExecutor
from autoloop.core.cancellation import CancellationToken
from autoloop.core.schema import (
    ChatMessage,
    Role,
    StreamDelta,
    TokenUsage,
    ToolCallRequest,
    TurnResponse,
)
from autoloop.tools.catalog import ToolCatalog

USER = [ChatMessage(role=Role.USER, content="What's the weather in Paris?")]


def _weather_catalog(calls: List[Dict[str, str]]) -> ToolCatalog:
    def get_weather(city: str) -> Dict[str, str]:
        """Current weather for a city."""
        calls.append({"city": city})
        return {"city": city, "forecast": "sunny"}

    return ToolCatalog(builtins={"get_weather": get_weather})


def _failing_catalog(calls: List[str]) -> ToolCatalog:
    def lookup(key: str) -> str:
        """Look a key up in a service that is down."""
        calls.append(key)
        raise ConnectionError("lookup service unavailable")

    return ToolCatalog(builtins={"lookup": lookup})


def _loop(transport: ScriptedTransport, catalog: ToolCatalog, config) -> AgentLoop:
    return AgentLoop(TurnExecutor(transport), catalog, config)


def _tool_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    return [msg for msg in messages if msg.role == Role.TOOL]


# ---------------------------------------------------------------------------
# Step budget
# ---------------------------------------------------------------------------
def test_step_budget_is_one_without_tools(agent_config) -> None:
    assert step_budget(agent_config, has_tools=False) == 1


def test_step_budget_with_tools_is_at_least_two(agent_config) -> None:
    assert step_budget(agent_config, has_tools=True) == 10
    assert step_budget(agent_config.model_copy(update={"max_tool_calls": 1}), has_tools=True) == 2
    assert step_budget(agent_config.model_copy(update={"max_tool_calls": 0}), has_tools=True) == 2


def test_duplicate_id_errors_are_recognised() -> None:
    assert is_duplicate_id_error(RuntimeError("Duplicate tool_call_id 'call_1' in messages"))
    assert is_duplicate_id_error(RuntimeError("duplicate tool call id"))
    assert not is_duplicate_id_error(RuntimeError("rate limited"))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_plain_answer_without_tools(agent_config) -> None:
    transport = ScriptedTransport(
        turns=[
            TurnResponse(
                content="Why is 2+2 never lonely? Because it always makes four friends.",
                usage=TokenUsage(prompt_tokens=12, completion_tokens=15, total_tokens=27),
            )
        ]
    )
    chunks: List[str] = []

    reply = await _loop(transport, ToolCatalog.empty(), agent_config).run(
        [ChatMessage(role=Role.USER, content="Tell me a joke about 2+2")],
        model="llama3.1",
        query="Tell me a joke about 2+2",
        on_chunk=chunks.append,
    )

    assert reply.content.startswith("Why is 2+2 never lonely?")
    assert reply.metadata.steps_consumed == 1
    assert reply.metadata.tools_used == []
    assert reply.metadata.tokens == 27
    assert reply.metadata.aborted is False
    assert reply.artifacts is None
    assert len(transport.requests) == 1
    assert transport.requests[0]["tools"] == []
    assert reply.content in "".join(chunks)


@pytest.mark.asyncio
async def test_single_tool_call_then_answer(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    transport = ScriptedTransport(
        turns=[
            TurnResponse(
                tool_calls=[
                    ToolCallRequest(id="call_1", name="get_weather", arguments='{"city": "Paris"}')
                ]
            ),
            TurnResponse(content="It is sunny in Paris."),
        ]
    )

    reply = await _loop(transport, _weather_catalog(weather_calls), agent_config).run(
        USER, model="llama3.1", query=USER[0].content
    )

    assert reply.content == "It is sunny in Paris."
    assert reply.metadata.steps_consumed == 2
    assert reply.metadata.tools_used == ["get_weather"]
    assert reply.metadata.processed_tool_call_ids == ["call_1"]
    assert reply.metadata.tool_results_summary.successful == 1
    assert reply.metadata.tool_results_summary.failed == 0
    assert weather_calls == [{"city": "Paris"}]
    assert [artifact.title for artifact in reply.artifacts] == ["get_weather Result"]

    # The continuation carries the assistant call and exactly one answer for it
    followup = transport.requests[1]["messages"]
    assert [msg.role for msg in followup] == [Role.USER, Role.ASSISTANT, Role.TOOL]
    assert followup[1].tool_calls[0].id == "call_1"
    assert followup[2].tool_call_id == "call_1"
    assert '"forecast": "sunny"' in followup[2].content


@pytest.mark.asyncio
async def test_failing_tool_is_attempted_max_retries_times(agent_config) -> None:
    lookups: List[str] = []
    transport = ScriptedTransport(
        turns=[
            TurnResponse(tool_calls=[ToolCallRequest(id="c1", name="lookup", arguments='{"key": "a"}')]),
            TurnResponse(content="The lookup service is down."),
        ]
    )

    reply = await _loop(transport, _failing_catalog(lookups), agent_config).run(
        USER, model="m", query="q"
    )

    assert len(lookups) == agent_config.max_retries
    assert reply.metadata.tool_results_summary.failed == 1
    answer = _tool_messages(transport.requests[1]["messages"])
    assert len(answer) == 1
    assert "lookup service unavailable" in answer[0].content


@pytest.mark.asyncio
async def test_repeated_tool_call_ids_are_answered_once(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    repeated = ToolCallRequest(id="call_1", name="get_weather", arguments='{"city": "Paris"}')
    transport = ScriptedTransport(
        turns=[
            TurnResponse(tool_calls=[repeated, repeated]),
            TurnResponse(tool_calls=[repeated]),
            TurnResponse(content="Sunny."),
        ]
    )

    reply = await _loop(transport, _weather_catalog(weather_calls), agent_config).run(
        USER, model="m", query="q"
    )

    assert reply.content == "Sunny."
    assert len(weather_calls) == 1
    assert reply.metadata.processed_tool_call_ids == ["call_1"]
    final_transcript = transport.requests[-1]["messages"]
    answers = [msg for msg in _tool_messages(final_transcript) if msg.tool_call_id == "call_1"]
    assert len(answers) == 1


@pytest.mark.asyncio
async def test_every_tool_call_gets_exactly_one_answer(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    transport = ScriptedTransport(
        turns=[
            TurnResponse(
                tool_calls=[
                    ToolCallRequest(id="a", name="get_weather", arguments='{"city": "Paris"}'),
                    ToolCallRequest(id="b", name="no_such_tool"),
                    ToolCallRequest(id="c", name="get_weather", arguments="{broken"),
                ]
            ),
            TurnResponse(content="done"),
        ]
    )

    reply = await _loop(transport, _weather_catalog(weather_calls), agent_config).run(
        USER, model="m", query="q"
    )

    answers = _tool_messages(transport.requests[1]["messages"])
    assert [msg.tool_call_id for msg in answers] == ["a", "b", "c"]
    assert "not found" in answers[1].content
    assert "Failed to parse arguments" in answers[2].content
    assert reply.metadata.tool_results_summary.total == 3
    assert reply.metadata.tool_results_summary.successful == 1


@pytest.mark.asyncio
async def test_budget_exhaustion_appends_summary(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    config = agent_config.model_copy(update={"max_tool_calls": 2})
    transport = ScriptedTransport(
        turns=[
            TurnResponse(tool_calls=[ToolCallRequest(id=f"call_{n}", name="get_weather", arguments='{"city": "Paris"}')])
            for n in range(5)
        ]
    )

    reply = await _loop(transport, _weather_catalog(weather_calls), config).run(
        USER, model="m", query="q"
    )

    assert len(transport.requests) == 2
    assert reply.metadata.steps_consumed == 2
    assert "reached the limit of 2 steps" in reply.content
    assert "**get_weather**" in reply.content


@pytest.mark.asyncio
async def test_failed_steps_stop_at_retry_ceiling(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    transport = ScriptedTransport(turns=[RuntimeError("backend unavailable")] * 5)

    reply = await _loop(transport, _weather_catalog(weather_calls), agent_config).run(
        USER, model="m", query="q"
    )

    assert len(transport.requests) == agent_config.max_retries
    assert reply.content.startswith("I encountered repeated errors")
    assert reply.metadata.aborted is False


@pytest.mark.asyncio
async def test_transient_failure_without_tools_is_retried(agent_config) -> None:
    transport = ScriptedTransport(turns=[TransportError("502 bad gateway"), TurnResponse(content="4. Joke.")])

    reply = await _loop(transport, ToolCatalog.empty(), agent_config).run(USER, model="m", query="q")

    assert len(transport.requests) == 2
    assert reply.content == "4. Joke."
    assert reply.metadata.error is None
    assert reply.metadata.steps_consumed == 1


@pytest.mark.asyncio
async def test_repeated_failures_without_tools_report_the_error(agent_config) -> None:
    transport = ScriptedTransport(turns=[TransportError("502 bad gateway")] * 5)

    reply = await _loop(transport, ToolCatalog.empty(), agent_config).run(USER, model="m", query="q")

    assert len(transport.requests) == agent_config.max_retries
    assert reply.content.startswith("I encountered repeated errors")
    assert reply.metadata.error == "502 bad gateway"


@pytest.mark.asyncio
async def test_failed_steps_do_not_consume_the_step_budget(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    config = agent_config.model_copy(update={"max_tool_calls": 2})
    transport = ScriptedTransport(
        turns=[
            TransportError("timeout"),
            TurnResponse(tool_calls=[ToolCallRequest(id="call_1", name="get_weather", arguments='{"city": "Paris"}')]),
            TransportError("timeout"),
            TurnResponse(content="Sunny in Paris."),
        ]
    )

    reply = await _loop(transport, _weather_catalog(weather_calls), config).run(
        USER, model="m", query="q"
    )

    assert len(transport.requests) == 4
    assert reply.content == "Sunny in Paris."
    assert reply.metadata.steps_consumed == 2
    assert weather_calls == [{"city": "Paris"}]


@pytest.mark.asyncio
async def test_duplicate_id_rejection_ends_with_partial_summary(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    transport = ScriptedTransport(
        turns=[
            TurnResponse(tool_calls=[ToolCallRequest(id="call_1", name="get_weather", arguments='{"city": "Paris"}')]),
            RuntimeError("Invalid request: duplicate tool_call_id call_1"),
        ]
    )

    reply = await _loop(transport, _weather_catalog(weather_calls), agent_config).run(
        USER, model="m", query="q"
    )

    assert len(transport.requests) == 2
    assert "I encountered a technical issue while processing the tools" in reply.content
    assert "**get_weather**" in reply.content


@pytest.mark.asyncio
async def test_empty_run_uses_fallback_text(agent_config) -> None:
    transport = ScriptedTransport(turns=[TurnResponse(content="")])

    reply = await _loop(transport, ToolCatalog.empty(), agent_config).run(USER, model="m", query="q")

    assert reply.content == EMPTY_RUN_FALLBACK


# ---------------------------------------------------------------------------
# Streaming and abort
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_stream_abort_keeps_streamed_text(agent_config) -> None:
    config = agent_config.model_copy(update={"enable_streaming": True, "enable_progress_tracking": False})
    transport = ScriptedTransport(
        streams=[[StreamDelta(content="Hello "), StreamDelta(content="world"), StreamDelta(content="!")]]
    )
    token = CancellationToken()
    chunks: List[str] = []

    def on_chunk(text: str) -> None:
        chunks.append(text)
        if text == "world":
            token.cancel()

    reply = await _loop(transport, ToolCatalog.empty(), config).run(
        USER, model="m", query="q", on_chunk=on_chunk, cancel_token=token
    )

    assert reply.metadata.aborted is True
    assert reply.content == "Hello world"
    assert "".join(chunks) == "Hello world"


@pytest.mark.asyncio
async def test_cancelled_before_start_makes_no_request(agent_config) -> None:
    transport = ScriptedTransport(turns=[TurnResponse(content="never sent")])
    token = CancellationToken()
    token.cancel()

    reply = await _loop(transport, ToolCatalog.empty(), agent_config).run(
        USER, model="m", query="q", cancel_token=token
    )

    assert transport.requests == []
    assert reply.metadata.aborted is True
    assert reply.content == ""


@pytest.mark.asyncio
async def test_abort_during_plain_turn_keeps_the_answer(agent_config) -> None:
    token = CancellationToken()

    class StoppedMidTurn(ScriptedTransport):
        async def send_turn(self, model, messages, options, tools=None) -> TurnResponse:
            token.cancel()
            return await super().send_turn(model, messages, options, tools)

    weather_calls: List[Dict[str, str]] = []
    transport = StoppedMidTurn(
        turns=[
            TurnResponse(
                content="full answer",
                tool_calls=[ToolCallRequest(id="call_1", name="get_weather", arguments='{"city": "Paris"}')],
            )
        ]
    )

    reply = await _loop(transport, _weather_catalog(weather_calls), agent_config).run(
        USER, model="m", query="q", cancel_token=token
    )

    assert reply.metadata.aborted is True
    assert reply.content == "full answer"
    assert weather_calls == []
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_hosted_provider_with_tools_switches_to_plain(agent_config) -> None:
    weather_calls: List[Dict[str, str]] = []
    config = agent_config.model_copy(update={"enable_streaming": True})
    transport = ScriptedTransport(turns=[TurnResponse(content="ok")], provider=HOSTED_PROVIDER)
    chunks: List[str] = []

    await _loop(transport, _weather_catalog(weather_calls), config).run(
        USER, model="m", query="q", on_chunk=chunks.append
    )

    assert [request["mode"] for request in transport.requests] == ["plain"]
    assert any("Switching to non-streaming mode" in chunk for chunk in chunks)


@pytest.mark.asyncio
async def test_progress_narration_is_silent_when_tracking_is_off(agent_config) -> None:
    config = agent_config.model_copy(update={"enable_progress_tracking": False})
    transport = ScriptedTransport(turns=[TurnResponse(content="answer")])
    chunks: List[str] = []

    await _loop(transport, ToolCatalog.empty(), config).run(
        USER, model="m", query="q", on_chunk=chunks.append
    )

    assert chunks == ["answer"]
