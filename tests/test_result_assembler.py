"""Tests for result normalization, tool-result messages and the final envelope."""

import json

from autoloop.agent.result_assembler import (
    EMPTY_RUN_FALLBACK,
    budget_exhausted_summary,
    build_final_message,
    collect_artifacts,
    duplicate_id_summary,
    normalize_protocol_result,
    retry_ceiling_summary,
    summarize_outcomes,
    tool_result_message,
)
from autoloop.core.schema import (
    AgentExecutionContext,
    ChatMessage,
    Role,
    TokenUsage,
    ToolCallRequest,
    ToolOutcome,
)
from autoloop.protocol.client import (
    ProtocolContentPart,
    ProtocolToolResult,
)


def _ok(name: str, result, **extra) -> ToolOutcome:
    return ToolOutcome(tool_call_id=f"id_{name}", tool_name=name, success=True, result=result, **extra)


def _failed(name: str, error: str) -> ToolOutcome:
    return ToolOutcome(tool_call_id=f"id_{name}", tool_name=name, success=False, error=error)


# ---------------------------------------------------------------------------
# Protocol results
# ---------------------------------------------------------------------------
def test_text_parts_are_joined() -> None:
    result = ProtocolToolResult(
        success=True,
        content=[ProtocolContentPart(type="text", text="first"), ProtocolContentPart(type="text", text="second")],
    )

    normalized = normalize_protocol_result(result, "mcp_docs_read")

    assert normalized.text == "first\n\nsecond"
    assert normalized.result == "first\n\nsecond"
    assert normalized.tool_message.role == Role.TOOL
    assert normalized.tool_message.images is None
    assert normalized.artifacts == []


def test_image_part_becomes_data_uri_and_artifact() -> None:
    result = ProtocolToolResult(
        success=True,
        content=[
            ProtocolContentPart(type="text", text="Here is the chart"),
            ProtocolContentPart(type="image", data="iVBORw0KGgo=", mimeType="image/png"),
        ],
    )

    normalized = normalize_protocol_result(result, "mcp_plot_chart")

    assert normalized.images == ["data:image/png;base64,iVBORw0KGgo="]
    assert normalized.tool_message.images == normalized.images
    assert "Image generated (image/png)" in normalized.text
    assert normalized.artifacts[0].title == "mcp_plot_chart - Image Result"
    assert normalized.artifacts[0].metadata["original_type"] == "image"
    assert isinstance(normalized.result, dict)
    assert normalized.result["images"][0]["mime_type"] == "image/png"


def test_resource_and_data_parts_become_artifacts() -> None:
    result = ProtocolToolResult(
        success=True,
        content=[
            ProtocolContentPart(type="resource", resource={"uri": "file:///a.txt", "text": "A"}),
            ProtocolContentPart(type="table", data='{"rows": 2}'),
        ],
    )

    normalized = normalize_protocol_result(result, "mcp_fs_stat")

    assert [artifact.title for artifact in normalized.artifacts] == [
        "mcp_fs_stat - Resource Result",
        "mcp_fs_stat - table Result",
    ]
    assert json.loads(normalized.artifacts[1].content) == {"rows": 2}
    assert normalized.text.startswith("Resource: ")
    assert "table: " in normalized.text


def test_empty_result_has_fallback_text() -> None:
    normalized = normalize_protocol_result(ProtocolToolResult(success=True), "mcp_x_noop")
    assert normalized.text == "Protocol tool executed successfully"


# ---------------------------------------------------------------------------
# Tool-result messages
# ---------------------------------------------------------------------------
def test_tool_result_message_for_missing_outcome() -> None:
    call = ToolCallRequest(id="c9", name="lookup")

    message = tool_result_message(call, None)

    assert message.tool_call_id == "c9"
    assert message.content == "Tool execution failed: No result returned for lookup"


def test_tool_result_message_serializes_structured_results() -> None:
    call = ToolCallRequest(id="c1", name="get_weather")

    message = tool_result_message(call, _ok("get_weather", {"forecast": "sunny"}))

    assert message.role == Role.TOOL
    assert message.tool_call_id == "c1"
    assert json.loads(message.content) == {"forecast": "sunny"}


def test_tool_result_message_reports_errors() -> None:
    message = tool_result_message(ToolCallRequest(id="c2", name="t"), _failed("t", "boom"))
    assert message.content == "boom"


def test_tool_result_message_reuses_prepared_protocol_message() -> None:
    prepared = ChatMessage(role=Role.TOOL, content="chart", name="mcp_plot", images=["data:image/png;base64,AA"])
    outcome = _ok("mcp_plot", "chart", tool_message=prepared)

    message = tool_result_message(ToolCallRequest(id="c3", name="mcp_plot"), outcome)

    assert message.tool_call_id == "c3"
    assert message.images == ["data:image/png;base64,AA"]
    assert prepared.tool_call_id is None


# ---------------------------------------------------------------------------
# Summaries and envelope
# ---------------------------------------------------------------------------
def test_collect_artifacts_skips_plain_and_failed_results() -> None:
    artifacts = collect_artifacts(
        [_ok("text_tool", "just text"), _ok("dict_tool", {"a": 1}), _failed("bad", "x")]
    )
    assert [artifact.title for artifact in artifacts] == ["dict_tool Result"]


def test_summaries_mention_results_and_failures() -> None:
    outcomes = [_ok("get_weather", "sunny"), _failed("lookup", "timeout")]

    assert summarize_outcomes(outcomes).model_dump() == {"total": 2, "successful": 1, "failed": 1}
    duplicate = duplicate_id_summary(outcomes)
    assert "1 tools successfully and 1 tools failed" in duplicate
    assert "**lookup** (failed): timeout" in duplicate
    ceiling = retry_ceiling_summary(outcomes)
    assert "Successfully executed 1 tools" in ceiling
    assert "- **get_weather**: sunny..." in ceiling
    assert duplicate_id_summary([]) == ""
    assert "wasn't able to execute any tools" in retry_ceiling_summary([])


def test_budget_summary_names_the_limit() -> None:
    context = AgentExecutionContext(original_query="q", max_steps=4)
    text = budget_exhausted_summary(context, [_ok("get_weather", "sunny")])
    assert "limit of 4 steps" in text
    assert "- **get_weather**: sunny" in text


def test_final_message_metadata() -> None:
    context = AgentExecutionContext(original_query="q", current_step=1, max_steps=10)
    outcomes = [_ok("get_weather", {"forecast": "sunny"})]

    message = build_final_message(
        "It is sunny.",
        model="ollama:llama3.1",
        context=context,
        outcomes=outcomes,
        usage=TokenUsage(total_tokens=42),
        processed_ids=["id_get_weather"],
        temperature=0.2,
    )

    assert message.role == "assistant"
    assert message.metadata.steps_consumed == 2
    assert message.metadata.tokens == 42
    assert message.metadata.tools_used == ["get_weather"]
    assert message.metadata.processed_tool_call_ids == ["id_get_weather"]
    assert message.metadata.temperature == 0.2
    assert len(message.artifacts) == 1


def test_final_message_fallback_unless_aborted() -> None:
    context = AgentExecutionContext(original_query="q")
    common = dict(model="m", context=context, outcomes=[], usage=TokenUsage(), processed_ids=[])

    assert build_final_message("", **common).content == EMPTY_RUN_FALLBACK
    aborted = build_final_message("", aborted=True, **common)
    assert aborted.content == ""
    assert aborted.metadata.aborted is True
    assert aborted.artifacts is None
