"""
Turn tool outcomes into what the user sees: conversation tool messages, artifacts, best-effort
summaries and the final assistant envelope.
"""

import json
import logging
from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from autoloop.core.schema import (
    AgentExecutionContext,
    Artifact,
    ChatMessage,
    FinalMessage,
    MessageMetadata,
    Role,
    TokenUsage,
    ToolCallRequest,
    ToolOutcome,
    ToolResultsSummary,
)
from autoloop.protocol.client import (
    ProtocolContentPart,
    ProtocolToolResult,
)

logger = logging.getLogger(__name__)

EMPTY_RUN_FALLBACK = (
    "I completed the autonomous agent execution, but encountered some technical issues. "
    "Please try again or contact support if the problem persists."
)
_PREVIEW_CHARS = 200


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def result_text(value: Any) -> str:
    """Render a tool result the way it is fed back to the model."""
    return value if isinstance(value, str) else json.dumps(value, default=str)


# ---------------------------------------------------------------------------
# Protocol results
# ---------------------------------------------------------------------------
class NormalizedResult(BaseModel):
    """A multi-part protocol result flattened for the conversation."""

    result: Any
    text: str
    images: List[str] = Field(default_factory=list)
    artifacts: List[Artifact] = Field(default_factory=list)
    tool_message: ChatMessage


def _part_artifact(tool_name: str, title: str, content: Any, index: int, kind: str, **extra) -> Artifact:
    return Artifact(
        title=f"{tool_name} - {title}",
        content=_dump(content),
        metadata={
            "tool_name": tool_name,
            "source": "protocol",
            "content_index": index,
            "original_type": kind,
            **extra,
        },
    )


def normalize_protocol_result(result: ProtocolToolResult, tool_name: str) -> NormalizedResult:
    """
    Flatten *result* into text, an image list and artifacts.

    Text parts are joined with blank lines.  Images become data URIs plus a placeholder line and an
    artifact, resources and other ``data`` parts become an artifact plus a textual dump.  Parts of
    unknown shape are dumped as JSON text instead of being dropped.
    """
    texts: List[str] = []
    images: List[str] = []
    artifacts: List[Artifact] = []
    structured: Dict[str, Any] = {}

    for index, part in enumerate(result.content if result.success else []):
        if part.type == "text" and part.text:
            texts.append(part.text)
            structured["text"] = part.text
        elif part.type == "image" and part.data and part.mime_type:
            data = str(part.data)
            url = data if data.startswith("data:") else f"data:{part.mime_type};base64,{data}"
            images.append(url)
            artifacts.append(
                _part_artifact(
                    tool_name,
                    "Image Result",
                    {
                        "type": "image",
                        "mime_type": part.mime_type,
                        "data": url,
                        "description": f"Image generated by {tool_name}",
                    },
                    index,
                    "image",
                    mime_type=part.mime_type,
                )
            )
            structured.setdefault("images", []).append({"mime_type": part.mime_type, "url": url})
            texts.append(f"Image generated ({part.mime_type})")
        elif part.type == "resource" and part.resource:
            artifacts.append(_part_artifact(tool_name, "Resource Result", part.resource, index, "resource"))
            structured["resource"] = part.resource
            texts.append(f"Resource: {_dump(part.resource)}")
        elif part.type not in ("text", "image", "resource") and part.data is not None:
            data = part.data
            if isinstance(data, str):
                try:
                    data = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Protocol part %d of %s is not JSON, keeping text", index, tool_name)
            artifacts.append(_part_artifact(tool_name, f"{part.type} Result", data, index, part.type))
            structured["data"] = data
            texts.append(f"{part.type}: {_dump(data)}")
        else:
            dumped = part.model_dump(by_alias=True, exclude_none=True)
            texts.append(f"{part.type}: {json.dumps(dumped, default=str)}")
            structured[f"{part.type}_{index}"] = dumped

    text = "\n\n".join(texts)
    if not text and not structured:
        text = (
            "Protocol tool executed successfully"
            if result.success
            else result.error or "Protocol tool execution failed"
        )
        structured = {"message": text}

    return NormalizedResult(
        result=structured if len(structured) > 1 else text,
        text=text,
        images=images,
        artifacts=artifacts,
        tool_message=ChatMessage(
            role=Role.TOOL, content=text, name=tool_name, images=images or None
        ),
    )


# ---------------------------------------------------------------------------
# Conversation messages
# ---------------------------------------------------------------------------
def tool_result_message(call: ToolCallRequest, outcome: ToolOutcome | None) -> ChatMessage:
    """The tool-role message answering *call*; a failure message when there is no outcome."""
    if outcome is None:
        logger.warning("No result for tool call %s (%s), answering with a failure", call.id, call.name)
        return ChatMessage(
            role=Role.TOOL,
            content=f"Tool execution failed: No result returned for {call.name or 'unknown tool'}",
            name=call.name or "unknown_tool",
            tool_call_id=call.id,
        )

    if outcome.tool_message is not None:
        return outcome.tool_message.model_copy(update={"tool_call_id": call.id})

    if outcome.success and outcome.result is not None:
        content = result_text(outcome.result)
    else:
        content = outcome.error or f"Tool {outcome.tool_name} execution failed"
    return ChatMessage(role=Role.TOOL, content=content, name=outcome.tool_name, tool_call_id=call.id)


# ---------------------------------------------------------------------------
# Artifacts and summaries
# ---------------------------------------------------------------------------
def collect_artifacts(outcomes: Sequence[ToolOutcome]) -> List[Artifact]:
    """Protocol-reported artifacts, plus one JSON artifact per other structured result."""
    artifacts: List[Artifact] = []
    for outcome in outcomes:
        if not outcome.success:
            continue
        if outcome.artifacts:
            artifacts.extend(outcome.artifacts)
        elif isinstance(outcome.result, (dict, list)) and outcome.result:
            artifacts.append(
                Artifact(
                    title=f"{outcome.tool_name} Result",
                    content=_dump(outcome.result),
                    metadata={"tool_name": outcome.tool_name, "tool_executed": True},
                )
            )
    return artifacts


def summarize_outcomes(outcomes: Sequence[ToolOutcome]) -> ToolResultsSummary:
    successful = sum(1 for outcome in outcomes if outcome.success)
    return ToolResultsSummary(
        total=len(outcomes), successful=successful, failed=len(outcomes) - successful
    )


def duplicate_id_summary(outcomes: Sequence[ToolOutcome]) -> str:
    """Summary used when the backend rejected the transcript for a duplicate tool-call id."""
    if not outcomes:
        return ""
    tally = summarize_outcomes(outcomes)
    lines = [
        "I encountered a technical issue while processing the tools, but I was able to execute "
        f"{tally.successful} tools successfully"
        + (f" and {tally.failed} tools failed" if tally.failed else "")
        + ". Here's what I found:\n"
    ]
    for outcome in outcomes:
        if outcome.success and outcome.result:
            lines.append(f"**{outcome.tool_name}**: {result_text(outcome.result)}\n")
    for outcome in outcomes:
        if not outcome.success:
            lines.append(f"**{outcome.tool_name}** (failed): {outcome.error or 'Unknown error'}\n")
    return "\n".join(lines) + "\n"


def retry_ceiling_summary(outcomes: Sequence[ToolOutcome]) -> str:
    """Summary used when too many steps failed."""
    text = "I encountered repeated errors during execution. Here's what I was able to accomplish:\n\n"
    if not outcomes:
        return text + "Unfortunately, I wasn't able to execute any tools successfully due to technical issues."

    tally = summarize_outcomes(outcomes)
    text += f"Successfully executed {tally.successful} tools\n"
    text += f"Failed to execute {tally.failed} tools\n\n"
    if tally.successful:
        text += "**Successful results:**\n"
        for outcome in outcomes:
            if outcome.success and outcome.result:
                text += f"- **{outcome.tool_name}**: {result_text(outcome.result)[:_PREVIEW_CHARS]}...\n"
    return text


def budget_exhausted_summary(context: AgentExecutionContext, outcomes: Sequence[ToolOutcome]) -> str:
    """Summary appended when the step budget ran out while the model still wanted tools."""
    tally = summarize_outcomes(outcomes)
    text = (
        f"\n\nI reached the limit of {context.max_steps} steps before finishing. "
        f"So far {tally.successful} of {tally.total} tool calls succeeded"
    )
    results = [
        f"- **{outcome.tool_name}**: {result_text(outcome.result)[:_PREVIEW_CHARS]}"
        for outcome in outcomes
        if outcome.success and outcome.result
    ]
    if results:
        return text + ":\n\n" + "\n".join(results) + "\n"
    return text + ".\n"


# ---------------------------------------------------------------------------
# Final envelope
# ---------------------------------------------------------------------------
def build_final_message(
    content: str,
    *,
    model: str,
    context: AgentExecutionContext,
    outcomes: Sequence[ToolOutcome],
    usage: TokenUsage,
    processed_ids: Sequence[str],
    temperature: float | None = None,
    aborted: bool = False,
    error: str | None = None,
) -> FinalMessage:
    """Assemble the assistant message returned once the loop ends."""
    if not content and not aborted:
        content = EMPTY_RUN_FALLBACK
    message = FinalMessage(
        content=content,
        metadata=MessageMetadata(
            model=model,
            tokens=usage.total_tokens,
            temperature=temperature,
            tools_used=[outcome.tool_name for outcome in outcomes],
            steps_consumed=context.current_step + 1,
            aborted=aborted,
            error=error,
            processed_tool_call_ids=list(processed_ids),
            tool_results_summary=summarize_outcomes(outcomes),
        ),
    )
    if outcomes:
        message.artifacts = collect_artifacts(outcomes)
    return message
