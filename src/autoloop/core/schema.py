"""
Schema definitions for transport <-> agent <-> tool messages.

These data models serve as the contract between the model transport, the orchestration loop, and
individual tools.  We keep them separate from runtime logic so they can be imported anywhere without
side-effects.
"""

import uuid
from datetime import (
    datetime,
    timezone,
)
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_tool_call_id() -> str:
    """Identifier for a tool call the model emitted without one."""
    return f"tool_{uuid.uuid4().hex[:24]}"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
class Role(str, Enum):
    """Conversation roles understood by every transport."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCallRequest(BaseModel):
    """A call that the model wants the agent to execute."""

    id: str = Field(default_factory=new_tool_call_id, description="Unique within one turn")
    name: str = Field(..., description="Tool name as advertised to the model")
    arguments: str = Field("", description="Raw JSON argument text, exactly as the model sent it")

    def to_openai(self) -> Dict[str, Any]:
        """Render in the chat-completions ``tool_calls`` wire shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


class ChatMessage(BaseModel):
    """One entry of the conversation sent to the model."""

    role: Role
    content: str = ""
    images: Optional[List[str]] = None  # data URIs or URLs
    tool_calls: Optional[List[ToolCallRequest]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
class ToolImplementation(str, Enum):
    """Where a tool's code lives."""

    BUILTIN = "builtin"
    STORED = "stored"
    PROTOCOL = "protocol"


def empty_parameters() -> Dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


class ToolDefinition(BaseModel):
    """A callable tool, whatever its implementation."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=empty_parameters)
    implementation: ToolImplementation = ToolImplementation.BUILTIN
    body: Optional[str] = Field(None, description="Source of a stored tool")
    server: Optional[str] = Field(None, description="Protocol server advertising the tool")
    remote_name: Optional[str] = Field(None, description="Tool name on the protocol server")

    def to_openai(self) -> Dict[str, Any]:
        """Render in the chat-completions ``tools`` wire shape."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# ---------------------------------------------------------------------------
# Transport payloads
# ---------------------------------------------------------------------------
class TokenUsage(BaseModel):
    """Token accounting reported by the backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ToolCallDelta(BaseModel):
    """A fragment of a tool call as it arrives on a stream."""

    index: Optional[int] = None
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


class StreamDelta(BaseModel):
    """One incremental chunk of a streamed turn."""

    content: Optional[str] = None
    tool_calls: List[ToolCallDelta] = Field(default_factory=list)
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None


class TurnResponse(BaseModel):
    """A complete, non-streamed turn."""

    content: str = ""
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None


class StepResult(BaseModel):
    """Outcome of one model turn, whichever transport mode produced it."""

    content: str = ""
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)


# ---------------------------------------------------------------------------
# Agent state
# ---------------------------------------------------------------------------
class ToolExecutionAttempt(BaseModel):
    """One try at running one tool call."""

    attempt: int
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    success: bool = False
    timestamp: datetime = Field(default_factory=_utcnow)


class AgentExecutionContext(BaseModel):
    """Per-message state of the agent loop."""

    original_query: str
    attempts: List[ToolExecutionAttempt] = Field(default_factory=list)
    tools_available: List[str] = Field(default_factory=list)
    current_step: int = 0
    max_steps: int = 0
    progress_log: List[str] = Field(default_factory=list)


class Artifact(BaseModel):
    """A structured, displayable side-product of a tool result."""

    id: str = Field(default_factory=lambda: f"artifact-{uuid.uuid4().hex[:12]}")
    type: str = "json"
    title: str
    content: str
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ToolOutcome(BaseModel):
    """What the tool invoker reports for one tool call."""

    tool_call_id: Optional[str] = None
    tool_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    artifacts: List[Artifact] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    tool_message: Optional[ChatMessage] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Final envelope
# ---------------------------------------------------------------------------
class ToolResultsSummary(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0


class MessageMetadata(BaseModel):
    """Run summary attached to the final assistant message."""

    model: str = ""
    tokens: int = 0
    temperature: Optional[float] = None
    tools_used: List[str] = Field(default_factory=list)
    steps_consumed: int = 0
    aborted: bool = False
    error: Optional[str] = None
    processed_tool_call_ids: List[str] = Field(default_factory=list)
    tool_results_summary: Optional[ToolResultsSummary] = None


class FinalMessage(BaseModel):
    """The assistant message handed back to the caller once the loop ends."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["assistant"] = "assistant"
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    artifacts: Optional[List[Artifact]] = None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------
class ProviderConfig(BaseModel):
    """A model backend the orchestrator can talk to."""

    id: str = "default"
    name: str = ""
    type: str = Field("", description="Provider family tag, e.g. openai, openrouter, ollama")
    base_url: str = ""
    api_key: Optional[str] = None
    transport: str = Field("openai", description="Registered transport used to reach it")
    supports_streaming_tools: Optional[bool] = Field(
        None, description="Explicit capability flag; when unset a heuristic decides"
    )
