"""
Pydantic models for autoloop API requests and responses.
This module defines the request and response schemas used by the autoloop API.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from autoloop.config import AgentConfig
from autoloop.core.schema import FinalMessage


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class SessionResponse(BaseModel):
    """Response with session information."""

    session_id: str


class MessageRequest(BaseModel):
    """Incoming user message."""

    message: str = Field(..., description="User message for the agent")
    session_id: Optional[str] = Field(None, description="Session ID for conversation context")
    images: List[str] = Field(default_factory=list, description="Data URIs, URLs or bare base64")
    system_prompt: Optional[str] = Field(None, description="Replaces the default persona")
    model: Optional[str] = Field(None, description="Model id, optionally 'provider:model'")
    enable_tools: Optional[bool] = None
    enable_protocol_tools: Optional[bool] = None
    server_filter: List[str] = Field(default_factory=list, description="Protocol servers to use")
    agent: Optional[AgentConfig] = Field(None, description="Agent policy; defaults from settings")


class MessageResponse(BaseModel):
    """API response returned to the caller."""

    session_id: str
    message: FinalMessage


class ToolInfo(BaseModel):
    """A tool as listed by ``GET /tools``."""

    name: str
    description: str
    implementation: str
    parameters: Dict[str, Any]


class StopResponse(BaseModel):
    session_id: str
    stopped: bool = Field(..., description="False when the session had no run in flight")
