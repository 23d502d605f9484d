"""
Client for protocol tool servers (Model Context Protocol).

Servers are started as stdio subprocesses through the ``mcp`` SDK, their tools are discovered with
``list_tools`` and invoked with ``call_tool``.  Results are converted into plain pydantic models so
the rest of the application never touches SDK types.

Protocol tools are advertised to the model as ``mcp_<server>_<tool>``; the prefix is what routes a
tool call to this client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

logger = logging.getLogger(__name__)

PROTOCOL_TOOL_PREFIX = "mcp_"


def protocol_tool_name(server: str, tool: str) -> str:
    """Name under which *tool* of *server* is advertised to the model."""
    return f"{PROTOCOL_TOOL_PREFIX}{server}_{tool}"


def is_protocol_tool_name(name: str) -> bool:
    return name.startswith(PROTOCOL_TOOL_PREFIX)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
class ProtocolServerConfig(BaseModel):
    """How to start one stdio tool server."""

    name: str
    command: str
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    enabled: bool = True


class ProtocolToolInfo(BaseModel):
    """A tool advertised by a server."""

    server: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)


class ProtocolToolCall(BaseModel):
    server: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None


class ProtocolContentPart(BaseModel):
    """One part of a multi-part tool result; unknown part types keep their extra fields."""

    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None
    data: Any = None
    mime_type: Optional[str] = Field(None, alias="mimeType")
    resource: Optional[Dict[str, Any]] = None


class ProtocolToolResult(BaseModel):
    success: bool
    content: List[ProtocolContentPart] = Field(default_factory=list)
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ServerAvailability(BaseModel):
    available: List[str] = Field(default_factory=list)
    unavailable: Dict[str, str] = Field(default_factory=dict)  # server -> reason
    total_tools: int = 0


class ProtocolToolClient(Protocol):
    """What the agent needs from a protocol tool client."""

    async def list_available_tools(
        self, server_filter: Sequence[str] | None = None
    ) -> List[ProtocolToolInfo]:
        ...

    async def invoke(self, call: ProtocolToolCall) -> ProtocolToolResult:
        ...

    def server_availability(self, server_filter: Sequence[str] | None = None) -> ServerAvailability:
        ...


def load_server_configs(path: str | Path) -> List[ProtocolServerConfig]:
    """Read server definitions from a JSON file (a list, or ``{"servers": [...]}``)."""
    path = Path(path)
    if not path.exists():
        logger.info("No protocol server file at %s", path)
        return []
    raw = json.loads(path.read_text(encoding="utf-8"))
    entries = raw.get("servers", []) if isinstance(raw, dict) else raw
    return [ProtocolServerConfig.model_validate(entry) for entry in entries]


# ---------------------------------------------------------------------------
# MCP implementation
# ---------------------------------------------------------------------------
class MCPToolClient:
    """
    Protocol tool client backed by the ``mcp`` SDK.

    Use as an async context manager (or call :meth:`start` / :meth:`close`)::

        async with MCPToolClient(load_server_configs("servers.json")) as client:
            tools = await client.list_available_tools()
    """

    def __init__(self, servers: Sequence[ProtocolServerConfig], init_timeout: float = 30.0) -> None:
        self._configs = {server.name: server for server in servers}
        self._init_timeout = init_timeout
        self._stack: AsyncExitStack | None = None
        self._sessions: Dict[str, Any] = {}
        self._tools: Dict[str, List[ProtocolToolInfo]] = {}
        self._failures: Dict[str, str] = {}

    async def __aenter__(self) -> "MCPToolClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def is_ready(self) -> bool:
        return self._stack is not None

    async def start(self) -> None:
        """Start every enabled server and cache its tool list.  A failing server is recorded."""
        # Lazy import - keeps the SDK out of pkg-import time
        from mcp import ClientSession  # pylint: disable=import-outside-toplevel
        from mcp.client.stdio import (  # pylint: disable=import-outside-toplevel
            StdioServerParameters,
            stdio_client,
        )

        if self._stack is not None:
            return
        self._stack = AsyncExitStack()
        for name, config in self._configs.items():
            if not config.enabled:
                self._failures[name] = "disabled"
                continue
            # Each server gets its own stack so a failed one is torn down on the spot
            server_stack = AsyncExitStack()
            try:
                params = StdioServerParameters(
                    command=config.command, args=config.args, env=config.env, cwd=config.cwd
                )
                read_stream, write_stream = await server_stack.enter_async_context(
                    stdio_client(params)
                )
                session = await server_stack.enter_async_context(
                    ClientSession(read_stream, write_stream)
                )
                await asyncio.wait_for(session.initialize(), timeout=self._init_timeout)
                listed = await session.list_tools()
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Protocol server '%s' failed to start: %s", name, exc)
                self._failures[name] = str(exc) or type(exc).__name__
                try:
                    await server_stack.aclose()
                except Exception as close_exc:  # pylint: disable=broad-except
                    logger.warning("Error shutting down protocol server '%s': %s", name, close_exc)
                continue

            await self._stack.enter_async_context(server_stack)
            self._sessions[name] = session
            self._tools[name] = [
                ProtocolToolInfo(
                    server=name,
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=dict(tool.inputSchema or {}),
                )
                for tool in listed.tools
            ]
            logger.info("Protocol server '%s' ready with %d tools", name, len(self._tools[name]))

    async def close(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._sessions.clear()
        self._tools.clear()

    def _selected(self, server_filter: Sequence[str] | None) -> List[str]:
        return list(server_filter) if server_filter else list(self._configs)

    def server_availability(self, server_filter: Sequence[str] | None = None) -> ServerAvailability:
        summary = ServerAvailability()
        for name in self._selected(server_filter):
            if name in self._sessions:
                summary.available.append(name)
                summary.total_tools += len(self._tools.get(name, []))
            elif name not in self._configs:
                summary.unavailable[name] = "not configured"
            else:
                summary.unavailable[name] = self._failures.get(name, "not running")
        return summary

    async def list_available_tools(
        self, server_filter: Sequence[str] | None = None
    ) -> List[ProtocolToolInfo]:
        tools: List[ProtocolToolInfo] = []
        for name in self._selected(server_filter):
            tools.extend(self._tools.get(name, []))
        return tools

    async def invoke(self, call: ProtocolToolCall) -> ProtocolToolResult:
        session = self._sessions.get(call.server)
        if session is None:
            return ProtocolToolResult(
                success=False, error=f"Protocol server '{call.server}' is not running"
            )
        try:
            result = await session.call_tool(call.name, call.arguments)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Protocol tool %s/%s raised: %s", call.server, call.name, exc)
            return ProtocolToolResult(success=False, error=str(exc) or type(exc).__name__)

        parts = [
            ProtocolContentPart.model_validate(item.model_dump(by_alias=True, exclude_none=True))
            for item in result.content or []
        ]
        if result.isError:
            error = "\n".join(part.text for part in parts if part.text) or "Protocol tool failed"
            return ProtocolToolResult(success=False, content=parts, error=error)
        return ProtocolToolResult(
            success=True,
            content=parts,
            metadata={"server": call.server, "tool": call.name},
        )
