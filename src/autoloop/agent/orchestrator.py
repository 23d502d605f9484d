"""
Per-message entry point.

:class:`ChatOrchestrator` turns one user message into a final assistant message: it prepares the
conversation, gathers the tools of the run, drives :class:`AgentLoop` and makes sure the caller
always receives a well-formed :class:`FinalMessage`, whatever went wrong.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import (
    Callable,
    List,
    Sequence,
)

from autoloop.agent.agent_loop import AgentLoop
from autoloop.agent.transport import (
    BaseTransport,
    load_transport,
    provider_from_settings,
)
from autoloop.agent.turn_executor import TurnExecutor
from autoloop.config import (
    AgentConfig,
    settings,
)
from autoloop.core.cancellation import (
    AgentAborted,
    CancellationToken,
)
from autoloop.core.schema import (
    ChatMessage,
    FinalMessage,
    MessageMetadata,
    ProviderConfig,
    Role,
    ToolDefinition,
)
from autoloop.protocol.client import ProtocolToolClient
from autoloop.store.tool_store import ToolStore
from autoloop.tools.catalog import (
    ToolCatalog,
    protocol_definition,
)
from autoloop.tools.sandbox import ScriptSandbox

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]

DEFAULT_PERSONA = "You are autoloop, a helpful AI assistant."

APOLOGY = (
    "I apologize, but I encountered an error while processing your request: {error}. "
    "Please try again."
)


def strip_provider_prefix(model_id: str) -> str:
    """``"ollama:qwen3:30b"`` -> ``"qwen3:30b"``; ids without a prefix are returned unchanged."""
    if ":" in model_id:
        return model_id.split(":", 1)[1]
    return model_id


def as_image_url(image: str) -> str:
    """Images arrive as data URIs, URLs or bare base64; transports want the first two."""
    if image.startswith(("data:", "http://", "https://")):
        return image
    return f"data:image/png;base64,{image}"


def _tool_line(tool: ToolDefinition) -> str:
    properties = tool.parameters.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    required = [
        name
        for name in tool.parameters.get("required") or []
        if isinstance(name, str) and name in properties
    ]
    optional = [name for name in properties if name not in required]
    return (
        f"- {tool.name}: {tool.description}\n"
        f"  Required: {', '.join(required) or 'none'}\n"
        f"  Optional: {', '.join(optional) or 'none'}"
    )


def build_system_prompt(
    base_prompt: str | None, tools: Sequence[ToolDefinition], max_retries: int
) -> str:
    """The caller's prompt (or the default persona) followed by the agent instructions."""
    tools_list = "\n".join(_tool_line(tool) for tool in tools) or "No tools available"
    return f"""{base_prompt or DEFAULT_PERSONA}

AUTONOMOUS AGENT MODE

You are operating as an autonomous agent:
1. **Persistence**: if a tool call fails, analyze the error and retry with corrected parameters
2. **Self-correction**: learn from errors and adjust your approach
3. **Tool mastery**: read tool descriptions and requirements carefully
4. **Progress**: keep the user informed of your reasoning

AVAILABLE TOOLS:
{tools_list}

TOOL USAGE GUIDELINES:
- Tool names must match exactly (case-sensitive)
- Provide every required parameter
- Use the output of one tool as input to another when appropriate

ERROR HANDLING:
1. If a tool name was misspelled, retry with the correct spelling
2. If parameters are missing or invalid, retry with proper parameters
3. If a tool does not exist, suggest alternatives or explain the limitation
4. At most {max_retries} retries per tool before moving to alternatives

Finish with a complete answer to the user's request."""


class ChatOrchestrator:
    """
    Run autonomous chat turns against one provider.

    Args:
        provider: Backend to talk to; taken from the settings when omitted.
        transport: Pre-built transport (tests inject fakes here).
        tool_store: Source of stored tools.
        protocol_client: Source of protocol-server tools.
        sandbox: Evaluator for stored tool bodies.
    """

    def __init__(
        self,
        provider: ProviderConfig | None = None,
        transport: BaseTransport | None = None,
        tool_store: ToolStore | None = None,
        protocol_client: ProtocolToolClient | None = None,
        sandbox: ScriptSandbox | None = None,
    ) -> None:
        self.provider = provider or (transport.provider if transport else provider_from_settings())
        self.transport = transport or load_transport(self.provider)
        self.tool_store = tool_store
        self.protocol_client = protocol_client
        self.sandbox = sandbox or ScriptSandbox(timeout=settings.SANDBOX_TIMEOUT)

    async def build_catalog(
        self,
        *,
        enable_tools: bool,
        enable_protocol_tools: bool,
        server_filter: Sequence[str] | None = None,
        narrate: ChunkCallback | None = None,
    ) -> ToolCatalog:
        """Built-ins and enabled stored tools, plus protocol tools when they are switched on."""
        if not enable_tools:
            return ToolCatalog.empty()

        def say(text: str) -> None:
            if narrate is not None:
                narrate(text)

        stored = self.tool_store.enabled_tools() if self.tool_store else []
        protocol: List[ToolDefinition] = []
        if enable_protocol_tools:
            if self.protocol_client is None:
                say("**Protocol tools unavailable** - no tool servers are configured.\n\n")
            else:
                protocol = await self._protocol_tools(server_filter, say)
        elif self.protocol_client is not None:
            say("**Protocol tools disabled** in configuration.\n\n")

        catalog = ToolCatalog(stored=stored, protocol=protocol)
        logger.info(
            "Catalog built: %d tools (%d stored, %d protocol)", len(catalog), len(stored), len(protocol)
        )
        return catalog

    async def _protocol_tools(
        self, server_filter: Sequence[str] | None, say: ChunkCallback
    ) -> List[ToolDefinition]:
        summary = self.protocol_client.server_availability(server_filter)
        if summary.unavailable or not server_filter:
            lines = ["\n**Tool Server Status:**"]
            if not server_filter:
                lines.append("No servers selected, using all available servers.")
            if summary.available:
                lines.append(f"Available: {', '.join(summary.available)} ({summary.total_tools} tools)")
            if summary.unavailable:
                lines.append("Unavailable servers:")
                lines.extend(f"   - {name}: {reason}" for name, reason in summary.unavailable.items())
            say("\n".join(lines) + "\n\n")

        try:
            infos = await self.protocol_client.list_available_tools(server_filter or None)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Error loading protocol tools: %s", exc)
            say(f"**Error loading protocol tools:** {exc}\n\n")
            return []

        if not infos:
            say("**No protocol tools available** - all selected servers are offline or disabled.\n\n")
            return []

        per_server = Counter(info.server for info in infos)
        lines = [f"**Loaded {len(infos)} protocol tools:**"]
        lines.extend(f"   - {server}: {count} tools" for server, count in per_server.items())
        say("\n".join(lines) + "\n\n")
        return [protocol_definition(info) for info in infos]

    def build_messages(
        self,
        message: str,
        system_prompt: str,
        *,
        history: Sequence[ChatMessage] | None = None,
        images: Sequence[str] | None = None,
    ) -> List[ChatMessage]:
        """System prompt, prior conversation and the new user message, in that order."""
        messages = [ChatMessage(role=Role.SYSTEM, content=system_prompt)]

        prior = list(history or [])
        if prior and prior[-1].role == Role.USER and prior[-1].content == message:
            prior = prior[:-1]
        for entry in prior:
            if entry.role == Role.SYSTEM:
                continue
            # Tool traffic of earlier runs is not replayed, only what the user saw
            if entry.role == Role.TOOL or entry.tool_calls:
                continue
            messages.append(
                ChatMessage(
                    role=entry.role,
                    content=entry.content,
                    images=[as_image_url(image) for image in entry.images] if entry.images else None,
                )
            )

        messages.append(
            ChatMessage(
                role=Role.USER,
                content=message,
                images=[as_image_url(image) for image in images] if images else None,
            )
        )
        return messages

    async def send_chat_message(
        self,
        message: str,
        config: AgentConfig | None = None,
        *,
        images: Sequence[str] | None = None,
        system_prompt: str | None = None,
        history: Sequence[ChatMessage] | None = None,
        model: str | None = None,
        enable_tools: bool | None = None,
        enable_protocol_tools: bool | None = None,
        server_filter: Sequence[str] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> FinalMessage:
        """
        Answer *message*.

        Never raises: a failure becomes an apology message with ``metadata.error`` set, an abort
        becomes a message with ``metadata.aborted`` set.
        """
        config = config or AgentConfig.from_settings()
        model_label = model or f"{self.provider.type or self.provider.id}:{settings.MODEL}"
        model_id = strip_provider_prefix(model) if model else settings.MODEL
        enable_tools = settings.ENABLE_TOOLS if enable_tools is None else enable_tools
        if enable_protocol_tools is None:
            enable_protocol_tools = settings.ENABLE_PROTOCOL_TOOLS

        def narrate(text: str) -> None:
            if on_chunk is not None and config.enable_progress_tracking:
                on_chunk(text)

        try:
            catalog = await self.build_catalog(
                enable_tools=enable_tools,
                enable_protocol_tools=enable_protocol_tools,
                server_filter=server_filter,
                narrate=narrate,
            )
            messages = self.build_messages(
                message,
                build_system_prompt(system_prompt, catalog.definitions(), config.max_retries),
                history=history,
                images=images,
            )
            loop = AgentLoop(
                TurnExecutor(self.transport, self.provider),
                catalog,
                config,
                protocol_client=self.protocol_client,
                sandbox=self.sandbox,
            )
            return await loop.run(
                messages,
                model=model_id,
                query=message,
                on_chunk=on_chunk,
                cancel_token=cancel_token,
                model_label=model_label,
            )
        except AgentAborted as exc:
            logger.info("Chat message aborted before the loop finished")
            return FinalMessage(
                content=exc.partial_text,
                metadata=MessageMetadata(model=model_label, aborted=True),
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Chat message failed")
            return FinalMessage(
                content=APOLOGY.format(error=exc),
                metadata=MessageMetadata(model=model_label, error=str(exc)),
            )
