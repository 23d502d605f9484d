"""
One model turn.

The turn executor decides between a streamed and a plain request, stitches streamed tool-call
fragments back together and returns a :class:`StepResult`.  It owns no conversation state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Sequence,
)
from urllib.parse import urlparse

from autoloop.agent.transport import (
    BaseTransport,
    StreamAborted,
    TransportError,
)
from autoloop.core.cancellation import CancellationToken
from autoloop.core.schema import (
    ChatMessage,
    ProviderConfig,
    StepResult,
    TokenUsage,
    ToolCallDelta,
    ToolCallRequest,
    new_tool_call_id,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]

_HOSTED_TYPES = {"openai", "openrouter", "anthropic", "gemini"}
_HOSTED_URL_MARKERS = (
    "openai.com",
    "openrouter.ai",
    "api.anthropic.com",
    "generativelanguage.googleapis.com",
)
_LOCAL_TYPES = {"ollama", "llamacpp", "local"}
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0"}


def should_disable_streaming_for_tools(provider: ProviderConfig | None, has_tools: bool) -> bool:
    """
    Whether a streamed request must be replaced by a plain one because tools are attached.

    Hosted APIs tend to garble tool calls across stream chunks, local servers handle them fine.  An
    explicit ``supports_streaming_tools`` flag on the provider always wins over the guess.
    """
    if not has_tools:
        return False
    if provider is None:
        return True
    if provider.supports_streaming_tools is not None:
        return not provider.supports_streaming_tools

    provider_type = (provider.type or "").lower()
    base_url = (provider.base_url or "").lower()
    if provider_type in _HOSTED_TYPES or any(marker in base_url for marker in _HOSTED_URL_MARKERS):
        return True

    host = urlparse(base_url).hostname or ""
    if provider_type in _LOCAL_TYPES or host in _LOCAL_HOSTS:
        return False

    logger.debug("Unknown provider %s (%s), not streaming with tools", provider_type, base_url)
    return True


def _is_streaming_tools_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return "stream" in message and "tool" in message


class ToolCallAccumulator:
    """Rebuild complete tool calls from streamed fragments."""

    def __init__(self) -> None:
        self._entries: List[Dict[str, Any]] = []

    def _locate(self, fragment: ToolCallDelta) -> Dict[str, Any] | None:
        if fragment.id:
            for entry in self._entries:
                if entry["id"] == fragment.id:
                    return entry
        if fragment.index is not None:
            for entry in self._entries:
                if entry["index"] == fragment.index:
                    # A new id at an index we have seen starts a new call
                    if fragment.id and entry["id"] and entry["id"] != fragment.id:
                        return None
                    return entry
        if not fragment.id and not fragment.name and fragment.index is None and self._entries:
            return self._entries[-1]
        return None

    def add(self, fragment: ToolCallDelta) -> None:
        entry = self._locate(fragment)
        if entry is None:
            entry = {"id": None, "index": fragment.index, "name": "", "arguments": ""}
            self._entries.append(entry)
        if fragment.id and not entry["id"]:
            entry["id"] = fragment.id
        if entry["index"] is None and fragment.index is not None:
            entry["index"] = fragment.index
        if fragment.name:
            entry["name"] = fragment.name
        if fragment.arguments:
            entry["arguments"] += fragment.arguments

    def finalize(self) -> List[ToolCallRequest]:
        """Completed calls; nameless calls and calls with unparsable arguments are dropped."""
        calls: List[ToolCallRequest] = []
        for entry in self._entries:
            if not entry["name"]:
                logger.warning("Discarding streamed tool call without a name: %s", entry)
                continue
            try:
                json.loads(entry["arguments"] or "{}")
            except json.JSONDecodeError:
                logger.warning(
                    "Discarding tool call '%s' with invalid JSON arguments: %r",
                    entry["name"],
                    entry["arguments"],
                )
                continue
            calls.append(
                ToolCallRequest(
                    id=entry["id"] or new_tool_call_id(),
                    name=entry["name"],
                    arguments=entry["arguments"],
                )
            )
        return calls


class _StreamProgress:
    """What a streamed turn has delivered so far."""

    def __init__(self) -> None:
        self.text = ""
        self.usage = TokenUsage()
        self.accumulator = ToolCallAccumulator()


class TurnExecutor:
    """
    Run a single model turn against *transport*.

    Args:
        transport: The backend client.
        provider: The backend description, used to pick the transport mode.
    """

    def __init__(self, transport: BaseTransport, provider: ProviderConfig | None = None) -> None:
        self.transport = transport
        self.provider = provider if provider is not None else transport.provider

    def use_streaming(self, enable_streaming: bool, has_tools: bool) -> bool:
        if not enable_streaming:
            return False
        return not should_disable_streaming_for_tools(self.provider, has_tools)

    async def execute(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Mapping[str, Any],
        tools: Sequence[Dict[str, Any]] | None = None,
        *,
        enable_streaming: bool = True,
        on_chunk: ChunkCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> StepResult:
        """
        Perform one turn.

        Raises:
            TransportError: The backend failed (after the streaming fallback, if it applied).
            StreamAborted: The token was cancelled while streaming.
        """
        has_tools = bool(tools)
        if not self.use_streaming(enable_streaming, has_tools):
            return await self._execute_plain(model, messages, options, tools, on_chunk)

        try:
            return await self._execute_streaming(
                model, messages, options, tools, on_chunk=on_chunk, cancel_token=cancel_token
            )
        except TransportError as exc:
            if has_tools and _is_streaming_tools_error(exc):
                logger.warning("Streaming with tools failed (%s), retrying without streaming", exc)
                return await self._execute_plain(model, messages, options, tools, on_chunk)
            raise

    async def _execute_plain(self, model, messages, options, tools, on_chunk) -> StepResult:
        response = await self.transport.send_turn(model, messages, options, tools or None)
        calls = [
            call if call.id else call.model_copy(update={"id": new_tool_call_id()})
            for call in response.tool_calls
        ]
        logger.debug("Plain turn returned %d tool calls", len(calls))
        if on_chunk is not None and response.content:
            on_chunk(response.content)
        return StepResult(content=response.content, tool_calls=calls, usage=response.usage)

    async def _execute_streaming(
        self,
        model,
        messages,
        options,
        tools,
        *,
        on_chunk: ChunkCallback | None,
        cancel_token: CancellationToken | None,
    ) -> StepResult:
        progress = _StreamProgress()
        # The whole stream is consumed in one task so the transport's own cleanup runs there
        consume = asyncio.ensure_future(
            self._consume(model, messages, options, tools, progress, on_chunk, cancel_token)
        )
        if cancel_token is None:
            await consume
        else:
            watcher = asyncio.ensure_future(cancel_token.wait())
            try:
                done, _ = await asyncio.wait({consume, watcher}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                consume.cancel()
                raise
            finally:
                watcher.cancel()
            if consume not in done:
                logger.info("Stream stalled after an abort request, dropping the connection")
                consume.cancel()
                await asyncio.gather(consume, return_exceptions=True)
                raise StreamAborted("Stream aborted", partial_text=progress.text)
            consume.result()

        calls = progress.accumulator.finalize()
        logger.debug("Streamed turn returned %d tool calls", len(calls))
        return StepResult(content=progress.text, tool_calls=calls, usage=progress.usage)

    async def _consume(
        self, model, messages, options, tools, progress, on_chunk, cancel_token
    ) -> None:
        stream = self.transport.stream_turn(model, messages, options, tools or None)
        async with aclosing(stream):
            async for delta in stream:
                if delta.content:
                    progress.text += delta.content
                    if on_chunk is not None:
                        on_chunk(delta.content)
                for fragment in delta.tool_calls:
                    progress.accumulator.add(fragment)
                if delta.usage is not None:
                    progress.usage = delta.usage
                if cancel_token is not None and cancel_token.is_cancelled:
                    raise StreamAborted("Stream aborted", partial_text=progress.text)
