"""
Transport interface for autoloop.

This module is the only place that *directly* calls a model backend.  Everything else (agent loop,
tools, orchestration) stays backend-agnostic and only sees :class:`ChatMessage`,
:class:`TurnResponse` and :class:`StreamDelta`.

We support three back-ends out of the box:

1. **openai** - the OpenAI SDK, which also speaks to any OpenAI-compatible server through
   ``base_url`` (OpenRouter, Ollama, llama.cpp, vLLM, ...).
2. **anthropic** - the Anthropic SDK (Messages API).
3. **http** - raw ``httpx`` against an OpenAI-compatible ``/chat/completions`` endpoint, for
   servers where pulling in an SDK is not wanted (TGI, bare llama.cpp).

Additional transports can be added by subclassing :class:`BaseTransport` and registering via
:func:`register_transport`.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Mapping,
    Sequence,
    Type,
)

import httpx

from autoloop.config import settings
from autoloop.core.cancellation import AgentAborted
from autoloop.core.schema import (
    ChatMessage,
    ProviderConfig,
    Role,
    StreamDelta,
    TokenUsage,
    ToolCallDelta,
    ToolCallRequest,
    TurnResponse,
    new_tool_call_id,
)

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when a backend request fails.  The message is the backend's own error text."""


class StreamAborted(AgentAborted):
    """Raised when a streamed turn is cancelled; carries the text received so far."""


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_TRANSPORT_REGISTRY: dict[str, Type["BaseTransport"]] = {}


def register_transport(name: str) -> Callable:
    """Decorator to register a transport class under *name*."""

    def wrapper(cls: Type["BaseTransport"]) -> Type["BaseTransport"]:
        _TRANSPORT_REGISTRY[name] = cls
        return cls

    return wrapper


def provider_from_settings() -> ProviderConfig:
    """The provider described by the environment."""
    return ProviderConfig(
        id="default",
        name=settings.PROVIDER_TYPE,
        type=settings.PROVIDER_TYPE,
        base_url=settings.PROVIDER_BASE_URL,
        api_key=settings.PROVIDER_API_KEY,
        transport=settings.TRANSPORT,
        supports_streaming_tools=settings.PROVIDER_STREAMING_TOOLS,
    )


def load_transport(provider: ProviderConfig | None = None) -> "BaseTransport":
    """
    Factory that returns an instantiated transport for *provider*.

    Fallback order for the transport name:
    1. ``provider.transport``
    2. ``settings.TRANSPORT`` env option
    """
    provider = provider or provider_from_settings()
    target = provider.transport or settings.TRANSPORT
    cls = _TRANSPORT_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Transport '{target}' is not registered.")
    return cls(provider)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseTransport(ABC):
    """Abstract transport that sends a conversation to a model and returns its turn."""

    def __init__(self, provider: ProviderConfig) -> None:
        self.provider = provider

    @abstractmethod
    async def send_turn(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Mapping[str, Any],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> TurnResponse:
        """Request one complete turn."""

    @abstractmethod
    def stream_turn(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: Mapping[str, Any],
        tools: Sequence[Dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Request one turn as incremental deltas.  Each call starts a new request."""


# ---------------------------------------------------------------------------
# Chat-completions wire format (shared by the openai and http transports)
# ---------------------------------------------------------------------------
def to_openai_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
    """
    Render the conversation in the chat-completions ``messages`` shape.

    Tool messages only carry text on this API, so images returned by a run of tool results are
    forwarded in one user message placed right after that run.
    """
    rendered: List[Dict[str, Any]] = []
    tool_images: List[str] = []

    def flush_tool_images() -> None:
        if not tool_images:
            return
        parts: List[Dict[str, Any]] = [{"type": "text", "text": "Images returned by tool calls:"}]
        parts.extend({"type": "image_url", "image_url": {"url": url}} for url in tool_images)
        rendered.append({"role": "user", "content": parts})
        tool_images.clear()

    for msg in messages:
        if msg.role == Role.TOOL:
            rendered.append(
                {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content}
            )
            tool_images.extend(msg.images or [])
            continue

        flush_tool_images()
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            rendered.append(
                {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [call.to_openai() for call in msg.tool_calls],
                }
            )
        elif msg.images:
            parts: List[Dict[str, Any]] = [{"type": "text", "text": msg.content}]
            parts.extend({"type": "image_url", "image_url": {"url": url}} for url in msg.images)
            rendered.append({"role": msg.role.value, "content": parts})
        else:
            rendered.append({"role": msg.role.value, "content": msg.content})
    flush_tool_images()
    return rendered


def _usage_from_openai(raw: Mapping[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        prompt_tokens=raw.get("prompt_tokens") or 0,
        completion_tokens=raw.get("completion_tokens") or 0,
        total_tokens=raw.get("total_tokens") or 0,
    )


def parse_openai_response(data: Mapping[str, Any]) -> TurnResponse:
    """Convert a chat-completions response body into a :class:`TurnResponse`."""
    choices = data.get("choices") or []
    if not choices:
        raise TransportError(f"Response contained no choices: {data}")
    message = choices[0].get("message") or {}
    calls = []
    for raw_call in message.get("tool_calls") or []:
        function = raw_call.get("function") or {}
        calls.append(
            ToolCallRequest(
                id=raw_call.get("id") or new_tool_call_id(),
                name=function.get("name") or "",
                arguments=function.get("arguments") or "",
            )
        )
    return TurnResponse(
        content=message.get("content") or "",
        tool_calls=calls,
        usage=_usage_from_openai(data.get("usage")) or TokenUsage(),
        finish_reason=choices[0].get("finish_reason"),
    )


def parse_openai_chunk(data: Mapping[str, Any]) -> StreamDelta:
    """Convert one chat-completions stream chunk into a :class:`StreamDelta`."""
    if data.get("error"):
        error = data["error"]
        raise TransportError(error.get("message", str(error)) if isinstance(error, dict) else str(error))

    delta = StreamDelta(usage=_usage_from_openai(data.get("usage")))
    for choice in data.get("choices") or []:
        raw_delta = choice.get("delta") or {}
        if raw_delta.get("content"):
            delta.content = (delta.content or "") + raw_delta["content"]
        for raw_call in raw_delta.get("tool_calls") or []:
            function = raw_call.get("function") or {}
            delta.tool_calls.append(
                ToolCallDelta(
                    index=raw_call.get("index"),
                    id=raw_call.get("id"),
                    name=function.get("name"),
                    arguments=function.get("arguments"),
                )
            )
        if choice.get("finish_reason"):
            delta.finish_reason = choice["finish_reason"]
    return delta


def _openai_payload(
    model: str,
    messages: Sequence[ChatMessage],
    options: Mapping[str, Any],
    tools: Sequence[Dict[str, Any]] | None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"model": model, "messages": to_openai_messages(messages), **options}
    if tools:
        payload["tools"] = list(tools)
    return payload


# ---------------------------------------------------------------------------
# Concrete transports
# ---------------------------------------------------------------------------
@register_transport("openai")
class OpenAITransport(BaseTransport):
    """OpenAI SDK transport; ``base_url`` makes it work with any compatible server."""

    def __init__(self, provider: ProviderConfig) -> None:
        super().__init__(provider)
        import openai  # pylint: disable=import-outside-toplevel

        self._errors = (openai.OpenAIError,)
        self._client = openai.AsyncOpenAI(
            # Local servers ignore the key but the SDK insists on one
            api_key=provider.api_key or settings.OPENAI_API_KEY or "not-needed",
            base_url=provider.base_url or None,
            timeout=settings.REQUEST_TIMEOUT,
        )

    async def send_turn(self, model, messages, options, tools=None) -> TurnResponse:
        payload = _openai_payload(model, messages, options, tools)
        try:
            resp = await self._client.chat.completions.create(**payload)
        except self._errors as exc:
            logger.error("OpenAI request error: %s", exc)
            raise TransportError(str(exc)) from exc
        logger.debug("OpenAI response: %s", resp)
        return parse_openai_response(resp.model_dump())

    async def stream_turn(self, model, messages, options, tools=None) -> AsyncIterator[StreamDelta]:
        payload = _openai_payload(model, messages, options, tools)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
        try:
            stream = await self._client.chat.completions.create(**payload)
            async for chunk in stream:
                yield parse_openai_chunk(chunk.model_dump())
        except self._errors as exc:
            logger.error("OpenAI stream error: %s", exc)
            raise TransportError(str(exc)) from exc


@register_transport("http")
class HTTPTransport(BaseTransport):
    """Plain httpx client for OpenAI-compatible ``/chat/completions`` endpoints."""

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.provider.api_key}"} if self.provider.api_key else {}
        return httpx.AsyncClient(
            base_url=self.provider.base_url.rstrip("/"),
            headers=headers,
            timeout=settings.REQUEST_TIMEOUT,
        )

    async def send_turn(self, model, messages, options, tools=None) -> TurnResponse:
        payload = _openai_payload(model, messages, options, tools)
        try:
            async with self._client() as client:
                resp = await client.post("/chat/completions", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("HTTP transport error: %s", exc)
            raise TransportError(f"{exc}: {exc.response.text}") from exc
        except httpx.HTTPError as exc:
            logger.error("HTTP transport error: %s", exc)
            raise TransportError(str(exc)) from exc
        logger.debug("HTTP transport response: %s", data)
        return parse_openai_response(data)

    async def stream_turn(self, model, messages, options, tools=None) -> AsyncIterator[StreamDelta]:
        payload = _openai_payload(model, messages, options, tools)
        payload["stream"] = True
        try:
            async with self._client() as client:
                async with client.stream("POST", "/chat/completions", json=payload) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", "replace")
                        raise TransportError(f"HTTP {resp.status_code}: {body}")
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:") :].strip()
                        if data == "[DONE]":
                            break
                        if data:
                            yield parse_openai_chunk(json.loads(data))
        except httpx.HTTPError as exc:
            logger.error("HTTP transport stream error: %s", exc)
            raise TransportError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------
def _anthropic_image(url: str) -> Dict[str, Any]:
    if url.startswith("data:") and ";base64," in url:
        header, data = url.split(",", 1)
        media_type = header[len("data:") :].split(";", 1)[0] or "image/png"
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
    return {"type": "image", "source": {"type": "url", "url": url}}


def to_anthropic_messages(messages: Sequence[ChatMessage]) -> tuple[str, List[Dict[str, Any]]]:
    """Split out the system prompt and render the rest as Messages API blocks."""
    system_parts: List[str] = []
    rendered: List[Dict[str, Any]] = []

    def append(role: str, blocks: List[Dict[str, Any]]) -> None:
        # The Messages API requires alternating roles
        if rendered and rendered[-1]["role"] == role:
            rendered[-1]["content"].extend(blocks)
        else:
            rendered.append({"role": role, "content": blocks})

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.content)
        elif msg.role == Role.TOOL:
            result: Any = msg.content
            if msg.images:
                result = [{"type": "text", "text": msg.content}]
                result.extend(_anthropic_image(url) for url in msg.images)
            append("user", [{"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": result}])
        elif msg.role == Role.ASSISTANT:
            blocks: List[Dict[str, Any]] = [{"type": "text", "text": msg.content}] if msg.content else []
            for call in msg.tool_calls or []:
                try:
                    arguments = json.loads(call.arguments or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": arguments})
            if blocks:
                append("assistant", blocks)
        else:
            blocks = [_anthropic_image(url) for url in msg.images or []]
            blocks.append({"type": "text", "text": msg.content})
            append("user", blocks)
    return "\n\n".join(system_parts), rendered


def to_anthropic_tools(tools: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": tool["function"]["name"],
            "description": tool["function"].get("description", ""),
            "input_schema": tool["function"].get("parameters") or {"type": "object"},
        }
        for tool in tools
    ]


@register_transport("anthropic")
class AnthropicTransport(BaseTransport):
    """Anthropic Claude transport."""

    DEFAULT_MAX_TOKENS = 8192

    def __init__(self, provider: ProviderConfig) -> None:
        super().__init__(provider)
        import anthropic  # pylint: disable=import-outside-toplevel

        self._errors = (anthropic.AnthropicError,)
        kwargs: Dict[str, Any] = {
            "api_key": provider.api_key or settings.ANTHROPIC_API_KEY,
            "timeout": settings.REQUEST_TIMEOUT,
        }
        if provider.base_url:
            kwargs["base_url"] = provider.base_url
        self._client = anthropic.AsyncAnthropic(**kwargs)

    def _payload(self, model, messages, options, tools) -> Dict[str, Any]:
        system, rendered = to_anthropic_messages(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": rendered,
            "max_tokens": options.get("max_tokens") or self.DEFAULT_MAX_TOKENS,
        }
        for key in ("temperature", "top_p"):
            if options.get(key) is not None:
                payload[key] = options[key]
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = to_anthropic_tools(tools)
        return payload

    async def send_turn(self, model, messages, options, tools=None) -> TurnResponse:
        try:
            response = await self._client.messages.create(
                **self._payload(model, messages, options, tools)
            )
        except self._errors as exc:
            logger.error("Anthropic request error: %s", exc)
            raise TransportError(str(exc)) from exc

        logger.debug("Anthropic response: %s", response)
        text: List[str] = []
        calls: List[ToolCallRequest] = []
        # Handle the different content block types of the Messages API
        for block in response.content:
            if block.type == "text":
                text.append(block.text)
            elif block.type == "tool_use":
                calls.append(
                    ToolCallRequest(id=block.id, name=block.name, arguments=json.dumps(block.input))
                )
        prompt, completion = response.usage.input_tokens, response.usage.output_tokens
        return TurnResponse(
            content="".join(text),
            tool_calls=calls,
            usage=TokenUsage(
                prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion
            ),
            finish_reason=response.stop_reason,
        )

    async def stream_turn(self, model, messages, options, tools=None) -> AsyncIterator[StreamDelta]:
        prompt = completion = 0
        try:
            stream = await self._client.messages.create(
                **self._payload(model, messages, options, tools), stream=True
            )
            async for event in stream:
                if event.type == "message_start":
                    prompt = event.message.usage.input_tokens
                elif event.type == "content_block_start" and event.content_block.type == "tool_use":
                    yield StreamDelta(
                        tool_calls=[
                            ToolCallDelta(
                                index=event.index,
                                id=event.content_block.id,
                                name=event.content_block.name,
                            )
                        ]
                    )
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta":
                        yield StreamDelta(content=event.delta.text)
                    elif event.delta.type == "input_json_delta":
                        yield StreamDelta(
                            tool_calls=[
                                ToolCallDelta(index=event.index, arguments=event.delta.partial_json)
                            ]
                        )
                elif event.type == "message_delta":
                    completion = event.usage.output_tokens
                    yield StreamDelta(finish_reason=event.delta.stop_reason)
        except self._errors as exc:
            logger.error("Anthropic stream error: %s", exc)
            raise TransportError(str(exc)) from exc

        yield StreamDelta(
            usage=TokenUsage(
                prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion
            )
        )
