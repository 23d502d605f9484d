"""
Dispatches tool calls to built-in, stored or protocol tools, retries failures and wraps errors.

Nothing raised by a tool escapes :meth:`ToolInvoker.invoke`: every call ends as a
:class:`ToolOutcome`, successful or not, and every attempt is logged on the execution context.
"""

import asyncio
import inspect
import json
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Mapping,
)

from autoloop.agent.result_assembler import normalize_protocol_result
from autoloop.config import AgentConfig
from autoloop.core.schema import (
    AgentExecutionContext,
    ToolCallRequest,
    ToolDefinition,
    ToolExecutionAttempt,
    ToolImplementation,
    ToolOutcome,
)
from autoloop.protocol.client import (
    ProtocolToolCall,
    ProtocolToolClient,
)
from autoloop.tools import TOOL_REGISTRY
from autoloop.tools.catalog import ToolCatalog
from autoloop.tools.sandbox import (
    SandboxError,
    ScriptSandbox,
)

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """Raised when a requested tool cannot run or fails."""


class ToolNotFoundError(ToolExecutionError):
    """Raised when no tool answers to the requested name."""


class ToolArgumentError(ToolExecutionError):
    """Raised when the model's argument text is not a JSON object."""


_EMPTY_ARGUMENTS = {"", "null", "undefined"}


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """
    Decode tool-call arguments.

    Empty, ``"null"`` and ``"undefined"`` text decode to ``{}``; an already decoded mapping is
    used as-is.

    Raises
    ------
    ToolArgumentError
        If the text is not valid JSON or does not decode to an object.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    text = str(raw).strip()
    if text in _EMPTY_ARGUMENTS:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolArgumentError(f"Failed to parse arguments: {exc}") from exc
    if not isinstance(value, dict):
        raise ToolArgumentError(f"Arguments must be a JSON object, got {type(value).__name__}")
    return value


async def execute_tool(
    name: str,
    args: Dict[str, Any] | None = None,
    registry: Mapping[str, Callable] | None = None,
) -> Any:
    """
    Look up *name* in the registry and invoke it with *args*.

    Parameters
    ----------
    name:
        The registered tool name.
    args:
        Keyword arguments to pass verbatim to the tool function.  If *None*,
        an empty dict is assumed.
    registry:
        Where to look the tool up; the global built-in registry by default.

    Returns
    -------
    Any
        Whatever the tool function returns (awaited if the tool is a coroutine function).

    Raises
    ------
    ToolExecutionError
        If the tool is missing or its invocation raises an exception.
    """

    if args is None:
        args = {}
    registry = TOOL_REGISTRY if registry is None else registry

    tool_fn = registry.get(name)
    if tool_fn is None:
        raise ToolNotFoundError(f"Tool '{name}' is not registered.")

    try:
        logger.debug("Executing tool '%s' with args=%s", name, args)
        value = tool_fn(**args)
        if inspect.isawaitable(value):
            value = await value
        return value
    except TypeError as exc:
        # Argument mismatch, give the caller a clean exception.
        logger.exception("Argument error while executing tool '%s'", name)
        raise ToolExecutionError(f"Invalid arguments for tool '{name}': {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", name)
        raise ToolExecutionError(f"Tool '{name}' raised an error: {exc}") from exc


class ToolInvoker:
    """
    Execute resolved tool calls with a bounded retry.

    Args:
        catalog: Tools of the current run.
        config: Retry policy (``max_retries`` attempts, ``retry_delay`` seconds apart).
        protocol_client: Client for ``mcp_`` tools, if protocol tools are enabled.
        sandbox: Evaluator for stored tool bodies.
        narrate: Receives progress lines such as retry notes.
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        config: AgentConfig,
        protocol_client: ProtocolToolClient | None = None,
        sandbox: ScriptSandbox | None = None,
        narrate: Callable[[str], None] | None = None,
    ) -> None:
        self.catalog = catalog
        self.config = config
        self.protocol_client = protocol_client
        self.sandbox = sandbox or ScriptSandbox()
        self._narrate = narrate or (lambda _text: None)

    async def invoke(self, call: ToolCallRequest, context: AgentExecutionContext) -> ToolOutcome:
        """Run *call* to completion; failures come back as an unsuccessful outcome."""
        name = call.name
        try:
            args = parse_arguments(call.arguments)
        except ToolArgumentError as exc:
            logger.warning("Bad arguments for tool '%s': %r (%s)", name, call.arguments, exc)
            self._narrate(f"Argument parsing failed for {name}: {exc}\n")
            return ToolOutcome(tool_call_id=call.id, tool_name=name, success=False, error=str(exc))

        tool = self.catalog.get(name)
        if tool is None:
            error = f"Tool '{name}' not found. Available tools: {', '.join(context.tools_available)}"
            logger.warning("%s", error)
            context.attempts.append(
                ToolExecutionAttempt(attempt=1, tool_name=name, arguments=args, error=error)
            )
            return ToolOutcome(
                tool_call_id=call.id, tool_name=name, success=False, error=error, metadata={"attempts": 1}
            )

        max_attempts = max(self.config.max_retries, 1)
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                self._narrate(f"Retry {attempt}/{max_attempts} for {name}\n")
            record = ToolExecutionAttempt(attempt=attempt, tool_name=name, arguments=args)
            try:
                outcome = await self._dispatch(tool, args, call)
            except (ToolExecutionError, SandboxError, OSError) as exc:
                last_error = str(exc) or type(exc).__name__
                record.error = last_error
                context.attempts.append(record)
                logger.info("Tool '%s' failed on attempt %d: %s", name, attempt, last_error)
                if attempt < max_attempts:
                    await asyncio.sleep(self.config.retry_delay)
                continue

            record.success = True
            context.attempts.append(record)
            outcome.metadata["attempts"] = attempt
            if attempt > 1:
                self._narrate(f"Success on attempt {attempt}\n")
            logger.info("Tool '%s' succeeded on attempt %d", name, attempt)
            return outcome

        self._narrate(f"Tool {name} failed after {max_attempts} attempts: {last_error}\n\n")
        return ToolOutcome(
            tool_call_id=call.id,
            tool_name=name,
            success=False,
            error=last_error,
            metadata={"attempts": max_attempts},
        )

    async def _dispatch(
        self, tool: ToolDefinition, args: Dict[str, Any], call: ToolCallRequest
    ) -> ToolOutcome:
        if tool.implementation == ToolImplementation.PROTOCOL:
            return await self._invoke_protocol(tool, args, call)

        if tool.implementation == ToolImplementation.BUILTIN:
            value = await execute_tool(tool.name, args, registry=self.catalog.builtins)
        else:
            if not tool.body:
                raise ToolExecutionError(f"Stored tool '{tool.name}' has no implementation")
            value = await self.sandbox.run(tool.body, args)
        return ToolOutcome(
            tool_call_id=call.id,
            tool_name=tool.name,
            success=True,
            result=value,
            metadata={"type": tool.implementation.value},
        )

    async def _invoke_protocol(
        self, tool: ToolDefinition, args: Dict[str, Any], call: ToolCallRequest
    ) -> ToolOutcome:
        if self.protocol_client is None:
            raise ToolExecutionError(f"Protocol tool '{tool.name}' requested but protocol tools are off")
        request = ProtocolToolCall(
            server=tool.server or "", name=tool.remote_name or tool.name, arguments=args, call_id=call.id
        )
        try:
            result = await self.protocol_client.invoke(request)
        except Exception as exc:  # noqa: BLE001
            raise ToolExecutionError(f"Protocol tool '{tool.name}' raised an error: {exc}") from exc
        if not result.success:
            raise ToolExecutionError(result.error or "Protocol tool execution failed")

        normalized = normalize_protocol_result(result, tool.name)
        return ToolOutcome(
            tool_call_id=call.id,
            tool_name=tool.name,
            success=True,
            result=normalized.result,
            artifacts=normalized.artifacts,
            images=normalized.images,
            tool_message=normalized.tool_message,
            metadata={"type": "protocol", "server": request.server, "tool": request.name, **result.metadata},
        )
