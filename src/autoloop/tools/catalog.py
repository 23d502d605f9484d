"""
One view over every tool the model may call.

Built-in functions, stored tools and protocol-server tools are described by the same
:class:`ToolDefinition`.  Lookup follows the invoker's resolution order: protocol tools by their
``mcp_`` name, then built-ins, then stored tools.
"""

import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
)

from autoloop.core.schema import (
    ToolDefinition,
    ToolImplementation,
)
from autoloop.protocol.client import (
    ProtocolToolInfo,
    is_protocol_tool_name,
    protocol_tool_name,
)
from autoloop.tools import (
    TOOL_REGISTRY,
    describe_function,
)
from autoloop.tools.schema_sanitizer import validate_and_sanitize_tools

logger = logging.getLogger(__name__)


def protocol_definition(info: ProtocolToolInfo) -> ToolDefinition:
    """Describe a protocol-server tool under its prefixed name."""
    return ToolDefinition(
        name=protocol_tool_name(info.server, info.name),
        description=info.description or f"{info.name} ({info.server})",
        parameters=info.input_schema,
        implementation=ToolImplementation.PROTOCOL,
        server=info.server,
        remote_name=info.name,
    )


class ToolCatalog:
    """Tools available to one agent run."""

    def __init__(
        self,
        builtins: Mapping[str, Callable] | None = None,
        stored: Iterable[ToolDefinition] = (),
        protocol: Iterable[ToolDefinition] = (),
    ) -> None:
        self.builtins: Dict[str, Callable] = dict(TOOL_REGISTRY if builtins is None else builtins)
        self._protocol = {tool.name: tool for tool in protocol}
        self._builtin_defs = {name: describe_function(name, fn) for name, fn in self.builtins.items()}
        self._stored: Dict[str, ToolDefinition] = {}
        for tool in stored:
            if tool.name in self._builtin_defs:
                logger.warning("Stored tool '%s' is shadowed by a built-in tool", tool.name)
                continue
            self._stored[tool.name] = tool

    @classmethod
    def empty(cls) -> "ToolCatalog":
        return cls(builtins={})

    def definitions(self) -> List[ToolDefinition]:
        return [*self._builtin_defs.values(), *self._stored.values(), *self._protocol.values()]

    def names(self) -> List[str]:
        return [tool.name for tool in self.definitions()]

    def __len__(self) -> int:
        return len(self._builtin_defs) + len(self._stored) + len(self._protocol)

    def __bool__(self) -> bool:
        return len(self) > 0

    def is_protocol_tool(self, name: str) -> bool:
        return is_protocol_tool_name(name) and name in self._protocol

    def get(self, name: str) -> ToolDefinition | None:
        """Resolve *name*: protocol tools first, then built-ins, then stored tools."""
        if self.is_protocol_tool(name):
            return self._protocol[name]
        if name in self._builtin_defs:
            return self._builtin_defs[name]
        return self._stored.get(name)

    def openai_tools(self) -> List[Dict[str, Any]]:
        """Chat-completions ``tools`` payload with every schema repaired."""
        return validate_and_sanitize_tools(tool.to_openai() for tool in self.definitions())
