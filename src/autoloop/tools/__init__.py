"""
Built-in tool registry for autoloop.

This module provides a decorator to register tools and a registry to look them up by name.
The tools are functions (plain or ``async``) that are called with keyword arguments and return a
value.  Their parameter schemas are derived from the function signatures.
"""

import ast
import inspect
import logging
import operator
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Callable,
    Dict,
    Mapping,
    get_type_hints,
)

from autoloop.core.schema import (
    ToolDefinition,
    ToolImplementation,
)

logger = logging.getLogger(__name__)

TOOL_REGISTRY: Dict[str, Callable] = {}
"""Global registry of built-in tool functions."""


def register_tool(name: str) -> Callable:
    """
    Register a tool function with the given name.
    The name must be unique and is used to look up the function in the registry.  The function must
    accept keyword arguments and return a value.

    The function is registered as a decorator, so it can be used like this:
        @register_tool("my_tool")
        def my_tool_function(arg1: str, arg2: int = 0) -> str:
            # Do something
            return result

    Parameters
    ----------
    name: str
        The name of the tool.  This must be unique and is used to look up the
        function in the registry.
    Returns
    -------
    Callable
        A decorator that registers the function with the given name.
    Raises
    ------
    ValueError
        If a function with the same name is already registered.
    """
    if name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{name}' is already registered.")
    logger.debug("Registering tool '%s'", name)

    def wrapper(fn: Callable) -> Callable:
        TOOL_REGISTRY[name] = fn
        return fn

    return wrapper


_JSON_TYPES: Mapping[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    dict: "object",
}


def _json_type(annotation: Any) -> str:
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


def describe_function(name: str, fn: Callable) -> ToolDefinition:
    """Build the tool definition of *fn* from its signature, type hints and docstring."""
    sig = inspect.signature(fn)
    type_hints = get_type_hints(fn)
    properties: Dict[str, Dict[str, Any]] = {}
    required = []
    for param_name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        prop: Dict[str, Any] = {"type": _json_type(type_hints.get(param_name, str))}
        if prop["type"] == "array":
            prop["items"] = {"type": "string"}
        properties[param_name] = prop
        if param.default is inspect.Parameter.empty:
            required.append(param_name)

    doc = inspect.getdoc(fn) or ""
    return ToolDefinition(
        name=name,
        description=doc.splitlines()[0] if doc else "",
        parameters={"type": "object", "properties": properties, "required": required},
        implementation=ToolImplementation.BUILTIN,
    )


# ---------------------------------------------------------------------------
# Default tools
# ---------------------------------------------------------------------------
@register_tool("echo")
def echo_tool(text: str) -> str:
    """Echo the input text back to the caller."""
    return text


@register_tool("get_current_time")
def current_time_tool(utc: bool = True) -> str:
    """Return the current date and time in ISO-8601 format."""
    now = datetime.now(timezone.utc) if utc else datetime.now().astimezone()
    return now.isoformat()


_BINARY_OPS: Mapping[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: Mapping[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        return _BINARY_OPS[type(node.op)](_eval_node(node.left), _eval_node(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


@register_tool("calculate")
def calculate_tool(expression: str) -> float:
    """Evaluate an arithmetic expression such as '2 * (3 + 4)'."""
    return _eval_node(ast.parse(expression, mode="eval"))
