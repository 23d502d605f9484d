"""
Repair tool parameter schemas before they are advertised to a model.

Hosted chat APIs reject a whole request when a single tool schema is malformed (an array without
``items``, a ``required`` entry naming a missing property, ...).  Tools come from three sources, two
of which are user or third-party authored, so every schema is repaired rather than trusted.  Repair
never rejects a tool: if a schema cannot be fixed the tool is replaced by a stub with an empty
schema so the model can still refer to it by name.
"""

import copy
import logging
import re
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Tuple,
)

logger = logging.getLogger(__name__)

_NUMERIC_HINTS = {"number", "numbers", "num", "id", "ids", "count", "index", "amount", "quantity"}
_BOOLEAN_HINTS = {"boolean", "booleans", "bool", "flag", "flags", "enabled"}


def _name_tokens(name: str) -> List[str]:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    return [token for token in re.split(r"[^A-Za-z0-9]+", spaced.lower()) if token]


def guess_items_type(property_name: str) -> str:
    """Pick an ``items`` type for an array property from its name alone."""
    tokens = _name_tokens(property_name)
    if any(token in _NUMERIC_HINTS for token in tokens):
        return "number"
    if any(token in _BOOLEAN_HINTS for token in tokens):
        return "boolean"
    return "string"


def _sanitize_properties(properties: Dict[str, Any], tool_name: str) -> None:
    for prop_name, prop in properties.items():
        if not isinstance(prop, dict):
            continue

        if prop.get("type") == "array" and not prop.get("items"):
            items_type = guess_items_type(prop_name)
            logger.debug(
                "Tool %s: adding missing 'items' (%s) for array property '%s'",
                tool_name,
                items_type,
                prop_name,
            )
            prop["items"] = {"type": items_type}

        if not prop.get("type"):
            logger.debug("Tool %s: adding missing type for property '%s'", tool_name, prop_name)
            prop["type"] = "string"

        if prop["type"] == "array":
            if not isinstance(prop["items"], dict):
                prop["items"] = {"type": "string"}
            elif not prop["items"].get("type"):
                prop["items"]["type"] = "string"

        if prop["type"] == "object" and isinstance(prop.get("properties"), dict):
            _sanitize_properties(prop["properties"], f"{tool_name}.{prop_name}")
            if isinstance(prop.get("required"), list):
                prop["required"] = _prune_required(prop["required"], prop["properties"], tool_name)


def _prune_required(required: Iterable[Any], properties: Any, tool_name: str) -> List[str]:
    kept = []
    for entry in required:
        if not isinstance(entry, str):
            logger.warning("Tool %s: removing non-string required entry %r", tool_name, entry)
        elif not isinstance(properties, dict) or entry not in properties:
            logger.warning("Tool %s: removing non-existent required property '%s'", tool_name, entry)
        else:
            kept.append(entry)
    return kept


def sanitize_parameters_schema(schema: Any, tool_name: str) -> Dict[str, Any]:
    """
    Return a repaired deep copy of *schema*.

    Parameters
    ----------
    schema:
        The ``parameters`` object of a tool.  Anything that is not a dict is replaced by an empty
        object schema.
    tool_name:
        Used in log messages only.

    Returns
    -------
    Dict[str, Any]
        A schema with an ``object`` top-level type, ``properties`` and ``required`` present, every
        property typed, every array carrying ``items`` and ``required`` only naming existing
        properties.  Sanitizing an already valid schema returns an equal schema.
    """
    if not isinstance(schema, dict):
        logger.warning("Tool %s: invalid schema, using an empty object schema", tool_name)
        return {"type": "object", "properties": {}, "required": []}

    sanitized = copy.deepcopy(schema)
    if sanitized.get("type") != "object":
        if sanitized.get("type"):
            logger.warning("Tool %s: top-level type must be 'object', fixing", tool_name)
        sanitized["type"] = "object"
    if not sanitized.get("properties"):
        sanitized["properties"] = {}
    if not sanitized.get("required"):
        sanitized["required"] = []

    if isinstance(sanitized["properties"], dict):
        _sanitize_properties(sanitized["properties"], tool_name)

    if isinstance(sanitized["required"], list):
        sanitized["required"] = _prune_required(
            sanitized["required"], sanitized["properties"], tool_name
        )
    return sanitized


def validate_parameters_structure(schema: Any, path: str = "parameters") -> List[str]:
    """Return the structural problems of *schema*; an empty list means it is acceptable."""
    errors: List[str] = []
    if not isinstance(schema, dict):
        return [f"{path}: Schema must be an object"]

    if not schema.get("type"):
        errors.append(f"{path}: Missing 'type' property")
    elif schema["type"] != "object":
        errors.append(f"{path}: Top-level type must be 'object'")

    properties = schema.get("properties")
    if properties is not None and not isinstance(properties, dict):
        errors.append(f"{path}: 'properties' must be an object")
    required = schema.get("required")
    if required is not None and not isinstance(required, list):
        errors.append(f"{path}: 'required' must be an array")

    if isinstance(properties, dict):
        for prop_name, prop in properties.items():
            if not isinstance(prop, dict):
                continue
            prop_path = f"{path}.properties.{prop_name}"
            if not prop.get("type"):
                errors.append(f"{prop_path}: Missing 'type' property")
                continue
            if prop["type"] == "array":
                items = prop.get("items")
                if not items:
                    errors.append(f"{prop_path}: Array type must have 'items' property")
                elif not isinstance(items, dict):
                    errors.append(f"{prop_path}: 'items' must be an object")
                elif not items.get("type"):
                    errors.append(f"{prop_path}.items: Missing 'type' property")
            if prop["type"] == "object" and prop.get("properties"):
                errors.extend(validate_parameters_structure(prop, prop_path))

    if isinstance(required, list) and isinstance(properties, dict):
        for entry in required:
            if not isinstance(entry, str):
                errors.append(f"{path}: Required property names must be strings")
            elif entry not in properties:
                errors.append(f"{path}: Required property '{entry}' does not exist in properties")

    return errors


def validate_tool_structure(tool: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Check a chat-completions tool entry; returns ``(is_valid, errors)``."""
    errors: List[str] = []
    if tool.get("type") != "function":
        errors.append('Tool must have type "function"')
    func = tool.get("function")
    if not isinstance(func, dict):
        errors.append("Tool must have a function property")
        return False, errors

    name = func.get("name")
    if not isinstance(name, str) or not name.strip():
        errors.append("Function must have a valid name")
    if not isinstance(func.get("description"), str) or not func["description"]:
        errors.append("Function must have a description")
    if "parameters" not in func:
        errors.append("Function must have parameters")
        return False, errors

    errors.extend(validate_parameters_structure(func["parameters"]))
    return not errors, errors


def stub_tool(name: str, description: str) -> Dict[str, Any]:
    """Minimal stand-in for a tool whose schema could not be repaired."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": f"{description} (Schema validation failed)",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    }


def validate_and_sanitize_tools(tools: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Repair a list of chat-completions tool entries.

    Every tool with a usable name comes out the other side, either repaired or as a stub.  The
    input entries are not modified.
    """
    tools = list(tools)
    validated: List[Dict[str, Any]] = []
    for tool in tools:
        func = tool.get("function") if isinstance(tool, dict) else None
        if not isinstance(func, dict):
            logger.warning("Skipping tool without a function property: %r", tool)
            continue
        name = func.get("name")
        if not isinstance(name, str) or not name.strip():
            logger.warning("Skipping tool with invalid name: %r", name)
            continue

        description = func.get("description")
        if not isinstance(description, str) or not description:
            logger.debug("Tool %s missing description, adding default", name)
            description = f"Tool: {name}"

        repaired = {
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": sanitize_parameters_schema(func.get("parameters"), name),
            },
        }
        is_valid, errors = validate_tool_structure(repaired)
        if is_valid:
            validated.append(repaired)
        else:
            logger.error("Tool %s failed validation after repair: %s", name, errors)
            validated.append(stub_tool(name, description))

    logger.debug("Validated %d/%d tools", len(validated), len(tools))
    return validated
