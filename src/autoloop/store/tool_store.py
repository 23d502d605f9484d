"""JSON-file store for user-authored (stored) tools."""

import json
import logging
import threading
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
)

from pydantic import (
    BaseModel,
    Field,
)

from autoloop.core.schema import (
    ToolDefinition,
    ToolImplementation,
    empty_parameters,
)

logger = logging.getLogger(__name__)


class StoredTool(BaseModel):
    """A tool whose body is Python source defining ``implementation(args)``."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=empty_parameters)
    body: str
    enabled: bool = True

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            implementation=ToolImplementation.STORED,
            body=self.body,
        )


class ToolStore:
    """
    Stored tools kept in one JSON file (a list of :class:`StoredTool` objects).

    The file is re-read on every access so edits made while the service runs are picked up.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> List[StoredTool]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except json.JSONDecodeError as exc:
            logger.error("Stored tool file %s is not valid JSON: %s", self.path, exc)
            return []

        tools = []
        for entry in raw:
            try:
                tools.append(StoredTool.model_validate(entry))
            except ValueError as exc:
                logger.warning("Skipping invalid stored tool entry %r: %s", entry, exc)
        return tools

    def _write(self, tools: List[StoredTool]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps([tool.model_dump() for tool in tools], indent=2), encoding="utf-8"
        )

    def all_tools(self) -> List[StoredTool]:
        with self._lock:
            return self._read()

    def enabled_tools(self) -> List[ToolDefinition]:
        """Definitions of every enabled stored tool."""
        return [tool.to_definition() for tool in self.all_tools() if tool.enabled]

    def add(self, tool: StoredTool) -> None:
        """Insert *tool*, replacing a stored tool with the same name."""
        with self._lock:
            tools = [existing for existing in self._read() if existing.name != tool.name]
            tools.append(tool)
            self._write(tools)
        logger.info("Stored tool '%s' saved", tool.name)

    def remove(self, name: str) -> bool:
        with self._lock:
            tools = self._read()
            kept = [tool for tool in tools if tool.name != name]
            if len(kept) == len(tools):
                return False
            self._write(kept)
        logger.info("Stored tool '%s' removed", name)
        return True
