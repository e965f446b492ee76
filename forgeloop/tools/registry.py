from __future__ import annotations

import re
from typing import TYPE_CHECKING, Dict, Iterable

from .exceptions import ToolNotFoundError

if TYPE_CHECKING:
    from .base import Tool

__all__ = ["normalize_tool_name", "ToolRegistry"]


_SEPARATORS = re.compile(r"[\\/\s.\-]+")
_UNDERSCORE_COLLAPSE = re.compile(r"_+")


def normalize_tool_name(name: str) -> str:
    """Return the lookup key for ``name``: lowercase, separators folded to ``_``."""
    if not isinstance(name, str):
        raise TypeError("Tool name must be a string")
    collapsed = _SEPARATORS.sub("_", name.strip())
    collapsed = _UNDERSCORE_COLLAPSE.sub("_", collapsed)
    return collapsed.strip("_").lower()


class ToolRegistry:
    """Tools offered in one request, addressable by name.

    Models are loose about tool names (``read-file``, ``Read File`` and
    ``read_file`` all show up in practice), so every lookup goes through
    :func:`normalize_tool_name`.
    """

    def __init__(self, tools: Iterable["Tool"] | None = None) -> None:
        self._registry: Dict[str, "Tool"] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: "Tool") -> None:
        key = normalize_tool_name(tool.name)
        if not key:
            raise ValueError("Tool name must not be empty")
        self._registry[key] = tool

    def get(self, name: str) -> "Tool" | None:
        return self._registry.get(normalize_tool_name(name))

    def resolve(self, name: str) -> "Tool":
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool '{name}' is not available")
        return tool
