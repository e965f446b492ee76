from .base import EmptyInput, FunctionTool, SideEffects, Tool
from .exceptions import ToolError, ToolInvocationError, ToolNotFoundError, ToolTimeoutError
from .registry import ToolRegistry, normalize_tool_name

__all__ = [
    "EmptyInput",
    "FunctionTool",
    "SideEffects",
    "Tool",
    "ToolError",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolTimeoutError",
    "ToolRegistry",
    "normalize_tool_name",
]
