from __future__ import annotations

from ..core.errors import ForgeloopError


class ToolError(ForgeloopError):
    """Base class for tooling-related failures."""


class ToolInvocationError(ToolError):
    """Raised when arguments are rejected or the tool body fails."""


class ToolTimeoutError(ToolInvocationError):
    """Raised when a tool invocation exceeds its declared timeout."""


class ToolNotFoundError(ToolError):
    """Raised when a requested tool cannot be resolved."""
