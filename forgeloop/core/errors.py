from __future__ import annotations

from typing import Any


class ForgeloopError(RuntimeError):
    """Base class for all package failures."""


class ModelCallError(ForgeloopError):
    """Raised when the model collaborator fails; nothing is persisted."""


class ToolExecutionError(ForgeloopError):
    """A single tool call failed. Sibling calls are unaffected."""

    def __init__(self, message: str, *, tool: str | None = None, tool_call_id: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool
        self.tool_call_id = tool_call_id

    def as_result(self) -> dict[str, Any]:
        """Shape stored inside a persisted ``tool_results`` artifact."""
        return {"success": False, "error": str(self), "tool": self.tool}


class OutputValidationError(ForgeloopError):
    """Model output could not be parsed or failed schema validation."""

    def __init__(self, message: str, *, output: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.output = output
        self.details = details


class NotAncestorError(ForgeloopError):
    """The requested node is not an ancestor of the context node."""


class RetryExhausted(ForgeloopError):
    def __init__(self, trials: int, last_error: Any = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Failed to generate valid output after {trials} trials{detail}")
        self.trials = trials
        self.last_error = last_error


class CacheWriteConflict(ForgeloopError):
    """Optimistic concurrency check failed while saving an artifact."""

    def __init__(self, name: str, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Artifact '{name}' was modified concurrently (expected version {expected}, found {actual})"
        )
        self.name = name
        self.expected = expected
        self.actual = actual


class StrictOverwriteError(ForgeloopError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Output artifact '{name}' already exists and overwrite policy is 'fail'")
        self.name = name


class ArtifactNotFoundError(ForgeloopError, KeyError):
    def __str__(self) -> str:
        return RuntimeError.__str__(self)


class InvalidArtifactPathError(ForgeloopError, ValueError):
    pass


class ModelNotFoundError(ForgeloopError, KeyError):
    def __str__(self) -> str:
        return RuntimeError.__str__(self)


class UnsupportedCapabilityError(ForgeloopError):
    """The selected model does not support the requested capability."""


class SearchError(ForgeloopError):
    """Misuse of the search controller or an exhausted fixed action list."""


class StatefulToolCacheWarning(UserWarning):
    """A cached result was reused although the request declares stateful tools."""


__all__ = [
    "ForgeloopError",
    "ModelCallError",
    "ToolExecutionError",
    "OutputValidationError",
    "NotAncestorError",
    "RetryExhausted",
    "CacheWriteConflict",
    "StrictOverwriteError",
    "ArtifactNotFoundError",
    "InvalidArtifactPathError",
    "ModelNotFoundError",
    "UnsupportedCapabilityError",
    "SearchError",
    "StatefulToolCacheWarning",
]
