from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Sequence

from pydantic import BaseModel, Field

from .artifacts import OutputFormat, OverwritePolicy
from .messages import Message, ToolCall

if TYPE_CHECKING:
    from ..tools.base import Tool


class ChatRequest(BaseModel):
    """Vendor-neutral chat request handed to a ModelAPI."""

    model: str
    messages: list[Message]
    system: str | None = None
    format: OutputFormat = OutputFormat.STRING
    json_schema: dict[str, Any] | None = None
    tools: list[dict[str, Any]] = Field(default_factory=list)
    temperature: float | None = None
    top_p: float | None = None

    def tool_names(self) -> list[str]:
        return [str(tool.get("function", {}).get("name", "")) for tool in self.tools]


class ChatChoice(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str = ""
    tool_calls: list[ToolCall] | None = None


class ChatResult(BaseModel):
    choices: list[ChatChoice] = Field(default_factory=list)
    error: str | None = None


class Embedding(BaseModel):
    model: str
    vector: list[float]


class TTSRequest(BaseModel):
    text: str = Field(..., min_length=1)
    voice: str = "alloy"
    rate: float = 1.0
    quality: Literal["normal", "high"] = "normal"
    format: Literal["mp3", "aac", "opus", "flac", "wav", "pcm"] = "mp3"


class TranscribeRequest(BaseModel):
    audio: bytes
    format: Literal["mp3", "flac", "wav", "webm"] = "mp3"
    prompt: str | None = None
    temperature: float | None = None


class ErrorKind(str, Enum):
    TOOL = "tool"
    PARSE = "parse"
    VALIDATION = "validation"


@dataclass(slots=True, frozen=True)
class EngineError:
    """Recoverable problem recorded by the engine instead of raised."""

    kind: ErrorKind
    message: str
    tool_call_id: str | None = None
    detail: Any = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload


@dataclass(slots=True, frozen=True)
class ExecutionRequest:
    """Everything one engine invocation needs besides the context."""

    output_name: str
    messages: tuple[Message, ...] = ()
    model: str | None = None
    system: str | None = None
    format: OutputFormat = OutputFormat.STRING
    schema: Any = None
    tools: Sequence["Tool"] = field(default_factory=tuple)
    overwrite: OverwritePolicy = OverwritePolicy.FAIL
    timestamp: int | None = None


__all__ = [
    "ChatRequest",
    "ChatChoice",
    "ChatResult",
    "Embedding",
    "TTSRequest",
    "TranscribeRequest",
    "ErrorKind",
    "EngineError",
    "ExecutionRequest",
]
