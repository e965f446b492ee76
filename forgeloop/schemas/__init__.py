from .artifacts import Artifact, ArtifactMetadata, ContentType, OutputFormat, OverwritePolicy
from .messages import ImagePart, Message, TextPart, ToolCall, ToolFunction, coalesce_messages
from .requests import (
    ChatChoice,
    ChatRequest,
    ChatResult,
    Embedding,
    EngineError,
    ErrorKind,
    ExecutionRequest,
    TranscribeRequest,
    TTSRequest,
)

__all__ = [
    "Artifact",
    "ArtifactMetadata",
    "ContentType",
    "OutputFormat",
    "OverwritePolicy",
    "ImagePart",
    "Message",
    "TextPart",
    "ToolCall",
    "ToolFunction",
    "coalesce_messages",
    "ChatChoice",
    "ChatRequest",
    "ChatResult",
    "Embedding",
    "EngineError",
    "ErrorKind",
    "ExecutionRequest",
    "TranscribeRequest",
    "TTSRequest",
]
