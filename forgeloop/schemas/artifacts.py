from __future__ import annotations

from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

ContentType = Literal["text", "json", "yaml", "binary"]


class OverwritePolicy(str, Enum):
    FORCE = "force"
    SKIP = "skip"
    FAIL = "fail"
    TIMESTAMP = "timestamp"
    EXACT = "exact"


class OutputFormat(str, Enum):
    STRING = "string"
    JSON = "json"
    MARKDOWN = "markdown"


class ArtifactMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    version: int = Field(0, ge=0, description="0 until first saved, then +1 per save")
    timestamp: int = Field(0, ge=0, description="Store logical clock value at save time")
    content_type: ContentType = "text"
    size_bytes: int = Field(0, ge=0)
    size_tokens: int | None = Field(default=None, ge=0)
    input_hash: str | None = None
    chat_result: dict[str, Any] | None = Field(default=None, description="Raw model-call metadata")
    uuid: str = Field(default_factory=lambda: str(uuid4()))


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    metadata: ArtifactMetadata
    content: Any

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> int:
        return self.metadata.version


__all__ = ["ContentType", "OverwritePolicy", "OutputFormat", "ArtifactMetadata", "Artifact"]
