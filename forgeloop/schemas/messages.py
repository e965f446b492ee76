from __future__ import annotations

from typing import Annotated, Any, Literal, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "tool"]


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["image"] = "image"
    image_type: Literal["jpeg", "png"] = "jpeg"
    image_url: str = Field(..., min_length=1, description="http(s) URL or data: URL")


MessagePart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class ToolFunction(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    arguments: str | dict[str, Any] = "{}"


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["function"] = "function"
    function: ToolFunction


class Message(BaseModel):
    """A single immutable chat message."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | tuple[MessagePart, ...]
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None

    @classmethod
    def user(cls, content: str | Sequence[TextPart | ImagePart]) -> "Message":
        return cls(role="user", content=_freeze_content(content))

    @classmethod
    def assistant(
        cls,
        content: str | Sequence[TextPart | ImagePart],
        *,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> "Message":
        return cls(
            role="assistant",
            content=_freeze_content(content),
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, content: str, *, tool_call_id: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text if isinstance(part, TextPart) else "" for part in self.content).strip()

    def parts(self) -> tuple[TextPart | ImagePart, ...]:
        if isinstance(self.content, str):
            return (TextPart(text=self.content),)
        return tuple(self.content)


def _freeze_content(content: str | Sequence[TextPart | ImagePart]) -> str | tuple[TextPart | ImagePart, ...]:
    if isinstance(content, str):
        return content
    return tuple(content)


def combine_messages(first: Message, second: Message) -> Message:
    if first.role != second.role:
        raise ValueError("Cannot combine messages with different roles")
    if isinstance(first.content, str) and isinstance(second.content, str):
        return Message(role=first.role, content=f"{first.content}\n{second.content}")
    return Message(role=first.role, content=first.parts() + second.parts())


def _mergeable(first: Message, second: Message) -> bool:
    if first.role != second.role:
        return False
    for message in (first, second):
        if message.tool_calls or message.tool_call_id:
            return False
    return True


def coalesce_messages(messages: Sequence[Message]) -> list[Message]:
    """Merge adjacent messages that share a role. Tool-call traffic is never merged."""
    merged: list[Message] = []
    for message in messages:
        if merged and _mergeable(merged[-1], message):
            merged[-1] = combine_messages(merged[-1], message)
        else:
            merged.append(message)
    return merged


__all__ = [
    "Role",
    "TextPart",
    "ImagePart",
    "MessagePart",
    "ToolFunction",
    "ToolCall",
    "Message",
    "combine_messages",
    "coalesce_messages",
]
