from __future__ import annotations

import math
from typing import Iterable

from ..schemas.messages import Message

BYTES_PER_TOKEN = 4


def message_text(message: Message) -> str:
    return message.text()


def count_message_bytes(message: Message) -> int:
    return len(message_text(message).encode("utf-8"))


def estimate_message_tokens(message: Message) -> int:
    """Rough token estimate: UTF-8 bytes divided by four, rounded up."""
    return math.ceil(count_message_bytes(message) / BYTES_PER_TOKEN)


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)
