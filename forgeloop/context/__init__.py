from .sizing import (
    count_message_bytes,
    estimate_message_tokens,
    estimate_messages_tokens,
    message_text,
)
from .tree import ContextNode

__all__ = [
    "ContextNode",
    "count_message_bytes",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "message_text",
]
