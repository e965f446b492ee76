from __future__ import annotations

from typing import Iterable, Iterator, Sequence

from ..core.errors import NotAncestorError
from ..schemas.messages import Message
from .sizing import estimate_message_tokens


class ContextNode:
    """Append-only node in a persistent conversation tree.

    A node owns only the messages added at it; the full history is the
    concatenation of every node's own messages from the root down. Parents are
    shared between any number of children and nothing is ever mutated, so
    branching is O(len(messages)) and never copies ancestor data.
    """

    __slots__ = ("_parent", "_messages")

    def __init__(self, parent: ContextNode | None = None, messages: Iterable[Message] = ()) -> None:
        self._parent = parent
        self._messages: tuple[Message, ...] = tuple(messages)

    @classmethod
    def root(cls, messages: Iterable[Message] = ()) -> ContextNode:
        return cls(None, messages)

    @property
    def parent(self) -> ContextNode | None:
        return self._parent

    @property
    def own_messages(self) -> tuple[Message, ...]:
        return self._messages

    @property
    def depth(self) -> int:
        return sum(1 for _ in self.ancestors())

    def ancestors(self) -> Iterator[ContextNode]:
        node = self._parent
        while node is not None:
            yield node
            node = node._parent

    def new_branch(self, messages: Sequence[Message] = ()) -> ContextNode:
        return ContextNode(self, messages)

    def all_messages(self) -> list[Message]:
        chain: list[ContextNode] = [self, *self.ancestors()]
        messages: list[Message] = []
        for node in reversed(chain):
            messages.extend(node._messages)
        return messages

    def messages_since(self, ancestor: ContextNode) -> list[Message]:
        """Messages added strictly after ``ancestor``, up to and including this node."""
        collected: list[tuple[Message, ...]] = []
        node: ContextNode | None = self
        while node is not None:
            if node is ancestor:
                messages: list[Message] = []
                for chunk in reversed(collected):
                    messages.extend(chunk)
                return messages
            collected.append(node._messages)
            node = node._parent
        raise NotAncestorError("Context not found in parent chain")

    def reparent(self, split_point: ContextNode, new_base: ContextNode) -> ContextNode:
        """Graft the work done since ``split_point`` onto ``new_base``."""
        delta = self.messages_since(split_point)
        if split_point is new_base:
            return self
        return new_base.new_branch(delta)

    def estimate_size(self) -> int:
        node: ContextNode | None = self
        total = 0
        while node is not None:
            total += sum(estimate_message_tokens(message) for message in node._messages)
            node = node._parent
        return total

    def __repr__(self) -> str:
        return f"ContextNode(depth={self.depth}, messages={len(self._messages)})"
