from __future__ import annotations

import re
from typing import Protocol, Sequence, runtime_checkable

from ..context.sizing import estimate_message_tokens
from ..core.logging import get_logger
from ..schemas.messages import Message

logger = get_logger(name=__name__)

ERROR_LINE = re.compile(r"(error|warning|fatal|fail|not.found|notfound|\bE[A-Z][A-Z]+:)", re.IGNORECASE)
ELLIPSIS = "..."


@runtime_checkable
class ContextReducer(Protocol):
    async def reduce(self, messages: Sequence[Message], target_tokens: int) -> list[Message] | None:
        """Return a shorter replacement list, or ``None`` when already under budget."""
        ...


class LineSampler:
    """Shrink line-oriented text (build logs, command output) to roughly ``ratio`` of its lines.

    Keeps a slice of head and tail lines, then fills the middle budget with
    lines that look like errors before falling back to evenly spaced lines.
    """

    def __init__(self, *, edge_share: float = 0.25, middle_share: float = 0.45, pattern: re.Pattern[str] = ERROR_LINE) -> None:
        self.edge_share = edge_share
        self.middle_share = middle_share
        self.pattern = pattern

    def sample(self, text: str, ratio: float) -> str:
        if not text:
            return ""
        lines = text.split("\n")
        edge = int(len(lines) * ratio * self.edge_share)
        head = lines[:edge]
        tail = lines[len(lines) - edge :] if edge else []
        middle = lines[len(head) : len(lines) - len(tail)]
        sampled = self._sample_middle(middle, int(len(middle) * ratio * self.middle_share))
        return "\n".join([*head, ELLIPSIS, *sampled, ELLIPSIS, *tail])

    def _sample_middle(self, lines: list[str], budget: int) -> list[str]:
        if budget <= 0 or not lines:
            return []
        if budget >= len(lines):
            return list(lines)
        keep = [index for index, line in enumerate(lines) if self.pattern.search(line)][:budget]
        remaining = budget - len(keep)
        if remaining > 0:
            chosen = set(keep)
            others = [index for index in range(len(lines)) if index not in chosen]
            step = len(others) / remaining
            keep.extend(others[int(i * step)] for i in range(remaining))
        return [lines[index] for index in sorted(set(keep))]


class LogOutputReducer:
    """Default reducer: samples the largest text messages first until the estimate fits."""

    def __init__(self, sampler: LineSampler | None = None) -> None:
        self.sampler = sampler or LineSampler()

    async def reduce(self, messages: Sequence[Message], target_tokens: int) -> list[Message] | None:
        sizes = [estimate_message_tokens(message) for message in messages]
        total = sum(sizes)
        if total <= target_tokens:
            return None

        ratio = target_tokens / total / 2
        logger.info("context_reduce", total_tokens=total, target_tokens=target_tokens, ratio=round(ratio, 4))
        reduced = list(messages)
        for index in sorted(range(len(reduced)), key=lambda i: sizes[i], reverse=True):
            if total <= target_tokens:
                break
            message = reduced[index]
            if not isinstance(message.content, str):
                continue
            replacement = message.model_copy(update={"content": self.sampler.sample(message.content, ratio)})
            total += estimate_message_tokens(replacement) - sizes[index]
            reduced[index] = replacement
        return reduced


__all__ = ["ContextReducer", "LineSampler", "LogOutputReducer", "ERROR_LINE"]
