from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ...errors import ContextTooLarge
from ...models import Message, MessageRole
from ...token_utils import TokenCounter
from ..clients.base import SearchHit


@dataclass(frozen=True)
class AssembledContext:
    messages: Tuple[Message, ...]
    question: str
    token_count: int
    budget: int
    dropped: int = 0

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def history_prompt(self) -> List[Dict[str, str]]:
        return [{"role": m.role.value, "content": m.content} for m in self.messages]


class ContextAssembler:
    """
    Builds the bounded history that accompanies a question.

    Output is a pure function of (history, question, limits, counter): all
    system messages plus the newest `max_history` others, then the oldest
    non-system messages are dropped one at a time until the token total
    fits. System messages are only dropped once no other message is left.
    The question itself is never shortened.
    """

    def __init__(self, *, max_history: int, max_tokens: int, count: TokenCounter) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        if max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")
        self.max_history = max_history
        self.max_tokens = max_tokens
        self._count = count

    def assemble(
        self,
        history: Sequence[Message],
        question: str,
        *,
        reserved_tokens: int = 0,
    ) -> AssembledContext:
        budget = self.max_tokens - max(0, reserved_tokens)
        question_tokens = self._count(question)
        if question_tokens > budget:
            raise ContextTooLarge(question_tokens, budget)

        non_system = [idx for idx, m in enumerate(history) if m.role is not MessageRole.SYSTEM]
        windowed = set(non_system[-self.max_history:])
        selected = [
            m for idx, m in enumerate(history) if m.role is MessageRole.SYSTEM or idx in windowed
        ]
        dropped = len(history) - len(selected)

        costs = [self._count(m.content) for m in selected]
        total = question_tokens + sum(costs)
        while total > budget and selected:
            victim = _oldest_droppable(selected)
            total -= costs.pop(victim)
            selected.pop(victim)
            dropped += 1

        return AssembledContext(
            messages=tuple(selected),
            question=question,
            token_count=total,
            budget=budget,
            dropped=dropped,
        )


def _oldest_droppable(messages: Sequence[Message]) -> int:
    for idx, message in enumerate(messages):
        if message.role is not MessageRole.SYSTEM:
            return idx
    return 0


def render_evidence(hits: Sequence[SearchHit]) -> str:
    if not hits:
        return ""
    blocks: List[str] = []
    for idx, hit in enumerate(hits, start=1):
        header = f"[source {idx}] {hit.title}".rstrip()
        if hit.url:
            header = f"{header} ({hit.url})"
        blocks.append(f"{header}\n{hit.snippet}")
    return "\n\n".join(blocks)


def fit_evidence(
    hits: Sequence[SearchHit],
    budget: int,
    count: TokenCounter,
    *,
    wrapper: Optional[str] = None,
) -> List[SearchHit]:
    """Drop the lowest-scoring hits until the rendered evidence fits `budget` tokens."""
    kept = list(hits)
    overhead = count(wrapper) if wrapper else 0
    while kept and count(render_evidence(kept)) + overhead > budget:
        weakest = min(range(len(kept)), key=lambda i: (kept[i].score, -i))
        kept.pop(weakest)
    return kept
