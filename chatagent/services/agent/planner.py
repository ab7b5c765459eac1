"""
Search planning.

The planner asks the model whether the question needs a web search and
reads the answer back from two delimiter tags embedded in the output:
everything after the plan tag is reasoning, the text after the
search-plan tag is the search query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ...errors import LLMProviderError
from ...models import CompletionKind, SessionCategory
from ..clients.base import CompletionProvider
from .context import AssembledContext
from .prompts import render_planner_system_prompt
from .trace import CallTrace

logger = logging.getLogger(__name__)


class PlanDirective(str, Enum):
    ANSWER = "answer"
    SEARCH = "search"


class MarkerStatus(str, Enum):
    ABSENT = "absent"
    VALID = "valid"
    EMPTY = "empty"


@dataclass(frozen=True)
class PlanDecision:
    directive: PlanDirective
    query: Optional[str] = None
    raw_suffix: Optional[str] = None
    marker: MarkerStatus = MarkerStatus.ABSENT
    ignored_markers: int = 0
    fallback: bool = False

    @property
    def search_needed(self) -> bool:
        return self.directive is PlanDirective.SEARCH

    def to_dict(self) -> dict:
        return {
            "directive": self.directive.value,
            "query": self.query,
            "marker": self.marker.value,
            "ignored_markers": self.ignored_markers,
            "fallback": self.fallback,
        }


def _closing_tag(tag: str) -> Optional[str]:
    if tag.startswith("<") and not tag.startswith("</") and tag.endswith(">"):
        return "</" + tag[1:]
    return None


def _extract_payload(raw: str, start: int, tags: List[str]) -> str:
    end = len(raw)
    for tag in tags:
        pos = raw.find(tag, start)
        if pos != -1:
            end = min(end, pos)
    segment = raw[start:end]
    for line in segment.splitlines():
        cleaned = line.strip().strip("\"'`").strip()
        if cleaned:
            return cleaned
    return ""


def parse_plan_output(
    raw: Optional[str],
    category: SessionCategory,
    question: str,
    *,
    plan_tag: str,
    search_plan_tag: str,
) -> PlanDecision:
    """
    Map any model output to exactly one PlanDecision.

    - no search-plan tag: no query (`absent`)
    - tag followed by nothing: invalid plan (`empty`), treated as no query
    - several tags: the first one wins, the others are counted in
      `ignored_markers` so callers can warn about them

    `chat` sessions search only on a valid query; `search` sessions always
    search, falling back to the question when the model gave no query.
    Re-parsing `raw_suffix` yields the same decision.
    """
    text = raw or ""
    positions = [pos for pos in (text.find(plan_tag), text.find(search_plan_tag)) if pos != -1]
    raw_suffix = text[min(positions):] if positions else None

    marker = MarkerStatus.ABSENT
    query: Optional[str] = None
    ignored = 0
    first = text.find(search_plan_tag)
    if first != -1:
        ignored = text.count(search_plan_tag) - 1
        boundaries = [tag for tag in (plan_tag, search_plan_tag, _closing_tag(search_plan_tag)) if tag]
        payload = _extract_payload(text, first + len(search_plan_tag), boundaries)
        if payload:
            marker = MarkerStatus.VALID
            query = payload
        else:
            marker = MarkerStatus.EMPTY

    if category.search_first:
        query = query or (question or "").strip() or None
        directive = PlanDirective.SEARCH if query else PlanDirective.ANSWER
    else:
        directive = PlanDirective.SEARCH if marker is MarkerStatus.VALID else PlanDirective.ANSWER
        if directive is PlanDirective.ANSWER:
            query = None

    return PlanDecision(
        directive=directive,
        query=query,
        raw_suffix=raw_suffix,
        marker=marker,
        ignored_markers=ignored,
    )


def default_plan(category: SessionCategory, question: str) -> PlanDecision:
    """Plan used when the planning call itself could not be completed."""
    if category.search_first and question.strip():
        return PlanDecision(PlanDirective.SEARCH, query=question.strip(), fallback=True)
    return PlanDecision(PlanDirective.ANSWER, fallback=True)


class Planner:
    def __init__(
        self,
        completion: CompletionProvider,
        *,
        plan_tag: str,
        search_plan_tag: str,
        temperature: float = 0.1,
        max_tokens: int = 512,
    ) -> None:
        self._completion = completion
        self.plan_tag = plan_tag
        self.search_plan_tag = search_plan_tag
        self._temperature = temperature
        self._max_tokens = max_tokens

    def system_prompt(self, category: SessionCategory) -> str:
        return render_planner_system_prompt(
            self.plan_tag,
            self.search_plan_tag,
            search_first=category.search_first,
        )

    def build_prompt(
        self,
        context: AssembledContext,
        category: SessionCategory,
        note: Optional[str] = None,
    ) -> List[dict]:
        prompt = [{"role": "system", "content": self.system_prompt(category)}, *context.history_prompt()]
        if note:
            prompt.append({"role": "system", "content": note})
        prompt.append({"role": "user", "content": context.question})
        return prompt

    async def plan(
        self,
        context: AssembledContext,
        category: SessionCategory,
        *,
        traces: List[CallTrace],
        attempt: int = 0,
        note: Optional[str] = None,
    ) -> PlanDecision:
        prompt = self.build_prompt(context, category, note)
        trace = CallTrace(CompletionKind.PLAN, prompt, attempt=attempt)
        traces.append(trace)
        try:
            raw = await self._completion.complete(
                prompt,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                stream=False,
            )
        except LLMProviderError as exc:
            trace.finish(outcome=exc.kind.value)
            if not exc.transient:
                raise
            logger.warning("Planning call failed (%s); using the default plan", exc.kind.value)
            return default_plan(category, context.question)
        trace.finish(output=raw)
        return parse_plan_output(
            raw,
            category,
            context.question,
            plan_tag=self.plan_tag,
            search_plan_tag=self.search_plan_tag,
        )
