"""Tests for chatagent/services/agent/planner.py.

Tests verify:
- Plan-marker parsing for absent, valid, empty and repeated markers
- Category rules: chat searches only on a valid marker, search always searches
- Parsing is total and idempotent
- Planner call handling, including the default plan on transient failure
"""

import pytest

from chatagent.errors import LLMProviderError, ProviderErrorKind
from chatagent.models import CompletionKind, SessionCategory
from chatagent.services.agent.context import AssembledContext
from chatagent.services.agent.planner import (
    MarkerStatus,
    PlanDirective,
    Planner,
    default_plan,
    parse_plan_output,
)

from tests.fakes import FakeCompletion

PLAN = "<plan>"
SEARCH_PLAN = "<search_plan>"


def _parse(raw, category=SessionCategory.CHAT, question="What is new on Mars?"):
    return parse_plan_output(raw, category, question, plan_tag=PLAN, search_plan_tag=SEARCH_PLAN)


class TestMarkerParsing:
    """Parsing of the plan / search-plan tags."""

    def test_absent_marker_means_no_search(self):
        decision = _parse("<plan> General knowledge, no lookup needed.")
        assert decision.directive is PlanDirective.ANSWER
        assert decision.marker is MarkerStatus.ABSENT
        assert decision.query is None
        assert not decision.search_needed
        assert decision.raw_suffix == "<plan> General knowledge, no lookup needed."

    def test_no_tags_at_all(self):
        decision = _parse("Just an answer without any tags")
        assert decision.directive is PlanDirective.ANSWER
        assert decision.raw_suffix is None

    def test_valid_marker(self):
        raw = "Thinking...\n<plan> Needs fresh data.\n<search_plan> mars rover news"
        decision = _parse(raw)
        assert decision.directive is PlanDirective.SEARCH
        assert decision.marker is MarkerStatus.VALID
        assert decision.query == "mars rover news"
        assert decision.raw_suffix.startswith("<plan>")

    def test_empty_payload_is_invalid(self):
        decision = _parse("<plan> needs search <search_plan>   \n  ")
        assert decision.marker is MarkerStatus.EMPTY
        assert decision.directive is PlanDirective.ANSWER
        assert decision.query is None

    def test_first_of_multiple_markers_wins(self):
        decision = _parse("<search_plan> first query\n<search_plan> second query")
        assert decision.query == "first query"
        assert decision.ignored_markers == 1

    def test_payload_stops_at_next_tag(self):
        decision = _parse("<search_plan> rover landing site <plan> more reasoning")
        assert decision.query == "rover landing site"

    def test_closing_tag_is_not_part_of_query(self):
        decision = _parse("<search_plan>perseverance samples</search_plan>")
        assert decision.query == "perseverance samples"

    def test_query_is_first_non_empty_line(self):
        decision = _parse("<search_plan>\n   latest rover images  \nsome trailing chatter")
        assert decision.query == "latest rover images"

    def test_quotes_are_stripped(self):
        decision = _parse('<search_plan> "curiosity rover status"')
        assert decision.query == "curiosity rover status"


class TestCategoryRules:
    """chat vs search session behaviour."""

    def test_search_session_falls_back_to_question(self):
        decision = _parse("<plan> nothing to add", SessionCategory.SEARCH, "Latest Mars rover news")
        assert decision.directive is PlanDirective.SEARCH
        assert decision.query == "Latest Mars rover news"

    def test_search_session_prefers_model_query(self):
        decision = _parse("<search_plan> mars rover 2024", SessionCategory.SEARCH, "Latest Mars rover news")
        assert decision.query == "mars rover 2024"

    def test_search_session_empty_marker_uses_question(self):
        decision = _parse("<search_plan>", SessionCategory.SEARCH, "Latest Mars rover news")
        assert decision.marker is MarkerStatus.EMPTY
        assert decision.query == "Latest Mars rover news"

    def test_default_plans(self):
        assert default_plan(SessionCategory.CHAT, "q").directive is PlanDirective.ANSWER
        fallback = default_plan(SessionCategory.SEARCH, " rover ")
        assert fallback.directive is PlanDirective.SEARCH
        assert fallback.query == "rover"
        assert fallback.fallback


class TestParsingProperties:
    """Totality and idempotence."""

    SAMPLES = [
        None,
        "",
        "<search_plan>",
        "<plan>",
        "<<search_plan>>",
        "<search_plan><search_plan><search_plan>",
        "<plan><search_plan>\n\n\n",
        "text <search_plan> q1 <plan> r <search_plan> q2",
        "ünicode <search_plan> märs ☃",
        "<search_plan> a\r\nb",
    ]

    @pytest.mark.parametrize("raw", SAMPLES)
    @pytest.mark.parametrize("category", list(SessionCategory))
    def test_every_output_maps_to_one_decision(self, raw, category):
        decision = _parse(raw, category)
        assert decision.directive in set(PlanDirective)
        assert decision.marker in set(MarkerStatus)
        if decision.search_needed:
            assert decision.query

    @pytest.mark.parametrize("raw", SAMPLES)
    def test_reparsing_the_suffix_is_stable(self, raw):
        decision = _parse(raw)
        assert _parse(decision.raw_suffix) == decision

    @pytest.mark.parametrize("raw", SAMPLES)
    def test_parsing_is_repeatable(self, raw):
        assert _parse(raw) == _parse(raw)


def _context(question="What is new on Mars?"):
    return AssembledContext(messages=(), question=question, token_count=5, budget=100)


class TestPlanner:
    """Planner model call."""

    @pytest.mark.asyncio
    async def test_plan_call_uses_tags_and_records_trace(self):
        completion = FakeCompletion(plan=["<plan> fresh data\n<search_plan> mars news"])
        planner = Planner(completion, plan_tag=PLAN, search_plan_tag=SEARCH_PLAN)
        traces = []
        decision = await planner.plan(_context(), SessionCategory.CHAT, traces=traces)

        assert decision.query == "mars news"
        prompt = completion.prompts("plan")[0]
        assert PLAN in prompt[0]["content"] and SEARCH_PLAN in prompt[0]["content"]
        assert prompt[-1] == {"role": "user", "content": "What is new on Mars?"}
        assert traces[0].kind is CompletionKind.PLAN
        assert traces[0].outcome == "success"
        assert traces[0].latency_ms is not None

    @pytest.mark.asyncio
    async def test_replan_note_is_sent(self):
        completion = FakeCompletion()
        planner = Planner(completion, plan_tag=PLAN, search_plan_tag=SEARCH_PLAN)
        await planner.plan(_context(), SessionCategory.CHAT, traces=[], note="Reviewer: cite sources")
        prompt = completion.prompts("plan")[0]
        assert {"role": "system", "content": "Reviewer: cite sources"} in prompt

    @pytest.mark.asyncio
    async def test_search_session_prompt_demands_query(self):
        completion = FakeCompletion()
        planner = Planner(completion, plan_tag=PLAN, search_plan_tag=SEARCH_PLAN)
        await planner.plan(_context(), SessionCategory.SEARCH, traces=[])
        assert "search session" in completion.prompts("plan")[0][0]["content"]

    @pytest.mark.asyncio
    async def test_transient_failure_uses_default_plan(self):
        completion = FakeCompletion(plan=[LLMProviderError(ProviderErrorKind.TIMEOUT)])
        planner = Planner(completion, plan_tag=PLAN, search_plan_tag=SEARCH_PLAN)
        traces = []
        decision = await planner.plan(_context("rover news"), SessionCategory.SEARCH, traces=traces)
        assert decision.fallback
        assert decision.query == "rover news"
        assert traces[0].outcome == "timeout"

    @pytest.mark.asyncio
    async def test_non_transient_failure_propagates(self):
        completion = FakeCompletion(plan=[LLMProviderError(ProviderErrorKind.INVALID_KEY)])
        planner = Planner(completion, plan_tag=PLAN, search_plan_tag=SEARCH_PLAN)
        with pytest.raises(LLMProviderError) as exc_info:
            await planner.plan(_context(), SessionCategory.CHAT, traces=[])
        assert exc_info.value.kind is ProviderErrorKind.INVALID_KEY
