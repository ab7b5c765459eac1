"""In-memory providers and helpers shared by the test suite."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from chatagent.config import DEFAULT_SYSTEM_PROMPT, DEFAULT_VERIFIER_USER_PROMPT, AppSettings
from chatagent.persistence import SessionStore
from chatagent.services.agent.orchestrator import AgentOrchestrator
from chatagent.services.agent.prompts import VERIFIER_SYSTEM_PROMPT
from chatagent.services.clients.base import CompletionStream, SearchHit
from chatagent.services.clients.retry import ResilientCompletionClient, ResilientSearchClient, RetryPolicy


def word_count(text: str) -> int:
    """Deterministic token counter: one token per whitespace-separated word."""
    return len((text or "").split())


def make_settings(tmp_path: Path, **overrides: Any) -> AppSettings:
    settings = AppSettings(
        doc_store_path=tmp_path / "agent.db",
        frontend_origin="http://localhost:5173",
        system_prompt=DEFAULT_SYSTEM_PROMPT,
        agent_max_history=20,
        agent_max_replan=1,
        agent_plan_suffix="<plan>",
        agent_search_plan_suffix="<search_plan>",
        agent_verifier_user_prompt=DEFAULT_VERIFIER_USER_PROMPT,
        agent_lock_mode="queue",
        agent_lock_wait_timeout=5.0,
        agent_persist_truncated=False,
        llm_endpoint="http://llm.test/v1",
        llm_api_key="test-key",
        llm_model="fake-model",
        llm_temperature=0.2,
        llm_top_p=None,
        llm_max_tokens=512,
        llm_plan_max_tokens=128,
        llm_verify_max_tokens=128,
        llm_prompt_max_token=4000,
        llm_tokenizer="cl100k_base",
        search_endpoint="https://serp.test/search.json",
        search_serp_api_key="serp-key",
        search_result_limit=5,
        provider_max_retries=2,
        provider_backoff_base=0.5,
        provider_backoff_max=4.0,
        provider_call_timeout=5.0,
        store_call_timeout=5.0,
    )
    return replace(settings, **overrides)


def hits(count: int) -> List[SearchHit]:
    return [
        SearchHit(
            title=f"Result {i}",
            url=f"https://news.test/{i}",
            snippet=f"Snippet number {i} about the rover",
            score=round(1.0 / i, 6),
        )
        for i in range(1, count + 1)
    ]


class ScriptedChunks:
    """Chunk source for one draft stream.

    Items are yielded in order; exceptions are raised, floats sleep and
    asyncio.Event instances block until set.
    """

    def __init__(self, items: Sequence[Any]) -> None:
        self.items = list(items)
        self.yielded: List[str] = []
        self.closed = False

    async def iterate(self):
        for item in self.items:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            if isinstance(item, float):
                await asyncio.sleep(item)
                continue
            self.yielded.append(item)
            yield item

    async def close(self) -> None:
        self.closed = True


class FakeCompletion:
    """Scripted completion provider.

    Each kind (plan/draft/verify) has a script; entries are consumed one per
    call and the last entry repeats. An entry may be a value, an exception to
    raise, a callable receiving the prompt, or an asyncio.Event that blocks the
    call until set (the reply is then empty).
    """

    def __init__(
        self,
        *,
        plan: Optional[Sequence[Any]] = None,
        draft: Optional[Sequence[Any]] = None,
        verify: Optional[Sequence[Any]] = None,
        model: str = "fake-model",
    ) -> None:
        self.model = model
        self.scripts = {
            "plan": list(plan or ["<plan> The question is general knowledge."]),
            "draft": list(draft or [["Paris is the capital ", "of France."]]),
            "verify": list(verify or ["SUPPORTED\nThe answer matches the evidence."]),
        }
        self.calls: List[Tuple[str, List[dict]]] = []
        self.streams: List[ScriptedChunks] = []
        self.waiting = asyncio.Event()

    @staticmethod
    def _kind(prompt: Sequence[dict], stream: bool) -> str:
        if stream:
            return "draft"
        if prompt and prompt[0].get("content") == VERIFIER_SYSTEM_PROMPT:
            return "verify"
        return "plan"

    def _next(self, kind: str) -> Any:
        script = self.scripts[kind]
        return script.pop(0) if len(script) > 1 else script[0]

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

    def prompts(self, kind: str) -> List[List[dict]]:
        return [prompt for k, prompt in self.calls if k == kind]

    async def complete(self, prompt, *, temperature, max_tokens, stream=False):
        kind = self._kind(prompt, stream)
        self.calls.append((kind, list(prompt)))
        item = self._next(kind)
        if isinstance(item, asyncio.Event):
            self.waiting.set()
            await item.wait()
            item = ""
        if callable(item) and not isinstance(item, BaseException):
            item = item(prompt)
        if isinstance(item, BaseException):
            raise item
        if stream:
            source = ScriptedChunks([item] if isinstance(item, str) else item)
            self.streams.append(source)
            return CompletionStream(source.iterate(), on_close=source.close)
        return item


class FakeSearch:
    """Scripted search provider; entries are hit lists, exceptions or asyncio.Event gates."""

    def __init__(self, results: Optional[Sequence[Any]] = None) -> None:
        self.script = list(results) if results is not None else [[]]
        self.queries: List[Tuple[str, int]] = []
        self.started = asyncio.Event()

    async def search(self, query: str, limit: int) -> List[SearchHit]:
        self.queries.append((query, limit))
        self.started.set()
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, asyncio.Event):
            await item.wait()
            return []
        return list(item)[:limit]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def build_orchestrator(
    settings: AppSettings,
    store: SessionStore,
    completion: FakeCompletion,
    search: FakeSearch,
    *,
    sleep: Optional[RecordingSleep] = None,
) -> AgentOrchestrator:
    sleep = sleep or RecordingSleep()
    policy = RetryPolicy(
        max_retries=settings.provider_max_retries,
        base_delay=settings.provider_backoff_base,
        max_delay=settings.provider_backoff_max,
    )
    return AgentOrchestrator(
        settings,
        store,
        ResilientCompletionClient(completion, policy=policy, timeout=settings.provider_call_timeout, sleep=sleep),
        ResilientSearchClient(search, policy=policy, timeout=settings.provider_call_timeout, sleep=sleep),
        count=word_count,
    )
