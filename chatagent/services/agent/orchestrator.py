"""
Agent orchestrator.

Drives one question through the pipeline as an explicit state machine:

    START -> PLANNING -> [SEARCHING] -> DRAFTING -> VERIFYING
          -> [REPLANNING -> PLANNING ...] -> FINALIZING -> DONE | FAILED

REPLANNING is entered at most `agent_max_replan` times per request; the
counter is carried in the run state so every request terminates.

`stream()` yields dict events (serialized as JSON lines by the HTTP layer):
- {"type": "step", "state": "...", "attempt": n} on each state entry
- {"type": "token", "content": "...", "attempt": n} per draft chunk
- {"type": "final", ...} once, after the turn is persisted
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

from ...config import AppSettings
from ...errors import AgentError, ContextTooLarge, LLMProviderError, SearchProviderError, SessionInactive, StoreError
from ...models import (
    Annotation,
    CompletionKind,
    CompletionRecord,
    Message,
    MessageRole,
    Session,
    UserIdentity,
)
from ...persistence import SessionStore
from ...token_utils import TokenCounter, build_token_counter
from ..clients.base import CompletionProvider, CompletionStream, SearchHit, SearchProvider
from .context import AssembledContext, ContextAssembler, fit_evidence, render_evidence
from .planner import MarkerStatus, PlanDecision, Planner
from .prompts import EVIDENCE_HEADER, render_draft_user_message, render_replan_note
from .session_lock import SessionLockRegistry
from .trace import CallTrace, digest_prompt
from .verifier import VerificationVerdict, Verifier

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AgentState(str, Enum):
    START = "start"
    PLANNING = "planning"
    SEARCHING = "searching"
    DRAFTING = "drafting"
    VERIFYING = "verifying"
    REPLANNING = "replanning"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({AgentState.DONE, AgentState.FAILED})


@dataclass(frozen=True)
class AgentRequest:
    session_id: int
    question: str
    author: UserIdentity = field(default_factory=UserIdentity.anonymous)

    def __post_init__(self) -> None:
        if not self.question or not self.question.strip():
            raise ValueError("question must not be empty")


@dataclass
class AgentOutcome:
    """Result of a completed run, as returned by `AgentOrchestrator.answer()`."""

    state: AgentState
    answer: str
    session_id: Optional[int] = None
    message_id: Optional[int] = None
    user_message_id: Optional[int] = None
    verdict: Optional[str] = None
    rationale: str = ""
    annotations: List[str] = field(default_factory=list)
    replans: int = 0
    sources: List[Dict[str, Any]] = field(default_factory=list)
    plan: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def verification_insufficient(self) -> bool:
        return Annotation.VERIFICATION_INSUFFICIENT.value in self.annotations

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "AgentOutcome":
        return cls(
            state=AgentState(event["state"]),
            answer=event.get("answer", ""),
            session_id=event.get("session_id"),
            message_id=event.get("message_id"),
            user_message_id=event.get("user_message_id"),
            verdict=event.get("verdict"),
            rationale=event.get("rationale") or "",
            annotations=list(event.get("annotations") or []),
            replans=event.get("replans", 0),
            sources=list(event.get("sources") or []),
            plan=event.get("plan"),
            error=event.get("error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "answer": self.answer,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "user_message_id": self.user_message_id,
            "verdict": self.verdict,
            "rationale": self.rationale,
            "annotations": list(self.annotations),
            "replans": self.replans,
            "sources": list(self.sources),
            "plan": self.plan,
            "error": self.error,
        }


@dataclass
class _Run:
    request: AgentRequest
    state: AgentState = AgentState.START
    session: Optional[Session] = None
    history: List[Message] = field(default_factory=list)
    context: Optional[AssembledContext] = None
    plan: Optional[PlanDecision] = None
    evidence: List[SearchHit] = field(default_factory=list)
    searched: bool = False
    search_failed: bool = False
    draft_parts: List[str] = field(default_factory=list)
    draft_trace: Optional[CallTrace] = None
    draft_error: Optional[LLMProviderError] = None
    verdict: Optional[VerificationVerdict] = None
    verify_failed: bool = False
    replans: int = 0
    replan_note: Optional[str] = None
    terminal_annotation: Optional[Annotation] = None
    message_id: Optional[int] = None
    traces: List[CallTrace] = field(default_factory=list)

    @property
    def draft(self) -> str:
        return "".join(self.draft_parts)


async def _single_chunk(text: str) -> AsyncIterator[str]:
    if text:
        yield text


class AgentOrchestrator:
    def __init__(
        self,
        settings: AppSettings,
        store: SessionStore,
        completion: CompletionProvider,
        search: SearchProvider,
        *,
        locks: Optional[SessionLockRegistry] = None,
        count: Optional[TokenCounter] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._completion = completion
        self._search = search
        self._count = count or build_token_counter(settings.llm_tokenizer)
        self._locks = locks or SessionLockRegistry(
            mode=settings.agent_lock_mode,
            wait_timeout=settings.agent_lock_wait_timeout,
        )
        self._assembler = ContextAssembler(
            max_history=settings.agent_max_history,
            max_tokens=settings.llm_prompt_max_token,
            count=self._count,
        )
        self._planner = Planner(
            completion,
            plan_tag=settings.agent_plan_suffix,
            search_plan_tag=settings.agent_search_plan_suffix,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_plan_max_tokens,
        )
        self._verifier = Verifier(
            completion,
            template=settings.agent_verifier_user_prompt,
            max_tokens=settings.llm_verify_max_tokens,
        )

    @property
    def locks(self) -> SessionLockRegistry:
        return self._locks

    async def answer(self, request: AgentRequest) -> AgentOutcome:
        final: Optional[Dict[str, Any]] = None
        async for event in self.stream(request):
            if event["type"] == "final":
                final = event
        if final is None:
            raise RuntimeError("agent run ended without a final event")
        return AgentOutcome.from_event(final)

    async def stream(self, request: AgentRequest) -> AsyncGenerator[Dict[str, Any], None]:
        run = _Run(request=request)
        yield self._enter(run, AgentState.START)
        session = await self._store_call(self._store.get_session(request.session_id), "load session")
        if not session.is_active:
            raise SessionInactive(session.id)
        run.session = session

        async with self._locks.hold(session.id):
            try:
                run.history = await self._store_call(self._store.fetch_messages(session.id), "load history")
                self._assemble(run)

                state = AgentState.PLANNING
                final: Dict[str, Any] = {}
                while state not in TERMINAL_STATES:
                    yield self._enter(run, state)
                    if state is not AgentState.DRAFTING:
                        if state is AgentState.FINALIZING:
                            final = await self._finalize(run)
                            state = AgentState.DONE
                        else:
                            state = await self._advance(run, state)
                        continue

                    chunks = await self._open_draft(run)
                    try:
                        async for chunk in chunks:
                            if not chunk:
                                continue
                            run.draft_parts.append(chunk)
                            yield {"type": "token", "content": chunk, "attempt": run.replans}
                    except LLMProviderError as exc:
                        state = self._draft_failed(run, exc)
                        continue
                    finally:
                        await chunks.aclose()
                    run.draft_trace.finish(output=run.draft)
                    state = AgentState.VERIFYING

                run.state = AgentState.DONE
                logger.debug("Session %s -> done", session.id)
                yield final
            except (GeneratorExit, asyncio.CancelledError):
                await self._abandon(run)
                raise
            except AgentError as exc:
                failed_in = run.state
                run.state = AgentState.FAILED
                logger.error("Session %s request failed during %s: %s", session.id, failed_in.value, exc)
                try:
                    await self._flush_records(run, run.message_id)
                except StoreError:
                    logger.exception("Could not record completions for failed request on session %s", session.id)
                raise

    def _enter(self, run: _Run, state: AgentState) -> Dict[str, Any]:
        run.state = state
        logger.debug("Session %s -> %s (attempt %d)", run.request.session_id, state.value, run.replans)
        event: Dict[str, Any] = {"type": "step", "state": state.value, "attempt": run.replans}
        if state is AgentState.SEARCHING and run.plan is not None:
            event["query"] = run.plan.query
        elif state is AgentState.REPLANNING and run.verdict is not None:
            event["verdict"] = run.verdict.verdict.value
        return event

    async def _advance(self, run: _Run, state: AgentState) -> AgentState:
        if state is AgentState.PLANNING:
            return await self._plan(run)
        if state is AgentState.SEARCHING:
            return await self._run_search(run)
        if state is AgentState.VERIFYING:
            return await self._verify(run)
        if state is AgentState.REPLANNING:
            return self._replan(run)
        raise RuntimeError(f"Unhandled agent state: {state}")

    def _assemble(self, run: _Run) -> None:
        """Fit the history around everything else the planning and drafting prompts carry."""
        system_tokens = max(
            self._count(self._settings.system_prompt),
            self._count(self._planner.system_prompt(run.session.category)),
        )
        framing = render_draft_user_message("", None, replan_note=run.replan_note)
        run.context = self._assembler.assemble(
            run.history,
            run.request.question,
            reserved_tokens=system_tokens + self._count(framing),
        )
        if run.context.truncated:
            logger.debug(
                "Session %s: dropped %d history messages (attempt %d)",
                run.session.id,
                run.context.dropped,
                run.replans,
            )

    async def _plan(self, run: _Run) -> AgentState:
        run.evidence = []
        run.searched = False
        run.search_failed = False
        plan = await self._planner.plan(
            run.context,
            run.session.category,
            traces=run.traces,
            attempt=run.replans,
            note=run.replan_note,
        )
        if plan.ignored_markers:
            logger.warning(
                "Planner emitted %d extra search-plan markers; using the first",
                plan.ignored_markers,
            )
        if plan.marker is MarkerStatus.EMPTY:
            logger.warning("Planner emitted an empty search plan")
        run.plan = plan
        return AgentState.SEARCHING if plan.search_needed else AgentState.DRAFTING

    async def _run_search(self, run: _Run) -> AgentState:
        limit = self._settings.search_result_limit
        run.searched = True
        try:
            hits = await self._search.search(run.plan.query, limit)
        except SearchProviderError as exc:
            if not exc.transient:
                raise
            logger.warning("Search failed (%s); drafting without evidence", exc.kind.value)
            run.search_failed = True
            hits = []
        run.evidence = list(hits)[:limit]
        return AgentState.DRAFTING

    def _build_draft_prompt(self, run: _Run) -> List[Dict[str, str]]:
        evidence_text: Optional[str] = None
        if run.searched:
            remaining = run.context.budget - run.context.token_count
            run.evidence = fit_evidence(run.evidence, remaining, self._count, wrapper=EVIDENCE_HEADER)
            evidence_text = render_evidence(run.evidence)
        user_message = render_draft_user_message(
            run.request.question,
            evidence_text,
            replan_note=run.replan_note,
        )
        return [
            {"role": "system", "content": self._settings.system_prompt},
            *run.context.history_prompt(),
            {"role": "user", "content": user_message},
        ]

    async def _open_draft(self, run: _Run) -> CompletionStream:
        run.draft_parts = []
        prompt = self._build_draft_prompt(run)
        trace = CallTrace(CompletionKind.DRAFT, prompt, attempt=run.replans)
        run.traces.append(trace)
        run.draft_trace = trace
        try:
            result = await self._completion.complete(
                prompt,
                temperature=self._settings.llm_temperature,
                max_tokens=self._settings.llm_max_tokens,
                stream=True,
            )
        except LLMProviderError as exc:
            trace.finish(outcome=exc.kind.value)
            raise
        if isinstance(result, str):
            return CompletionStream(_single_chunk(result))
        return result

    def _draft_failed(self, run: _Run, exc: LLMProviderError) -> AgentState:
        run.draft_trace.finish(output=run.draft, outcome=exc.kind.value)
        if run.draft_parts and self._settings.agent_persist_truncated:
            logger.warning(
                "Draft stream failed (%s) after %d chunks; keeping the partial answer",
                exc.kind.value,
                len(run.draft_parts),
            )
            run.draft_error = exc
            run.terminal_annotation = Annotation.ERRORED
            return AgentState.FINALIZING
        raise exc

    async def _verify(self, run: _Run) -> AgentState:
        run.verdict = None
        run.verify_failed = False
        try:
            verdict = await self._verifier.verify(
                run.request.question,
                run.evidence,
                run.draft,
                traces=run.traces,
                attempt=run.replans,
            )
        except LLMProviderError as exc:
            if not exc.transient:
                raise
            logger.warning("Verification failed (%s); finalizing unverified", exc.kind.value)
            run.verify_failed = True
            return AgentState.FINALIZING
        run.verdict = verdict
        if verdict.supported:
            return AgentState.FINALIZING
        if run.replans < self._settings.agent_max_replan:
            return AgentState.REPLANNING
        logger.warning(
            "Session %s: finalizing with verdict %s after %d replans",
            run.request.session_id,
            verdict.verdict.value,
            run.replans,
        )
        return AgentState.FINALIZING

    def _replan(self, run: _Run) -> AgentState:
        run.replans += 1
        run.replan_note = render_replan_note(run.verdict.verdict.value, run.verdict.rationale)
        logger.warning(
            "Session %s: verdict %s, replanning (%d/%d)",
            run.request.session_id,
            run.verdict.verdict.value,
            run.replans,
            self._settings.agent_max_replan,
        )
        try:
            self._assemble(run)
        except ContextTooLarge:
            logger.warning(
                "Session %s: reviewer notes do not fit the prompt budget; replanning without them",
                run.request.session_id,
            )
            run.replan_note = None
            self._assemble(run)
        return AgentState.PLANNING

    def _annotations(self, run: _Run) -> List[str]:
        annotations: List[str] = []
        if run.search_failed:
            annotations.append(Annotation.UNVERIFIED_DEGRADED.value)
        if run.terminal_annotation is not None:
            annotations.append(run.terminal_annotation.value)
        elif run.verify_failed:
            annotations.append(Annotation.UNVERIFIED.value)
        elif run.verdict is not None and not run.verdict.supported:
            annotations.append(Annotation.VERIFICATION_INSUFFICIENT.value)
        return annotations

    async def _persist_turn(self, run: _Run) -> List[int]:
        verdict = None
        if run.verdict is not None and run.terminal_annotation is None:
            verdict = run.verdict.verdict.value
        messages = [
            Message(role=MessageRole.USER, content=run.request.question, author=run.request.author),
            Message(
                role=MessageRole.ASSISTANT,
                content=run.draft,
                verdict=verdict,
                annotations=tuple(self._annotations(run)),
            ),
        ]
        return await self._store_call(self._store.append_turn(run.session.id, messages), "persist turn")

    async def _finalize(self, run: _Run) -> Dict[str, Any]:
        user_message_id, message_id = await self._persist_turn(run)
        run.message_id = message_id
        await self._flush_records(run, message_id)
        annotations = self._annotations(run)
        if annotations:
            logger.warning("Session %s: message %s finalized with %s", run.session.id, message_id, annotations)
        verdict = run.verdict if run.terminal_annotation is None else None
        return {
            "type": "final",
            "state": AgentState.DONE.value,
            "session_id": run.session.id,
            "message_id": message_id,
            "user_message_id": user_message_id,
            "answer": run.draft,
            "verdict": verdict.verdict.value if verdict else None,
            "rationale": verdict.rationale if verdict else "",
            "annotations": annotations,
            "replans": run.replans,
            "sources": [hit.to_dict() for hit in run.evidence],
            "plan": run.plan.to_dict() if run.plan else None,
            "error": run.draft_error.to_dict() if run.draft_error else None,
        }

    async def _abandon(self, run: _Run) -> None:
        """Caller went away: close out traces and keep the partial draft if configured to."""
        if run.state is AgentState.DONE:
            return
        logger.warning("Session %s request cancelled during %s", run.request.session_id, run.state.value)
        for trace in run.traces:
            if trace.latency_ms is None:
                partial = run.draft if trace.kind is CompletionKind.DRAFT else ""
                trace.finish(output=partial, outcome="cancelled")
        if run.message_id is not None:
            # The turn was committed before the records were written.
            logger.info("Session %s: turn already persisted as message %s", run.session.id, run.message_id)
        elif (
            run.state is AgentState.DRAFTING
            and run.draft_parts
            and self._settings.agent_persist_truncated
        ):
            run.terminal_annotation = Annotation.TRUNCATED
            run.message_id = (await self._persist_turn(run))[-1]
            logger.info("Session %s: kept truncated answer as message %s", run.session.id, run.message_id)
        else:
            run.state = AgentState.FAILED
        await self._flush_records(run, run.message_id)

    async def _flush_records(self, run: _Run, message_id: Optional[int]) -> None:
        if run.session is None:
            return
        while run.traces:
            trace = run.traces.pop(0)
            if trace.latency_ms is None:
                trace.finish(outcome="cancelled")
            record = CompletionRecord(
                session_id=run.session.id,
                kind=trace.kind,
                model=self._completion.model,
                prompt_digest=digest_prompt(trace.prompt),
                prompt_tokens=sum(self._count(m.get("content", "")) for m in trace.prompt),
                completion_tokens=self._count(trace.output) if trace.output else 0,
                latency_ms=round(trace.latency_ms, 3),
                outcome=trace.outcome,
                attempt=trace.attempt,
                message_id=message_id,
            )
            await self._store_call(self._store.record_completion(record), "record completion")

    async def _store_call(self, awaitable: Awaitable[T], label: str) -> T:
        timeout = self._settings.store_call_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StoreError(f"{label} timed out after {timeout:.1f}s") from exc
