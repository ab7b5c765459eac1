from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from ..dependencies import get_orchestrator
from ..errors import AgentError
from ..schemas import AskRequest, AskResponse
from ..services.agent import AgentOrchestrator, AgentRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sessions", tags=["chat"])


def _agent_request(session_id: int, req: AskRequest) -> AgentRequest:
    question = (req.question or "").strip()
    if not question:
        raise HTTPException(status_code=400, detail="Question must not be empty")
    return AgentRequest(session_id=session_id, question=question, author=req.identity())


def _ndjson(event: Dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False) + "\n"


@router.post("/{session_id}/ask", response_model=AskResponse)
async def ask(
    session_id: int,
    req: AskRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> AskResponse:
    outcome = await orchestrator.answer(_agent_request(session_id, req))
    return AskResponse(**outcome.to_dict())


@router.post("/{session_id}/ask/stream")
async def ask_stream(
    session_id: int,
    req: AskRequest,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
):
    """
    Stream the agent run as newline-delimited JSON.

    - {"type": "step", "state": ...} - state machine progress
    - {"type": "token", "content": ..., "attempt": n} - draft tokens
    - {"type": "final", ...} - persisted message id, verdict, annotations
    - {"type": "error", "error": {...}} - failure after streaming started

    The run is advanced to its first working state before the response
    starts, so unknown sessions, busy sessions and oversized questions are
    reported as regular HTTP errors.
    """
    events = orchestrator.stream(_agent_request(session_id, req))
    head: List[Dict[str, Any]] = []
    try:
        head.append(await events.__anext__())
        head.append(await events.__anext__())
    except BaseException:
        await events.aclose()
        raise

    async def event_stream() -> AsyncGenerator[str, None]:
        try:
            for event in head:
                yield _ndjson(event)
            async for event in events:
                yield _ndjson(event)
        except AgentError as exc:
            logger.warning("Agent stream for session %s failed: %s", session_id, exc)
            yield _ndjson({"type": "error", "error": exc.to_dict()})
        except Exception as exc:
            logger.exception("Agent stream for session %s failed", session_id)
            yield _ndjson({"type": "error", "error": {"code": "internal_error", "message": str(exc)}})
        finally:
            await events.aclose()

    return StreamingResponse(event_stream(), media_type="application/x-ndjson")
