from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from ..dependencies import get_store
from ..models import SessionCategory
from ..persistence import SessionStore
from ..schemas import (
    CompletionRecordResponse,
    MessageResponse,
    SessionCreateRequest,
    SessionResponse,
    SessionUpdateRequest,
)

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=SessionResponse, status_code=201)
async def create_session(req: SessionCreateRequest, store: SessionStore = Depends(get_store)) -> SessionResponse:
    session = await store.create_session(
        title=req.title.strip(),
        category=req.category,
        team_id=req.team_id,
        created_by_user_id=req.created_by_user_id,
        doc_id=req.doc_id,
        metadata=req.metadata,
    )
    return SessionResponse(**session.to_dict())


@router.get("", response_model=List[SessionResponse])
async def list_sessions(
    is_active: Optional[bool] = Query(default=None),
    created_by_user_id: Optional[int] = Query(default=None),
    team_id: Optional[int] = Query(default=None),
    category: Optional[SessionCategory] = Query(default=None),
    doc_id: Optional[int] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    store: SessionStore = Depends(get_store),
) -> List[SessionResponse]:
    sessions = await store.list_sessions(
        is_active=is_active,
        created_by_user_id=created_by_user_id,
        team_id=team_id,
        category=category,
        doc_id=doc_id,
        limit=limit,
    )
    return [SessionResponse(**s.to_dict()) for s in sessions]


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: int, store: SessionStore = Depends(get_store)) -> SessionResponse:
    session = await store.get_session(session_id)
    return SessionResponse(**session.to_dict())


@router.patch("/{session_id}", response_model=SessionResponse)
async def update_session(
    session_id: int,
    req: SessionUpdateRequest,
    store: SessionStore = Depends(get_store),
) -> SessionResponse:
    session = await store.update_session(
        session_id,
        title=req.title.strip() if req.title else None,
        metadata=req.metadata,
        category=req.category,
    )
    return SessionResponse(**session.to_dict())


@router.post("/{session_id}/deactivate", response_model=SessionResponse)
async def deactivate_session(session_id: int, store: SessionStore = Depends(get_store)) -> SessionResponse:
    session = await store.deactivate_session(session_id)
    return SessionResponse(**session.to_dict())


@router.delete("/{session_id}", status_code=204)
async def delete_session(session_id: int, store: SessionStore = Depends(get_store)) -> Response:
    await store.delete_session(session_id)
    return Response(status_code=204)


@router.get("/{session_id}/messages", response_model=List[MessageResponse])
async def list_messages(
    session_id: int,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    store: SessionStore = Depends(get_store),
) -> List[MessageResponse]:
    await store.get_session(session_id)
    messages = await store.fetch_messages(session_id, limit=limit)
    return [MessageResponse(**m.to_dict()) for m in messages]


@router.get("/{session_id}/completions", response_model=List[CompletionRecordResponse])
async def list_completions(
    session_id: int,
    message_id: Optional[int] = Query(default=None),
    store: SessionStore = Depends(get_store),
) -> List[CompletionRecordResponse]:
    await store.get_session(session_id)
    records = await store.list_completions(session_id=session_id, message_id=message_id)
    return [CompletionRecordResponse(**r.to_dict()) for r in records]
