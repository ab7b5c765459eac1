from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from ..dependencies import get_store
from ..models import UserIdentity
from ..persistence import SessionStore
from ..schemas import SharedMessageResponse, ShareRequest

router = APIRouter(tags=["shared"])


@router.post("/messages/{message_id}/share", response_model=SharedMessageResponse, status_code=201)
async def share_message(
    message_id: int,
    req: ShareRequest,
    store: SessionStore = Depends(get_store),
) -> SharedMessageResponse:
    sharer = req.identity()
    if sharer.resolve() is None:
        raise HTTPException(status_code=400, detail="user_id or user_id_str is required")
    shared = await store.share_message(message_id, sharer)
    return SharedMessageResponse(**shared.to_dict())


@router.get("/shared", response_model=List[SharedMessageResponse])
async def list_shared_messages(
    user_id: Optional[int] = Query(default=None),
    user_id_str: Optional[str] = Query(default=None),
    store: SessionStore = Depends(get_store),
) -> List[SharedMessageResponse]:
    sharer = UserIdentity.from_columns(user_id, (user_id_str or "").strip() or None)
    if sharer.resolve() is None:
        raise HTTPException(status_code=400, detail="user_id or user_id_str is required")
    shared = await store.list_shared_messages(sharer)
    return [SharedMessageResponse(**s.to_dict()) for s in shared]


@router.get("/shared/{share_id}", response_model=SharedMessageResponse)
async def get_shared_message(share_id: str, store: SessionStore = Depends(get_store)) -> SharedMessageResponse:
    shared = await store.get_shared_message(share_id)
    return SharedMessageResponse(**shared.to_dict())


@router.delete("/shared/{share_id}", status_code=204)
async def revoke_shared_message(share_id: str, store: SessionStore = Depends(get_store)) -> Response:
    await store.revoke_shared_message(share_id)
    return Response(status_code=204)
