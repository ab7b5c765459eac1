from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import SessionCategory, UserIdentity


class IdentityFields(BaseModel):
    """Author identity as sent by clients: numeric id, legacy string id, or neither."""

    user_id: Optional[int] = Field(default=None)
    user_id_str: Optional[str] = Field(default=None)

    def identity(self) -> UserIdentity:
        return UserIdentity.from_columns(self.user_id, (self.user_id_str or "").strip() or None)


class SessionCreateRequest(BaseModel):
    title: str = Field("New chat", min_length=1, max_length=200)
    category: SessionCategory = Field(default=SessionCategory.CHAT)
    team_id: Optional[int] = Field(default=None)
    created_by_user_id: Optional[int] = Field(default=None)
    doc_id: Optional[int] = Field(default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    metadata: Optional[Dict[str, Any]] = Field(default=None)
    category: Optional[SessionCategory] = Field(default=None)


class SessionResponse(BaseModel):
    id: int
    title: str
    category: SessionCategory
    is_active: bool
    team_id: Optional[int] = None
    created_by_user_id: Optional[int] = None
    doc_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class MessageResponse(BaseModel):
    id: int
    session_id: int
    role: str
    content: str
    user_id: Optional[int] = None
    user_id_str: Optional[str] = None
    verdict: Optional[str] = None
    annotations: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None


class AskRequest(IdentityFields):
    question: str = Field(..., min_length=1)


class AskResponse(BaseModel):
    state: str
    answer: str
    session_id: Optional[int] = None
    message_id: Optional[int] = None
    user_message_id: Optional[int] = None
    verdict: Optional[str] = None
    rationale: str = ""
    annotations: List[str] = Field(default_factory=list)
    replans: int = 0
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    plan: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class CompletionRecordResponse(BaseModel):
    id: int
    session_id: int
    message_id: Optional[int] = None
    kind: str
    model: str
    prompt_digest: str
    prompt_tokens: int
    completion_tokens: int
    latency_ms: float
    outcome: str
    attempt: int
    created_at: Optional[str] = None


class ShareRequest(IdentityFields):
    pass


class SharedMessageResponse(BaseModel):
    share_id: str
    message_id: int
    session_id: int
    role: str
    content: str
    user_id: int
    user_id_str: Optional[str] = None
    created_at: Optional[str] = None
