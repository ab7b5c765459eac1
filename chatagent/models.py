"""Domain records for sessions, messages, completion records and shared messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

UNMIGRATED_USER_ID = -1


class SessionCategory(str, Enum):
    CHAT = "chat"
    SEARCH = "search"

    @property
    def search_first(self) -> bool:
        if self is SessionCategory.SEARCH:
            return True
        if self is SessionCategory.CHAT:
            return False
        raise ValueError(f"Unhandled session category: {self}")


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class IdentityKind(str, Enum):
    NUMERIC = "numeric"
    LEGACY = "legacy"
    ANONYMOUS = "anonymous"


class Annotation(str, Enum):
    UNVERIFIED_DEGRADED = "unverified_degraded"
    UNVERIFIED = "unverified"
    VERIFICATION_INSUFFICIENT = "verification_insufficient"
    TRUNCATED = "truncated"
    ERRORED = "errored"


TERMINAL_ANNOTATIONS = frozenset({Annotation.TRUNCATED, Annotation.ERRORED})


class CompletionKind(str, Enum):
    PLAN = "plan"
    DRAFT = "draft"
    VERIFY = "verify"


@dataclass(frozen=True)
class UserIdentity:
    """
    Author identity during the legacy-string to numeric id migration.

    Rows carry both a numeric `user_id` (authoritative, `-1` = not migrated)
    and a legacy `user_id_str`. The value resolves to exactly one of them and
    never converts one representation into the other.
    """

    kind: IdentityKind
    numeric: Optional[int] = None
    legacy: Optional[str] = None

    @classmethod
    def from_numeric(cls, user_id: int) -> "UserIdentity":
        if user_id == UNMIGRATED_USER_ID:
            raise ValueError("the unmigrated sentinel is not a user id")
        return cls(IdentityKind.NUMERIC, numeric=int(user_id))

    @classmethod
    def from_legacy(cls, user_id_str: str) -> "UserIdentity":
        if not user_id_str:
            raise ValueError("legacy user id must not be empty")
        return cls(IdentityKind.LEGACY, legacy=user_id_str)

    @classmethod
    def anonymous(cls) -> "UserIdentity":
        return cls(IdentityKind.ANONYMOUS)

    @classmethod
    def from_columns(cls, user_id: Optional[int], user_id_str: Optional[str]) -> "UserIdentity":
        if user_id is not None and user_id != UNMIGRATED_USER_ID:
            return cls.from_numeric(user_id)
        if user_id_str:
            return cls.from_legacy(user_id_str)
        return cls.anonymous()

    def to_columns(self) -> Tuple[Optional[int], Optional[str]]:
        if self.kind is IdentityKind.NUMERIC:
            return self.numeric, None
        if self.kind is IdentityKind.LEGACY:
            return UNMIGRATED_USER_ID, self.legacy
        return None, None

    def resolve(self) -> Optional[Any]:
        if self.kind is IdentityKind.NUMERIC:
            return self.numeric
        if self.kind is IdentityKind.LEGACY:
            return self.legacy
        return None

    @property
    def is_migrated(self) -> bool:
        return self.kind is IdentityKind.NUMERIC

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "user_id": self.numeric, "user_id_str": self.legacy}


@dataclass(frozen=True)
class Session:
    id: int
    title: str
    category: SessionCategory
    is_active: bool = True
    team_id: Optional[int] = None
    created_by_user_id: Optional[int] = None
    doc_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category.value,
            "is_active": self.is_active,
            "team_id": self.team_id,
            "created_by_user_id": self.created_by_user_id,
            "doc_id": self.doc_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Message:
    role: MessageRole
    content: str
    author: UserIdentity = field(default_factory=UserIdentity.anonymous)
    id: Optional[int] = None
    session_id: Optional[int] = None
    verdict: Optional[str] = None
    annotations: Tuple[str, ...] = ()
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        user_id, user_id_str = self.author.to_columns()
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "user_id": user_id,
            "user_id_str": user_id_str,
            "author": self.author.to_dict(),
            "verdict": self.verdict,
            "annotations": list(self.annotations),
            "created_at": self.created_at,
        }


@dataclass
class CompletionRecord:
    session_id: int
    kind: CompletionKind
    model: str
    prompt_digest: str
    prompt_tokens: int
    completion_tokens: int
    latency_ms: float
    outcome: str = "success"
    attempt: int = 0
    message_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "kind": self.kind.value,
            "model": self.model,
            "prompt_digest": self.prompt_digest,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": self.latency_ms,
            "outcome": self.outcome,
            "attempt": self.attempt,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class SharedMessage:
    share_id: str
    message_id: int
    session_id: int
    role: MessageRole
    content: str
    sharer: UserIdentity
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        user_id, user_id_str = self.sharer.to_columns()
        return {
            "share_id": self.share_id,
            "message_id": self.message_id,
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "user_id": UNMIGRATED_USER_ID if user_id is None else user_id,
            "user_id_str": user_id_str,
            "created_at": self.created_at,
        }
