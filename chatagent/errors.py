"""
Error taxonomy for the chat agent.

Provider errors carry a closed `ProviderErrorKind`; whether a kind is
retried is decided by `ProviderErrorKind.transient`, never by callers.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class AgentError(Exception):
    """Base class for every typed failure surfaced to callers."""

    code = "agent_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ConfigError(AgentError):
    code = "config_error"


class ContextTooLarge(AgentError):
    code = "context_too_large"

    def __init__(self, question_tokens: int, budget: int) -> None:
        super().__init__(
            f"Question needs {question_tokens} tokens but the prompt budget is {budget}"
        )
        self.question_tokens = question_tokens
        self.budget = budget


class ProviderErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INVALID_KEY = "invalid_key"
    CONTENT_FILTERED = "content_filtered"
    UNAVAILABLE = "unavailable"

    @property
    def transient(self) -> bool:
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset(
    {ProviderErrorKind.TIMEOUT, ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.UNAVAILABLE}
)


class ProviderError(AgentError):
    """Failure reported by an external provider (search or completion)."""

    code = "provider_error"
    provider = "provider"

    def __init__(self, kind: ProviderErrorKind, detail: Optional[str] = None) -> None:
        kind = ProviderErrorKind(kind)
        message = f"{self.provider} {kind.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.kind = kind
        self.detail = detail

    @property
    def transient(self) -> bool:
        return self.kind.transient

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["kind"] = self.kind.value
        return payload


class SearchProviderError(ProviderError):
    code = "search_provider_error"
    provider = "search"

    def __init__(self, kind: ProviderErrorKind, detail: Optional[str] = None) -> None:
        if ProviderErrorKind(kind) is ProviderErrorKind.CONTENT_FILTERED:
            raise ValueError("content_filtered is not a search provider error kind")
        super().__init__(kind, detail)


class LLMProviderError(ProviderError):
    code = "llm_provider_error"
    provider = "llm"


class SessionNotFound(AgentError):
    code = "session_not_found"

    def __init__(self, session_id: int) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class MessageNotFound(AgentError):
    code = "message_not_found"

    def __init__(self, message_id: int) -> None:
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class SharedMessageNotFound(AgentError):
    code = "shared_message_not_found"

    def __init__(self, share_id: str) -> None:
        super().__init__(f"Shared message {share_id} not found")
        self.share_id = share_id


class ConcurrentModification(AgentError):
    code = "concurrent_modification"

    def __init__(self, session_id: int, detail: str = "another request is in flight") -> None:
        super().__init__(f"Session {session_id}: {detail}")
        self.session_id = session_id


class ImmutableFieldError(AgentError):
    code = "immutable_field"


class StoreError(AgentError):
    code = "store_error"


class SessionInactive(AgentError):
    code = "session_inactive"

    def __init__(self, session_id: int) -> None:
        super().__init__(f"Session {session_id} is archived")
        self.session_id = session_id
