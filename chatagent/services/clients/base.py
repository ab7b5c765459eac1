"""
Provider contracts consumed by the agent pipeline.

The orchestrator only sees these protocols; concrete adapters (OpenAI,
SerpAPI) and the retry/timeout wrappers all implement them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Union

from ...errors import LLMProviderError, ProviderErrorKind

PromptMessages = Sequence[Dict[str, str]]


@dataclass(frozen=True)
class SearchHit:
    title: str
    url: str
    snippet: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "url": self.url, "snippet": self.snippet, "score": self.score}


class CompletionStream:
    """
    A single-use async iterator over completion text chunks.

    `aclose()` must release the underlying response; it is idempotent and
    runs automatically when the stream is exhausted.
    """

    def __init__(
        self,
        chunks: AsyncIterator[str],
        *,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._chunks = chunks
        self._on_close = on_close
        self._consumed = False
        self._closed = False

    def __aiter__(self) -> "CompletionStream":
        if self._consumed:
            raise LLMProviderError(ProviderErrorKind.UNAVAILABLE, "completion stream already consumed")
        self._consumed = True
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._chunks, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()


CompletionResult = Union[str, CompletionStream]


class CompletionProvider(Protocol):
    model: str

    async def complete(
        self,
        prompt: PromptMessages,
        *,
        temperature: float,
        max_tokens: int,
        stream: bool = False,
    ) -> CompletionResult:
        ...


class SearchProvider(Protocol):
    async def search(self, query: str, limit: int) -> List[SearchHit]:
        ...
