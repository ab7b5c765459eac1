"""
Bounded retries and per-call timeouts at the provider boundary.

Only transient provider errors (timeout, rate_limited, unavailable) are
retried, each at most `RetryPolicy.max_retries` times with exponential
backoff. Everything above this layer sees either a result or one typed
provider error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Type, TypeVar

from ...errors import LLMProviderError, ProviderError, ProviderErrorKind, SearchProviderError
from .base import (
    CompletionProvider,
    CompletionResult,
    CompletionStream,
    PromptMessages,
    SearchHit,
    SearchProvider,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 4.0

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry `retry_number` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    timeout: float,
    error_cls: Type[ProviderError],
    label: str,
    sleep: Sleeper = asyncio.sleep,
) -> T:
    retries = 0
    while True:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            error: ProviderError = error_cls(ProviderErrorKind.TIMEOUT, f"{label} exceeded {timeout:.1f}s")
        except ProviderError as exc:
            error = exc
        if not error.transient or retries >= policy.max_retries:
            raise error
        retries += 1
        delay = policy.delay_for(retries)
        logger.warning(
            "%s failed (%s); retry %d/%d in %.2fs",
            label,
            error.kind.value,
            retries,
            policy.max_retries,
            delay,
        )
        await sleep(delay)


class ResilientSearchClient:
    def __init__(
        self,
        inner: SearchProvider,
        *,
        policy: RetryPolicy,
        timeout: float,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._policy = policy
        self._timeout = timeout
        self._sleep = sleep

    async def search(self, query: str, limit: int) -> List[SearchHit]:
        return await call_with_retries(
            lambda: self._inner.search(query, limit),
            policy=self._policy,
            timeout=self._timeout,
            error_cls=SearchProviderError,
            label="search",
            sleep=self._sleep,
        )


class ResilientCompletionClient:
    """
    Retry/timeout wrapper for a completion provider.

    Streams are retried only while opening; once the first chunk may have
    reached a caller, a failure is reported rather than replayed. Each chunk
    read is bounded by the same per-call timeout.
    """

    def __init__(
        self,
        inner: CompletionProvider,
        *,
        policy: RetryPolicy,
        timeout: float,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._policy = policy
        self._timeout = timeout
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self._inner.model

    async def complete(
        self,
        prompt: PromptMessages,
        *,
        temperature: float,
        max_tokens: int,
        stream: bool = False,
    ) -> CompletionResult:
        result = await call_with_retries(
            lambda: self._inner.complete(prompt, temperature=temperature, max_tokens=max_tokens, stream=stream),
            policy=self._policy,
            timeout=self._timeout,
            error_cls=LLMProviderError,
            label="completion stream" if stream else "completion",
            sleep=self._sleep,
        )
        if isinstance(result, CompletionStream):
            return CompletionStream(_timed_chunks(result, self._timeout), on_close=result.aclose)
        return result


async def _timed_chunks(stream: CompletionStream, timeout: float) -> AsyncIterator[str]:
    iterator = stream.__aiter__()
    try:
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as exc:
                raise LLMProviderError(
                    ProviderErrorKind.TIMEOUT, f"no completion chunk within {timeout:.1f}s"
                ) from exc
            yield chunk
    finally:
        await stream.aclose()
