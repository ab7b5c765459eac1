from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import openai
from openai import AsyncOpenAI

from ...errors import LLMProviderError, ProviderErrorKind
from .base import CompletionResult, CompletionStream, PromptMessages

logger = logging.getLogger(__name__)


def map_openai_error(exc: BaseException) -> LLMProviderError:
    """Translate an openai/httpx exception into the provider error taxonomy."""
    if isinstance(exc, LLMProviderError):
        return exc
    detail = str(exc)
    if isinstance(exc, openai.APITimeoutError):
        kind = ProviderErrorKind.TIMEOUT
    elif isinstance(exc, openai.RateLimitError):
        kind = ProviderErrorKind.RATE_LIMITED
    elif isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = ProviderErrorKind.INVALID_KEY
    elif isinstance(exc, openai.BadRequestError) and _is_content_filter(exc):
        kind = ProviderErrorKind.CONTENT_FILTERED
    elif isinstance(exc, openai.APIConnectionError):
        kind = ProviderErrorKind.UNAVAILABLE
    elif isinstance(exc, openai.APIStatusError):
        status = getattr(exc, "status_code", 500) or 500
        if status == 408:
            kind = ProviderErrorKind.TIMEOUT
        elif status == 429:
            kind = ProviderErrorKind.RATE_LIMITED
        elif status in (401, 403):
            kind = ProviderErrorKind.INVALID_KEY
        else:
            kind = ProviderErrorKind.UNAVAILABLE
    elif isinstance(exc, httpx.TimeoutException):
        kind = ProviderErrorKind.TIMEOUT
    else:
        kind = ProviderErrorKind.UNAVAILABLE
    return LLMProviderError(kind, detail)


def _is_content_filter(exc: BaseException) -> bool:
    code = getattr(exc, "code", None)
    if code == "content_filter":
        return True
    return "content_filter" in str(exc) or "content management policy" in str(exc).lower()


class OpenAICompletionClient:
    """Completion client for any OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        top_p: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self._top_p = top_p
        # Retries are owned by the resilient wrapper, not the SDK.
        self._client = client or AsyncOpenAI(base_url=base_url or None, api_key=api_key, max_retries=0)

    def _build_completion_args(
        self,
        messages: PromptMessages,
        temperature: float,
        max_tokens: int,
        stream: bool = False,
    ) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if self._top_p is not None:
            args["top_p"] = self._top_p
        return args

    async def complete(
        self,
        prompt: PromptMessages,
        *,
        temperature: float,
        max_tokens: int,
        stream: bool = False,
    ) -> CompletionResult:
        completion_args = self._build_completion_args(prompt, temperature, max_tokens, stream=stream)
        try:
            response = await self._client.chat.completions.create(**completion_args)
        except Exception as exc:
            raise map_openai_error(exc) from exc

        if stream:
            return CompletionStream(_iter_chunks(response), on_close=response.close)

        if not response.choices:
            raise LLMProviderError(ProviderErrorKind.UNAVAILABLE, "LLM returned no choices")
        choice = response.choices[0]
        if getattr(choice, "finish_reason", None) == "content_filter":
            raise LLMProviderError(ProviderErrorKind.CONTENT_FILTERED, "completion blocked by content filter")
        return (choice.message.content or "").strip()

    async def aclose(self) -> None:
        await self._client.close()


async def _iter_chunks(response: Any) -> AsyncIterator[str]:
    try:
        async for chunk in response:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if getattr(choice, "finish_reason", None) == "content_filter":
                raise LLMProviderError(ProviderErrorKind.CONTENT_FILTERED, "stream stopped by content filter")
            delta = getattr(choice, "delta", None)
            content = getattr(delta, "content", None)
            if content:
                yield content
    except LLMProviderError:
        raise
    except (openai.APIError, httpx.HTTPError) as exc:
        logger.warning("Completion stream failed mid-flight: %s", exc)
        raise map_openai_error(exc) from exc
