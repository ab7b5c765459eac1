from __future__ import annotations

import math
from typing import Callable, Optional

from .tokenizer_registry import count_text_tokens, record_tokenizer_fallback

TokenCounter = Callable[[str], int]

_FALLBACK_CHARS_PER_TOKEN = 4


def _fallback_token_estimate(text: str) -> int:
    return max(1, math.ceil(len(text) / _FALLBACK_CHARS_PER_TOKEN))


def estimate_tokens(text: str, *, tokenizer_id: Optional[str] = None) -> int:
    if not text:
        return 0
    identifier = (tokenizer_id or "").strip()
    if identifier:
        token_count = count_text_tokens(text, identifier)
        if token_count is not None:
            return token_count
        record_tokenizer_fallback(identifier, "text_count_fallback")
    return _fallback_token_estimate(text)


def build_token_counter(tokenizer_id: Optional[str]) -> TokenCounter:
    """Return a `count(text) -> int` bound to one tokenizer."""

    def count(text: str) -> int:
        return estimate_tokens(text, tokenizer_id=tokenizer_id)

    return count
