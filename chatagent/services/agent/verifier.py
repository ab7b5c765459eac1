from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

from ...errors import LLMProviderError
from ...models import CompletionKind
from ..clients.base import CompletionProvider, SearchHit
from .context import render_evidence
from .prompts import VERIFIER_SYSTEM_PROMPT, render_verifier_user_prompt
from .trace import CallTrace

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    INSUFFICIENT_EVIDENCE = "insufficient_evidence"


@dataclass(frozen=True)
class VerificationVerdict:
    verdict: Verdict
    rationale: str = ""
    recognized: bool = True

    @property
    def supported(self) -> bool:
        return self.verdict is Verdict.SUPPORTED

    def to_dict(self) -> dict:
        return {"verdict": self.verdict.value, "rationale": self.rationale, "recognized": self.recognized}


_VERDICT_RE = re.compile(
    r"^(?:verdict\s*[:\-]?\s*)?(unsupported|supported|insufficient[\s_-]+evidence)(?![a-z0-9_])",
    re.IGNORECASE,
)

_VOCABULARY = {
    "supported": Verdict.SUPPORTED,
    "unsupported": Verdict.UNSUPPORTED,
    "insufficient evidence": Verdict.INSUFFICIENT_EVIDENCE,
}


def parse_verdict(text: str) -> VerificationVerdict:
    """
    Read the verdict from the first non-empty line of a verifier reply.

    Anything outside the fixed vocabulary becomes INSUFFICIENT_EVIDENCE,
    never SUPPORTED.
    """
    lines = (text or "").strip().splitlines()
    for index, line in enumerate(lines):
        head = line.strip().lstrip("#*>- ").strip()
        if not head:
            continue
        match = _VERDICT_RE.match(head)
        if not match:
            break
        token = re.sub(r"[\s_-]+", " ", match.group(1).lower())
        tail = head[match.end():].strip(" *:.-")
        rest = "\n".join(lines[index + 1:]).strip()
        rationale = "\n".join(part for part in (tail, rest) if part)
        return VerificationVerdict(_VOCABULARY[token], rationale=rationale)
    return VerificationVerdict(
        Verdict.INSUFFICIENT_EVIDENCE,
        rationale=(text or "").strip(),
        recognized=False,
    )


class Verifier:
    def __init__(
        self,
        completion: CompletionProvider,
        *,
        template: str,
        temperature: float = 0.0,
        max_tokens: int = 256,
    ) -> None:
        self._completion = completion
        self._template = template
        self._temperature = temperature
        self._max_tokens = max_tokens

    def build_prompt(self, question: str, evidence: Sequence[SearchHit], draft: str) -> List[dict]:
        user_prompt = render_verifier_user_prompt(
            self._template,
            question=question,
            search_result=render_evidence(evidence),
            answer=draft,
        )
        return [
            {"role": "system", "content": VERIFIER_SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ]

    async def verify(
        self,
        question: str,
        evidence: Sequence[SearchHit],
        draft: str,
        *,
        traces: List[CallTrace],
        attempt: int = 0,
    ) -> VerificationVerdict:
        prompt = self.build_prompt(question, evidence, draft)
        trace = CallTrace(CompletionKind.VERIFY, prompt, attempt=attempt)
        traces.append(trace)
        try:
            raw = await self._completion.complete(
                prompt,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                stream=False,
            )
        except LLMProviderError as exc:
            trace.finish(outcome=exc.kind.value)
            raise
        trace.finish(output=raw)
        verdict = parse_verdict(raw)
        if not verdict.recognized:
            logger.warning("Unrecognized verifier reply; treating it as insufficient evidence")
        return verdict
