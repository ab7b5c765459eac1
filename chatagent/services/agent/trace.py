from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ...models import CompletionKind


@dataclass
class CallTrace:
    """One model call as observed by the pipeline, before it becomes a CompletionRecord."""

    kind: CompletionKind
    prompt: List[Dict[str, str]]
    attempt: int = 0
    output: str = ""
    outcome: str = "success"
    started_at: float = field(default_factory=time.perf_counter)
    latency_ms: Optional[float] = None

    def finish(self, output: str = "", outcome: str = "success") -> "CallTrace":
        self.output = output
        self.outcome = outcome
        self.latency_ms = (time.perf_counter() - self.started_at) * 1000.0
        return self


def digest_prompt(prompt: List[Dict[str, str]]) -> str:
    payload = json.dumps(prompt, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
