from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigError

LOCK_MODE_QUEUE = "queue"
LOCK_MODE_REJECT = "reject"

DEFAULT_SYSTEM_PROMPT = (
    "You are a retrieval-augmented assistant. When search results are supplied, answer using them "
    "and cite them as [source N]. When they only partially cover the question, say what they cover "
    "and note the gaps; do not invent details."
)

DEFAULT_VERIFIER_USER_PROMPT = (
    "Question:\n{question}\n\n"
    "Search results:\n{search_result}\n\n"
    "Candidate answer:\n{answer}\n\n"
    "Is the candidate answer supported by the search results? Reply with one of "
    "SUPPORTED, UNSUPPORTED or INSUFFICIENT_EVIDENCE on the first line, then a short rationale."
)


@dataclass(frozen=True)
class AppSettings:
    doc_store_path: Path
    frontend_origin: str
    system_prompt: str
    agent_max_history: int
    agent_max_replan: int
    agent_plan_suffix: str
    agent_search_plan_suffix: str
    agent_verifier_user_prompt: str
    agent_lock_mode: str
    agent_lock_wait_timeout: float
    agent_persist_truncated: bool
    llm_endpoint: str
    llm_api_key: str
    llm_model: str
    llm_temperature: float
    llm_top_p: Optional[float]
    llm_max_tokens: int
    llm_plan_max_tokens: int
    llm_verify_max_tokens: int
    llm_prompt_max_token: int
    llm_tokenizer: str
    search_endpoint: str
    search_serp_api_key: str
    search_result_limit: int
    provider_max_retries: int
    provider_backoff_base: float
    provider_backoff_max: float
    provider_call_timeout: float
    store_call_timeout: float


def _int_env(name: str, default: str) -> int:
    raw = os.environ.get(name, default) or default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: str) -> float:
    raw = os.environ.get(name, default) or default
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _str_env(name: str, default: str = "") -> str:
    return (os.environ.get(name, default) or default).strip()


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    cleaned = raw.strip().lower()
    if cleaned in {"1", "true", "yes", "on"}:
        return True
    if cleaned in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _optional_float_env(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def load_settings() -> AppSettings:
    data_dir = Path(os.environ.get("DATA_DIR", "/app_data"))
    doc_store_path = Path(os.environ.get("DOC_STORE_PATH") or (data_dir / "chat_agent.db"))

    llm_max_tokens = _int_env("LLM_MAX_TOKENS", "2048")
    # Raw template strings keep their literal "\n" escapes when set through .env files.
    verifier_prompt = os.environ.get("AGENT_VERIFIER_USER_PROMPT") or DEFAULT_VERIFIER_USER_PROMPT
    verifier_prompt = verifier_prompt.replace("\\n", "\n")

    settings = AppSettings(
        doc_store_path=doc_store_path,
        frontend_origin=f"http://localhost:{os.environ.get('FRONTEND_PORT', '5173')}",
        system_prompt=_str_env("AGENT_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        agent_max_history=_int_env("AGENT_MAX_HISTORY", "20"),
        agent_max_replan=_int_env("AGENT_MAX_REPLAN", "1"),
        agent_plan_suffix=_str_env("AGENT_PLAN_SUFFIX", "<plan>"),
        agent_search_plan_suffix=_str_env("AGENT_SEARCH_PLAN_SUFFIX", "<search_plan>"),
        agent_verifier_user_prompt=verifier_prompt,
        agent_lock_mode=_str_env("AGENT_LOCK_MODE", LOCK_MODE_QUEUE).lower(),
        agent_lock_wait_timeout=_float_env("AGENT_LOCK_WAIT_TIMEOUT", "30"),
        agent_persist_truncated=_bool_env("AGENT_PERSIST_TRUNCATED", False),
        llm_endpoint=_str_env("LLM_ENDPOINT"),
        llm_api_key=_str_env("LLM_API_KEY"),
        llm_model=_str_env("LLM_MODEL", "default"),
        llm_temperature=_float_env("LLM_TEMPERATURE", "0.2"),
        llm_top_p=_optional_float_env("LLM_TOP_P"),
        llm_max_tokens=llm_max_tokens,
        llm_plan_max_tokens=_int_env("LLM_PLAN_MAX_TOKENS", "512"),
        llm_verify_max_tokens=_int_env("LLM_VERIFY_MAX_TOKENS", "256"),
        llm_prompt_max_token=_int_env("LLM_PROMPT_MAX_TOKEN", "6000"),
        llm_tokenizer=_str_env("LLM_TOKENIZER", "cl100k_base"),
        search_endpoint=_str_env("SEARCH_ENDPOINT", "https://serpapi.com/search.json"),
        search_serp_api_key=_str_env("SEARCH_SERP_API_KEY"),
        search_result_limit=_int_env("SEARCH_RESULT_LIMIT", "5"),
        provider_max_retries=_int_env("PROVIDER_MAX_RETRIES", "2"),
        provider_backoff_base=_float_env("PROVIDER_BACKOFF_BASE", "0.5"),
        provider_backoff_max=_float_env("PROVIDER_BACKOFF_MAX", "4"),
        provider_call_timeout=_float_env("PROVIDER_CALL_TIMEOUT", "60"),
        store_call_timeout=_float_env("STORE_CALL_TIMEOUT", "10"),
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: AppSettings) -> None:
    if settings.agent_max_history < 1:
        raise ConfigError("AGENT_MAX_HISTORY must be at least 1")
    if settings.llm_prompt_max_token < 1:
        raise ConfigError("LLM_PROMPT_MAX_TOKEN must be at least 1")
    if settings.agent_max_replan < 0:
        raise ConfigError("AGENT_MAX_REPLAN must not be negative")
    if settings.provider_max_retries < 0:
        raise ConfigError("PROVIDER_MAX_RETRIES must not be negative")
    if settings.search_result_limit < 1:
        raise ConfigError("SEARCH_RESULT_LIMIT must be at least 1")
    if settings.agent_lock_mode not in {LOCK_MODE_QUEUE, LOCK_MODE_REJECT}:
        raise ConfigError(
            f"AGENT_LOCK_MODE must be '{LOCK_MODE_QUEUE}' or '{LOCK_MODE_REJECT}', got {settings.agent_lock_mode!r}"
        )
    if not settings.agent_plan_suffix or not settings.agent_search_plan_suffix:
        raise ConfigError("AGENT_PLAN_SUFFIX and AGENT_SEARCH_PLAN_SUFFIX must not be empty")
    if settings.agent_plan_suffix == settings.agent_search_plan_suffix:
        raise ConfigError("AGENT_PLAN_SUFFIX and AGENT_SEARCH_PLAN_SUFFIX must differ")
    for placeholder in ("{question}", "{search_result}"):
        if placeholder not in settings.agent_verifier_user_prompt:
            raise ConfigError(f"AGENT_VERIFIER_USER_PROMPT is missing the {placeholder} placeholder")
    for name in ("provider_call_timeout", "store_call_timeout", "agent_lock_wait_timeout"):
        if getattr(settings, name) <= 0:
            raise ConfigError(f"{name.upper()} must be positive")
