from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..config import AppSettings
from ..dependencies import AppContainer, get_container
from ..tokenizer_registry import tokenizer_diagnostics

router = APIRouter(tags=["system"])


def _settings_snapshot(settings: AppSettings) -> Dict[str, Dict[str, Any]]:
    tokenizer = tokenizer_diagnostics().get(settings.llm_tokenizer, {})
    return {
        "agent": {
            "max_history": settings.agent_max_history,
            "max_replan": settings.agent_max_replan,
            "plan_suffix": settings.agent_plan_suffix,
            "search_plan_suffix": settings.agent_search_plan_suffix,
            "lock_mode": settings.agent_lock_mode,
            "lock_wait_timeout": settings.agent_lock_wait_timeout,
            "persist_truncated": settings.agent_persist_truncated,
        },
        "llm": {
            "endpoint": settings.llm_endpoint,
            "model": settings.llm_model,
            "temperature": settings.llm_temperature,
            "max_tokens": settings.llm_max_tokens,
            "prompt_max_token": settings.llm_prompt_max_token,
            "tokenizer_id": settings.llm_tokenizer,
            "tokenizer_loaded": tokenizer.get("loaded"),
            "tokenizer_fallbacks": tokenizer.get("fallback_count"),
            "tokenizer_last_error": tokenizer.get("error"),
        },
        "search": {
            "endpoint": settings.search_endpoint,
            "api_key_configured": bool(settings.search_serp_api_key),
            "result_limit": settings.search_result_limit,
        },
        "providers": {
            "max_retries": settings.provider_max_retries,
            "backoff_base": settings.provider_backoff_base,
            "backoff_max": settings.provider_backoff_max,
            "call_timeout": settings.provider_call_timeout,
        },
        "storage": {
            "doc_store": str(settings.doc_store_path),
            "call_timeout": settings.store_call_timeout,
        },
    }


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/status")
async def system_status(container: AppContainer = Depends(get_container)) -> dict:
    locks = container.orchestrator.locks
    return {
        "active_sessions": len(locks),
        "settings": _settings_snapshot(container.settings),
    }
