from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request

from .config import AppSettings, load_settings
from .persistence import SessionStore
from .services.agent import AgentOrchestrator
from .services.agent.session_lock import SessionLockRegistry
from .services.clients import (
    CompletionProvider,
    OpenAICompletionClient,
    ResilientCompletionClient,
    ResilientSearchClient,
    RetryPolicy,
    SearchProvider,
    SerpApiSearchClient,
)
from .token_utils import TokenCounter

logger = logging.getLogger(__name__)


@dataclass
class AppContainer:
    settings: AppSettings
    store: SessionStore
    orchestrator: AgentOrchestrator
    completion_client: Optional[OpenAICompletionClient] = None

    async def aclose(self) -> None:
        if self.completion_client is not None:
            await self.completion_client.aclose()


def build_container(
    settings: AppSettings,
    *,
    store: Optional[SessionStore] = None,
    completion: Optional[CompletionProvider] = None,
    search: Optional[SearchProvider] = None,
    count: Optional[TokenCounter] = None,
) -> AppContainer:
    """Wire the store, provider clients and orchestrator from settings.

    Injected providers are still wrapped with the retry/timeout layer, so
    tests exercise the same boundary as production.
    """
    policy = RetryPolicy(
        max_retries=settings.provider_max_retries,
        base_delay=settings.provider_backoff_base,
        max_delay=settings.provider_backoff_max,
    )
    owned_client: Optional[OpenAICompletionClient] = None
    if completion is None:
        owned_client = OpenAICompletionClient(
            base_url=settings.llm_endpoint,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            top_p=settings.llm_top_p,
        )
        completion = owned_client
    if search is None:
        search = SerpApiSearchClient(
            settings.search_serp_api_key,
            endpoint=settings.search_endpoint,
            timeout=settings.provider_call_timeout,
        )

    store = store or SessionStore(settings.doc_store_path)
    orchestrator = AgentOrchestrator(
        settings,
        store,
        ResilientCompletionClient(completion, policy=policy, timeout=settings.provider_call_timeout),
        ResilientSearchClient(search, policy=policy, timeout=settings.provider_call_timeout),
        locks=SessionLockRegistry(
            mode=settings.agent_lock_mode,
            wait_timeout=settings.agent_lock_wait_timeout,
        ),
        count=count,
    )
    return AppContainer(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        completion_client=owned_client,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: Optional[AppContainer] = getattr(app.state, "container", None)
    if container is None:
        container = build_container(load_settings())
        app.state.container = container
    await container.store.init()
    logger.info(
        "Chat agent ready (model=%s, store=%s, lock_mode=%s)",
        container.settings.llm_model,
        container.settings.doc_store_path,
        container.settings.agent_lock_mode,
    )
    try:
        yield
    finally:
        await container.aclose()


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


def get_store(request: Request) -> SessionStore:
    return get_container(request).store


def get_orchestrator(request: Request) -> AgentOrchestrator:
    return get_container(request).orchestrator


def get_settings(request: Request) -> AppSettings:
    return get_container(request).settings
