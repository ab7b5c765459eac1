from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import AppContainer, lifespan
from .errors import (
    AgentError,
    ConcurrentModification,
    ContextTooLarge,
    ImmutableFieldError,
    MessageNotFound,
    ProviderError,
    SessionInactive,
    SessionNotFound,
    SharedMessageNotFound,
    StoreError,
)
from .routes import chat, sessions, shared, system

logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (SessionNotFound, 404),
    (MessageNotFound, 404),
    (SharedMessageNotFound, 404),
    (ConcurrentModification, 409),
    (ImmutableFieldError, 409),
    (SessionInactive, 409),
    (ContextTooLarge, 413),
    (ProviderError, 502),
    (StoreError, 504),
)


def status_for_error(exc: AgentError) -> int:
    for error_cls, status in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status
    return 500


async def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
    status = status_for_error(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


def create_app(container: Optional[AppContainer] = None) -> FastAPI:
    app = FastAPI(title="Chat Agent Backend", version="0.1.0", lifespan=lifespan)
    app.state.container = container
    if container is not None:
        frontend_origin = container.settings.frontend_origin
    else:
        frontend_origin = f"http://localhost:{os.environ.get('FRONTEND_PORT', '5173')}"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[frontend_origin, "http://localhost", "http://127.0.0.1"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AgentError, agent_error_handler)

    app.include_router(system.router)
    app.include_router(sessions.router)
    app.include_router(chat.router)
    app.include_router(shared.router)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("BACKEND_PORT", "8000"))
    uvicorn.run("chatagent.app:app", host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
