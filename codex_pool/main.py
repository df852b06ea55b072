from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from codex_pool.core.clients.http import close_http_client, init_http_client
from codex_pool.core.config.settings import get_settings
from codex_pool.core.errors import openai_error
from codex_pool.core.utils.request_id import get_request_id, reset_request_id, set_request_id
from codex_pool.dependencies import build_proxy_service
from codex_pool.modules.accounts.credential_store import import_auth_file
from codex_pool.modules.metrics import api as metrics_api
from codex_pool.modules.proxy import api as proxy_api
from codex_pool.modules.status import api as status_api

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await init_http_client()
    try:
        service = build_proxy_service()
        if settings.import_codex_auth:
            await import_auth_file(service.pool, settings.codex_auth_file)
        app.state.proxy_service = service
        logger.info(
            "codex_pool_started accounts=%s strategy=%s",
            len(service.pool),
            service.pool.strategy,
        )
        yield
    finally:
        await close_http_client()


def create_app() -> FastAPI:
    app = FastAPI(title="codex-pool", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def unhandled_error_middleware(request: Request, call_next) -> Response:
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled error request_id=%s path=%s", get_request_id(), request.url.path)
            return JSONResponse(status_code=500, content=openai_error("internal_error", "Unexpected error"))

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        inbound_request_id = request.headers.get("x-request-id") or request.headers.get("request-id")
        request_id = inbound_request_id or str(uuid4())
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers.setdefault("x-request-id", request_id)
        return response

    app.include_router(proxy_api.router)
    app.include_router(status_api.router)
    app.include_router(metrics_api.router)

    return app


app = create_app()
