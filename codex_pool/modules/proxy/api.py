from __future__ import annotations

import asyncio
import logging

import aiohttp
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from codex_pool.core.config.settings import get_settings
from codex_pool.core.errors import openai_error
from codex_pool.dependencies import ProxyContext, get_proxy_context
from codex_pool.modules.proxy.types import ProxyRequest, ProxyResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backend-api", tags=["proxy"])

_RESPONSES_DOC = {
    200: {
        "content": {
            "text/event-stream": {"schema": {"type": "string"}},
            "application/json": {"schema": {"type": "object"}},
        }
    }
}


@router.post("/responses", responses=_RESPONSES_DOC)
async def responses(request: Request, context: ProxyContext = Depends(get_proxy_context)) -> Response:
    return await _proxy_responses(request, context)


@router.post("/codex/responses", responses=_RESPONSES_DOC)
async def codex_responses(request: Request, context: ProxyContext = Depends(get_proxy_context)) -> Response:
    return await _proxy_responses(request, context)


async def _proxy_responses(request: Request, context: ProxyContext) -> Response:
    body = await request.body()
    upstream_url = f"{get_settings().upstream_base_url.rstrip('/')}/responses"
    proxy_request = ProxyRequest(url=upstream_url, headers=dict(request.headers), body=body)
    try:
        result = await context.service.dispatch(proxy_request)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.warning("proxy_upstream_unavailable error=%s", exc.__class__.__name__, exc_info=True)
        return JSONResponse(
            status_code=502,
            content=openai_error("upstream_unavailable", f"Upstream request failed: {exc.__class__.__name__}"),
        )
    return _to_starlette(result)


def _to_starlette(result: ProxyResponse) -> Response:
    headers = {key: value for key, value in result.headers.items() if key.lower() != "content-type"}
    if result.stream is not None:
        return StreamingResponse(
            result.stream,
            status_code=result.status_code,
            headers=headers,
            media_type=result.media_type,
        )
    return Response(
        content=result.body,
        status_code=result.status_code,
        headers=headers,
        media_type=result.media_type,
    )
