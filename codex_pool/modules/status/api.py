from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from codex_pool.dependencies import StatusContext, get_status_context
from codex_pool.modules.status.service import render_status

router = APIRouter(prefix="/api", tags=["status"])


@router.get("/status", response_class=PlainTextResponse)
async def status(context: StatusContext = Depends(get_status_context)) -> PlainTextResponse:
    pool = context.pool
    return PlainTextResponse(render_status(pool.accounts, pool.cursor.active_index))
