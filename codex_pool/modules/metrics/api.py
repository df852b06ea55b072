from __future__ import annotations

from fastapi import APIRouter, Depends
from starlette.responses import Response

from codex_pool.core.metrics import get_metrics
from codex_pool.dependencies import StatusContext, get_status_context

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics(context: StatusContext = Depends(get_status_context)) -> Response:
    metrics = get_metrics()
    available, unavailable = context.pool.availability_counts()
    metrics.set_pool_accounts(available=available, unavailable=unavailable)
    return Response(
        content=metrics.render(),
        media_type=metrics.content_type,
        headers={"Cache-Control": "no-cache"},
    )
