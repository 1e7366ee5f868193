from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from servewrap.config import get_settings
from servewrap.observability.metrics import get_metrics
from servewrap.security import require_debug_access


router = APIRouter(prefix="/debug", tags=["debug"], dependencies=[Depends(require_debug_access)])


@router.get("/varz")
async def varz() -> dict:
    settings = get_settings()
    if not settings.enable_metrics_endpoint:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics().snapshot()
