from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    registry = getattr(request.app.state, "provider_registry", None)
    return {"status": "ok", "providers": registry.ids() if registry else []}
