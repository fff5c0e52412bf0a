from fastapi import APIRouter

from app.api.v1.endpoints.health import router as health_router
from app.api.v1.endpoints.oauth import router as oauth_router


api_v1_router = APIRouter()
api_v1_router.include_router(health_router)
api_v1_router.include_router(oauth_router, prefix="/auth", tags=["oauth"])
