"""
API v1 Router Module

Routes are mounted at the root to match the mobile client:

- /auth/exchange, /auth/refresh - Session lifecycle
- /images - Upload and listing
- /metrics - Prometheus scrape target
"""

from fastapi import APIRouter

from brickai.api.v1.auth import router as auth_router
from brickai.api.v1.images import router as images_router
from brickai.api.v1.metrics import router as metrics_router

api_v1_router = APIRouter()

api_v1_router.include_router(auth_router, prefix="/auth", tags=["auth"])
api_v1_router.include_router(images_router, prefix="/images", tags=["images"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
