from fastapi import APIRouter

from delivery_hub.api.v1.endpoints.health import router as health_router
from delivery_hub.api.v1.endpoints.coverage_admin import router as coverage_admin_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(coverage_admin_router, tags=["coverage"])
