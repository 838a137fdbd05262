"""API v1 router."""

from fastapi import APIRouter

from explorable.api.v1.admin import router as admin_router
from explorable.api.v1.projects import router as projects_router

router = APIRouter()

router.include_router(projects_router, prefix="/projects", tags=["projects"])
router.include_router(admin_router)  # /admin prefix is in the router itself
