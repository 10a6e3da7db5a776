"""Aggregate API v1 router: mounts all sub-routers."""
from fastapi import APIRouter
from skillbase.api.v1 import projects, batch, rows, reviews

router = APIRouter(prefix="/api/v1")

router.include_router(projects.router, prefix="/projects", tags=["Projects"])
router.include_router(batch.router, tags=["Bulk Processing"])
router.include_router(rows.router, tags=["Rows"])
router.include_router(reviews.router, prefix="/reviews", tags=["Reviews"])
