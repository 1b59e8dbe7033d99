"""Main router for API v1."""

from fastapi import APIRouter

from smartdeploy.api.v1 import deployments, health

router = APIRouter(prefix="/v1")

router.include_router(health.router, tags=["health"])
router.include_router(deployments.router, prefix="/deployments", tags=["deployments"])
