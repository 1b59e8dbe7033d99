"""Service health and deployment capabilities."""

from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from smartdeploy import __version__
from smartdeploy.config import settings
from smartdeploy.models.deployment import TargetPlatform

router = APIRouter()


class Capabilities(BaseModel):
    """Optional integrations that are switched on by configuration."""

    targets: list[TargetPlatform]
    static_credentials: bool
    shared_load_balancer: bool
    host_routing_domain: str | None
    custom_hostnames: bool


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    environment: str
    region: str
    capabilities: Capabilities
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Report liveness and which deployment features are configured.

    Credentials themselves are never echoed; ``static_credentials`` is false
    when boto3 falls back to its default provider chain.
    """
    return HealthResponse(
        version=__version__,
        environment=settings.app_env,
        region=settings.aws_region,
        capabilities=Capabilities(
            targets=list(TargetPlatform),
            static_credentials=bool(settings.aws_access_key_id),
            shared_load_balancer=settings.shared_alb_enabled,
            host_routing_domain=settings.deployment_domain,
            custom_hostnames=settings.dns_enabled,
        ),
        timestamp=datetime.now(timezone.utc),
    )
