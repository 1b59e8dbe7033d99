"""Dependency injection for API endpoints."""

from typing import Annotated

from fastapi import Depends, HTTPException, status

from smartdeploy.core.lifecycle import DeploymentController, get_controller
from smartdeploy.core.store import InMemoryDeploymentStore, get_deployment_store
from smartdeploy.models.deployment import DeploymentRecord


async def get_store() -> InMemoryDeploymentStore:
    """Get the deployment store."""
    return get_deployment_store()


def get_deployment_controller() -> DeploymentController:
    """Get the deployment controller."""
    return get_controller()


async def get_deployment_by_id(
    deployment_id: str,
    store: Annotated[InMemoryDeploymentStore, Depends(get_store)],
) -> DeploymentRecord:
    """Get a deployment by ID or raise 404."""
    record = await store.get_deployment(deployment_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deployment not found: {deployment_id}",
        )
    return record


# Type aliases for cleaner signatures
StoreDep = Annotated[InMemoryDeploymentStore, Depends(get_store)]
ControllerDep = Annotated[DeploymentController, Depends(get_deployment_controller)]
DeploymentDep = Annotated[DeploymentRecord, Depends(get_deployment_by_id)]
