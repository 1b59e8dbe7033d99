"""Data models for SmartDeploy."""

from smartdeploy.models.deployment import (
    ContainerRefs,
    DatabaseRefs,
    DeploymentOutcome,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentResponse,
    DeploymentStatus,
    NetworkRefs,
    PaasRefs,
    ResourceRefs,
    RoutingRefs,
    ServiceRefs,
    StaticSiteRefs,
    TargetDecision,
    TargetPlatform,
    TeardownReport,
    TeardownStep,
    VirtualMachineRefs,
)
from smartdeploy.models.project import DatabaseSpec, ProjectProfile, ServiceDescriptor
from smartdeploy.models.steps import DeployStep, HistoryEntry, StepId, StepStatus

__all__ = [
    # Deployment models
    "DeploymentRequest",
    "DeploymentRecord",
    "DeploymentResponse",
    "DeploymentStatus",
    "DeploymentOutcome",
    "TargetDecision",
    "TargetPlatform",
    "TeardownReport",
    "TeardownStep",
    # Resource references
    "ResourceRefs",
    "NetworkRefs",
    "RoutingRefs",
    "VirtualMachineRefs",
    "ContainerRefs",
    "ServiceRefs",
    "PaasRefs",
    "StaticSiteRefs",
    "DatabaseRefs",
    # Project models
    "ProjectProfile",
    "ServiceDescriptor",
    "DatabaseSpec",
    # Step models
    "DeployStep",
    "StepId",
    "StepStatus",
    "HistoryEntry",
]
