"""Core functionality for SmartDeploy."""

from smartdeploy.core.exceptions import (
    ConfigurationError,
    ConflictError,
    ConvergenceTimeoutError,
    DeploymentNotFoundError,
    SmartDeployError,
    StepFailedError,
    TransientError,
)
from smartdeploy.core.events import Event, ProgressChannel
from smartdeploy.core.polling import Poller, PollResult, poll_until
from smartdeploy.core.store import InMemoryDeploymentStore, get_deployment_store

__all__ = [
    "ConfigurationError",
    "ConflictError",
    "ConvergenceTimeoutError",
    "DeploymentNotFoundError",
    "SmartDeployError",
    "StepFailedError",
    "TransientError",
    "Event",
    "ProgressChannel",
    "Poller",
    "PollResult",
    "poll_until",
    "InMemoryDeploymentStore",
    "get_deployment_store",
]
