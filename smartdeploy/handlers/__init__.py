"""Deployment target handlers."""

from smartdeploy.handlers.base import BaseHandler, DeployContext, DeploymentCancelledError
from smartdeploy.handlers.registry import HandlerRegistry, get_handler_registry

__all__ = [
    "BaseHandler",
    "DeployContext",
    "DeploymentCancelledError",
    "HandlerRegistry",
    "get_handler_registry",
]
