"""Handler registry keyed by target platform."""

from functools import lru_cache

from smartdeploy.core.exceptions import ConfigurationError
from smartdeploy.core.interfaces import HealthProber
from smartdeploy.handlers.base import BaseHandler
from smartdeploy.handlers.container import ContainerHandler
from smartdeploy.handlers.paas import PaasHandler
from smartdeploy.handlers.static_site import StaticSiteHandler
from smartdeploy.handlers.vm import VirtualMachineHandler
from smartdeploy.models.deployment import TargetPlatform
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)


class HandlerRegistry:
    """Maps each target platform to the handler class that deploys to it."""

    def __init__(self):
        self._handlers: dict[TargetPlatform, type[BaseHandler]] = {}

    def register(self, target: TargetPlatform, handler_class: type[BaseHandler]) -> None:
        if target in self._handlers:
            logger.warning("handler.overwritten", target=target.value)
        self._handlers[target] = handler_class

    def get(self, target: TargetPlatform) -> type[BaseHandler] | None:
        return self._handlers.get(target)

    def create(
        self, target: TargetPlatform, aws: AwsClient, prober: HealthProber | None = None
    ) -> BaseHandler:
        """Instantiate the handler for ``target``.

        Raises:
            ConfigurationError: If no handler is registered for the target
        """
        handler_class = self.get(target)
        if handler_class is None:
            raise ConfigurationError(f"No handler registered for target '{target.value}'")
        return handler_class(aws, prober)

    def targets(self) -> list[TargetPlatform]:
        return list(self._handlers.keys())


@lru_cache
def get_handler_registry() -> HandlerRegistry:
    """Get the handler registry singleton."""
    registry = HandlerRegistry()
    registry.register(TargetPlatform.STATIC_SITE, StaticSiteHandler)
    registry.register(TargetPlatform.PAAS, PaasHandler)
    registry.register(TargetPlatform.CONTAINER_PLATFORM, ContainerHandler)
    registry.register(TargetPlatform.VIRTUAL_MACHINE, VirtualMachineHandler)
    return registry
