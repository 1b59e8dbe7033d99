"""Base class for idempotent "ensure" primitives."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from smartdeploy.core.exceptions import CloudOperationError
from smartdeploy.provisioning.aws import AwsClient, is_already_exists
from smartdeploy.utils.logging import get_logger

SpecT = TypeVar("SpecT")


@dataclass(frozen=True)
class ResourceRef:
    """Named, typed handle to a cloud resource."""

    kind: str
    name: str
    id: str
    attributes: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class ProvisionedResource(ABC, Generic[SpecT]):
    """One resource kind that can be looked up by name and created.

    Subclasses implement:
    - kind: Resource kind identifier
    - lookup(): Find the resource by its deterministic name
    - create(): Create it
    - reconcile(): Optionally add attributes requested by ``spec``
    """

    kind: str = "resource"

    def __init__(self, aws: AwsClient):
        self.aws = aws
        self.logger = get_logger(f"provision.{self.kind}")

    @abstractmethod
    async def lookup(self, name: str, spec: SpecT) -> ResourceRef | None:
        """Find an existing resource by name."""
        pass

    @abstractmethod
    async def create(self, name: str, spec: SpecT) -> ResourceRef:
        """Create the resource."""
        pass

    async def reconcile(self, ref: ResourceRef, spec: SpecT) -> ResourceRef:
        """Bring explicitly requested attributes in line. Default: no-op."""
        return ref

    async def ensure(self, name: str, spec: SpecT) -> ResourceRef:
        """Return the named resource, creating it only if it is absent.

        An "already exists" error from create (a concurrent deployment won
        the race) is treated as success and resolved by a second lookup.
        """
        ref = await self.lookup(name, spec)
        if ref is not None:
            self.logger.debug("provision.found", kind=self.kind, name=name, id=ref.id)
            return await self.reconcile(ref, spec)

        try:
            ref = await self.create(name, spec)
        except CloudOperationError as e:
            if not is_already_exists(e):
                raise
            ref = await self.lookup(name, spec)
            if ref is None:
                raise
            return await self.reconcile(ref, spec)

        self.logger.info("provision.created", kind=self.kind, name=name, id=ref.id)
        return ref
