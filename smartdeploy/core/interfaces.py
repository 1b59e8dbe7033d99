"""Collaborator interfaces consumed by the deployment engine."""

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from smartdeploy.models.deployment import DeploymentRecord, DeploymentRequest
from smartdeploy.models.project import ProjectProfile
from smartdeploy.models.steps import HistoryEntry


@dataclass
class CheckoutResult:
    path: Path
    commit_sha: str | None = None
    commit_message: str | None = None


@dataclass
class DnsResult:
    success: bool
    resolved_url: str | None = None
    error: str | None = None


class RepositoryCloner(Protocol):
    async def clone(self, request: DeploymentRequest) -> CheckoutResult: ...

    async def cleanup(self, checkout: CheckoutResult) -> None: ...


class Introspector(Protocol):
    async def inspect(self, path: Path, request: DeploymentRequest) -> ProjectProfile: ...


class DeploymentStore(Protocol):
    async def get_deployment(self, deployment_id: str) -> DeploymentRecord | None: ...

    async def upsert_deployment(self, record: DeploymentRecord) -> DeploymentRecord: ...

    async def append_history(self, deployment_id: str, entry: HistoryEntry) -> None: ...

    async def list_for_user(self, user_id: str) -> list[DeploymentRecord]: ...

    async def get_history(self, deployment_id: str) -> list[HistoryEntry]: ...

    async def delete_deployment(self, deployment_id: str) -> bool: ...


class DnsRegistrar(Protocol):
    @property
    def configured(self) -> bool: ...

    def hostname_for(self, service_name: str) -> str | None: ...

    async def upsert_host_record(self, hostname: str, target: str) -> DnsResult: ...

    async def delete_host_record(self, hostname: str) -> DnsResult: ...


class HealthProber(Protocol):
    async def probe(self, host: str, ports: list[int]) -> int | None:
        """Return the first port answering 2xx/3xx, or None."""
        ...
