"""Deployment data models."""

import re
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from smartdeploy.models.steps import utc_now


class TargetPlatform(str, Enum):
    """Hosting targets, ranked simplest to most capable."""

    STATIC_SITE = "static-site"
    PAAS = "paas"
    CONTAINER_PLATFORM = "container-platform"
    VIRTUAL_MACHINE = "virtual-machine"


TARGET_RANKING: tuple[TargetPlatform, ...] = (
    TargetPlatform.STATIC_SITE,
    TargetPlatform.PAAS,
    TargetPlatform.CONTAINER_PLATFORM,
    TargetPlatform.VIRTUAL_MACHINE,
)


class DeploymentStatus(str, Enum):
    """Lifecycle status of a deployment record."""

    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class DeploymentRequest(BaseModel):
    """Input for one deployment attempt."""

    model_config = ConfigDict(frozen=True)

    repo_url: str = Field(..., min_length=1)
    branch: str = "main"
    commit_sha: str | None = None

    install_cmd: str | None = None
    build_cmd: str | None = None
    run_cmd: str | None = None
    work_dir: str | None = None
    build_output_dir: str | None = None

    env_vars: dict[str, str] = Field(default_factory=dict)
    region: str | None = None
    target: TargetPlatform | None = None
    service_name: str | None = None

    @property
    def repo_name(self) -> str:
        """Repository name, lowercased and safe for resource names."""
        name = self.repo_url.rstrip("/").split("/")[-1]
        if name.endswith(".git"):
            name = name[:-4]
        name = re.sub(r"[^a-z0-9-]+", "-", name.lower()).strip("-")
        return name or "app"

    def config_snapshot(self) -> dict[str, Any]:
        """Request settings safe to persist. Environment values are omitted."""
        data = self.model_dump(mode="json", exclude={"env_vars"})
        data["env_keys"] = sorted(self.env_vars)
        return data


class TargetDecision(BaseModel):
    """Result of target selection."""

    model_config = ConfigDict(frozen=True)

    target: TargetPlatform
    reason: str
    warnings: tuple[str, ...] = ()


class NetworkRefs(BaseModel):
    vpc_id: str
    subnet_ids: list[str] = Field(default_factory=list)
    security_group_id: str


class RoutingRefs(BaseModel):
    """Load balancer routing owned by one service."""

    load_balancer_arn: str
    load_balancer_dns: str | None = None
    listener_arn: str | None = None
    target_group_arn: str
    rule_arn: str | None = None
    hostname: str | None = None
    shared: bool = True


class VirtualMachineRefs(BaseModel):
    instance_id: str
    public_ip: str | None = None
    port: int | None = None
    network: NetworkRefs | None = None
    routing: RoutingRefs | None = None
    url: str | None = None


class ServiceRefs(BaseModel):
    service_name: str
    ecr_repository_uri: str
    image_tag: str
    task_definition_arn: str | None = None
    port: int
    url: str | None = None
    routing: RoutingRefs | None = None


class ContainerRefs(BaseModel):
    cluster: str
    network: NetworkRefs | None = None
    services: dict[str, ServiceRefs] = Field(default_factory=dict)


class PaasRefs(BaseModel):
    application_name: str
    environment_name: str
    bucket: str
    version_label: str | None = None
    cname: str | None = None


class StaticSiteRefs(BaseModel):
    app_id: str
    branch: str
    default_domain: str | None = None


class DatabaseRefs(BaseModel):
    instance_identifier: str
    engine: str
    endpoint: str | None = None
    port: int | None = None
    db_name: str | None = None
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    security_group_id: str | None = None


class ResourceRefs(BaseModel):
    """Cloud resources owned by one deployment record."""

    vm: VirtualMachineRefs | None = None
    container: ContainerRefs | None = None
    paas: PaasRefs | None = None
    static_site: StaticSiteRefs | None = None
    database: DatabaseRefs | None = None

    def public_dump(self) -> dict[str, Any]:
        """Dump without credentials."""
        return self.model_dump(
            mode="json",
            exclude={"database": {"password"}},
            exclude_none=True,
        )


class DeploymentOutcome(BaseModel):
    """What a target handler reports back."""

    success: bool
    url: str | None = None
    refs: ResourceRefs = Field(default_factory=ResourceRefs)
    message: str | None = None
    # Host that a custom hostname should point at (CNAME target)
    dns_target: str | None = None
    in_progress: bool = False
    warnings: list[str] = Field(default_factory=list)


class DeploymentRecord(BaseModel):
    """Persisted state of one logical deployment."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    owner_id: str
    repo_url: str
    service_name: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    target: TargetPlatform | None = None
    region: str | None = None
    refs: ResourceRefs = Field(default_factory=ResourceRefs)
    revision: int = 0
    urls: list[str] = Field(default_factory=list)
    custom_hostname: str | None = None

    first_deployed_at: datetime | None = None
    last_deployed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def url(self) -> str | None:
        return self.urls[0] if self.urls else None

    @property
    def existing_instance(self) -> VirtualMachineRefs | None:
        return self.refs.vm

    def mark_deployed(self, url: str | None) -> None:
        """Record a successful rollout."""
        now = utc_now()
        self.revision += 1
        self.status = DeploymentStatus.RUNNING
        self.first_deployed_at = self.first_deployed_at or now
        self.last_deployed_at = now
        if url:
            self.urls = [url] + [u for u in self.urls if u != url]


class DeploymentResponse(BaseModel):
    """API representation of a deployment record."""

    id: str
    owner_id: str
    repo_url: str
    service_name: str
    status: DeploymentStatus
    target: TargetPlatform | None
    revision: int
    urls: list[str]
    custom_hostname: str | None
    resources: dict[str, Any]
    first_deployed_at: datetime | None
    last_deployed_at: datetime | None

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> "DeploymentResponse":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            repo_url=record.repo_url,
            service_name=record.service_name,
            status=record.status,
            target=record.target,
            revision=record.revision,
            urls=record.urls,
            custom_hostname=record.custom_hostname,
            resources=record.refs.public_dump(),
            first_deployed_at=record.first_deployed_at,
            last_deployed_at=record.last_deployed_at,
        )


class TeardownStep(BaseModel):
    step: str
    success: bool
    error: str | None = None


class TeardownReport(BaseModel):
    """Result of deleting a deployment."""

    deployment_id: str
    record_deleted: bool
    steps: list[TeardownStep] = Field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        return any(not s.success for s in self.steps)


class ServiceLogEntry(BaseModel):
    timestamp: str | None = None
    message: str


class ServiceLogs(BaseModel):
    """Recent output of a virtual machine's application containers."""

    deployment_id: str
    instance_id: str
    source: str  # "containers" or "console"
    entries: list[ServiceLogEntry] = Field(default_factory=list)
