"""ECS Fargate clusters, task definitions and services."""

from dataclasses import dataclass, field

from smartdeploy.core.exceptions import CloudOperationError, StepFailedError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.provisioning.aws import AwsClient, is_not_found
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef
from smartdeploy.provisioning.identity import RoleResource, RoleSpec
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

TASK_EXECUTION_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"


@dataclass
class ClusterSpec:
    capacity_providers: list[str] = field(default_factory=lambda: ["FARGATE", "FARGATE_SPOT"])


class ClusterResource(ProvisionedResource[ClusterSpec]):
    kind = "ecs-cluster"

    async def lookup(self, name: str, spec: ClusterSpec) -> ResourceRef | None:
        response = await self.aws.call("ecs", "describe_clusters", clusters=[name])
        for cluster in response.get("clusters", []):
            if cluster.get("status") == "ACTIVE":
                return ResourceRef(self.kind, name, cluster["clusterArn"])
        return None

    async def create(self, name: str, spec: ClusterSpec) -> ResourceRef:
        response = await self.aws.call(
            "ecs",
            "create_cluster",
            clusterName=name,
            capacityProviders=spec.capacity_providers,
            defaultCapacityProviderStrategy=[{"capacityProvider": "FARGATE", "weight": 1}],
        )
        return ResourceRef(self.kind, name, response["cluster"]["clusterArn"])


@dataclass
class LogGroupSpec:
    retention_days: int = 14


class LogGroupResource(ProvisionedResource[LogGroupSpec]):
    kind = "log-group"

    async def lookup(self, name: str, spec: LogGroupSpec) -> ResourceRef | None:
        response = await self.aws.call("logs", "describe_log_groups", logGroupNamePrefix=name)
        for group in response.get("logGroups", []):
            if group.get("logGroupName") == name:
                return ResourceRef(self.kind, name, group.get("arn", name))
        return None

    async def create(self, name: str, spec: LogGroupSpec) -> ResourceRef:
        await self.aws.call("logs", "create_log_group", logGroupName=name)
        await self.aws.call(
            "logs", "put_retention_policy", logGroupName=name, retentionInDays=spec.retention_days
        )
        return ResourceRef(self.kind, name, name)


@dataclass
class TaskSpec:
    family: str
    image: str
    port: int
    environment: dict[str, str]
    cpu: str
    memory: str
    execution_role_arn: str
    log_group: str


@dataclass
class ServicePlacement:
    cluster: str
    subnet_ids: list[str]
    security_group_id: str
    desired_count: int = 1
    target_group_arn: str | None = None


class ContainerServiceOperations:
    """Task definitions and service rollouts."""

    def __init__(self, aws: AwsClient):
        self.aws = aws

    async def execution_role_arn(self, role_name: str) -> str:
        role = await RoleResource(self.aws).ensure(
            role_name,
            RoleSpec(trusted_service="ecs-tasks.amazonaws.com", managed_policies=[TASK_EXECUTION_POLICY]),
        )
        return role.id

    async def register_task_definition(self, spec: TaskSpec) -> str:
        await LogGroupResource(self.aws).ensure(spec.log_group, LogGroupSpec())
        response = await self.aws.call(
            "ecs",
            "register_task_definition",
            family=spec.family,
            networkMode="awsvpc",
            requiresCompatibilities=["FARGATE"],
            cpu=spec.cpu,
            memory=spec.memory,
            executionRoleArn=spec.execution_role_arn,
            containerDefinitions=[
                {
                    "name": spec.family,
                    "image": spec.image,
                    "essential": True,
                    "portMappings": [{"containerPort": spec.port, "protocol": "tcp"}],
                    "environment": [
                        {"name": k, "value": v} for k, v in sorted(spec.environment.items())
                    ],
                    "logConfiguration": {
                        "logDriver": "awslogs",
                        "options": {
                            "awslogs-group": spec.log_group,
                            "awslogs-region": self.aws.region,
                            "awslogs-stream-prefix": "ecs",
                        },
                    },
                }
            ],
        )
        return response["taskDefinition"]["taskDefinitionArn"]

    async def describe_service(self, cluster: str, name: str) -> dict | None:
        try:
            response = await self.aws.call("ecs", "describe_services", cluster=cluster, services=[name])
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        for service in response.get("services", []):
            if service.get("status") == "ACTIVE":
                return service
        return None

    async def deploy_service(
        self,
        name: str,
        task_definition_arn: str,
        placement: ServicePlacement,
        container_name: str,
        port: int,
    ) -> str:
        """Create the service, or roll the existing one to a new task definition."""
        existing = await self.describe_service(placement.cluster, name)
        if existing:
            response = await self.aws.call(
                "ecs",
                "update_service",
                cluster=placement.cluster,
                service=name,
                taskDefinition=task_definition_arn,
                desiredCount=placement.desired_count,
                forceNewDeployment=True,
            )
            logger.info("ecs.service.updated", service=name, cluster=placement.cluster)
            return response["service"]["serviceArn"]

        params: dict = {
            "cluster": placement.cluster,
            "serviceName": name,
            "taskDefinition": task_definition_arn,
            "desiredCount": placement.desired_count,
            "launchType": "FARGATE",
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": placement.subnet_ids,
                    "securityGroups": [placement.security_group_id],
                    "assignPublicIp": "ENABLED",
                }
            },
        }
        if placement.target_group_arn:
            params["loadBalancers"] = [
                {
                    "targetGroupArn": placement.target_group_arn,
                    "containerName": container_name,
                    "containerPort": port,
                }
            ]
            params["healthCheckGracePeriodSeconds"] = 60
        response = await self.aws.call("ecs", "create_service", **params)
        logger.info("ecs.service.created", service=name, cluster=placement.cluster)
        return response["service"]["serviceArn"]

    async def wait_running(
        self,
        cluster: str,
        name: str,
        interval: float,
        max_attempts: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Wait until the newest deployment runs its desired task count.

        Tasks of older deployments keep the service-level counts up during
        a rollout, so only the PRIMARY deployment is considered.
        """

        async def attempt() -> PollResult[None]:
            service = await self.describe_service(cluster, name)
            if service is None:
                return PollResult.pending(f"Service {name} not visible yet")
            primary = next(
                (d for d in service.get("deployments", []) if d.get("status") == "PRIMARY"), None
            )
            if primary is None:
                return PollResult.pending(f"Service {name} has no primary deployment yet")
            if primary.get("rolloutState") == "FAILED":
                raise StepFailedError(
                    "deploy",
                    f"Service {name} rollout failed: {primary.get('rolloutStateReason', '')}",
                )
            desired = primary.get("desiredCount", 0)
            running = primary.get("runningCount", 0)
            if desired > 0 and running >= desired:
                return PollResult.ready()
            return PollResult.pending(
                f"Service {name}: {running}/{desired} new tasks running, {primary.get('pendingCount', 0)} pending"
            )

        await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"service {name} to run",
            ),
            on_progress,
        )

    async def delete_service(self, cluster: str, name: str) -> None:
        if await self.describe_service(cluster, name) is None:
            return
        await self.aws.call("ecs", "update_service", cluster=cluster, service=name, desiredCount=0)
        await self.aws.call("ecs", "delete_service", cluster=cluster, service=name, force=True)
        logger.info("ecs.service.deleted", service=name, cluster=cluster)
