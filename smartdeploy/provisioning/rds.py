"""RDS subnet groups and database instances."""

from dataclasses import dataclass

from smartdeploy.core.exceptions import CloudOperationError, StepFailedError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.provisioning.aws import AwsClient, is_not_found
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef

FAILED_DB_STATUSES = frozenset({"failed", "incompatible-parameters", "incompatible-network", "deleting"})


@dataclass
class DbSubnetGroupSpec:
    subnet_ids: list[str]


class DbSubnetGroupResource(ProvisionedResource[DbSubnetGroupSpec]):
    kind = "db-subnet-group"

    async def lookup(self, name: str, spec: DbSubnetGroupSpec) -> ResourceRef | None:
        try:
            response = await self.aws.call(
                "rds", "describe_db_subnet_groups", DBSubnetGroupName=name
            )
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        groups = response.get("DBSubnetGroups", [])
        return ResourceRef(self.kind, name, name) if groups else None

    async def create(self, name: str, spec: DbSubnetGroupSpec) -> ResourceRef:
        await self.aws.call(
            "rds",
            "create_db_subnet_group",
            DBSubnetGroupName=name,
            DBSubnetGroupDescription=f"SmartDeploy subnet group {name}",
            SubnetIds=spec.subnet_ids,
        )
        return ResourceRef(self.kind, name, name)


@dataclass
class DbInstanceSpec:
    engine: str
    engine_version: str
    instance_class: str
    allocated_storage: int
    username: str
    password: str
    subnet_group: str
    security_group_id: str
    port: int
    db_name: str | None = None


def _instance_ref(name: str, instance: dict) -> ResourceRef:
    endpoint = instance.get("Endpoint") or {}
    return ResourceRef(
        "db-instance",
        name,
        instance.get("DBInstanceArn", name),
        {
            "status": instance.get("DBInstanceStatus"),
            "endpoint": endpoint.get("Address"),
            "port": endpoint.get("Port"),
            "engine": instance.get("Engine"),
        },
    )


class DbInstanceResource(ProvisionedResource[DbInstanceSpec]):
    kind = "db-instance"

    async def lookup(self, name: str, spec: DbInstanceSpec | None = None) -> ResourceRef | None:
        try:
            response = await self.aws.call(
                "rds", "describe_db_instances", DBInstanceIdentifier=name
            )
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        instances = response.get("DBInstances", [])
        return _instance_ref(name, instances[0]) if instances else None

    async def create(self, name: str, spec: DbInstanceSpec) -> ResourceRef:
        params: dict = {
            "DBInstanceIdentifier": name,
            "Engine": spec.engine,
            "EngineVersion": spec.engine_version,
            "DBInstanceClass": spec.instance_class,
            "AllocatedStorage": spec.allocated_storage,
            "MasterUsername": spec.username,
            "MasterUserPassword": spec.password,
            "DBSubnetGroupName": spec.subnet_group,
            "VpcSecurityGroupIds": [spec.security_group_id],
            "Port": spec.port,
            "PubliclyAccessible": True,
            "BackupRetentionPeriod": 0,
            "StorageType": "gp2",
            "Tags": [{"Key": "ManagedBy", "Value": "smartdeploy"}],
        }
        if spec.db_name:
            params["DBName"] = spec.db_name
        if spec.engine.startswith("sqlserver"):
            params["LicenseModel"] = "license-included"
        response = await self.aws.call("rds", "create_db_instance", **params)
        return _instance_ref(name, response["DBInstance"])


class DatabaseOperations:
    def __init__(self, aws: AwsClient):
        self.aws = aws

    async def wait_available(
        self,
        identifier: str,
        interval: float,
        max_attempts: int,
        on_progress: ProgressCallback | None = None,
    ) -> ResourceRef:
        resource = DbInstanceResource(self.aws)

        async def attempt() -> PollResult[ResourceRef]:
            ref = await resource.lookup(identifier)
            if ref is None:
                return PollResult.pending(f"Database {identifier} not visible yet")
            status = ref.attributes.get("status")
            if status in FAILED_DB_STATUSES:
                raise StepFailedError("database", f"Database {identifier} is {status}")
            if status == "available" and ref.attributes.get("endpoint"):
                return PollResult.ready(ref)
            return PollResult.pending(f"Database {identifier} is {status}")

        ref = await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"database {identifier}",
            ),
            on_progress,
        )
        if ref is None:
            raise StepFailedError("database", f"Database {identifier} reported no endpoint")
        return ref

    async def reset_password(self, identifier: str, password: str) -> None:
        await self.aws.call(
            "rds",
            "modify_db_instance",
            DBInstanceIdentifier=identifier,
            MasterUserPassword=password,
            ApplyImmediately=True,
        )

    async def delete_instance(self, identifier: str) -> None:
        try:
            await self.aws.call(
                "rds",
                "delete_db_instance",
                DBInstanceIdentifier=identifier,
                SkipFinalSnapshot=True,
                DeleteAutomatedBackups=True,
            )
        except CloudOperationError as e:
            if not is_not_found(e):
                raise
