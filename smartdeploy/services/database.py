"""Managed relational database provisioning."""

import secrets
import string
from dataclasses import dataclass

from smartdeploy.config import settings
from smartdeploy.core.polling import ProgressCallback
from smartdeploy.models.deployment import DatabaseRefs
from smartdeploy.models.project import DatabaseSpec
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.provisioning.network import (
    IngressRule,
    SecurityGroupResource,
    SecurityGroupSpec,
    discover_default_network,
)
from smartdeploy.provisioning.rds import (
    DatabaseOperations,
    DbInstanceResource,
    DbInstanceSpec,
    DbSubnetGroupResource,
    DbSubnetGroupSpec,
)
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EngineProfile:
    rds_engine: str
    version: str
    port: int
    supports_db_name: bool = True


ENGINES: dict[str, EngineProfile] = {
    "postgres": EngineProfile("postgres", "15", 5432),
    "mysql": EngineProfile("mysql", "8.0", 3306),
    "mssql": EngineProfile("sqlserver-ex", "15.00", 1433, supports_db_name=False),
}


@dataclass
class DatabaseConnection:
    endpoint: str
    port: int
    connection_string: str
    refs: DatabaseRefs


def generate_password(length: int = 16) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def connection_string(engine: str, host: str, port: int, username: str, password: str, db_name: str) -> str:
    if engine == "postgres":
        return f"postgresql://{username}:{password}@{host}:{port}/{db_name}"
    if engine == "mysql":
        return f"mysql://{username}:{password}@{host}:{port}/{db_name}"
    return (
        f"Server={host},{port};Database={db_name};User Id={username};"
        f"Password={password};TrustServerCertificate=True;"
    )


def database_environment(dsn: str) -> dict[str, str]:
    """Environment variables through which applications read the DSN."""
    return {
        "DATABASE_URL": dsn,
        "DB_CONNECTION_STRING": dsn,
        "ConnectionStrings__DefaultConnection": dsn,
    }


class DatabaseProvisioner:
    """Creates (or finds) one RDS instance and returns its connection string."""

    def __init__(
        self,
        aws: AwsClient,
        interval: float | None = None,
        max_attempts: int | None = None,
    ):
        self.aws = aws
        self.interval = settings.database_interval if interval is None else interval
        self.max_attempts = max_attempts or settings.database_attempts
        self.operations = DatabaseOperations(aws)

    async def provision(
        self,
        spec: DatabaseSpec,
        existing: DatabaseRefs | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DatabaseConnection:
        """Ensure the instance exists and is available.

        Raises:
            ConvergenceTimeoutError: If the instance never becomes available
        """
        engine = ENGINES[spec.engine]
        identifier = spec.instance_identifier
        network = await discover_default_network(self.aws)

        group = await SecurityGroupResource(self.aws).ensure(
            f"{identifier}-sg",
            SecurityGroupSpec(
                vpc_id=network.vpc_id,
                description=f"SmartDeploy database {identifier}",
                ingress=[IngressRule(port=engine.port)],
            ),
        )
        subnet_group = await DbSubnetGroupResource(self.aws).ensure(
            f"{identifier}-subnet", DbSubnetGroupSpec(subnet_ids=network.subnet_ids)
        )

        known_password = spec.password
        if known_password is None and existing and existing.instance_identifier == identifier:
            known_password = existing.password

        resource = DbInstanceResource(self.aws)
        current = await resource.lookup(identifier)
        password = known_password or generate_password()
        if current is not None and known_password is None:
            # Credential for a pre-existing instance is unknown; rotate it
            logger.warning("database.password_reset", identifier=identifier)
            await self.operations.reset_password(identifier, password)

        db_name = spec.db_name
        await resource.ensure(
            identifier,
            DbInstanceSpec(
                engine=engine.rds_engine,
                engine_version=engine.version,
                instance_class=settings.db_instance_class,
                allocated_storage=settings.db_allocated_storage,
                username=spec.username,
                password=password,
                subnet_group=subnet_group.name,
                security_group_id=group.id,
                port=engine.port,
                db_name=db_name if engine.supports_db_name else None,
            ),
        )

        ready = await self.operations.wait_available(
            identifier, self.interval, self.max_attempts, on_progress
        )
        endpoint = ready.attributes["endpoint"]
        port = ready.attributes.get("port") or engine.port

        logger.info("database.available", identifier=identifier, engine=spec.engine, endpoint=endpoint)
        return DatabaseConnection(
            endpoint=endpoint,
            port=port,
            connection_string=connection_string(
                spec.engine, endpoint, port, spec.username, password, db_name
            ),
            refs=DatabaseRefs(
                instance_identifier=identifier,
                engine=spec.engine,
                endpoint=endpoint,
                port=port,
                db_name=db_name,
                username=spec.username,
                password=password,
                security_group_id=group.id,
            ),
        )

    async def delete(self, identifier: str) -> None:
        """Delete the instance without a final snapshot."""
        await self.operations.delete_instance(identifier)
        logger.info("database.deleted", identifier=identifier)
