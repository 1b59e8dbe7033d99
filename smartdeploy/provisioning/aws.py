"""Thin async wrapper over boto3.

All AWS control-plane traffic goes through :meth:`AwsClient.call`, which
runs the blocking boto3 call in a worker thread and converts botocore
errors into the SmartDeploy error taxonomy. Throttling and connection
retries are left to botocore's standard retry mode.
"""

import asyncio
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from smartdeploy.config import settings
from smartdeploy.core.exceptions import (
    CloudOperationError,
    ConfigurationError,
    TransientError,
)
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "SlowDown",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
    }
)

ALREADY_EXISTS_CODES = frozenset(
    {
        "AlreadyExists",
        "AlreadyExistsException",
        "EntityAlreadyExists",
        "InvalidGroup.Duplicate",
        "InvalidPermission.Duplicate",
        "ResourceAlreadyExistsException",
        "RepositoryAlreadyExistsException",
        "DuplicateLoadBalancerName",
        "DuplicateTargetGroupName",
        "DuplicateListener",
        "BucketAlreadyOwnedByYou",
        "DBInstanceAlreadyExists",
        "DBSubnetGroupAlreadyExists",
        "ResourceAlreadyExists",
    }
)

NOT_FOUND_CODES = frozenset(
    {
        "NoSuchEntity",
        "NotFound",
        "NoSuchBucket",
        "404",
        "ResourceNotFoundException",
        "RepositoryNotFoundException",
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "ListenerNotFound",
        "RuleNotFound",
        "InvalidGroup.NotFound",
        "InvalidInstanceID.NotFound",
        "DBInstanceNotFound",
        "DBInstanceNotFoundFault",
        "DBSubnetGroupNotFoundFault",
        "ClusterNotFoundException",
        "ServiceNotFoundException",
        "NotFoundException",
    }
)


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "Unknown")


def is_already_exists(exc: CloudOperationError) -> bool:
    return exc.code in ALREADY_EXISTS_CODES or "already exists" in exc.message.lower()


def is_not_found(exc: CloudOperationError) -> bool:
    return exc.code in NOT_FOUND_CODES or "not found" in exc.message.lower()


class AwsClient:
    """Async facade over boto3 clients for one region."""

    def __init__(self, region: str | None = None, session: Any = None, max_attempts: int | None = None):
        self.region = region or settings.aws_region
        self.max_attempts = max_attempts or settings.aws_max_attempts
        self._session = session
        self._clients: dict[str, Any] = {}
        self._account_id: str | None = None

    def client_config(self) -> Config:
        return Config(
            region_name=self.region,
            retries={"max_attempts": self.max_attempts, "mode": "standard"},
            connect_timeout=settings.aws_connect_timeout,
            read_timeout=settings.aws_read_timeout,
        )

    def _client(self, service_name: str) -> Any:
        if service_name not in self._clients:
            if self._session is None:
                self._session = boto3.session.Session(
                    aws_access_key_id=settings.aws_access_key_id,
                    aws_secret_access_key=settings.aws_secret_access_key,
                    region_name=self.region,
                )
            self._clients[service_name] = self._session.client(service_name, config=self.client_config())
        return self._clients[service_name]

    def _invoke(self, service_name: str, operation: str, params: dict[str, Any]) -> dict[str, Any]:
        client = self._client(service_name)
        return getattr(client, operation)(**params)

    async def call(self, service_name: str, operation: str, /, **params: Any) -> dict[str, Any]:
        """Invoke ``service_name.operation(**params)``.

        Operation parameters such as ECS's ``service=`` pass through
        untouched; the first two arguments are positional-only.

        Raises:
            TransientError: Throttling or connectivity outlasted botocore's retries
            CloudOperationError: Any other API error
            ConfigurationError: Credentials are missing
        """
        try:
            return await asyncio.to_thread(self._invoke, service_name, operation, params)
        except ClientError as e:
            code = error_code(e)
            message = e.response.get("Error", {}).get("Message", str(e))
            if code in THROTTLING_CODES:
                logger.warning("aws.call.throttled", service=service_name, operation=operation, code=code)
                raise TransientError(
                    f"{service_name}.{operation} throttled: {message}",
                    {"service": service_name, "operation": operation, "code": code},
                ) from e
            raise CloudOperationError(service_name, operation, code, message) from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            logger.warning("aws.call.unreachable", service=service_name, operation=operation, error=str(e))
            raise TransientError(
                f"{service_name}.{operation} unreachable: {e}",
                {"service": service_name, "operation": operation},
            ) from e
        except NoCredentialsError as e:
            raise ConfigurationError("AWS credentials are not configured") from e

    async def account_id(self) -> str:
        """Caller account id. Also validates credentials."""
        if self._account_id is None:
            identity = await self.call("sts", "get_caller_identity")
            self._account_id = identity["Account"]
        return self._account_id


_clients: dict[str, AwsClient] = {}


def get_aws_client(region: str | None = None) -> AwsClient:
    """Get a shared client for a region."""
    region = region or settings.aws_region
    if region not in _clients:
        _clients[region] = AwsClient(region=region)
    return _clients[region]
