"""Unit tests for the AWS client wrapper."""

import pytest
from botocore.exceptions import EndpointConnectionError, NoCredentialsError

from smartdeploy.config import settings
from smartdeploy.core.exceptions import CloudOperationError, ConfigurationError, TransientError
from smartdeploy.provisioning.aws import AwsClient, is_already_exists, is_not_found

ACCOUNT_ID = "123456789012"


class RecordingClient(AwsClient):
    def _invoke(self, service_name, operation, params):
        self.seen = (service_name, operation, params)
        return {}


class RecordingSession:
    def __init__(self):
        self.configs = {}

    def client(self, service_name, config=None):
        self.configs[service_name] = config
        return object()


class TestAwsClientCall:
    """Tests for AwsClient.call."""

    @pytest.mark.asyncio
    async def test_throttling_after_botocore_retries_is_transient(self, aws):
        aws.fail("sts", "get_caller_identity", "RequestLimitExceeded")

        with pytest.raises(TransientError) as exc_info:
            await aws.call("sts", "get_caller_identity")

        assert exc_info.value.details["code"] == "RequestLimitExceeded"
        assert aws.count("sts", "get_caller_identity") == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_transient(self, aws):
        aws.raise_on("sts", "get_caller_identity", EndpointConnectionError(endpoint_url="https://sts"))

        with pytest.raises(TransientError):
            await aws.call("sts", "get_caller_identity")

    @pytest.mark.asyncio
    async def test_operation_parameters_named_like_wrapper_arguments(self):
        client = RecordingClient(region="us-west-2")

        await client.call("ecs", "update_service", cluster="shop-api-cluster", service="api", operation="x")

        assert client.seen == (
            "ecs",
            "update_service",
            {"cluster": "shop-api-cluster", "service": "api", "operation": "x"},
        )

    @pytest.mark.asyncio
    async def test_client_error_becomes_cloud_operation_error(self, aws):
        aws.fail("ec2", "describe_vpcs", "UnauthorizedOperation", "not allowed")

        with pytest.raises(CloudOperationError) as exc_info:
            await aws.call("ec2", "describe_vpcs", Filters=[])

        error = exc_info.value
        assert error.code == "UnauthorizedOperation"
        assert error.details == {"service": "ec2", "operation": "describe_vpcs", "code": "UnauthorizedOperation"}
        assert aws.count("ec2", "describe_vpcs") == 1

    @pytest.mark.asyncio
    async def test_missing_credentials_is_configuration_error(self, aws):
        aws.raise_on("sts", "get_caller_identity", NoCredentialsError())

        with pytest.raises(ConfigurationError):
            await aws.account_id()

    @pytest.mark.asyncio
    async def test_account_id_is_cached(self, aws):
        await aws.account_id()
        await aws.account_id()

        assert aws.count("sts", "get_caller_identity") == 1


class TestErrorClassification:
    """Tests for not-found / already-exists helpers."""

    def test_codes(self):
        assert is_not_found(CloudOperationError("iam", "get_role", "NoSuchEntity", "x"))
        assert is_already_exists(CloudOperationError("ec2", "create_security_group", "InvalidGroup.Duplicate", "x"))

    def test_message_fallback(self):
        error = CloudOperationError("elasticbeanstalk", "terminate_environment", "InvalidParameterValue", "Environment x not found")

        assert is_not_found(error)
        assert not is_already_exists(error)


class TestClientConfig:
    """Tests for the botocore client configuration."""

    def test_standard_retry_mode_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "aws_max_attempts", 6)
        session = RecordingSession()
        client = AwsClient(region="eu-west-1", session=session)

        client._client("ecs")
        client._client("ecs")

        config = session.configs["ecs"]
        assert config.retries == {"max_attempts": 6, "mode": "standard"}
        assert config.region_name == "eu-west-1"
        assert list(session.configs) == ["ecs"]
