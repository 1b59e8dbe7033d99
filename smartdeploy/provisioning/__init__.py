"""Idempotent cloud resource provisioning."""

from smartdeploy.provisioning.aws import AwsClient, get_aws_client
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef

__all__ = [
    "AwsClient",
    "get_aws_client",
    "ProvisionedResource",
    "ResourceRef",
]
