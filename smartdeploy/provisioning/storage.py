"""Object storage buckets and uploads."""

from dataclasses import dataclass
from pathlib import Path

from smartdeploy.core.exceptions import CloudOperationError, ConflictError
from smartdeploy.provisioning.aws import AwsClient, is_not_found
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef


@dataclass
class BucketSpec:
    region: str


class BucketResource(ProvisionedResource[BucketSpec]):
    kind = "bucket"

    async def lookup(self, name: str, spec: BucketSpec) -> ResourceRef | None:
        try:
            await self.aws.call("s3", "head_bucket", Bucket=name)
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            if e.code in ("403", "Forbidden"):
                raise ConflictError(
                    f"Bucket {name} exists but belongs to another account", {"bucket": name}
                ) from e
            raise
        return ResourceRef(self.kind, name, name)

    async def create(self, name: str, spec: BucketSpec) -> ResourceRef:
        params: dict = {"Bucket": name}
        if spec.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": spec.region}
        await self.aws.call("s3", "create_bucket", **params)
        return ResourceRef(self.kind, name, name)


async def upload_file(aws: AwsClient, bucket: str, key: str, path: Path) -> None:
    await aws.call("s3", "put_object", Bucket=bucket, Key=key, Body=path.read_bytes())

