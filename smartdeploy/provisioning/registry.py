"""Container image registry (ECR) repositories."""

from dataclasses import dataclass

from smartdeploy.core.exceptions import CloudOperationError
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef
from smartdeploy.provisioning.aws import is_not_found


@dataclass
class RepositorySpec:
    scan_on_push: bool = False


class RepositoryResource(ProvisionedResource[RepositorySpec]):
    kind = "ecr-repository"

    async def lookup(self, name: str, spec: RepositorySpec) -> ResourceRef | None:
        try:
            response = await self.aws.call("ecr", "describe_repositories", repositoryNames=[name])
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        repos = response.get("repositories", [])
        if not repos:
            return None
        return ResourceRef(self.kind, name, repos[0]["repositoryUri"])

    async def create(self, name: str, spec: RepositorySpec) -> ResourceRef:
        response = await self.aws.call(
            "ecr",
            "create_repository",
            repositoryName=name,
            imageScanningConfiguration={"scanOnPush": spec.scan_on_push},
        )
        return ResourceRef(self.kind, name, response["repository"]["repositoryUri"])


def registry_host(repository_uri: str) -> str:
    return repository_uri.split("/", 1)[0]
