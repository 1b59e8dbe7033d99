"""Remote image builds with CodeBuild.

The deploying process never runs a container engine: the service source
is zipped, uploaded to S3 and built/pushed by a CodeBuild project.
"""

from dataclasses import dataclass

from smartdeploy.core.exceptions import StepFailedError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef
from smartdeploy.provisioning.identity import RoleResource, RoleSpec
from smartdeploy.provisioning.storage import BucketResource, BucketSpec

FAILED_BUILD_STATUSES = frozenset({"FAILED", "FAULT", "TIMED_OUT", "STOPPED"})

BUILDSPEC = """version: 0.2
phases:
  pre_build:
    commands:
      - aws ecr get-login-password --region $AWS_DEFAULT_REGION | docker login --username AWS --password-stdin $ECR_REGISTRY
  build:
    commands:
      - docker build -f ${DOCKERFILE:-Dockerfile} -t $IMAGE_REPO_NAME:$IMAGE_TAG .
      - docker tag $IMAGE_REPO_NAME:$IMAGE_TAG $ECR_REGISTRY/$IMAGE_REPO_NAME:$IMAGE_TAG
      - docker tag $IMAGE_REPO_NAME:$IMAGE_TAG $ECR_REGISTRY/$IMAGE_REPO_NAME:latest
  post_build:
    commands:
      - docker push $ECR_REGISTRY/$IMAGE_REPO_NAME:$IMAGE_TAG
      - docker push $ECR_REGISTRY/$IMAGE_REPO_NAME:latest
"""


def codebuild_policies(bucket: str) -> dict[str, dict]:
    return {
        "smartdeploy-codebuild-s3": {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": ["s3:GetObject", "s3:GetObjectVersion", "s3:GetBucketLocation"],
                    "Resource": [f"arn:aws:s3:::{bucket}", f"arn:aws:s3:::{bucket}/*"],
                }
            ],
        },
        "smartdeploy-codebuild-logs": {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Action": ["logs:CreateLogGroup", "logs:CreateLogStream", "logs:PutLogEvents"],
                    "Resource": "*",
                }
            ],
        },
    }


@dataclass
class BuildProjectSpec:
    role_arn: str
    image: str = "aws/codebuild/standard:7.0"


class BuildProjectResource(ProvisionedResource[BuildProjectSpec]):
    kind = "codebuild-project"

    async def lookup(self, name: str, spec: BuildProjectSpec) -> ResourceRef | None:
        response = await self.aws.call("codebuild", "batch_get_projects", names=[name])
        projects = response.get("projects", [])
        if not projects:
            return None
        return ResourceRef(self.kind, name, projects[0]["arn"])

    async def create(self, name: str, spec: BuildProjectSpec) -> ResourceRef:
        response = await self.aws.call(
            "codebuild",
            "create_project",
            name=name,
            source={"type": "NO_SOURCE", "buildspec": BUILDSPEC},
            artifacts={"type": "NO_ARTIFACTS"},
            environment={
                "type": "LINUX_CONTAINER",
                "image": spec.image,
                "computeType": "BUILD_GENERAL1_SMALL",
                "privilegedMode": True,
            },
            serviceRole=spec.role_arn,
        )
        return ResourceRef(self.kind, name, response["project"]["arn"])


@dataclass
class BuildEnvironment:
    """Everything a service image build needs."""

    project_name: str
    bucket: str


class RemoteImageBuilder:
    """Ensures the build infrastructure and runs build jobs."""

    def __init__(self, aws: AwsClient, role_name: str, image: str):
        self.aws = aws
        self.role_name = role_name
        self.image = image

    async def ensure(self, project_name: str) -> BuildEnvironment:
        account_id = await self.aws.account_id()
        bucket = f"smart-deploy-codebuild-{account_id}"
        await BucketResource(self.aws).ensure(bucket, BucketSpec(region=self.aws.region))

        role = await RoleResource(self.aws).ensure(
            self.role_name,
            RoleSpec(
                trusted_service="codebuild.amazonaws.com",
                managed_policies=[
                    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryPowerUser",
                    "arn:aws:iam::aws:policy/CloudWatchLogsFullAccess",
                ],
                inline_policies=codebuild_policies(bucket),
            ),
        )
        await BuildProjectResource(self.aws).ensure(
            project_name, BuildProjectSpec(role_arn=role.id, image=self.image)
        )
        return BuildEnvironment(project_name=project_name, bucket=bucket)

    async def build(
        self,
        environment: BuildEnvironment,
        source_key: str,
        registry: str,
        repository: str,
        image_tag: str,
        interval: float,
        max_attempts: int,
        dockerfile: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Start a build from ``s3://bucket/source_key`` and wait for it.

        Returns the build id.

        Raises:
            StepFailedError: If the build ends in a non-success status
            ConvergenceTimeoutError: If it never finishes
        """
        env = [
            {"name": "ECR_REGISTRY", "value": registry, "type": "PLAINTEXT"},
            {"name": "IMAGE_REPO_NAME", "value": repository, "type": "PLAINTEXT"},
            {"name": "IMAGE_TAG", "value": image_tag, "type": "PLAINTEXT"},
            {"name": "AWS_DEFAULT_REGION", "value": self.aws.region, "type": "PLAINTEXT"},
        ]
        if dockerfile:
            env.append({"name": "DOCKERFILE", "value": dockerfile, "type": "PLAINTEXT"})

        response = await self.aws.call(
            "codebuild",
            "start_build",
            projectName=environment.project_name,
            sourceTypeOverride="S3",
            sourceLocationOverride=f"{environment.bucket}/{source_key}",
            buildspecOverride=BUILDSPEC,
            environmentVariablesOverride=env,
        )
        build_id = response["build"]["id"]

        async def attempt() -> PollResult[str]:
            builds = await self.aws.call("codebuild", "batch_get_builds", ids=[build_id])
            build = builds["builds"][0]
            status = build.get("buildStatus", "IN_PROGRESS")
            if status == "SUCCEEDED":
                return PollResult.ready(build_id)
            if status in FAILED_BUILD_STATUSES:
                raise StepFailedError(
                    "build",
                    f"CodeBuild {build_id} ended with {status} in phase {build.get('currentPhase')}",
                )
            return PollResult.pending(f"Build {build.get('currentPhase', 'QUEUED').lower()}")

        await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"build {build_id}",
            ),
            on_progress,
        )
        return build_id
