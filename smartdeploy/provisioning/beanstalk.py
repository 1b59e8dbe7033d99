"""Elastic Beanstalk applications, versions and environments."""

from dataclasses import dataclass

from smartdeploy.core.exceptions import CloudOperationError, ConfigurationError, StepFailedError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.provisioning.aws import AwsClient, is_not_found
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

SOLUTION_STACK_KEYWORDS = {
    "node": "Node.js",
    "python": "Python",
    "java": "Corretto",
    "go": "Go",
    "dotnet": ".NET",
    "php": "PHP",
    "ruby": "Ruby",
}
HEALTHY_COLORS = frozenset({"Green", "Yellow"})


@dataclass
class ApplicationSpec:
    description: str = "Managed by SmartDeploy"


class ApplicationResource(ProvisionedResource[ApplicationSpec]):
    kind = "eb-application"

    async def lookup(self, name: str, spec: ApplicationSpec) -> ResourceRef | None:
        response = await self.aws.call(
            "elasticbeanstalk", "describe_applications", ApplicationNames=[name]
        )
        applications = response.get("Applications", [])
        if not applications:
            return None
        return ResourceRef(self.kind, name, applications[0].get("ApplicationArn", name))

    async def create(self, name: str, spec: ApplicationSpec) -> ResourceRef:
        response = await self.aws.call(
            "elasticbeanstalk",
            "create_application",
            ApplicationName=name,
            Description=spec.description,
        )
        return ResourceRef(
            self.kind, name, response["Application"].get("ApplicationArn", name)
        )


class BeanstalkOperations:
    def __init__(self, aws: AwsClient):
        self.aws = aws

    async def solution_stack(self, language: str) -> str:
        keyword = SOLUTION_STACK_KEYWORDS.get(language)
        if not keyword:
            raise ConfigurationError(f"No Elastic Beanstalk platform for language '{language}'")
        response = await self.aws.call("elasticbeanstalk", "list_available_solution_stacks")
        stacks = [s for s in response.get("SolutionStacks", []) if keyword in s]
        preferred = [s for s in stacks if "Amazon Linux 2023" in s]
        chosen = (preferred or stacks or [None])[0]
        if chosen is None:
            raise ConfigurationError(f"No Elastic Beanstalk solution stack matches {keyword}")
        return chosen

    async def create_version(self, application: str, label: str, bucket: str, key: str) -> None:
        await self.aws.call(
            "elasticbeanstalk",
            "create_application_version",
            ApplicationName=application,
            VersionLabel=label,
            SourceBundle={"S3Bucket": bucket, "S3Key": key},
            Process=True,
        )

    async def describe_environment(self, application: str, environment: str) -> dict | None:
        response = await self.aws.call(
            "elasticbeanstalk",
            "describe_environments",
            ApplicationName=application,
            EnvironmentNames=[environment],
            IncludeDeleted=False,
        )
        for env in response.get("Environments", []):
            if env.get("Status") not in ("Terminated", "Terminating"):
                return env
        return None

    async def deploy_environment(
        self,
        application: str,
        environment: str,
        version_label: str,
        solution_stack: str,
        option_settings: list[dict[str, str]],
    ) -> None:
        """Update the environment to the new version, creating it on first deploy."""
        existing = await self.describe_environment(application, environment)
        if existing:
            await self.aws.call(
                "elasticbeanstalk",
                "update_environment",
                ApplicationName=application,
                EnvironmentName=environment,
                VersionLabel=version_label,
                OptionSettings=option_settings,
            )
            logger.info("beanstalk.environment.updated", environment=environment)
            return

        await self.aws.call(
            "elasticbeanstalk",
            "create_environment",
            ApplicationName=application,
            EnvironmentName=environment,
            SolutionStackName=solution_stack,
            VersionLabel=version_label,
            OptionSettings=option_settings,
        )
        logger.info("beanstalk.environment.created", environment=environment)

    async def wait_ready(
        self,
        application: str,
        environment: str,
        interval: float,
        max_attempts: int,
        on_progress: ProgressCallback | None = None,
    ) -> str | None:
        """Wait for Ready with Green/Yellow health. Returns the CNAME."""

        async def attempt() -> PollResult[str]:
            env = await self.describe_environment(application, environment)
            if env is None:
                return PollResult.pending(f"Environment {environment} not visible yet")
            status, health = env.get("Status"), env.get("Health")
            if status == "Ready" and health in HEALTHY_COLORS:
                return PollResult.ready(env.get("CNAME"))
            if status == "Ready" and health == "Red":
                raise StepFailedError("deploy", f"Environment {environment} health is Red")
            return PollResult.pending(f"Environment {status} ({health})")

        return await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"environment {environment}",
            ),
            on_progress,
        )

    async def terminate_environment(self, environment: str) -> None:
        try:
            await self.aws.call(
                "elasticbeanstalk", "terminate_environment", EnvironmentName=environment
            )
        except CloudOperationError as e:
            if not is_not_found(e):
                raise
