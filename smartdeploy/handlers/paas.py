"""PaaS target: Elastic Beanstalk application bundles."""

import tempfile
from pathlib import Path

import yaml

from smartdeploy.config import settings
from smartdeploy.core.exceptions import ConvergenceTimeoutError, SmartDeployError
from smartdeploy.core.selector import normalize_language
from smartdeploy.handlers.archive import create_archive
from smartdeploy.handlers.base import BaseHandler, DeployContext
from smartdeploy.models.deployment import (
    DeploymentOutcome,
    DeploymentRecord,
    PaasRefs,
    TargetPlatform,
    TeardownStep,
)
from smartdeploy.models.steps import StepId
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.provisioning.beanstalk import (
    ApplicationResource,
    ApplicationSpec,
    BeanstalkOperations,
)
from smartdeploy.provisioning.naming import resource_name, slugify
from smartdeploy.provisioning.storage import BucketResource, BucketSpec, upload_file

ENVIRONMENT_NAMESPACE = "aws:elasticbeanstalk:application:environment"
DEFAULT_PORT = 8080


def procfile(run_cmd: str) -> str:
    return f"web: {run_cmd}\n"


def ebextensions_config(port: int) -> str:
    return yaml.safe_dump(
        {
            "option_settings": [
                {"namespace": ENVIRONMENT_NAMESPACE, "option_name": "PORT", "value": str(port)},
            ]
        },
        sort_keys=False,
    )


def option_settings(port: int, env: dict[str, str]) -> list[dict[str, str]]:
    options = [
        {
            "Namespace": "aws:autoscaling:launchconfiguration",
            "OptionName": "IamInstanceProfile",
            "Value": settings.eb_instance_profile,
        },
        {
            "Namespace": "aws:elasticbeanstalk:environment",
            "OptionName": "ServiceRole",
            "Value": settings.eb_service_role,
        },
        {"Namespace": ENVIRONMENT_NAMESPACE, "OptionName": "PORT", "Value": str(port)},
    ]
    options.extend(
        {"Namespace": ENVIRONMENT_NAMESPACE, "OptionName": key, "Value": value}
        for key, value in sorted(env.items())
        if key != "PORT"
    )
    return options


class PaasHandler(BaseHandler):
    """Uploads the application as a versioned bundle and updates its environment."""

    def __init__(self, aws: AwsClient, prober=None):
        super().__init__(aws, prober)
        self.beanstalk = BeanstalkOperations(aws)

    @property
    def target(self) -> TargetPlatform:
        return TargetPlatform.PAAS

    async def deploy(self, context: DeployContext) -> DeploymentOutcome:
        application = slugify(context.service_name)
        environment = resource_name(context.service_name, "env", max_length=40)
        port = context.profile.port or DEFAULT_PORT

        await context.begin(StepId.SETUP)
        account_id = await self.aws.account_id()
        bucket = f"smartdeploy-eb-{account_id}"
        await BucketResource(self.aws).ensure(bucket, BucketSpec(region=self.aws.region))
        await ApplicationResource(self.aws).ensure(application, ApplicationSpec())
        stack = await self.beanstalk.solution_stack(normalize_language(context.profile.language))
        await context.log(StepId.SETUP, f"Application {application} on {stack}")
        await context.channel.succeed(StepId.SETUP)

        label = f"v{context.record.revision + 1}"
        if context.commit_sha:
            label = f"{label}-{context.commit_sha[:7]}"
        refs = PaasRefs(
            application_name=application,
            environment_name=environment,
            bucket=bucket,
            version_label=label,
        )
        try:
            return await self._rollout(context, refs, stack, port)
        except SmartDeployError as e:
            kept = context.record.refs.paas or refs
            return await self._failed(context, e, context.record.refs.model_copy(update={"paas": kept}))

    async def _rollout(
        self, context: DeployContext, refs: PaasRefs, stack: str, port: int
    ) -> DeploymentOutcome:
        application = refs.application_name
        environment = refs.environment_name
        label = refs.version_label

        await context.begin(StepId.BUILD)
        extra = {".ebextensions/smartdeploy.config": ebextensions_config(port)}
        if context.request.run_cmd:
            extra["Procfile"] = procfile(context.request.run_cmd)
        key = f"{application}/{label}.zip"
        with tempfile.TemporaryDirectory(prefix="smartdeploy-") as scratch:
            bundle = Path(scratch) / "bundle.zip"
            entries = await create_archive(
                context.source_dir / (context.request.work_dir or "."), bundle, extra
            )
            await upload_file(self.aws, refs.bucket, key, bundle)
        await self.beanstalk.create_version(application, label, refs.bucket, key)
        await context.log(StepId.BUILD, f"Uploaded version {label} ({entries} files)")
        await context.channel.succeed(StepId.BUILD)

        await context.begin(StepId.DEPLOY)
        await self.beanstalk.deploy_environment(
            application, environment, label, stack, option_settings(port, context.env)
        )
        await context.log(StepId.DEPLOY, f"Environment {environment} rolling to {label}")
        await context.channel.succeed(StepId.DEPLOY)

        await context.begin(StepId.VERIFY)
        try:
            cname = await self.beanstalk.wait_ready(
                application,
                environment,
                settings.beanstalk_interval,
                settings.beanstalk_attempts,
                context.progress(StepId.VERIFY),
            )
        except ConvergenceTimeoutError:
            await context.log(StepId.VERIFY, "Environment still updating; check back later")
            current = await self.beanstalk.describe_environment(application, environment)
            refs.cname = (current or {}).get("CNAME")
            return DeploymentOutcome(
                success=True,
                in_progress=True,
                url=f"http://{refs.cname}" if refs.cname else None,
                refs=context.record.refs.model_copy(update={"paas": refs}),
                dns_target=refs.cname,
                message=f"Environment {environment} is still updating",
            )

        refs.cname = cname
        await context.channel.succeed(StepId.VERIFY)
        return DeploymentOutcome(
            success=True,
            url=f"http://{cname}" if cname else None,
            refs=context.record.refs.model_copy(update={"paas": refs}),
            dns_target=cname,
        )

    async def teardown(self, record: DeploymentRecord) -> list[TeardownStep]:
        paas = record.refs.paas
        if paas is None:
            return []
        return [
            await self._teardown_step(
                "terminate environment",
                self.beanstalk.terminate_environment(paas.environment_name),
            )
        ]
