"""Static-site target: local build, Amplify manual deployment."""

import asyncio
import tempfile
from pathlib import Path

from smartdeploy.config import settings
from smartdeploy.core.exceptions import ConvergenceTimeoutError, SmartDeployError, StepFailedError
from smartdeploy.handlers.archive import create_archive
from smartdeploy.handlers.base import BaseHandler, DeployContext
from smartdeploy.models.deployment import (
    DeploymentOutcome,
    DeploymentRecord,
    StaticSiteRefs,
    TargetPlatform,
    TeardownStep,
)
from smartdeploy.models.steps import StepId
from smartdeploy.provisioning.amplify import AmplifyOperations
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.provisioning.naming import slugify
from smartdeploy.utils.process import run_command

OUTPUT_DIRS = ("out", "build", "dist")


def install_command(app_dir: Path, declared: str | None) -> str:
    if declared:
        return declared
    return "npm ci" if (app_dir / "package-lock.json").exists() else "npm install"


def find_output_dir(app_dir: Path, declared: str | None) -> Path | None:
    candidates = [declared] if declared else list(OUTPUT_DIRS)
    for name in candidates:
        path = app_dir / name
        if path.is_dir() and any(path.iterdir()):
            return path
    return None


class StaticSiteHandler(BaseHandler):
    def __init__(self, aws: AwsClient, prober=None):
        super().__init__(aws, prober)
        self.amplify = AmplifyOperations(aws)

    @property
    def target(self) -> TargetPlatform:
        return TargetPlatform.STATIC_SITE

    async def _run(self, context: DeployContext, command: str, cwd: Path) -> None:
        await context.log(StepId.BUILD, f"$ {command}")
        try:
            result = await run_command(
                command, cwd=cwd, env=context.env, timeout=settings.build_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise StepFailedError("build", f"'{command}' timed out") from e
        for line in result.stdout.splitlines()[-20:]:
            if line.strip():
                await context.log(StepId.BUILD, line)
        if not result.ok:
            raise StepFailedError("build", f"'{command}' exited {result.returncode}: {result.tail()}")

    async def deploy(self, context: DeployContext) -> DeploymentOutcome:
        request = context.request
        app_dir = context.source_dir / (request.work_dir or ".")
        branch = request.branch or "main"

        await context.begin(StepId.SETUP)
        app = await self.amplify.ensure_app(slugify(context.service_name))
        await self.amplify.ensure_branch(app["appId"], branch)
        refs = StaticSiteRefs(app_id=app["appId"], branch=branch, default_domain=app.get("defaultDomain"))
        await context.log(StepId.SETUP, f"Amplify app {refs.app_id} branch {branch}")
        await context.channel.succeed(StepId.SETUP)

        try:
            return await self._rollout(context, app_dir, branch, refs)
        except SmartDeployError as e:
            return await self._failed(
                context, e, context.record.refs.model_copy(update={"static_site": refs})
            )

    async def _rollout(
        self, context: DeployContext, app_dir: Path, branch: str, refs: StaticSiteRefs
    ) -> DeploymentOutcome:
        request = context.request
        await context.begin(StepId.BUILD)
        await self._run(context, install_command(app_dir, request.install_cmd), app_dir)
        if request.build_cmd:
            await self._run(context, request.build_cmd, app_dir)
        output = find_output_dir(app_dir, request.build_output_dir)
        if output is None:
            raise StepFailedError(
                "build", f"No build output found (looked for {request.build_output_dir or ', '.join(OUTPUT_DIRS)})"
            )
        await context.log(StepId.BUILD, f"Build output in {output.relative_to(app_dir)}")
        await context.channel.succeed(StepId.BUILD)

        await context.begin(StepId.DEPLOY)
        with tempfile.TemporaryDirectory(prefix="smartdeploy-") as scratch:
            artifact = Path(scratch) / "site.zip"
            entries = await create_archive(output, artifact, exclude=frozenset())
            job_id = await self.amplify.deploy_zip(refs.app_id, branch, artifact)
        await context.log(StepId.DEPLOY, f"Started Amplify job {job_id} with {entries} files")
        await context.channel.succeed(StepId.DEPLOY)

        host = f"{branch}.{refs.default_domain}" if refs.default_domain else None
        url = f"https://{host}" if host else None
        outcome_refs = context.record.refs.model_copy(update={"static_site": refs})

        await context.begin(StepId.VERIFY)
        try:
            await self.amplify.wait_job(
                refs.app_id,
                branch,
                job_id,
                settings.amplify_interval,
                settings.amplify_attempts,
                context.progress(StepId.VERIFY),
            )
        except ConvergenceTimeoutError:
            await context.log(StepId.VERIFY, f"Job {job_id} still running; check back later")
            return DeploymentOutcome(
                success=True,
                in_progress=True,
                url=url,
                refs=outcome_refs,
                dns_target=host,
                message=f"Amplify job {job_id} is still running",
            )
        await context.channel.succeed(StepId.VERIFY)
        return DeploymentOutcome(success=True, url=url, refs=outcome_refs, dns_target=host)

    async def teardown(self, record: DeploymentRecord) -> list[TeardownStep]:
        site = record.refs.static_site
        if site is None:
            return []
        return [await self._teardown_step("delete amplify app", self.amplify.delete_app(site.app_id))]
