"""AWS Amplify apps, branches and manual zip deployments."""

from pathlib import Path

import httpx

from smartdeploy.core.exceptions import CloudOperationError, StepFailedError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.provisioning.aws import AwsClient, is_not_found
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

FAILED_JOB_STATUSES = frozenset({"FAILED", "CANCELLED"})


class AmplifyOperations:
    def __init__(
        self,
        aws: AwsClient,
        upload_timeout: float = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.aws = aws
        self.upload_timeout = upload_timeout
        self.transport = transport

    async def find_app(self, name: str) -> dict | None:
        token: str | None = None
        while True:
            params: dict = {"maxResults": 100}
            if token:
                params["nextToken"] = token
            response = await self.aws.call("amplify", "list_apps", **params)
            for app in response.get("apps", []):
                if app.get("name") == name:
                    return app
            token = response.get("nextToken")
            if not token:
                return None

    async def ensure_app(self, name: str) -> dict:
        """App by name, created on first use."""
        app = await self.find_app(name)
        if app:
            return app
        response = await self.aws.call("amplify", "create_app", name=name, platform="WEB")
        logger.info("amplify.app.created", name=name, app_id=response["app"]["appId"])
        return response["app"]

    async def ensure_branch(self, app_id: str, branch: str) -> None:
        try:
            await self.aws.call("amplify", "get_branch", appId=app_id, branchName=branch)
            return
        except CloudOperationError as e:
            if not is_not_found(e):
                raise
        await self.aws.call(
            "amplify", "create_branch", appId=app_id, branchName=branch, stage="PRODUCTION"
        )

    async def deploy_zip(self, app_id: str, branch: str, archive: Path) -> str:
        """Upload a zip of static assets and start the deployment. Returns the job id."""
        deployment = await self.aws.call(
            "amplify", "create_deployment", appId=app_id, branchName=branch
        )
        async with httpx.AsyncClient(timeout=self.upload_timeout, transport=self.transport) as client:
            response = await client.put(
                deployment["zipUploadUrl"],
                content=archive.read_bytes(),
                headers={"Content-Type": "application/zip"},
            )
        if response.status_code >= 300:
            raise StepFailedError("deploy", f"Artifact upload failed with HTTP {response.status_code}")

        await self.aws.call(
            "amplify",
            "start_deployment",
            appId=app_id,
            branchName=branch,
            jobId=deployment["jobId"],
        )
        return deployment["jobId"]

    async def wait_job(
        self,
        app_id: str,
        branch: str,
        job_id: str,
        interval: float,
        max_attempts: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Wait for SUCCEED.

        Raises:
            StepFailedError: If the job failed or was cancelled
            ConvergenceTimeoutError: If it is still running after the budget
        """

        async def attempt() -> PollResult[None]:
            response = await self.aws.call(
                "amplify", "get_job", appId=app_id, branchName=branch, jobId=job_id
            )
            status = response["job"]["summary"]["status"]
            if status == "SUCCEED":
                return PollResult.ready()
            if status in FAILED_JOB_STATUSES:
                raise StepFailedError("deploy", f"Amplify job {job_id} {status.lower()}")
            return PollResult.pending(f"Amplify job {status.lower()}")

        await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"Amplify job {job_id}",
            ),
            on_progress,
        )

    async def delete_app(self, app_id: str) -> None:
        try:
            await self.aws.call("amplify", "delete_app", appId=app_id)
        except CloudOperationError as e:
            if not is_not_found(e):
                raise
