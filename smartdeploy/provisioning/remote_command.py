"""Remote script execution on instances through SSM."""

import base64
from typing import Awaitable, Callable

from smartdeploy.core.exceptions import CloudOperationError, StepFailedError, TransientError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({"Success", "Failed", "Cancelled", "TimedOut"})

OutputCallback = Callable[[str], Awaitable[None]]


def wrap_script(script: str) -> str:
    """Single shell command that decodes and runs ``script``."""
    encoded = base64.b64encode(script.encode()).decode()
    return f"echo '{encoded}' | base64 -d | bash"


class RemoteCommandChannel:
    """Send scripts to instances and follow their output."""

    def __init__(self, aws: AwsClient):
        self.aws = aws

    async def agent_online(self, instance_id: str) -> bool:
        response = await self.aws.call(
            "ssm",
            "describe_instance_information",
            Filters=[{"Key": "InstanceIds", "Values": [instance_id]}],
        )
        return any(
            info.get("PingStatus") == "Online"
            for info in response.get("InstanceInformationList", [])
        )

    async def wait_agent(
        self,
        instance_id: str,
        interval: float,
        max_attempts: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        async def attempt() -> PollResult[None]:
            if await self.agent_online(instance_id):
                return PollResult.ready()
            return PollResult.pending(f"Waiting for SSM agent on {instance_id}")

        await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"SSM agent on {instance_id}",
            ),
            on_progress,
        )

    async def send_script(self, instance_id: str, script: str, comment: str) -> str:
        response = await self.aws.call(
            "ssm",
            "send_command",
            InstanceIds=[instance_id],
            DocumentName="AWS-RunShellScript",
            Comment=comment[:100],
            Parameters={"commands": [wrap_script(script)], "executionTimeout": ["3600"]},
        )
        command_id = response["Command"]["CommandId"]
        logger.info("ssm.command.sent", instance_id=instance_id, command_id=command_id)
        return command_id

    async def wait_command(
        self,
        command_id: str,
        instance_id: str,
        interval: float,
        max_attempts: int,
        on_output: OutputCallback | None = None,
    ) -> str:
        """Poll until the command is terminal, streaming only new output.

        Raises:
            StepFailedError: If the command did not succeed
        """
        seen = 0

        async def attempt() -> PollResult[dict]:
            nonlocal seen
            try:
                invocation = await self.aws.call(
                    "ssm", "get_command_invocation", CommandId=command_id, InstanceId=instance_id
                )
            except CloudOperationError as e:
                if e.code == "InvocationDoesNotExist":
                    raise TransientError("Command invocation not registered yet") from e
                raise

            output = invocation.get("StandardOutputContent", "") or ""
            if len(output) > seen:
                delta, seen = output[seen:], len(output)
                if on_output:
                    for line in delta.splitlines():
                        if line.strip():
                            await on_output(line)

            status = invocation.get("Status", "Pending")
            if status in TERMINAL_STATUSES:
                return PollResult.ready(invocation)
            return PollResult.pending(f"Command {status}")

        invocation = await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"command {command_id}",
            )
        )
        status = (invocation or {}).get("Status", "Unknown")
        if status != "Success":
            error = ((invocation or {}).get("StandardErrorContent") or "")[-500:]
            raise StepFailedError("deploy", f"Remote command {status}: {error}".strip())
        return status
