"""EC2 instance operations."""

import base64

from smartdeploy.core.exceptions import CloudOperationError, StepFailedError, TransientError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.provisioning.aws import AwsClient, is_not_found
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

DEAD_STATES = frozenset({"shutting-down", "terminated", "stopping", "stopped"})


class InstanceOperations:
    """Launch, inspect and retire single EC2 instances."""

    def __init__(self, aws: AwsClient):
        self.aws = aws

    async def latest_ami(self, name_pattern: str) -> str:
        response = await self.aws.call(
            "ec2",
            "describe_images",
            Owners=["amazon"],
            Filters=[
                {"Name": "name", "Values": [name_pattern]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = sorted(
            response.get("Images", []), key=lambda i: i.get("CreationDate", ""), reverse=True
        )
        if not images:
            raise StepFailedError("setup", f"No AMI matches {name_pattern} in {self.aws.region}")
        return images[0]["ImageId"]

    async def launch(
        self,
        name: str,
        image_id: str,
        instance_type: str,
        subnet_id: str,
        security_group_id: str,
        instance_profile: str,
        user_data: str,
        tags: dict[str, str] | None = None,
    ) -> str:
        """Launch one instance with a public IP. Returns the instance id.

        Raises:
            TransientError: If the instance profile has not propagated yet
        """
        all_tags = {"Name": name, "ManagedBy": "smartdeploy", **(tags or {})}
        try:
            response = await self.aws.call(
                "ec2",
                "run_instances",
                ImageId=image_id,
                InstanceType=instance_type,
                MinCount=1,
                MaxCount=1,
                UserData=user_data,
                IamInstanceProfile={"Name": instance_profile},
                NetworkInterfaces=[
                    {
                        "DeviceIndex": 0,
                        "SubnetId": subnet_id,
                        "Groups": [security_group_id],
                        "AssociatePublicIpAddress": True,
                    }
                ],
                TagSpecifications=[
                    {
                        "ResourceType": "instance",
                        "Tags": [{"Key": k, "Value": v} for k, v in all_tags.items()],
                    }
                ],
            )
        except CloudOperationError as e:
            if e.code == "InvalidParameterValue" and "instance profile" in e.message.lower():
                raise TransientError(e.message) from e
            raise
        instance_id = response["Instances"][0]["InstanceId"]
        logger.info("compute.instance.launched", instance_id=instance_id, name=name)
        return instance_id

    async def describe(self, instance_id: str) -> dict | None:
        try:
            response = await self.aws.call("ec2", "describe_instances", InstanceIds=[instance_id])
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    async def wait_running(
        self,
        instance_id: str,
        interval: float,
        max_attempts: int,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Wait for state running with a public IP. Returns the IP."""

        async def attempt() -> PollResult[str]:
            instance = await self.describe(instance_id)
            if instance is None:
                return PollResult.pending(f"Instance {instance_id} not visible yet")
            state = instance["State"]["Name"]
            if state in DEAD_STATES:
                raise StepFailedError("deploy", f"Instance {instance_id} entered state {state}")
            ip = instance.get("PublicIpAddress")
            if state == "running" and ip:
                return PollResult.ready(ip)
            return PollResult.pending(f"Instance {instance_id} is {state}")

        ip = await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"instance {instance_id} to run",
            ),
            on_progress,
        )
        return ip or ""

    async def terminate(self, instance_id: str) -> None:
        try:
            await self.aws.call("ec2", "terminate_instances", InstanceIds=[instance_id])
        except CloudOperationError as e:
            if not is_not_found(e):
                raise
        logger.info("compute.instance.terminated", instance_id=instance_id)

    async def console_output(self, instance_id: str) -> str:
        """Latest serial console output, decoded."""
        response = await self.aws.call("ec2", "get_console_output", InstanceId=instance_id, Latest=True)
        output = response.get("Output") or ""
        return base64.b64decode(output).decode("utf-8", errors="replace") if output else ""

    async def reboot(self, instance_id: str) -> None:
        await self.aws.call("ec2", "reboot_instances", InstanceIds=[instance_id])

    async def profile_association(self, instance_id: str) -> str | None:
        """Name-bearing ARN of the associated instance profile, if any."""
        response = await self.aws.call(
            "ec2",
            "describe_iam_instance_profile_associations",
            Filters=[{"Name": "instance-id", "Values": [instance_id]}],
        )
        for association in response.get("IamInstanceProfileAssociations", []):
            if association.get("State") in ("associating", "associated"):
                return association.get("IamInstanceProfile", {}).get("Arn")
        return None

    async def associate_profile(self, instance_id: str, profile_name: str) -> None:
        await self.aws.call(
            "ec2",
            "associate_iam_instance_profile",
            InstanceId=instance_id,
            IamInstanceProfile={"Name": profile_name},
        )
        logger.info("compute.profile.associated", instance_id=instance_id, profile=profile_name)
