"""IAM roles and instance profiles."""

import json
from dataclasses import dataclass, field

from smartdeploy.core.exceptions import CloudOperationError
from smartdeploy.provisioning.aws import AwsClient, is_already_exists, is_not_found
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef

SSM_MANAGED_POLICY = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"


def trust_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


@dataclass
class RoleSpec:
    trusted_service: str
    managed_policies: list[str] = field(default_factory=list)
    inline_policies: dict[str, dict] = field(default_factory=dict)


class RoleResource(ProvisionedResource[RoleSpec]):
    """IAM role. Reconciles attached managed and inline policies."""

    kind = "iam-role"

    async def lookup(self, name: str, spec: RoleSpec) -> ResourceRef | None:
        try:
            response = await self.aws.call("iam", "get_role", RoleName=name)
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        return ResourceRef(self.kind, name, response["Role"]["Arn"])

    async def create(self, name: str, spec: RoleSpec) -> ResourceRef:
        response = await self.aws.call(
            "iam",
            "create_role",
            RoleName=name,
            AssumeRolePolicyDocument=trust_policy(spec.trusted_service),
            Description="Managed by SmartDeploy",
        )
        ref = ResourceRef(self.kind, name, response["Role"]["Arn"])
        return await self.reconcile(ref, spec)

    async def reconcile(self, ref: ResourceRef, spec: RoleSpec) -> ResourceRef:
        if spec.managed_policies:
            attached = await self.aws.call("iam", "list_attached_role_policies", RoleName=ref.name)
            present = {p["PolicyArn"] for p in attached.get("AttachedPolicies", [])}
            for policy_arn in spec.managed_policies:
                if policy_arn not in present:
                    await self.aws.call(
                        "iam", "attach_role_policy", RoleName=ref.name, PolicyArn=policy_arn
                    )
        for policy_name, document in spec.inline_policies.items():
            await self.aws.call(
                "iam",
                "put_role_policy",
                RoleName=ref.name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(document),
            )
        return ref


@dataclass
class InstanceProfileSpec:
    role_name: str


class InstanceProfileResource(ProvisionedResource[InstanceProfileSpec]):
    """Instance profile wrapping exactly one role."""

    kind = "instance-profile"

    async def lookup(self, name: str, spec: InstanceProfileSpec) -> ResourceRef | None:
        try:
            response = await self.aws.call("iam", "get_instance_profile", InstanceProfileName=name)
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        profile = response["InstanceProfile"]
        return ResourceRef(
            self.kind,
            name,
            profile["Arn"],
            {"roles": [r["RoleName"] for r in profile.get("Roles", [])]},
        )

    async def create(self, name: str, spec: InstanceProfileSpec) -> ResourceRef:
        response = await self.aws.call("iam", "create_instance_profile", InstanceProfileName=name)
        ref = ResourceRef(self.kind, name, response["InstanceProfile"]["Arn"], {"roles": []})
        return await self.reconcile(ref, spec)

    async def reconcile(self, ref: ResourceRef, spec: InstanceProfileSpec) -> ResourceRef:
        if spec.role_name in ref.attributes.get("roles", []):
            return ref
        try:
            await self.aws.call(
                "iam",
                "add_role_to_instance_profile",
                InstanceProfileName=ref.name,
                RoleName=spec.role_name,
            )
        except CloudOperationError as e:
            # LimitExceeded: profile already holds a role
            if not (is_already_exists(e) or e.code == "LimitExceeded"):
                raise
        return ResourceRef(ref.kind, ref.name, ref.id, {"roles": [spec.role_name]})


async def ensure_ssm_instance_profile(aws: AwsClient, role_name: str, profile_name: str) -> ResourceRef:
    """Role + instance profile that let SSM manage EC2 instances."""
    await RoleResource(aws).ensure(
        role_name,
        RoleSpec(trusted_service="ec2.amazonaws.com", managed_policies=[SSM_MANAGED_POLICY]),
    )
    return await InstanceProfileResource(aws).ensure(
        profile_name, InstanceProfileSpec(role_name=role_name)
    )
