"""Default network discovery and security groups."""

from dataclasses import dataclass, field
from typing import Any

from smartdeploy.core.exceptions import CloudOperationError, ConfigurationError
from smartdeploy.models.deployment import NetworkRefs
from smartdeploy.provisioning.aws import AwsClient, is_already_exists
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef

ANYWHERE = "0.0.0.0/0"


@dataclass
class IngressRule:
    port: int
    cidr: str | None = ANYWHERE
    source_group_id: str | None = None


@dataclass
class SecurityGroupSpec:
    vpc_id: str
    description: str = "Managed by SmartDeploy"
    ingress: list[IngressRule] = field(default_factory=list)


def _permission(rule: IngressRule) -> dict[str, Any]:
    permission: dict[str, Any] = {
        "IpProtocol": "tcp",
        "FromPort": rule.port,
        "ToPort": rule.port,
    }
    if rule.source_group_id:
        permission["UserIdGroupPairs"] = [{"GroupId": rule.source_group_id}]
    else:
        permission["IpRanges"] = [{"CidrIp": rule.cidr or ANYWHERE}]
    return permission


def _covers(permission: dict[str, Any], rule: IngressRule) -> bool:
    if permission.get("IpProtocol") not in ("tcp", "-1"):
        return False
    if permission.get("IpProtocol") == "tcp" and not (
        permission.get("FromPort", -1) <= rule.port <= permission.get("ToPort", -1)
    ):
        return False
    if rule.source_group_id:
        return any(
            pair.get("GroupId") == rule.source_group_id
            for pair in permission.get("UserIdGroupPairs", [])
        )
    return any(r.get("CidrIp") == (rule.cidr or ANYWHERE) for r in permission.get("IpRanges", []))


class SecurityGroupResource(ProvisionedResource[SecurityGroupSpec]):
    """Security group keyed by name within a VPC. Reconciles missing ingress."""

    kind = "security-group"

    async def lookup(self, name: str, spec: SecurityGroupSpec) -> ResourceRef | None:
        response = await self.aws.call(
            "ec2",
            "describe_security_groups",
            Filters=[
                {"Name": "group-name", "Values": [name]},
                {"Name": "vpc-id", "Values": [spec.vpc_id]},
            ],
        )
        groups = response.get("SecurityGroups", [])
        if not groups:
            return None
        group = groups[0]
        return ResourceRef(
            self.kind, name, group["GroupId"], {"ip_permissions": group.get("IpPermissions", [])}
        )

    async def create(self, name: str, spec: SecurityGroupSpec) -> ResourceRef:
        response = await self.aws.call(
            "ec2",
            "create_security_group",
            GroupName=name,
            Description=spec.description,
            VpcId=spec.vpc_id,
        )
        ref = ResourceRef(self.kind, name, response["GroupId"], {"ip_permissions": []})
        return await self.reconcile(ref, spec)

    async def reconcile(self, ref: ResourceRef, spec: SecurityGroupSpec) -> ResourceRef:
        existing = ref.attributes.get("ip_permissions", [])
        missing = [r for r in spec.ingress if not any(_covers(p, r) for p in existing)]
        if not missing:
            return ref

        permissions = [_permission(r) for r in missing]
        try:
            await self.aws.call(
                "ec2",
                "authorize_security_group_ingress",
                GroupId=ref.id,
                IpPermissions=permissions,
            )
        except CloudOperationError as e:
            if not is_already_exists(e):
                raise
        self.logger.info(
            "provision.ingress_added", group=ref.name, ports=[r.port for r in missing]
        )
        return ResourceRef(ref.kind, ref.name, ref.id, {"ip_permissions": existing + permissions})


@dataclass
class DefaultNetwork:
    vpc_id: str
    subnet_ids: list[str]


async def discover_default_network(aws: AwsClient) -> DefaultNetwork:
    """Find the region's default VPC and its subnets.

    Raises:
        ConfigurationError: If the region has no default VPC
    """
    vpcs = await aws.call(
        "ec2", "describe_vpcs", Filters=[{"Name": "isDefault", "Values": ["true"]}]
    )
    if not vpcs.get("Vpcs"):
        raise ConfigurationError(f"No default VPC found in {aws.region}")
    vpc_id = vpcs["Vpcs"][0]["VpcId"]

    subnets = await aws.call(
        "ec2", "describe_subnets", Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
    )
    ordered = sorted(subnets.get("Subnets", []), key=lambda s: s.get("AvailabilityZone", ""))
    if not ordered:
        raise ConfigurationError(f"Default VPC {vpc_id} has no subnets")
    return DefaultNetwork(vpc_id=vpc_id, subnet_ids=[s["SubnetId"] for s in ordered])


async def ensure_network(
    aws: AwsClient,
    group_name: str,
    ports: list[int],
    existing: NetworkRefs | None = None,
) -> NetworkRefs:
    """Network references for a deployment.

    Previously recorded references are reused as they are; only missing
    ingress ports are added to their security group.
    """
    if existing is not None:
        network = DefaultNetwork(vpc_id=existing.vpc_id, subnet_ids=existing.subnet_ids)
    else:
        network = await discover_default_network(aws)

    group = await SecurityGroupResource(aws).ensure(
        group_name,
        SecurityGroupSpec(
            vpc_id=network.vpc_id,
            description=f"SmartDeploy {group_name}",
            ingress=[IngressRule(port=p) for p in ports],
        ),
    )
    if existing is not None and existing.security_group_id == group.id:
        return existing
    return NetworkRefs(
        vpc_id=network.vpc_id,
        subnet_ids=network.subnet_ids,
        security_group_id=group.id,
    )
