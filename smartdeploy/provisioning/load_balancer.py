"""Application load balancers, target groups, listeners and host rules.

One balancer may be shared by many deployments. Each deployment owns
exactly one host-header rule (keyed by its hostname) and the target
group that rule forwards to.
"""

from dataclasses import dataclass
from typing import Any, Literal

from smartdeploy.core.exceptions import CloudOperationError, ConflictError
from smartdeploy.core.polling import Poller, PollResult, ProgressCallback, poll_until
from smartdeploy.models.deployment import NetworkRefs, RoutingRefs
from smartdeploy.provisioning.aws import AwsClient, is_not_found
from smartdeploy.provisioning.base import ProvisionedResource, ResourceRef
from smartdeploy.provisioning.network import IngressRule, SecurityGroupResource, SecurityGroupSpec
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

RULE_PRIORITY_BASE = 100
RULE_PRIORITY_MAX = 50000
PRIORITY_ATTEMPTS = 3


@dataclass
class LoadBalancerSpec:
    subnet_ids: list[str]
    security_group_ids: list[str]


class LoadBalancerResource(ProvisionedResource[LoadBalancerSpec]):
    kind = "load-balancer"

    @staticmethod
    def _ref(name: str, lb: dict[str, Any]) -> ResourceRef:
        return ResourceRef(
            "load-balancer",
            name,
            lb["LoadBalancerArn"],
            {"dns_name": lb.get("DNSName"), "vpc_id": lb.get("VpcId")},
        )

    async def lookup(self, name: str, spec: LoadBalancerSpec) -> ResourceRef | None:
        try:
            response = await self.aws.call("elbv2", "describe_load_balancers", Names=[name])
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        balancers = response.get("LoadBalancers", [])
        return self._ref(name, balancers[0]) if balancers else None

    async def create(self, name: str, spec: LoadBalancerSpec) -> ResourceRef:
        response = await self.aws.call(
            "elbv2",
            "create_load_balancer",
            Name=name,
            Subnets=spec.subnet_ids,
            SecurityGroups=spec.security_group_ids,
            Scheme="internet-facing",
            Type="application",
            IpAddressType="ipv4",
        )
        return self._ref(name, response["LoadBalancers"][0])


@dataclass
class TargetGroupSpec:
    vpc_id: str
    port: int
    target_type: Literal["instance", "ip"] = "instance"
    health_check_path: str = "/"


class TargetGroupResource(ProvisionedResource[TargetGroupSpec]):
    kind = "target-group"

    async def lookup(self, name: str, spec: TargetGroupSpec) -> ResourceRef | None:
        try:
            response = await self.aws.call("elbv2", "describe_target_groups", Names=[name])
        except CloudOperationError as e:
            if is_not_found(e):
                return None
            raise
        groups = response.get("TargetGroups", [])
        if not groups:
            return None
        group = groups[0]
        return ResourceRef(
            self.kind,
            name,
            group["TargetGroupArn"],
            {"vpc_id": group.get("VpcId"), "port": group.get("Port")},
        )

    async def reconcile(self, ref: ResourceRef, spec: TargetGroupSpec) -> ResourceRef:
        if ref.attributes.get("vpc_id") and ref.attributes["vpc_id"] != spec.vpc_id:
            raise ConflictError(
                f"Target group {ref.name} already exists in another VPC",
                {"target_group": ref.name, "vpc_id": ref.attributes["vpc_id"]},
            )
        return ref

    async def create(self, name: str, spec: TargetGroupSpec) -> ResourceRef:
        response = await self.aws.call(
            "elbv2",
            "create_target_group",
            Name=name,
            Protocol="HTTP",
            Port=spec.port,
            VpcId=spec.vpc_id,
            TargetType=spec.target_type,
            HealthCheckProtocol="HTTP",
            HealthCheckPath=spec.health_check_path,
            HealthCheckIntervalSeconds=15,
            HealthyThresholdCount=2,
            UnhealthyThresholdCount=3,
            Matcher={"HttpCode": "200-399"},
        )
        group = response["TargetGroups"][0]
        return ResourceRef(
            self.kind, name, group["TargetGroupArn"], {"vpc_id": spec.vpc_id, "port": spec.port}
        )


@dataclass
class ListenerSpec:
    load_balancer_arn: str
    port: int
    certificate_arn: str | None = None
    # Forward here instead of the fixed 404 default
    target_group_arn: str | None = None
    redirect_to_https: bool = False


def _listener_default_action(spec: ListenerSpec) -> dict[str, Any]:
    if spec.target_group_arn:
        return {"Type": "forward", "TargetGroupArn": spec.target_group_arn}
    if spec.redirect_to_https:
        return {
            "Type": "redirect",
            "RedirectConfig": {"Protocol": "HTTPS", "Port": "443", "StatusCode": "HTTP_301"},
        }
    return {
        "Type": "fixed-response",
        "FixedResponseConfig": {
            "StatusCode": "404",
            "ContentType": "text/plain",
            "MessageBody": "Not found",
        },
    }


class ListenerResource(ProvisionedResource[ListenerSpec]):
    """Listener keyed by (balancer, port)."""

    kind = "listener"

    async def lookup(self, name: str, spec: ListenerSpec) -> ResourceRef | None:
        response = await self.aws.call(
            "elbv2", "describe_listeners", LoadBalancerArn=spec.load_balancer_arn
        )
        for listener in response.get("Listeners", []):
            if listener.get("Port") == spec.port:
                return ResourceRef(self.kind, name, listener["ListenerArn"], {"port": spec.port})
        return None

    async def create(self, name: str, spec: ListenerSpec) -> ResourceRef:
        params: dict[str, Any] = {
            "LoadBalancerArn": spec.load_balancer_arn,
            "Protocol": "HTTPS" if spec.certificate_arn else "HTTP",
            "Port": spec.port,
            "DefaultActions": [_listener_default_action(spec)],
        }
        if spec.certificate_arn:
            params["Certificates"] = [{"CertificateArn": spec.certificate_arn}]
            params["SslPolicy"] = "ELBSecurityPolicy-TLS13-1-2-2021-06"
        response = await self.aws.call("elbv2", "create_listener", **params)
        listener = response["Listeners"][0]
        return ResourceRef(self.kind, name, listener["ListenerArn"], {"port": spec.port})


@dataclass
class HostRuleSpec:
    listener_arn: str
    target_group_arn: str


def _rule_hosts(rule: dict[str, Any]) -> list[str]:
    hosts: list[str] = []
    for condition in rule.get("Conditions", []):
        if condition.get("Field") != "host-header":
            continue
        hosts.extend(condition.get("Values", []))
        hosts.extend(condition.get("HostHeaderConfig", {}).get("Values", []))
    return [h.lower() for h in hosts]


def _rule_target_groups(rule: dict[str, Any]) -> set[str]:
    arns: set[str] = set()
    for action in rule.get("Actions", []):
        if action.get("TargetGroupArn"):
            arns.add(action["TargetGroupArn"])
        for group in action.get("ForwardConfig", {}).get("TargetGroups", []):
            arns.add(group["TargetGroupArn"])
    return arns


class HostRuleResource(ProvisionedResource[HostRuleSpec]):
    """Host-header routing rule keyed by hostname.

    A rule for the hostname that already forwards to the caller's target
    group is reused. One forwarding anywhere else is a name collision.
    """

    kind = "host-rule"

    async def _rules(self, listener_arn: str) -> list[dict[str, Any]]:
        response = await self.aws.call("elbv2", "describe_rules", ListenerArn=listener_arn)
        return response.get("Rules", [])

    async def lookup(self, name: str, spec: HostRuleSpec) -> ResourceRef | None:
        hostname = name.lower()
        for rule in await self._rules(spec.listener_arn):
            if hostname in _rule_hosts(rule):
                return ResourceRef(
                    self.kind,
                    name,
                    rule["RuleArn"],
                    {"target_groups": sorted(_rule_target_groups(rule)), "priority": rule.get("Priority")},
                )
        return None

    async def reconcile(self, ref: ResourceRef, spec: HostRuleSpec) -> ResourceRef:
        if spec.target_group_arn not in ref.attributes.get("target_groups", []):
            raise ConflictError(
                f"Hostname {ref.name} is already routed to a different target group",
                {"hostname": ref.name, "rule_arn": ref.id},
            )
        return ref

    async def create(self, name: str, spec: HostRuleSpec) -> ResourceRef:
        # Another deployment may take the same priority between listing and create
        for _ in range(PRIORITY_ATTEMPTS - 1):
            try:
                return await self._create_rule(name, spec)
            except CloudOperationError as e:
                if e.code != "PriorityInUse":
                    raise
                self.logger.info("host_rule.priority_taken", hostname=name)
        return await self._create_rule(name, spec)

    async def _create_rule(self, name: str, spec: HostRuleSpec) -> ResourceRef:
        priorities = [
            int(rule["Priority"])
            for rule in await self._rules(spec.listener_arn)
            if str(rule.get("Priority", "")).isdigit()
        ]
        priority = max(priorities, default=RULE_PRIORITY_BASE - 1) + 1
        if priority > RULE_PRIORITY_MAX:
            raise ConflictError(
                "Load balancer has no free rule priority", {"listener_arn": spec.listener_arn}
            )
        response = await self.aws.call(
            "elbv2",
            "create_rule",
            ListenerArn=spec.listener_arn,
            Priority=priority,
            Conditions=[{"Field": "host-header", "HostHeaderConfig": {"Values": [name.lower()]}}],
            Actions=[{"Type": "forward", "TargetGroupArn": spec.target_group_arn}],
        )
        rule = response["Rules"][0]
        return ResourceRef(
            self.kind,
            name,
            rule["RuleArn"],
            {"target_groups": [spec.target_group_arn], "priority": str(priority)},
        )


@dataclass
class Balancer:
    """An ensured balancer with its listeners."""

    arn: str
    dns_name: str | None
    security_group_id: str
    http_listener_arn: str
    https_listener_arn: str | None

    @property
    def routing_listener_arn(self) -> str:
        return self.https_listener_arn or self.http_listener_arn


class LoadBalancerRouting:
    """Routing operations built on the primitives above."""

    def __init__(self, aws: AwsClient):
        self.aws = aws

    async def ensure_balancer(
        self,
        name: str,
        network: NetworkRefs,
        certificate_arn: str | None = None,
        default_target_group_arn: str | None = None,
    ) -> Balancer:
        """Ensure a balancer, its security group and its HTTP(S) listeners.

        Without ``default_target_group_arn`` listeners answer 404 unless a
        host rule matches (shared mode).
        """
        group = await SecurityGroupResource(self.aws).ensure(
            f"{name}-sg",
            SecurityGroupSpec(
                vpc_id=network.vpc_id,
                description=f"SmartDeploy load balancer {name}",
                ingress=[IngressRule(port=80), IngressRule(port=443)],
            ),
        )
        lb = await LoadBalancerResource(self.aws).ensure(
            name, LoadBalancerSpec(subnet_ids=network.subnet_ids, security_group_ids=[group.id])
        )

        listeners = ListenerResource(self.aws)
        http = await listeners.ensure(
            f"{name}-http",
            ListenerSpec(
                load_balancer_arn=lb.id,
                port=80,
                target_group_arn=None if certificate_arn else default_target_group_arn,
                redirect_to_https=bool(certificate_arn),
            ),
        )
        https = None
        if certificate_arn:
            https = await listeners.ensure(
                f"{name}-https",
                ListenerSpec(
                    load_balancer_arn=lb.id,
                    port=443,
                    certificate_arn=certificate_arn,
                    target_group_arn=default_target_group_arn,
                ),
            )

        return Balancer(
            arn=lb.id,
            dns_name=lb.attributes.get("dns_name"),
            security_group_id=group.id,
            http_listener_arn=http.id,
            https_listener_arn=https.id if https else None,
        )

    async def ensure_target_group(self, name: str, spec: TargetGroupSpec) -> ResourceRef:
        return await TargetGroupResource(self.aws).ensure(name, spec)

    async def route(
        self, balancer: Balancer, hostname: str, target_group_arn: str, shared: bool = True
    ) -> RoutingRefs:
        """Create or reuse the host rule for ``hostname``.

        Raises:
            ConflictError: If the hostname is routed to another target group
        """
        rule = await HostRuleResource(self.aws).ensure(
            hostname,
            HostRuleSpec(listener_arn=balancer.routing_listener_arn, target_group_arn=target_group_arn),
        )
        return RoutingRefs(
            load_balancer_arn=balancer.arn,
            load_balancer_dns=balancer.dns_name,
            listener_arn=balancer.routing_listener_arn,
            target_group_arn=target_group_arn,
            rule_arn=rule.id,
            hostname=hostname,
            shared=shared,
        )

    async def rule_confirmed(self, routing: RoutingRefs) -> bool:
        """Re-read the listener and check the rule forwards to our group."""
        if not routing.hostname or not routing.listener_arn:
            return False
        ref = await HostRuleResource(self.aws).lookup(
            routing.hostname,
            HostRuleSpec(listener_arn=routing.listener_arn, target_group_arn=routing.target_group_arn),
        )
        return ref is not None and routing.target_group_arn in ref.attributes.get("target_groups", [])

    async def register_targets(
        self, target_group_arn: str, target_ids: list[str], port: int | None = None
    ) -> None:
        targets = [{"Id": t, **({"Port": port} if port else {})} for t in target_ids]
        await self.aws.call(
            "elbv2", "register_targets", TargetGroupArn=target_group_arn, Targets=targets
        )

    async def deregister_targets(self, target_group_arn: str, target_ids: list[str]) -> None:
        await self.aws.call(
            "elbv2",
            "deregister_targets",
            TargetGroupArn=target_group_arn,
            Targets=[{"Id": t} for t in target_ids],
        )

    async def wait_target_healthy(
        self,
        target_group_arn: str,
        target_id: str,
        interval: float,
        max_attempts: int,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        async def attempt() -> PollResult[None]:
            response = await self.aws.call(
                "elbv2",
                "describe_target_health",
                TargetGroupArn=target_group_arn,
                Targets=[{"Id": target_id}],
            )
            for description in response.get("TargetHealthDescriptions", []):
                state = description.get("TargetHealth", {}).get("State")
                if state == "healthy":
                    return PollResult.ready()
                return PollResult.pending(f"Target {target_id} is {state}")
            return PollResult.pending(f"Target {target_id} not registered yet")

        await poll_until(
            Poller(
                attempt=attempt,
                interval=interval,
                max_attempts=max_attempts,
                description=f"target {target_id} to become healthy",
            ),
            on_progress,
        )

    async def delete_rule(self, rule_arn: str) -> None:
        try:
            await self.aws.call("elbv2", "delete_rule", RuleArn=rule_arn)
        except CloudOperationError as e:
            if not is_not_found(e):
                raise

    async def delete_target_group(self, target_group_arn: str) -> None:
        try:
            await self.aws.call("elbv2", "delete_target_group", TargetGroupArn=target_group_arn)
        except CloudOperationError as e:
            if not is_not_found(e):
                raise

    async def delete_balancer(self, load_balancer_arn: str) -> None:
        try:
            await self.aws.call("elbv2", "delete_load_balancer", LoadBalancerArn=load_balancer_arn)
        except CloudOperationError as e:
            if not is_not_found(e):
                raise

    async def allow_from_balancer(self, group_name: str, vpc_id: str, balancer_group_id: str, port: int) -> str:
        """Let the balancer reach a service security group on ``port``."""
        group = await SecurityGroupResource(self.aws).ensure(
            group_name,
            SecurityGroupSpec(
                vpc_id=vpc_id,
                ingress=[IngressRule(port=port, cidr=None, source_group_id=balancer_group_id)],
            ),
        )
        return group.id
