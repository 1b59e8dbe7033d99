"""Pytest configuration and fixtures."""

import base64
import itertools
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError
from httpx import ASGITransport, AsyncClient

from smartdeploy.config import settings
from smartdeploy.core.events import ProgressChannel
from smartdeploy.core.interfaces import CheckoutResult, DnsResult
from smartdeploy.core.lifecycle import DeploymentController
from smartdeploy.core.store import InMemoryDeploymentStore, get_deployment_store
from smartdeploy.handlers.base import DeployContext
from smartdeploy.handlers.registry import get_handler_registry
from smartdeploy.main import app
from smartdeploy.models.deployment import (
    DeploymentRecord,
    DeploymentRequest,
    TargetDecision,
    TargetPlatform,
)
from smartdeploy.models.project import ProjectProfile
from smartdeploy.provisioning.aws import AwsClient

ACCOUNT_ID = "123456789012"
REGION = "us-west-2"
REPO_URL = "https://github.com/acme/shop-api"


def client_error(code: str, operation: str, message: str | None = None) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


def _filter_values(filters: list[dict], name: str) -> list[str] | None:
    for entry in filters:
        if entry.get("Name") == name or entry.get("Key") == name:
            return entry["Values"]
    return None


class FakeAws(AwsClient):
    """In-memory AWS control plane.

    Only ``_invoke`` is replaced, so error translation in ``AwsClient.call``
    runs for real. Every call is recorded in ``calls``.
    """

    def __init__(self) -> None:
        super().__init__(region=REGION)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self._ids = itertools.count(1)
        self._hosts = itertools.count(10)

        self.security_groups: dict[str, dict] = {}
        self.instances: dict[str, dict] = {}
        self.associations: dict[str, str] = {}
        self.roles: dict[str, dict] = {}
        self.instance_profiles: dict[str, list[str]] = {}
        self.load_balancers: dict[str, dict] = {}
        self.target_groups: dict[str, dict] = {}
        self.listeners: dict[str, dict] = {}
        self.rules: dict[str, list[dict]] = {}
        self.targets: dict[str, set[str]] = {}

        self.ssm_offline: set[str] = set()
        self.commands: dict[str, list[str]] = {}
        self.command_status = "Success"
        self.command_output = "Pulling latest code\nContainers restarted\n"
        self.console_output = ""

        self.repositories: dict[str, str] = {}
        self.buckets: set[str] = set()
        self.objects: dict[tuple[str, str], bytes] = {}
        self.projects: dict[str, str] = {}
        self.builds: dict[str, str] = {}
        self.build_results: list[str] = []

        self.clusters: dict[str, str] = {}
        self.log_groups: set[str] = set()
        self.task_definitions: dict[str, int] = {}
        self.task_environment: dict[str, dict[str, str]] = {}
        self.ecs_services: dict[tuple[str, str], dict] = {}
        self.rollout_state = "COMPLETED"
        # describe_services calls before a new deployment reaches its desired count
        self.ecs_startup_describes = 0

        self.subnet_groups: set[str] = set()
        self.db_instances: dict[str, dict] = {}
        self.db_passwords: dict[str, str] = {}

        self.amplify_apps: dict[str, dict] = {}
        self.amplify_branches: set[tuple[str, str]] = set()
        self.job_status = "SUCCEED"

        self.eb_applications: set[str] = set()
        self.eb_versions: dict[str, list[str]] = {}
        self.eb_environments: dict[str, dict] = {}
        self.eb_state = ("Ready", "Green")

    # Test helpers

    def fail(self, service: str, operation: str, code: str, message: str | None = None, times: int = 1) -> None:
        """Make the next ``times`` calls of an operation raise a ClientError."""
        queue = self.failures.setdefault((service, operation), [])
        queue.extend(client_error(code, operation, message) for _ in range(times))

    def raise_on(self, service: str, operation: str, error: Exception) -> None:
        self.failures.setdefault((service, operation), []).append(error)

    def params(self, service: str, operation: str) -> list[dict[str, Any]]:
        return [p for s, o, p in self.calls if (s, o) == (service, operation)]

    def count(self, service: str, operation: str) -> int:
        return len(self.params(service, operation))

    def positions(self, service: str, operation: str) -> list[int]:
        return [i for i, (s, o, _) in enumerate(self.calls) if (s, o) == (service, operation)]

    def seed_instance(self, state: str = "running") -> str:
        """Register an instance launched by an earlier attempt."""
        return self._ec2_run_instances(
            ImageId="ami-old", IamInstanceProfile={"Name": settings.ssm_instance_profile_name}, state=state
        )["Instances"][0]["InstanceId"]

    def ip_of(self, instance_id: str) -> str:
        return self.instances[instance_id]["PublicIpAddress"]

    def _next(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):04d}"

    def _invoke(self, service: str, operation: str, params: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((service, operation, dict(params)))
        queued = self.failures.get((service, operation))
        if queued:
            raise queued.pop(0)
        handler = getattr(self, f"_{service}_{operation}", None)
        if handler is None:
            raise AssertionError(f"FakeAws does not implement {service}.{operation}")
        return handler(**params)

    # sts

    def _sts_get_caller_identity(self) -> dict:
        return {"Account": ACCOUNT_ID, "Arn": f"arn:aws:iam::{ACCOUNT_ID}:user/deployer"}

    # ec2

    def _ec2_describe_vpcs(self, Filters: list[dict]) -> dict:
        return {"Vpcs": [{"VpcId": "vpc-default", "IsDefault": True}]}

    def _ec2_describe_subnets(self, Filters: list[dict]) -> dict:
        return {
            "Subnets": [
                {"SubnetId": "subnet-b", "AvailabilityZone": "us-west-2b"},
                {"SubnetId": "subnet-a", "AvailabilityZone": "us-west-2a"},
            ]
        }

    def _ec2_describe_security_groups(self, Filters: list[dict]) -> dict:
        names = _filter_values(Filters, "group-name")
        vpcs = _filter_values(Filters, "vpc-id")
        groups = [
            dict(g, IpPermissions=list(g["IpPermissions"]))
            for g in self.security_groups.values()
            if (names is None or g["GroupName"] in names) and (vpcs is None or g["VpcId"] in vpcs)
        ]
        return {"SecurityGroups": groups}

    def _ec2_create_security_group(self, GroupName: str, Description: str, VpcId: str) -> dict:
        if any(g["GroupName"] == GroupName and g["VpcId"] == VpcId for g in self.security_groups.values()):
            raise client_error("InvalidGroup.Duplicate", "CreateSecurityGroup")
        group_id = self._next("sg")
        self.security_groups[group_id] = {
            "GroupId": group_id,
            "GroupName": GroupName,
            "VpcId": VpcId,
            "IpPermissions": [],
        }
        return {"GroupId": group_id}

    def _ec2_authorize_security_group_ingress(self, GroupId: str, IpPermissions: list[dict]) -> dict:
        self.security_groups[GroupId]["IpPermissions"].extend(IpPermissions)
        return {"Return": True}

    def _ec2_describe_images(self, Owners: list[str], Filters: list[dict]) -> dict:
        return {
            "Images": [
                {"ImageId": "ami-older", "CreationDate": "2024-01-01T00:00:00.000Z"},
                {"ImageId": "ami-latest", "CreationDate": "2025-06-01T00:00:00.000Z"},
            ]
        }

    def _ec2_run_instances(self, state: str = "running", **params: Any) -> dict:
        host = next(self._hosts)
        instance_id = f"i-{host:08x}"
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "ImageId": params["ImageId"],
            "State": {"Name": state},
            "PublicIpAddress": f"203.0.113.{host}",
        }
        self.associations[instance_id] = params["IamInstanceProfile"]["Name"]
        return {"Instances": [{"InstanceId": instance_id}]}

    def _ec2_describe_instances(self, InstanceIds: list[str]) -> dict:
        found = [dict(self.instances[i]) for i in InstanceIds if i in self.instances]
        if not found:
            raise client_error("InvalidInstanceID.NotFound", "DescribeInstances")
        return {"Reservations": [{"Instances": found}]}

    def _ec2_terminate_instances(self, InstanceIds: list[str]) -> dict:
        for instance_id in InstanceIds:
            if instance_id not in self.instances:
                raise client_error("InvalidInstanceID.NotFound", "TerminateInstances")
            self.instances[instance_id]["State"] = {"Name": "shutting-down"}
        return {"TerminatingInstances": [{"InstanceId": i} for i in InstanceIds]}

    def _ec2_reboot_instances(self, InstanceIds: list[str]) -> dict:
        return {}

    def _ec2_get_console_output(self, InstanceId: str, Latest: bool = False) -> dict:
        encoded = base64.b64encode(self.console_output.encode()).decode()
        return {"InstanceId": InstanceId, "Output": encoded}

    def _ec2_describe_iam_instance_profile_associations(self, Filters: list[dict]) -> dict:
        ids = _filter_values(Filters, "instance-id") or []
        return {
            "IamInstanceProfileAssociations": [
                {
                    "InstanceId": i,
                    "State": "associated",
                    "IamInstanceProfile": {
                        "Arn": f"arn:aws:iam::{ACCOUNT_ID}:instance-profile/{self.associations[i]}"
                    },
                }
                for i in ids
                if i in self.associations
            ]
        }

    def _ec2_associate_iam_instance_profile(self, InstanceId: str, IamInstanceProfile: dict) -> dict:
        self.associations[InstanceId] = IamInstanceProfile["Name"]
        return {"IamInstanceProfileAssociation": {"State": "associating"}}

    # iam

    def _iam_get_role(self, RoleName: str) -> dict:
        if RoleName not in self.roles:
            raise client_error("NoSuchEntity", "GetRole", f"The role {RoleName} cannot be found.")
        return {"Role": {"RoleName": RoleName, "Arn": self.roles[RoleName]["Arn"]}}

    def _iam_create_role(self, RoleName: str, AssumeRolePolicyDocument: str, Description: str) -> dict:
        self.roles[RoleName] = {
            "Arn": f"arn:aws:iam::{ACCOUNT_ID}:role/{RoleName}",
            "Policies": [],
            "Inline": {},
        }
        return {"Role": {"RoleName": RoleName, "Arn": self.roles[RoleName]["Arn"]}}

    def _iam_list_attached_role_policies(self, RoleName: str) -> dict:
        return {"AttachedPolicies": [{"PolicyArn": arn} for arn in self.roles[RoleName]["Policies"]]}

    def _iam_attach_role_policy(self, RoleName: str, PolicyArn: str) -> dict:
        self.roles[RoleName]["Policies"].append(PolicyArn)
        return {}

    def _iam_put_role_policy(self, RoleName: str, PolicyName: str, PolicyDocument: str) -> dict:
        self.roles[RoleName]["Inline"][PolicyName] = PolicyDocument
        return {}

    def _iam_get_instance_profile(self, InstanceProfileName: str) -> dict:
        if InstanceProfileName not in self.instance_profiles:
            raise client_error("NoSuchEntity", "GetInstanceProfile")
        return {
            "InstanceProfile": {
                "InstanceProfileName": InstanceProfileName,
                "Arn": f"arn:aws:iam::{ACCOUNT_ID}:instance-profile/{InstanceProfileName}",
                "Roles": [{"RoleName": r} for r in self.instance_profiles[InstanceProfileName]],
            }
        }

    def _iam_create_instance_profile(self, InstanceProfileName: str) -> dict:
        self.instance_profiles[InstanceProfileName] = []
        return {
            "InstanceProfile": {
                "InstanceProfileName": InstanceProfileName,
                "Arn": f"arn:aws:iam::{ACCOUNT_ID}:instance-profile/{InstanceProfileName}",
            }
        }

    def _iam_add_role_to_instance_profile(self, InstanceProfileName: str, RoleName: str) -> dict:
        self.instance_profiles[InstanceProfileName].append(RoleName)
        return {}

    # elbv2

    def _elbv2_describe_load_balancers(self, Names: list[str]) -> dict:
        found = [dict(self.load_balancers[n]) for n in Names if n in self.load_balancers]
        if not found:
            raise client_error("LoadBalancerNotFound", "DescribeLoadBalancers")
        return {"LoadBalancers": found}

    def _elbv2_create_load_balancer(self, Name: str, Subnets: list[str], SecurityGroups: list[str], **_: Any) -> dict:
        suffix = next(self._ids)
        self.load_balancers[Name] = {
            "LoadBalancerArn": f"arn:aws:elasticloadbalancing:{REGION}:{ACCOUNT_ID}:loadbalancer/app/{Name}/{suffix}",
            "LoadBalancerName": Name,
            "DNSName": f"{Name}-{suffix}.{REGION}.elb.amazonaws.com",
            "VpcId": "vpc-default",
            "SecurityGroups": SecurityGroups,
        }
        return {"LoadBalancers": [dict(self.load_balancers[Name])]}

    def _elbv2_delete_load_balancer(self, LoadBalancerArn: str) -> dict:
        for name, lb in list(self.load_balancers.items()):
            if lb["LoadBalancerArn"] == LoadBalancerArn:
                del self.load_balancers[name]
                return {}
        raise client_error("LoadBalancerNotFound", "DeleteLoadBalancer")

    def _elbv2_describe_target_groups(self, Names: list[str]) -> dict:
        found = [dict(self.target_groups[n]) for n in Names if n in self.target_groups]
        if not found:
            raise client_error("TargetGroupNotFound", "DescribeTargetGroups")
        return {"TargetGroups": found}

    def _elbv2_create_target_group(self, Name: str, Port: int, VpcId: str, TargetType: str, **_: Any) -> dict:
        self.target_groups[Name] = {
            "TargetGroupArn": f"arn:aws:elasticloadbalancing:{REGION}:{ACCOUNT_ID}:targetgroup/{Name}/{next(self._ids)}",
            "TargetGroupName": Name,
            "Port": Port,
            "VpcId": VpcId,
            "TargetType": TargetType,
        }
        return {"TargetGroups": [dict(self.target_groups[Name])]}

    def _elbv2_delete_target_group(self, TargetGroupArn: str) -> dict:
        for name, group in list(self.target_groups.items()):
            if group["TargetGroupArn"] == TargetGroupArn:
                del self.target_groups[name]
                return {}
        raise client_error("TargetGroupNotFound", "DeleteTargetGroup")

    def _elbv2_describe_listeners(self, LoadBalancerArn: str) -> dict:
        return {
            "Listeners": [
                dict(listener)
                for listener in self.listeners.values()
                if listener["LoadBalancerArn"] == LoadBalancerArn
            ]
        }

    def _elbv2_create_listener(
        self, LoadBalancerArn: str, Protocol: str, Port: int, DefaultActions: list[dict], **_: Any
    ) -> dict:
        arn = f"{LoadBalancerArn.replace(':loadbalancer/', ':listener/')}/{next(self._ids)}"
        self.listeners[arn] = {
            "ListenerArn": arn,
            "LoadBalancerArn": LoadBalancerArn,
            "Port": Port,
            "Protocol": Protocol,
            "DefaultActions": DefaultActions,
        }
        self.rules[arn] = [
            {
                "RuleArn": f"{arn}/default",
                "Priority": "default",
                "IsDefault": True,
                "Conditions": [],
                "Actions": DefaultActions,
            }
        ]
        return {"Listeners": [dict(self.listeners[arn])]}

    def _elbv2_describe_rules(self, ListenerArn: str) -> dict:
        return {"Rules": [dict(rule) for rule in self.rules.get(ListenerArn, [])]}

    def _elbv2_create_rule(
        self, ListenerArn: str, Priority: int, Conditions: list[dict], Actions: list[dict]
    ) -> dict:
        if any(rule["Priority"] == str(Priority) for rule in self.rules[ListenerArn]):
            raise client_error("PriorityInUse", "CreateRule")
        rule = {
            "RuleArn": f"{ListenerArn.replace(':listener/', ':listener-rule/')}/{next(self._ids)}",
            "Priority": str(Priority),
            "IsDefault": False,
            "Conditions": Conditions,
            "Actions": Actions,
        }
        self.rules[ListenerArn].append(rule)
        return {"Rules": [dict(rule)]}

    def _elbv2_delete_rule(self, RuleArn: str) -> dict:
        for rules in self.rules.values():
            for rule in rules:
                if rule["RuleArn"] == RuleArn:
                    rules.remove(rule)
                    return {}
        raise client_error("RuleNotFound", "DeleteRule")

    def _elbv2_register_targets(self, TargetGroupArn: str, Targets: list[dict]) -> dict:
        self.targets.setdefault(TargetGroupArn, set()).update(t["Id"] for t in Targets)
        return {}

    def _elbv2_deregister_targets(self, TargetGroupArn: str, Targets: list[dict]) -> dict:
        self.targets.setdefault(TargetGroupArn, set()).difference_update(t["Id"] for t in Targets)
        return {}

    def _elbv2_describe_target_health(self, TargetGroupArn: str, Targets: list[dict]) -> dict:
        registered = self.targets.get(TargetGroupArn, set())
        return {
            "TargetHealthDescriptions": [
                {
                    "Target": {"Id": t["Id"]},
                    "TargetHealth": {"State": "healthy" if t["Id"] in registered else "unused"},
                }
                for t in Targets
            ]
        }

    # ssm

    def _ssm_describe_instance_information(self, Filters: list[dict]) -> dict:
        ids = _filter_values(Filters, "InstanceIds") or []
        return {
            "InstanceInformationList": [
                {"InstanceId": i, "PingStatus": "Online"}
                for i in ids
                if i in self.instances and i not in self.ssm_offline
            ]
        }

    def _ssm_send_command(self, InstanceIds: list[str], **_: Any) -> dict:
        command_id = self._next("cmd")
        self.commands[command_id] = list(InstanceIds)
        return {"Command": {"CommandId": command_id, "Status": "Pending"}}

    def _ssm_get_command_invocation(self, CommandId: str, InstanceId: str) -> dict:
        if CommandId not in self.commands:
            raise client_error("InvocationDoesNotExist", "GetCommandInvocation")
        return {
            "CommandId": CommandId,
            "InstanceId": InstanceId,
            "Status": self.command_status,
            "StandardOutputContent": self.command_output,
            "StandardErrorContent": "" if self.command_status == "Success" else "docker compose up failed",
        }

    # ecr

    def _ecr_describe_repositories(self, repositoryNames: list[str]) -> dict:
        found = [n for n in repositoryNames if n in self.repositories]
        if not found:
            raise client_error("RepositoryNotFoundException", "DescribeRepositories")
        return {"repositories": [{"repositoryName": n, "repositoryUri": self.repositories[n]} for n in found]}

    def _ecr_create_repository(self, repositoryName: str, **_: Any) -> dict:
        uri = f"{ACCOUNT_ID}.dkr.ecr.{REGION}.amazonaws.com/{repositoryName}"
        self.repositories[repositoryName] = uri
        return {"repository": {"repositoryName": repositoryName, "repositoryUri": uri}}

    # s3

    def _s3_head_bucket(self, Bucket: str) -> dict:
        if Bucket not in self.buckets:
            raise client_error("404", "HeadBucket", "Not Found")
        return {}

    def _s3_create_bucket(self, Bucket: str, **_: Any) -> dict:
        self.buckets.add(Bucket)
        return {"Location": f"/{Bucket}"}

    def _s3_put_object(self, Bucket: str, Key: str, Body: bytes) -> dict:
        self.objects[(Bucket, Key)] = Body
        return {"ETag": '"etag"'}

    # codebuild

    def _codebuild_batch_get_projects(self, names: list[str]) -> dict:
        return {
            "projects": [{"name": n, "arn": self.projects[n]} for n in names if n in self.projects],
            "projectsNotFound": [n for n in names if n not in self.projects],
        }

    def _codebuild_create_project(self, name: str, **_: Any) -> dict:
        self.projects[name] = f"arn:aws:codebuild:{REGION}:{ACCOUNT_ID}:project/{name}"
        return {"project": {"name": name, "arn": self.projects[name]}}

    def _codebuild_start_build(self, projectName: str, **_: Any) -> dict:
        build_id = f"{projectName}:{next(self._ids)}"
        self.builds[build_id] = self.build_results.pop(0) if self.build_results else "SUCCEEDED"
        return {"build": {"id": build_id, "buildStatus": "IN_PROGRESS"}}

    def _codebuild_batch_get_builds(self, ids: list[str]) -> dict:
        return {
            "builds": [
                {
                    "id": i,
                    "buildStatus": self.builds[i],
                    "currentPhase": "COMPLETED" if self.builds[i] == "SUCCEEDED" else "BUILD",
                }
                for i in ids
            ]
        }

    # ecs

    def _ecs_describe_clusters(self, clusters: list[str]) -> dict:
        return {
            "clusters": [
                {"clusterName": c, "clusterArn": self.clusters[c], "status": "ACTIVE"}
                for c in clusters
                if c in self.clusters
            ]
        }

    def _ecs_create_cluster(self, clusterName: str, **_: Any) -> dict:
        self.clusters[clusterName] = f"arn:aws:ecs:{REGION}:{ACCOUNT_ID}:cluster/{clusterName}"
        return {"cluster": {"clusterName": clusterName, "clusterArn": self.clusters[clusterName]}}

    def _ecs_register_task_definition(self, family: str, containerDefinitions: list[dict], **_: Any) -> dict:
        revision = self.task_definitions.get(family, 0) + 1
        self.task_definitions[family] = revision
        self.task_environment[family] = {
            e["name"]: e["value"] for e in containerDefinitions[0].get("environment", [])
        }
        return {
            "taskDefinition": {
                "taskDefinitionArn": f"arn:aws:ecs:{REGION}:{ACCOUNT_ID}:task-definition/{family}:{revision}",
                "revision": revision,
            }
        }

    def _ecs_new_deployment(self, task_definition: str, desired: int) -> dict:
        starting = self.ecs_startup_describes > 0
        return {
            "id": f"ecs-svc/{next(self._ids)}",
            "status": "PRIMARY",
            "taskDefinition": task_definition,
            "desiredCount": desired,
            "runningCount": 0 if starting else desired,
            "rolloutState": "IN_PROGRESS" if starting else self.rollout_state,
            "_startup": self.ecs_startup_describes,
        }

    def _ecs_settle(self, service: dict) -> None:
        primary = service["deployments"][0]
        if primary["_startup"] > 0:
            primary["_startup"] -= 1
            if primary["_startup"] == 0:
                primary["runningCount"] = primary["desiredCount"]
                primary["rolloutState"] = self.rollout_state
        if primary["_startup"] == 0:
            service["deployments"] = [primary]
        service["runningCount"] = sum(d["runningCount"] for d in service["deployments"])

    def _ecs_describe_services(self, cluster: str, services: list[str]) -> dict:
        found = []
        for name in services:
            service = self.ecs_services.get((cluster, name))
            if service is not None:
                self._ecs_settle(service)
                found.append(dict(service, deployments=[dict(d) for d in service["deployments"]]))
        return {"services": found, "failures": []}

    def _ecs_create_service(
        self, cluster: str, serviceName: str, taskDefinition: str, desiredCount: int, **params: Any
    ) -> dict:
        service = {
            "serviceName": serviceName,
            "serviceArn": f"arn:aws:ecs:{REGION}:{ACCOUNT_ID}:service/{cluster}/{serviceName}",
            "status": "ACTIVE",
            "taskDefinition": taskDefinition,
            "desiredCount": desiredCount,
            "runningCount": 0,
            "pendingCount": 0,
            "deployments": [self._ecs_new_deployment(taskDefinition, desiredCount)],
            "loadBalancers": params.get("loadBalancers", []),
        }
        self.ecs_services[(cluster, serviceName)] = service
        return {"service": dict(service)}

    def _ecs_update_service(self, cluster: str, service: str, **params: Any) -> dict:
        current = self.ecs_services[(cluster, service)]
        current["desiredCount"] = params.get("desiredCount", current["desiredCount"])
        if "taskDefinition" in params or params.get("forceNewDeployment"):
            current["taskDefinition"] = params.get("taskDefinition", current["taskDefinition"])
            for previous in current["deployments"]:
                previous["status"] = "ACTIVE"
            current["deployments"].insert(
                0, self._ecs_new_deployment(current["taskDefinition"], current["desiredCount"])
            )
        else:
            primary = current["deployments"][0]
            primary["desiredCount"] = primary["runningCount"] = current["desiredCount"]
        current["runningCount"] = sum(d["runningCount"] for d in current["deployments"])
        return {"service": dict(current)}

    def _ecs_delete_service(self, cluster: str, service: str, force: bool = False) -> dict:
        removed = self.ecs_services.pop((cluster, service))
        return {"service": dict(removed, status="DRAINING")}

    # logs

    def _logs_describe_log_groups(self, logGroupNamePrefix: str) -> dict:
        return {
            "logGroups": [
                {"logGroupName": g, "arn": f"arn:aws:logs:{REGION}:{ACCOUNT_ID}:log-group:{g}"}
                for g in sorted(self.log_groups)
                if g.startswith(logGroupNamePrefix)
            ]
        }

    def _logs_create_log_group(self, logGroupName: str) -> dict:
        self.log_groups.add(logGroupName)
        return {}

    def _logs_put_retention_policy(self, logGroupName: str, retentionInDays: int) -> dict:
        return {}

    # rds

    def _rds_describe_db_subnet_groups(self, DBSubnetGroupName: str) -> dict:
        if DBSubnetGroupName not in self.subnet_groups:
            raise client_error("DBSubnetGroupNotFoundFault", "DescribeDBSubnetGroups")
        return {"DBSubnetGroups": [{"DBSubnetGroupName": DBSubnetGroupName}]}

    def _rds_create_db_subnet_group(self, DBSubnetGroupName: str, **_: Any) -> dict:
        self.subnet_groups.add(DBSubnetGroupName)
        return {"DBSubnetGroup": {"DBSubnetGroupName": DBSubnetGroupName}}

    def _rds_describe_db_instances(self, DBInstanceIdentifier: str) -> dict:
        if DBInstanceIdentifier not in self.db_instances:
            raise client_error("DBInstanceNotFound", "DescribeDBInstances")
        return {"DBInstances": [dict(self.db_instances[DBInstanceIdentifier])]}

    def _rds_create_db_instance(
        self, DBInstanceIdentifier: str, Engine: str, Port: int, MasterUserPassword: str, **_: Any
    ) -> dict:
        self.db_instances[DBInstanceIdentifier] = {
            "DBInstanceIdentifier": DBInstanceIdentifier,
            "DBInstanceArn": f"arn:aws:rds:{REGION}:{ACCOUNT_ID}:db:{DBInstanceIdentifier}",
            "DBInstanceStatus": "available",
            "Engine": Engine,
            "Endpoint": {
                "Address": f"{DBInstanceIdentifier}.c9abc.{REGION}.rds.amazonaws.com",
                "Port": Port,
            },
        }
        self.db_passwords[DBInstanceIdentifier] = MasterUserPassword
        return {
            "DBInstance": {
                "DBInstanceIdentifier": DBInstanceIdentifier,
                "DBInstanceStatus": "creating",
                "Engine": Engine,
            }
        }

    def _rds_modify_db_instance(self, DBInstanceIdentifier: str, MasterUserPassword: str, **_: Any) -> dict:
        self.db_passwords[DBInstanceIdentifier] = MasterUserPassword
        return {"DBInstance": dict(self.db_instances[DBInstanceIdentifier])}

    def _rds_delete_db_instance(self, DBInstanceIdentifier: str, **_: Any) -> dict:
        if DBInstanceIdentifier not in self.db_instances:
            raise client_error("DBInstanceNotFound", "DeleteDBInstance")
        return {"DBInstance": self.db_instances.pop(DBInstanceIdentifier)}

    # amplify

    def _amplify_list_apps(self, maxResults: int, nextToken: str | None = None) -> dict:
        return {"apps": [dict(a) for a in self.amplify_apps.values()]}

    def _amplify_create_app(self, name: str, platform: str) -> dict:
        app_id = f"d{next(self._ids):05d}"
        self.amplify_apps[app_id] = {
            "appId": app_id,
            "name": name,
            "defaultDomain": f"{app_id}.amplifyapp.com",
            "platform": platform,
        }
        return {"app": dict(self.amplify_apps[app_id])}

    def _amplify_get_branch(self, appId: str, branchName: str) -> dict:
        if (appId, branchName) not in self.amplify_branches:
            raise client_error("NotFoundException", "GetBranch", f"Branch {branchName} not found")
        return {"branch": {"branchName": branchName}}

    def _amplify_create_branch(self, appId: str, branchName: str, stage: str) -> dict:
        self.amplify_branches.add((appId, branchName))
        return {"branch": {"branchName": branchName, "stage": stage}}

    def _amplify_create_deployment(self, appId: str, branchName: str) -> dict:
        job_id = str(next(self._ids))
        return {"jobId": job_id, "zipUploadUrl": f"https://uploads.amplify.test/{appId}/{job_id}.zip"}

    def _amplify_start_deployment(self, appId: str, branchName: str, jobId: str) -> dict:
        return {"jobSummary": {"jobId": jobId, "status": "PENDING"}}

    def _amplify_get_job(self, appId: str, branchName: str, jobId: str) -> dict:
        return {"job": {"summary": {"jobId": jobId, "status": self.job_status}}}

    def _amplify_delete_app(self, appId: str) -> dict:
        if appId not in self.amplify_apps:
            raise client_error("NotFoundException", "DeleteApp", f"App {appId} not found")
        return {"app": self.amplify_apps.pop(appId)}

    # elasticbeanstalk

    def _elasticbeanstalk_describe_applications(self, ApplicationNames: list[str]) -> dict:
        return {
            "Applications": [
                {"ApplicationName": n, "ApplicationArn": f"arn:aws:elasticbeanstalk:{REGION}:{ACCOUNT_ID}:application/{n}"}
                for n in ApplicationNames
                if n in self.eb_applications
            ]
        }

    def _elasticbeanstalk_create_application(self, ApplicationName: str, Description: str) -> dict:
        self.eb_applications.add(ApplicationName)
        return {"Application": {"ApplicationName": ApplicationName}}

    def _elasticbeanstalk_list_available_solution_stacks(self) -> dict:
        return {
            "SolutionStacks": [
                "64bit Amazon Linux 2 v5.9.0 running Node.js 18",
                "64bit Amazon Linux 2023 v6.1.0 running Node.js 20",
                "64bit Amazon Linux 2023 v4.1.0 running Python 3.11",
            ]
        }

    def _elasticbeanstalk_create_application_version(
        self, ApplicationName: str, VersionLabel: str, SourceBundle: dict, Process: bool
    ) -> dict:
        self.eb_versions.setdefault(ApplicationName, []).append(VersionLabel)
        return {"ApplicationVersion": {"VersionLabel": VersionLabel}}

    def _elasticbeanstalk_describe_environments(
        self, ApplicationName: str, EnvironmentNames: list[str], IncludeDeleted: bool
    ) -> dict:
        status, health = self.eb_state
        return {
            "Environments": [
                dict(self.eb_environments[n], Status=status, Health=health)
                for n in EnvironmentNames
                if n in self.eb_environments
            ]
        }

    def _elasticbeanstalk_create_environment(
        self, ApplicationName: str, EnvironmentName: str, VersionLabel: str, OptionSettings: list[dict], **_: Any
    ) -> dict:
        self.eb_environments[EnvironmentName] = {
            "EnvironmentName": EnvironmentName,
            "ApplicationName": ApplicationName,
            "VersionLabel": VersionLabel,
            "CNAME": f"{EnvironmentName}.{REGION}.elasticbeanstalk.com",
            "OptionSettings": OptionSettings,
        }
        return dict(self.eb_environments[EnvironmentName])

    def _elasticbeanstalk_update_environment(
        self, ApplicationName: str, EnvironmentName: str, VersionLabel: str, OptionSettings: list[dict]
    ) -> dict:
        self.eb_environments[EnvironmentName].update(VersionLabel=VersionLabel, OptionSettings=OptionSettings)
        return dict(self.eb_environments[EnvironmentName])

    def _elasticbeanstalk_terminate_environment(self, EnvironmentName: str) -> dict:
        if EnvironmentName not in self.eb_environments:
            raise client_error("InvalidParameterValue", "TerminateEnvironment", f"Environment {EnvironmentName} not found")
        return self.eb_environments.pop(EnvironmentName)


class FakeProber:
    """Answers health probes from a host -> port table."""

    def __init__(self) -> None:
        self.healthy: dict[str, int | None] = {}
        self.default_port: int | None = None
        self.calls: list[tuple[str, list[int]]] = []

    async def probe(self, host: str, ports: list[int]) -> int | None:
        self.calls.append((host, list(ports)))
        port = self.healthy.get(host, self.default_port)
        return port if port in ports else None


class FakeCloner:
    def __init__(self, checkout_dir: Path) -> None:
        self.checkout_dir = checkout_dir
        self.cloned: list[DeploymentRequest] = []
        self.cleaned: list[Path] = []

    async def clone(self, request: DeploymentRequest) -> CheckoutResult:
        self.cloned.append(request)
        return CheckoutResult(
            path=self.checkout_dir,
            commit_sha="4f2c9e1a7b3d5f6e8a9b0c1d2e3f4a5b6c7d8e9f",
            commit_message="Add order endpoints",
        )

    async def cleanup(self, checkout: CheckoutResult) -> None:
        self.cleaned.append(checkout.path)


class FakeIntrospector:
    def __init__(self, profile: ProjectProfile) -> None:
        self.profile = profile

    async def inspect(self, path: Path, request: DeploymentRequest) -> ProjectProfile:
        return self.profile.model_copy(
            update={"build_cmd": request.build_cmd, "run_cmd": request.run_cmd}
        )


class FakeDns:
    def __init__(self, configured: bool = False, domain: str = "apps.example.dev") -> None:
        self._configured = configured
        self.domain = domain
        self.records: dict[str, str] = {}
        self.fail_upsert = False

    @property
    def configured(self) -> bool:
        return self._configured

    def hostname_for(self, service_name: str) -> str | None:
        return f"{service_name}.{self.domain}" if self._configured else None

    async def upsert_host_record(self, hostname: str, target: str) -> DnsResult:
        if self.fail_upsert:
            return DnsResult(success=False, error="HTTP 403: forbidden")
        self.records[hostname] = target
        return DnsResult(success=True, resolved_url=f"https://{hostname}")

    async def delete_host_record(self, hostname: str) -> DnsResult:
        self.records.pop(hostname, None)
        return DnsResult(success=True)


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Zero every poll interval and keep attempt budgets small."""
    for name in type(settings).model_fields:
        if name.endswith("_interval"):
            monkeypatch.setattr(settings, name, 0)
        elif name.endswith("_attempts"):
            monkeypatch.setattr(settings, name, 3)
    monkeypatch.setattr(settings, "vm_warmup_seconds", 0)
    monkeypatch.setattr(settings, "deployment_domain", None)
    monkeypatch.setattr(settings, "ecs_acm_certificate_arn", None)
    monkeypatch.setattr(settings, "shared_alb_enabled", True)
    monkeypatch.setattr(settings, "vercel_token", "")
    monkeypatch.setattr(settings, "vercel_domain", None)


@pytest.fixture
def aws() -> FakeAws:
    return FakeAws()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A small checked-out Python service."""
    root = tmp_path / "checkout"
    root.mkdir()
    (root / "requirements.txt").write_text("fastapi\nuvicorn\n")
    (root / "main.py").write_text("from fastapi import FastAPI\n\napp = FastAPI()\n")
    return root


@pytest.fixture
def deploy_request() -> DeploymentRequest:
    return DeploymentRequest(repo_url=REPO_URL, branch="main")


@pytest.fixture
def make_context(source_dir: Path, deploy_request: DeploymentRequest):
    """Factory for handler contexts."""

    def factory(
        profile: ProjectProfile | None = None,
        record: DeploymentRecord | None = None,
        request: DeploymentRequest | None = None,
        target: TargetPlatform = TargetPlatform.VIRTUAL_MACHINE,
        hostname: str | None = None,
        env: dict[str, str] | None = None,
    ) -> DeployContext:
        request = request or deploy_request
        return DeployContext(
            request=request,
            record=record
            or DeploymentRecord(owner_id="user-1", repo_url=request.repo_url, service_name=request.repo_name),
            profile=profile or ProjectProfile(language="python", framework="fastapi"),
            decision=TargetDecision(target=target, reason="chosen for test"),
            source_dir=source_dir,
            channel=ProgressChannel(),
            env=env or {},
            commit_sha="4f2c9e1a7b3d5f6e8a9b0c1d2e3f4a5b",
            hostname=hostname,
        )

    return factory


@pytest.fixture
def store() -> InMemoryDeploymentStore:
    return InMemoryDeploymentStore()


@pytest.fixture
def dns() -> FakeDns:
    return FakeDns()


@pytest.fixture
def introspector() -> FakeIntrospector:
    return FakeIntrospector(ProjectProfile(language="python", framework="fastapi", prefers_full_control=True))


@pytest.fixture
def controller(
    store: InMemoryDeploymentStore,
    source_dir: Path,
    introspector: FakeIntrospector,
    dns: FakeDns,
    prober: FakeProber,
    aws: FakeAws,
) -> DeploymentController:
    return DeploymentController(
        store=store,
        cloner=FakeCloner(source_dir),
        introspector=introspector,
        dns=dns,
        prober=prober,
        aws_factory=lambda region: aws,
        handlers=get_handler_registry(),
    )


@pytest.fixture
async def client() -> AsyncClient:
    """Create an async test client with a fresh deployment store."""
    store = get_deployment_store()
    store.clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    store.clear()
