"""Virtual-machine target: single-instance blue-green on EC2.

A candidate instance is launched next to the live one and must pass
HTTP health probes before it receives traffic. The old instance is
retired only after the routing rule for the candidate is confirmed.
When a healthy instance already exists, the handler first tries to
rebuild it in place over SSM and falls back to replacement if that
cannot be confirmed healthy.
"""

import asyncio
import re

from smartdeploy.config import settings
from smartdeploy.core.exceptions import (
    ConfigurationError,
    ConvergenceTimeoutError,
    SmartDeployError,
    StepFailedError,
)
from smartdeploy.core.interfaces import HealthProber
from smartdeploy.core.polling import Poller, PollResult, poll_until
from smartdeploy.core.selector import normalize_language
from smartdeploy.handlers.base import BaseHandler, DeployContext
from smartdeploy.handlers.dockerfiles import generate_dockerfile
from smartdeploy.handlers.vm_scripts import (
    VmService,
    bootstrap_script,
    redeploy_script,
    service_logs_script,
)
from smartdeploy.models.deployment import (
    DeploymentOutcome,
    DeploymentRecord,
    NetworkRefs,
    RoutingRefs,
    ServiceLogEntry,
    ServiceLogs,
    TargetPlatform,
    TeardownStep,
    VirtualMachineRefs,
)
from smartdeploy.models.steps import StepId
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.provisioning.compute import InstanceOperations
from smartdeploy.provisioning.identity import ensure_ssm_instance_profile
from smartdeploy.provisioning.load_balancer import LoadBalancerRouting, TargetGroupSpec
from smartdeploy.provisioning.naming import (
    resource_name,
    shared_alb_name,
    slugify,
    target_group_name,
)
from smartdeploy.provisioning.network import ensure_network
from smartdeploy.provisioning.remote_command import RemoteCommandChannel
from smartdeploy.services.health import HttpHealthProber, url_for

CANDIDATE_PORTS = (80, 8080, 3000, 5000)
OPEN_PORTS = (80, 443, 8080, 3000, 5000)
LAUNCH_ATTEMPTS = 5

ESCAPES = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\][^\x07]*\x07|\x1b[()][AB012]")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
TIMESTAMPED = re.compile(r"^(\d{4}-\d{2}-\d{2}T\S+)\s+(.*)$")


def _ordered_unique(ports) -> list[int]:
    seen: list[int] = []
    for port in ports:
        if port and port not in seen:
            seen.append(port)
    return seen


def parse_log_lines(raw: str) -> list[ServiceLogEntry]:
    """Split container or console output into entries.

    Terminal escapes are stripped. The ``service  |`` prefix added by
    compose is dropped from lines that carry a timestamp after it.
    """
    text = CONTROL_CHARS.sub("", ESCAPES.sub("", raw.replace("\r\n", "\n").replace("\r", "\n")))
    entries: list[ServiceLogEntry] = []
    for line in text.split("\n"):
        line = line.strip()
        if not line:
            continue
        body = line.split("|", 1)[1].strip() if "|" in line else line
        match = TIMESTAMPED.match(body)
        if match:
            entries.append(ServiceLogEntry(timestamp=match.group(1), message=match.group(2)))
        else:
            entries.append(ServiceLogEntry(message=line))
    return entries


class VirtualMachineHandler(BaseHandler):
    """Deploys to one EC2 instance per deployment."""

    def __init__(self, aws: AwsClient, prober: HealthProber | None = None):
        super().__init__(aws, prober or HttpHealthProber())
        self.instances = InstanceOperations(aws)
        self.commands = RemoteCommandChannel(aws)
        self.routing = LoadBalancerRouting(aws)

    @property
    def target(self) -> TargetPlatform:
        return TargetPlatform.VIRTUAL_MACHINE

    def plan_steps(self, record: DeploymentRecord) -> list[StepId]:
        steps = [StepId.SETUP, StepId.DEPLOY, StepId.VERIFY]
        if settings.deployment_domain:
            steps.append(StepId.ROUTING)
        if record.existing_instance is not None:
            steps.append(StepId.RETIRE)
        return steps

    def _services(self, context: DeployContext) -> list[VmService]:
        profile = context.profile
        if profile.services:
            return [
                VmService(
                    name=slugify(s.name),
                    directory=s.work_dir,
                    port=s.default_port,
                    dockerfile=None
                    if s.dockerfile
                    else generate_dockerfile(normalize_language(s.language), s.default_port),
                )
                for s in profile.services
            ]

        language = normalize_language(profile.language)
        port = profile.port or (3000 if language == "node" else 8080)
        dockerfile = None
        if not profile.has_container_file:
            dockerfile = generate_dockerfile(language, port, context.request.run_cmd)
        return [
            VmService(
                name=slugify(context.service_name),
                directory=context.request.work_dir or ".",
                port=port,
                dockerfile=dockerfile,
            )
        ]

    async def deploy(self, context: DeployContext) -> DeploymentOutcome:
        old = context.record.existing_instance
        services = self._services(context)
        ports = _ordered_unique([*CANDIDATE_PORTS, *(s.port for s in services)])

        await context.begin(StepId.SETUP)
        await ensure_ssm_instance_profile(
            self.aws, settings.ssm_role_name, settings.ssm_instance_profile_name
        )
        network = await ensure_network(
            self.aws,
            resource_name(context.service_name, "vm-sg"),
            _ordered_unique([*OPEN_PORTS, *(s.port for s in services)]),
            existing=old.network if old else None,
        )
        await context.log(
            StepId.SETUP,
            f"Network ready: VPC {network.vpc_id}, security group {network.security_group_id}",
        )
        await context.channel.succeed(StepId.SETUP)

        if old is not None and await self._is_healthy(old, ports):
            outcome = await self._redeploy_in_place(context, old, network, services, ports)
            if outcome is not None:
                return outcome
            await context.log(
                StepId.DEPLOY,
                "In-place update could not be confirmed healthy; replacing the instance",
            )

        return await self._blue_green(context, old, network, services, ports)

    async def _is_healthy(self, vm: VirtualMachineRefs, ports: list[int]) -> bool:
        instance = await self.instances.describe(vm.instance_id)
        if not instance or instance["State"]["Name"] != "running":
            return False
        ip = instance.get("PublicIpAddress") or vm.public_ip
        if not ip:
            return False
        return await self.prober.probe(ip, _ordered_unique([vm.port, *ports])) is not None

    async def _probe(self, context: DeployContext, ip: str, ports: list[int]) -> int:
        async def attempt() -> PollResult[int]:
            port = await self.prober.probe(ip, ports)
            if port:
                return PollResult.ready(port)
            return PollResult.pending(f"No healthy response from {ip} on ports {ports}")

        port = await poll_until(
            Poller(
                attempt=attempt,
                interval=settings.health_probe_interval,
                max_attempts=settings.health_probe_attempts,
                description=f"health of {ip}",
            ),
            context.progress(StepId.VERIFY),
        )
        return port or ports[0]

    async def _ensure_remote_access(self, context: DeployContext, instance_id: str) -> None:
        """Attach the SSM profile if missing and wait for the agent, rebooting once."""
        association = await self.instances.profile_association(instance_id)
        if association is None:
            await context.log(StepId.DEPLOY, f"Attaching SSM instance profile to {instance_id}")
            await self.instances.associate_profile(instance_id, settings.ssm_instance_profile_name)

        try:
            await self.commands.wait_agent(
                instance_id,
                settings.ssm_agent_interval,
                settings.ssm_agent_attempts,
                context.progress(StepId.DEPLOY),
            )
        except ConvergenceTimeoutError:
            await context.log(StepId.DEPLOY, f"SSM agent not registered; rebooting {instance_id}")
            await self.instances.reboot(instance_id)
            await self.commands.wait_agent(
                instance_id,
                settings.ssm_agent_interval,
                settings.ssm_agent_attempts,
                context.progress(StepId.DEPLOY),
            )

    async def _redeploy_in_place(
        self,
        context: DeployContext,
        old: VirtualMachineRefs,
        network: NetworkRefs,
        services: list[VmService],
        ports: list[int],
    ) -> DeploymentOutcome | None:
        await context.begin(StepId.DEPLOY)
        await context.log(StepId.DEPLOY, f"Instance {old.instance_id} is healthy; updating in place")

        async def stream(line: str) -> None:
            await context.log(StepId.DEPLOY, line)

        try:
            await self._ensure_remote_access(context, old.instance_id)
            command_id = await self.commands.send_script(
                old.instance_id,
                redeploy_script(
                    context.request.repo_url,
                    context.request.branch,
                    context.commit_sha,
                    services,
                    context.env,
                ),
                comment=f"SmartDeploy redeploy {context.service_name}",
            )
            await self.commands.wait_command(
                command_id,
                old.instance_id,
                settings.ssm_command_interval,
                settings.ssm_command_attempts,
                on_output=stream,
            )
        except (StepFailedError, ConvergenceTimeoutError) as e:
            await context.log(StepId.DEPLOY, f"In-place update failed: {e.message}")
            return None
        await context.channel.succeed(StepId.DEPLOY)

        await context.begin(StepId.VERIFY)
        instance = await self.instances.describe(old.instance_id)
        ip = (instance or {}).get("PublicIpAddress") or old.public_ip or ""
        try:
            port = await self._probe(context, ip, _ordered_unique([old.port, *ports]))
        except ConvergenceTimeoutError as e:
            await context.log(StepId.VERIFY, e.message)
            return None
        await context.channel.succeed(StepId.VERIFY)

        vm = old.model_copy(
            update={"public_ip": ip, "port": port, "network": network, "url": url_for(ip, port)}
        )
        url = vm.url
        dns_target = None
        if settings.deployment_domain and context.hostname:
            await context.begin(StepId.ROUTING)
            vm.routing = await self._route(context, network, context.hostname, old.instance_id, port)
            url = self._routed_url(context.hostname)
            dns_target = vm.routing.load_balancer_dns
            await context.channel.succeed(StepId.ROUTING)

        await context.channel.start(StepId.RETIRE)
        await context.log(StepId.RETIRE, "Instance updated in place; nothing to retire")
        await context.channel.succeed(StepId.RETIRE)

        vm.url = url
        return DeploymentOutcome(
            success=True,
            url=url,
            refs=context.record.refs.model_copy(update={"vm": vm}),
            dns_target=dns_target,
            message="Updated in place",
        )

    async def _launch(self, context: DeployContext, network: NetworkRefs, script: str) -> str:
        image_id = await self.instances.latest_ami(settings.vm_ami_name_pattern)

        async def attempt() -> PollResult[str]:
            instance_id = await self.instances.launch(
                name=resource_name(context.service_name, f"r{context.record.revision + 1}"),
                image_id=image_id,
                instance_type=settings.vm_instance_type,
                subnet_id=network.subnet_ids[0],
                security_group_id=network.security_group_id,
                instance_profile=settings.ssm_instance_profile_name,
                user_data=script,
                tags={"smartdeploy:deployment": context.record.id},
            )
            return PollResult.ready(instance_id)

        instance_id = await poll_until(
            Poller(
                attempt=attempt,
                interval=settings.instance_running_interval,
                max_attempts=LAUNCH_ATTEMPTS,
                description="instance launch",
            ),
            context.progress(StepId.DEPLOY),
        )
        if instance_id is None:
            raise StepFailedError("deploy", "EC2 did not return an instance id")
        return instance_id

    async def _blue_green(
        self,
        context: DeployContext,
        old: VirtualMachineRefs | None,
        network: NetworkRefs,
        services: list[VmService],
        ports: list[int],
    ) -> DeploymentOutcome:
        await context.begin(StepId.DEPLOY)
        script = bootstrap_script(
            context.request.repo_url,
            context.request.branch,
            context.commit_sha,
            services,
            context.env,
        )
        candidate = await self._launch(context, network, script)
        await context.log(StepId.DEPLOY, f"Launched candidate instance {candidate}")
        if old is not None:
            await context.log(StepId.DEPLOY, f"Previous instance {old.instance_id} keeps serving")

        try:
            ip = await self.instances.wait_running(
                candidate,
                settings.instance_running_interval,
                settings.instance_running_attempts,
                context.progress(StepId.DEPLOY),
            )
            await context.log(StepId.DEPLOY, f"Candidate running at {ip}")
            await context.channel.succeed(StepId.DEPLOY)

            await context.begin(StepId.VERIFY)
            if settings.vm_warmup_seconds:
                await context.log(
                    StepId.VERIFY, f"Waiting {settings.vm_warmup_seconds:.0f}s for bootstrap"
                )
                await asyncio.sleep(settings.vm_warmup_seconds)
            port = await self._probe(context, ip, ports)
            await context.log(StepId.VERIFY, f"Healthy on port {port}")
            await context.channel.succeed(StepId.VERIFY)

            vm = VirtualMachineRefs(
                instance_id=candidate,
                public_ip=ip,
                port=port,
                network=network,
                url=url_for(ip, port),
            )
            url = vm.url
            dns_target = None
            if settings.deployment_domain and context.hostname:
                await context.begin(StepId.ROUTING)
                vm.routing = await self._route(context, network, context.hostname, candidate, port)
                url = self._routed_url(context.hostname)
                dns_target = vm.routing.load_balancer_dns
                await context.channel.succeed(StepId.ROUTING)
            vm.url = url
        except SmartDeployError as e:
            return await self._fall_back(context, old, candidate, e)

        outcome = DeploymentOutcome(
            success=True,
            url=url,
            refs=context.record.refs.model_copy(update={"vm": vm}),
            dns_target=dns_target,
        )
        if old is not None:
            # Traffic already points at the candidate, so retirement runs even
            # after the caller has gone away
            await context.channel.start(StepId.RETIRE)
            try:
                await self._retire(context, old, vm.routing)
            except SmartDeployError as e:
                await context.channel.fail(StepId.RETIRE, e.message)
                self.logger.warning(
                    "vm.retire_failed",
                    deployment_id=context.record.id,
                    previous=old.instance_id,
                    error=e.message,
                )
                outcome.warnings.append(f"Previous instance {old.instance_id} was not retired: {e.message}")
                return outcome
            await context.channel.succeed(StepId.RETIRE)
        return outcome

    async def _fall_back(
        self,
        context: DeployContext,
        old: VirtualMachineRefs | None,
        candidate: str,
        error: SmartDeployError,
    ) -> DeploymentOutcome:
        """Terminate the candidate; keep the old instance serving if there is one."""
        step = context.channel.current_step() or StepId.VERIFY
        await context.log(step, f"Candidate {candidate} failed: {error.message}")
        await self.instances.terminate(candidate)
        await context.log(step, f"Terminated candidate {candidate}")
        await context.channel.fail(step, error.message)

        if old is None:
            raise error

        self.logger.warning(
            "vm.fallback_to_previous",
            deployment_id=context.record.id,
            candidate=candidate,
            previous=old.instance_id,
        )
        if StepId.RETIRE in {s.id for s in context.channel.ledger}:
            await context.log(StepId.RETIRE, f"Kept {old.instance_id}; nothing retired")
        return DeploymentOutcome(
            success=False,
            url=context.record.url or old.url,
            refs=context.record.refs,
            message=f"New instance failed ({error.message}); previous instance {old.instance_id} still serving",
        )

    def _routed_url(self, hostname: str) -> str:
        scheme = "https" if settings.ecs_acm_certificate_arn else "http"
        return f"{scheme}://{hostname}"

    async def _route(
        self,
        context: DeployContext,
        network: NetworkRefs,
        hostname: str,
        instance_id: str,
        port: int,
    ) -> RoutingRefs:
        """Register the instance behind the shared balancer and confirm the host rule."""
        account_id = await self.aws.account_id()
        balancer = await self.routing.ensure_balancer(
            shared_alb_name(account_id), network, settings.ecs_acm_certificate_arn
        )
        group = await self.routing.ensure_target_group(
            target_group_name(f"{context.service_name}-vm"),
            TargetGroupSpec(vpc_id=network.vpc_id, port=port, target_type="instance"),
        )
        await self.routing.register_targets(group.id, [instance_id], port)
        await context.log(StepId.ROUTING, f"Registered {instance_id} in {group.name}")

        routing = await self.routing.route(balancer, hostname, group.id)
        if not await self.routing.rule_confirmed(routing):
            raise StepFailedError("routing", f"Host rule for {hostname} not confirmed")
        await context.log(StepId.ROUTING, f"Host rule for {hostname} confirmed")

        await self.routing.wait_target_healthy(
            group.id,
            instance_id,
            settings.target_health_interval,
            settings.target_health_attempts,
            context.progress(StepId.ROUTING),
        )
        return routing

    async def _retire(
        self,
        context: DeployContext,
        old: VirtualMachineRefs,
        routing: RoutingRefs | None,
    ) -> None:
        old_group = old.routing.target_group_arn if old.routing else None
        group = old_group or (routing.target_group_arn if routing else None)
        if group:
            await self.routing.deregister_targets(group, [old.instance_id])
            await context.log(StepId.RETIRE, f"Deregistered {old.instance_id}")
        await self.instances.terminate(old.instance_id)
        await context.log(StepId.RETIRE, f"Terminated previous instance {old.instance_id}")

    async def fetch_service_logs(
        self, record: DeploymentRecord, service: str | None = None, lines: int | None = None
    ) -> ServiceLogs:
        """Recent container output from the instance, read over SSM.

        Falls back to the instance console when the agent or compose cannot
        answer, which also covers instances that never finished bootstrapping.
        """
        vm = record.refs.vm
        if vm is None:
            raise ConfigurationError(f"Deployment {record.id} has no instance")
        lines = lines or settings.service_log_lines
        output: list[str] = []

        async def collect(line: str) -> None:
            output.append(line)

        try:
            command_id = await self.commands.send_script(
                vm.instance_id,
                service_logs_script(service, lines),
                comment=f"SmartDeploy logs {record.service_name}",
            )
            await self.commands.wait_command(
                command_id,
                vm.instance_id,
                settings.ssm_command_interval,
                settings.service_log_attempts,
                on_output=collect,
            )
        except SmartDeployError as e:
            self.logger.warning("vm.logs.remote_unavailable", instance_id=vm.instance_id, error=e.message)

        entries = parse_log_lines("\n".join(output))
        source = "containers"
        if not entries:
            source = "console"
            entries = parse_log_lines(await self.instances.console_output(vm.instance_id))[-lines:]
        return ServiceLogs(
            deployment_id=record.id, instance_id=vm.instance_id, source=source, entries=entries
        )

    async def teardown(self, record: DeploymentRecord) -> list[TeardownStep]:
        vm = record.refs.vm
        if vm is None:
            return []
        steps: list[TeardownStep] = []
        if vm.routing:
            steps.append(
                await self._teardown_step(
                    "deregister instance",
                    self.routing.deregister_targets(vm.routing.target_group_arn, [vm.instance_id]),
                )
            )
            if vm.routing.rule_arn:
                steps.append(
                    await self._teardown_step("delete host rule", self.routing.delete_rule(vm.routing.rule_arn))
                )
            steps.append(
                await self._teardown_step(
                    "delete target group",
                    self.routing.delete_target_group(vm.routing.target_group_arn),
                )
            )
        steps.append(
            await self._teardown_step("terminate instance", self.instances.terminate(vm.instance_id))
        )
        return steps
