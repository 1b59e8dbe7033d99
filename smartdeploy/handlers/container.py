"""Container target: remote image builds and managed Fargate services."""

import tempfile
from collections.abc import Callable
from pathlib import Path

from smartdeploy.config import settings
from smartdeploy.core.exceptions import SmartDeployError, StepFailedError
from smartdeploy.core.selector import normalize_language
from smartdeploy.handlers.archive import create_archive
from smartdeploy.handlers.base import BaseHandler, DeployContext
from smartdeploy.handlers.dockerfiles import generate_dockerfile
from smartdeploy.models.deployment import (
    ContainerRefs,
    DeploymentOutcome,
    DeploymentRecord,
    NetworkRefs,
    RoutingRefs,
    ServiceRefs,
    TargetPlatform,
    TeardownStep,
)
from smartdeploy.models.project import ServiceDescriptor
from smartdeploy.models.steps import StepId
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.provisioning.build import BuildEnvironment, RemoteImageBuilder
from smartdeploy.provisioning.containers import (
    ClusterResource,
    ClusterSpec,
    ContainerServiceOperations,
    ServicePlacement,
    TaskSpec,
)
from smartdeploy.provisioning.load_balancer import (
    Balancer,
    LoadBalancerRouting,
    TargetGroupSpec,
)
from smartdeploy.provisioning.naming import (
    env_var_name,
    hostname_for,
    resource_name,
    shared_alb_name,
    slugify,
    target_group_name,
)
from smartdeploy.provisioning.network import ensure_network
from smartdeploy.provisioning.registry import RepositoryResource, RepositorySpec, registry_host
from smartdeploy.provisioning.storage import upload_file


class ContainerHandler(BaseHandler):
    """Deploys each service as an ECS Fargate service.

    Services are rolled out in detection order. URLs of services that are
    already deployed are injected into later ones as ``<NAME>_URL``.
    """

    def __init__(self, aws: AwsClient, prober=None):
        super().__init__(aws, prober)
        self.services = ContainerServiceOperations(aws)
        self.routing = LoadBalancerRouting(aws)
        self.builder = RemoteImageBuilder(aws, settings.codebuild_role_name, settings.codebuild_image)
        self._shared_balancer: Balancer | None = None

    @property
    def target(self) -> TargetPlatform:
        return TargetPlatform.CONTAINER_PLATFORM

    def _descriptors(self, context: DeployContext) -> list[ServiceDescriptor]:
        if context.profile.services:
            return list(context.profile.services)
        profile = context.profile
        return [
            ServiceDescriptor(
                name=context.service_name,
                work_dir=context.request.work_dir or ".",
                language=profile.language,
                framework=profile.framework,
                port=profile.port,
                dockerfile="Dockerfile" if profile.has_container_file else None,
            )
        ]

    def _names(self, context: DeployContext, descriptor: ServiceDescriptor) -> tuple[str, str | None]:
        """ECS service name and routed hostname for one descriptor."""
        single = not context.profile.services
        if single:
            return resource_name(context.service_name, "svc"), context.hostname
        base = f"{context.service_name}-{slugify(descriptor.name)}"
        hostname = None
        if settings.deployment_domain:
            hostname = hostname_for(base, settings.deployment_domain)
        return resource_name(base, "svc"), hostname

    def _image_tag(self, context: DeployContext) -> str:
        if context.commit_sha:
            return context.commit_sha[:12]
        return f"r{context.record.revision + 1}"

    def _url_for_host(self, hostname: str) -> str:
        scheme = "https" if settings.ecs_acm_certificate_arn else "http"
        return f"{scheme}://{hostname}"

    async def deploy(self, context: DeployContext) -> DeploymentOutcome:
        descriptors = self._descriptors(context)
        previous = context.record.refs.container

        await context.begin(StepId.SETUP)
        network = await ensure_network(
            self.aws,
            resource_name(context.service_name, "ecs-sg"),
            sorted({d.default_port for d in descriptors}),
            existing=previous.network if previous else None,
        )
        cluster = await ClusterResource(self.aws).ensure(
            resource_name(context.service_name, "cluster"), ClusterSpec()
        )
        build_env = await self.builder.ensure(f"smart-deploy-{slugify(context.service_name)}")
        execution_role = await self.services.execution_role_arn(settings.ecs_execution_role)
        await context.log(StepId.SETUP, f"Cluster {cluster.name} in VPC {network.vpc_id}")
        await context.channel.succeed(StepId.SETUP)

        container = ContainerRefs(
            cluster=cluster.name,
            network=network,
            services=dict(previous.services) if previous else {},
        )
        sibling_urls: dict[str, str] = {}

        def track(name: str, partial: ServiceRefs) -> None:
            # A previously deployed version keeps serving, so its refs stay
            if previous is None or name not in previous.services:
                container.services[name] = partial

        for descriptor in descriptors:
            try:
                service = await self._deploy_service(
                    context, descriptor, network, cluster.name, build_env, execution_role, sibling_urls, track
                )
            except SmartDeployError as e:
                return await self._failed(
                    context,
                    e,
                    context.record.refs.model_copy(update={"container": container}),
                    label=f"Service {descriptor.name}",
                )
            container.services[descriptor.name] = service
            if service.url:
                sibling_urls[env_var_name(descriptor.name)] = service.url

        for step in (StepId.BUILD, StepId.DEPLOY, StepId.VERIFY):
            await context.channel.succeed(step)

        primary = container.services[descriptors[0].name]
        dns_target = primary.routing.load_balancer_dns if primary.routing else None
        return DeploymentOutcome(
            success=True,
            url=primary.url,
            refs=context.record.refs.model_copy(update={"container": container}),
            dns_target=dns_target,
        )

    async def _build_image(
        self,
        context: DeployContext,
        descriptor: ServiceDescriptor,
        build_env: BuildEnvironment,
        repository: str,
        registry_uri: str,
        image_tag: str,
    ) -> None:
        source = (context.source_dir / descriptor.work_dir).resolve()
        extra: dict[str, str] = {}
        dockerfile = descriptor.dockerfile
        if not dockerfile or not (source / dockerfile).exists():
            extra["Dockerfile"] = generate_dockerfile(
                normalize_language(descriptor.language or context.profile.language),
                descriptor.default_port,
                context.request.run_cmd if not context.profile.services else None,
            )
            dockerfile = None
            await context.log(StepId.BUILD, f"Generated Dockerfile for {descriptor.name}")

        key = f"{repository}/{image_tag}.zip"
        with tempfile.TemporaryDirectory(prefix="smartdeploy-") as scratch:
            archive = Path(scratch) / "source.zip"
            entries = await create_archive(source, archive, extra)
            await context.log(StepId.BUILD, f"Packaged {entries} files for {descriptor.name}")
            await upload_file(self.aws, build_env.bucket, key, archive)

        build_id = await self.builder.build(
            build_env,
            key,
            registry_host(registry_uri),
            repository,
            image_tag,
            settings.codebuild_interval,
            settings.codebuild_attempts,
            dockerfile=dockerfile if dockerfile != "Dockerfile" else None,
            on_progress=context.progress(StepId.BUILD),
        )
        await context.log(StepId.BUILD, f"Build {build_id} pushed {repository}:{image_tag}")

    async def _route(
        self,
        context: DeployContext,
        ecs_name: str,
        hostname: str | None,
        network: NetworkRefs,
        port: int,
    ) -> tuple[RoutingRefs, str]:
        group = await self.routing.ensure_target_group(
            target_group_name(ecs_name),
            TargetGroupSpec(vpc_id=network.vpc_id, port=port, target_type="ip"),
        )

        if settings.shared_alb_enabled and hostname:
            if self._shared_balancer is None:
                account_id = await self.aws.account_id()
                self._shared_balancer = await self.routing.ensure_balancer(
                    shared_alb_name(account_id), network, settings.ecs_acm_certificate_arn
                )
            balancer = self._shared_balancer
            routing = await self.routing.route(balancer, hostname, group.id)
            if not await self.routing.rule_confirmed(routing):
                raise StepFailedError("deploy", f"Host rule for {hostname} not confirmed")
            await context.log(StepId.DEPLOY, f"Routing {hostname} through {balancer.dns_name}")
            url = self._url_for_host(hostname)
        else:
            balancer = await self.routing.ensure_balancer(
                resource_name(ecs_name, "alb", max_length=32),
                network,
                default_target_group_arn=group.id,
            )
            routing = RoutingRefs(
                load_balancer_arn=balancer.arn,
                load_balancer_dns=balancer.dns_name,
                listener_arn=balancer.routing_listener_arn,
                target_group_arn=group.id,
                shared=False,
            )
            await context.log(StepId.DEPLOY, f"Dedicated load balancer {balancer.dns_name}")
            url = f"http://{balancer.dns_name}"

        await self.routing.allow_from_balancer(
            resource_name(context.service_name, "ecs-sg"),
            network.vpc_id,
            balancer.security_group_id,
            port,
        )
        return routing, url

    async def _deploy_service(
        self,
        context: DeployContext,
        descriptor: ServiceDescriptor,
        network: NetworkRefs,
        cluster: str,
        build_env: BuildEnvironment,
        execution_role: str,
        sibling_urls: dict[str, str],
        track: Callable[[str, ServiceRefs], None],
    ) -> ServiceRefs:
        ecs_name, hostname = self._names(context, descriptor)
        port = descriptor.default_port
        image_tag = self._image_tag(context)

        await context.begin(StepId.BUILD)
        repository = await RepositoryResource(self.aws).ensure(
            resource_name(ecs_name, "repo"), RepositorySpec()
        )
        refs = ServiceRefs(
            service_name=ecs_name, ecr_repository_uri=repository.id, image_tag=image_tag, port=port
        )
        track(descriptor.name, refs)
        await self._build_image(context, descriptor, build_env, repository.name, repository.id, image_tag)

        await context.begin(StepId.DEPLOY)
        environment = {"PORT": str(port), **context.env, **sibling_urls}
        if sibling_urls:
            await context.log(
                StepId.DEPLOY, f"Linking {descriptor.name} to {', '.join(sorted(sibling_urls))}"
            )
        task_definition = await self.services.register_task_definition(
            TaskSpec(
                family=ecs_name,
                image=f"{repository.id}:{image_tag}",
                port=port,
                environment=environment,
                cpu=settings.ecs_cpu,
                memory=settings.ecs_memory,
                execution_role_arn=execution_role,
                log_group=f"/ecs/{ecs_name}",
            )
        )
        routing, url = await self._route(context, ecs_name, hostname, network, port)
        track(
            descriptor.name,
            refs.model_copy(update={"task_definition_arn": task_definition, "routing": routing}),
        )
        await self.services.deploy_service(
            ecs_name,
            task_definition,
            ServicePlacement(
                cluster=cluster,
                subnet_ids=network.subnet_ids,
                security_group_id=network.security_group_id,
                desired_count=settings.ecs_desired_count,
                target_group_arn=routing.target_group_arn,
            ),
            container_name=ecs_name,
            port=port,
        )

        await context.begin(StepId.VERIFY)
        await self.services.wait_running(
            cluster,
            ecs_name,
            settings.ecs_stable_interval,
            settings.ecs_stable_attempts,
            context.progress(StepId.VERIFY),
        )
        await context.log(StepId.VERIFY, f"{descriptor.name} running at {url}")

        return ServiceRefs(
            service_name=ecs_name,
            ecr_repository_uri=repository.id,
            image_tag=image_tag,
            task_definition_arn=task_definition,
            port=port,
            url=url,
            routing=routing,
        )

    async def teardown(self, record: DeploymentRecord) -> list[TeardownStep]:
        container = record.refs.container
        if container is None:
            return []
        steps: list[TeardownStep] = []
        for name, service in container.services.items():
            steps.append(
                await self._teardown_step(
                    f"delete service {name}",
                    self.services.delete_service(container.cluster, service.service_name),
                )
            )
            routing = service.routing
            if routing is None:
                continue
            if routing.shared and routing.rule_arn:
                steps.append(
                    await self._teardown_step(
                        f"delete host rule {name}", self.routing.delete_rule(routing.rule_arn)
                    )
                )
            if not routing.shared:
                steps.append(
                    await self._teardown_step(
                        f"delete load balancer {name}",
                        self.routing.delete_balancer(routing.load_balancer_arn),
                    )
                )
            steps.append(
                await self._teardown_step(
                    f"delete target group {name}",
                    self.routing.delete_target_group(routing.target_group_arn),
                )
            )
        return steps
