"""Deployment lifecycle controller.

Sequences one deployment attempt:
1. clone - Check out the repository
2. analyze - Introspect the checkout
3. auth - Validate cloud credentials
4. select - Pick (or validate) the target platform
5. database - Provision a managed database when the project needs one
6. handler steps - Roll out on the chosen target
7. dns - Register the custom hostname
8. done - Persist the record and the attempt history
"""

import time
from typing import Callable

from smartdeploy.config import settings
from smartdeploy.core.events import ProgressChannel
from smartdeploy.core.exceptions import (
    ConfigurationError,
    ConflictError,
    DeploymentNotFoundError,
    SmartDeployError,
)
from smartdeploy.core.interfaces import (
    CheckoutResult,
    DeploymentStore,
    DnsRegistrar,
    HealthProber,
    Introspector,
    RepositoryCloner,
)
from smartdeploy.core.selector import resolve_target
from smartdeploy.core.store import get_deployment_store
from smartdeploy.core.workspace import FilesystemIntrospector, GitWorkspace
from smartdeploy.handlers.base import DeployContext, DeploymentCancelledError, teardown_step
from smartdeploy.handlers.registry import HandlerRegistry, get_handler_registry
from smartdeploy.models.deployment import (
    DeploymentOutcome,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    ResourceRefs,
    ServiceLogs,
    TargetDecision,
    TargetPlatform,
    TeardownReport,
    TeardownStep,
)
from smartdeploy.models.project import DatabaseSpec, ProjectProfile
from smartdeploy.models.steps import HistoryEntry, StepId, StepStatus
from smartdeploy.provisioning.aws import AwsClient, get_aws_client
from smartdeploy.provisioning.naming import db_identifier, hostname_for
from smartdeploy.services.database import DatabaseProvisioner, database_environment
from smartdeploy.services.dns import VercelDnsClient
from smartdeploy.services.health import HttpHealthProber
from smartdeploy.utils.logging import get_logger

AwsFactory = Callable[[str | None], AwsClient]

LEADING_STEPS = [StepId.CLONE, StepId.ANALYZE, StepId.AUTH, StepId.SELECT, StepId.DATABASE]
STEP_ORDER = list(StepId)


class DeploymentController:
    """Drives deployment attempts and teardown.

    The controller is the only component that knows about custom
    hostnames and persistence. Handlers only see a DeployContext.
    """

    def __init__(
        self,
        store: DeploymentStore | None = None,
        cloner: RepositoryCloner | None = None,
        introspector: Introspector | None = None,
        dns: DnsRegistrar | None = None,
        prober: HealthProber | None = None,
        aws_factory: AwsFactory | None = None,
        handlers: HandlerRegistry | None = None,
    ):
        self.store = store or get_deployment_store()
        self.cloner = cloner or GitWorkspace()
        self.introspector = introspector or FilesystemIntrospector()
        self.dns = dns or VercelDnsClient()
        self.prober = prober or HttpHealthProber()
        self.aws_factory = aws_factory or get_aws_client
        self.handlers = handlers or get_handler_registry()
        self.logger = get_logger("lifecycle")

    def select_target(
        self, profile: ProjectProfile, requested: TargetPlatform | None = None
    ) -> TargetDecision:
        """Pre-flight target selection. Never touches the cloud."""
        return resolve_target(profile, requested)

    async def _load_record(
        self, user_id: str, request: DeploymentRequest, deployment_id: str | None
    ) -> DeploymentRecord:
        service_name = request.service_name or request.repo_name
        if deployment_id:
            record = await self.store.get_deployment(deployment_id)
            if record is None:
                raise DeploymentNotFoundError(deployment_id)
            if record.owner_id != user_id:
                raise ConflictError(
                    f"Deployment {deployment_id} belongs to another user",
                    {"deployment_id": deployment_id},
                )
            return record

        for record in await self.store.list_for_user(user_id):
            if record.repo_url == request.repo_url and record.service_name == service_name:
                return record
        return DeploymentRecord(
            owner_id=user_id,
            repo_url=request.repo_url,
            service_name=service_name,
            region=request.region or settings.aws_region,
        )

    def _planned_steps(self, record: DeploymentRecord, target: TargetPlatform | None, aws: AwsClient) -> list[StepId]:
        """Steps announced before the target is known.

        With a known target only its handler steps are listed; otherwise
        the union over all handlers is announced and the unused ones are
        skipped after selection.
        """
        targets = [target] if target else self.handlers.targets()
        handler_steps: set[StepId] = set()
        for candidate in targets:
            handler_steps.update(self.handlers.create(candidate, aws, self.prober).plan_steps(record))
        tail = [StepId.DNS, StepId.DONE] if self.dns_enabled else [StepId.DONE]
        ordered = sorted(handler_steps, key=STEP_ORDER.index)
        return [*LEADING_STEPS, *ordered, *tail]

    @property
    def dns_enabled(self) -> bool:
        return self.dns.configured

    async def _skip_unplanned(self, channel: ProgressChannel, handler_steps: list[StepId], target: TargetPlatform) -> None:
        for step in channel.ledger:
            if step.id in LEADING_STEPS or step.id in (StepId.DNS, StepId.DONE):
                continue
            if step.id not in handler_steps and step.status == StepStatus.PENDING:
                await channel.log(step.id, f"Not used by {target.value}")
                await channel.succeed(step.id)

    async def run(
        self,
        user_id: str,
        request: DeploymentRequest,
        channel: ProgressChannel,
        deployment_id: str | None = None,
    ) -> HistoryEntry:
        """Run one deployment attempt, streaming progress into ``channel``.

        Exactly one terminal event is published, whatever happens.

        Returns:
            The history entry persisted for this attempt
        """
        started = time.monotonic()
        aws = self.aws_factory(request.region)
        checkout: CheckoutResult | None = None
        record: DeploymentRecord | None = None
        refs = ResourceRefs()
        outcome: DeploymentOutcome | None = None
        error: str | None = None
        existed = False

        self.logger.info("lifecycle.started", user_id=user_id, repo=request.repo_url)
        try:
            record = await self._load_record(user_id, request, deployment_id)
            existed = record.revision > 0 or deployment_id is not None
            refs = record.refs.model_copy(deep=True)
            await channel.announce_steps(
                self._planned_steps(record, request.target or record.target, aws)
            )

            await self._begin(channel, StepId.CLONE)
            checkout = await self.cloner.clone(request)
            await channel.log(
                StepId.CLONE,
                f"Cloned {request.repo_url}@{request.branch} ({(checkout.commit_sha or 'unknown')[:7]})",
            )
            if checkout.commit_message:
                await channel.log(StepId.CLONE, checkout.commit_message)
            await channel.succeed(StepId.CLONE)

            await self._begin(channel, StepId.ANALYZE)
            profile = await self.introspector.inspect(checkout.path, request)
            await channel.log(
                StepId.ANALYZE,
                f"Detected {profile.language or 'unknown'} {profile.framework}".rstrip()
                + (f" with {len(profile.services)} services" if profile.services else ""),
            )
            await channel.succeed(StepId.ANALYZE)

            await self._begin(channel, StepId.AUTH)
            account_id = await aws.account_id()
            await channel.log(StepId.AUTH, f"Authenticated to account ...{account_id[-4:]} in {aws.region}")
            await channel.succeed(StepId.AUTH)

            await self._begin(channel, StepId.SELECT)
            decision = resolve_target(profile, request.target)
            await channel.log(StepId.SELECT, f"Target: {decision.target.value} ({decision.reason})")
            for warning in decision.warnings:
                await channel.log(StepId.SELECT, f"Warning: {warning}")
            await channel.succeed(StepId.SELECT)
            if record.target and record.target != decision.target:
                raise ConflictError(
                    f"Deployment already runs on {record.target.value}; delete it before switching to {decision.target.value}",
                    {"current": record.target.value, "requested": decision.target.value},
                )

            handler = self.handlers.create(decision.target, aws, self.prober)
            handler_steps = handler.plan_steps(record)
            await self._skip_unplanned(channel, handler_steps, decision.target)

            env = dict(request.env_vars)
            await self._begin(channel, StepId.DATABASE)
            if profile.uses_database:
                refs = await self._provision_database(channel, aws, record, profile, refs, env)
            else:
                await channel.log(StepId.DATABASE, "No database required")
                await channel.succeed(StepId.DATABASE)

            context = DeployContext(
                request=request,
                record=record.model_copy(update={"refs": refs}),
                profile=profile,
                decision=decision,
                source_dir=checkout.path,
                channel=channel,
                env=env,
                commit_sha=request.commit_sha or checkout.commit_sha,
                hostname=hostname_for(record.service_name, settings.deployment_domain)
                if settings.deployment_domain
                else None,
            )
            outcome = await handler.deploy(context)
            refs = outcome.refs
            if outcome.in_progress and outcome.message:
                await channel.log(channel.current_step() or StepId.VERIFY, outcome.message)
            for warning in outcome.warnings:
                await channel.log(StepId.DONE, f"Warning: {warning}")

            record.target = decision.target
            record.region = aws.region
            record.refs = refs
            if outcome.success:
                record.mark_deployed(outcome.url)
                await self._register_hostname(channel, record, outcome)
            else:
                error = outcome.message or "Deployment failed"
                if record.revision == 0:
                    record.status = DeploymentStatus.FAILED

        except DeploymentCancelledError as e:
            error = e.message
            self.logger.info("lifecycle.cancelled", user_id=user_id, step=e.details.get("step"))
        except SmartDeployError as e:
            error = e.message
            step = channel.current_step()
            if step is not None:
                await channel.fail(step, e.message)
            self.logger.warning("lifecycle.failed", user_id=user_id, error=e.message)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            step = channel.current_step()
            if step is not None:
                await channel.fail(step, error)
            self.logger.exception("lifecycle.crashed", user_id=user_id)
            await self._finish(channel, user_id, request, record, refs, outcome, error, existed, checkout, started)
            raise
        finally:
            if checkout is not None:
                await self.cloner.cleanup(checkout)

        return await self._finish(
            channel, user_id, request, record, refs, outcome, error, existed, checkout, started
        )

    async def _begin(self, channel: ProgressChannel, step: StepId) -> None:
        if channel.closed:
            raise DeploymentCancelledError(step.value)
        await channel.start(step)

    async def _provision_database(
        self,
        channel: ProgressChannel,
        aws: AwsClient,
        record: DeploymentRecord,
        profile: ProjectProfile,
        refs: ResourceRefs,
        env: dict[str, str],
    ) -> ResourceRefs:
        """Provision the database. Failures are reported but do not stop the rollout."""
        existing = refs.database
        spec = DatabaseSpec(
            engine=profile.database_engine or "postgres",
            instance_identifier=existing.instance_identifier
            if existing
            else db_identifier(record.service_name),
            region=aws.region,
        )

        async def report(attempt: int, message: str) -> None:
            await channel.log(StepId.DATABASE, f"[{attempt}] {message}")

        await channel.log(StepId.DATABASE, f"Ensuring {spec.engine} instance {spec.instance_identifier}")
        try:
            connection = await DatabaseProvisioner(aws).provision(spec, existing, report)
        except SmartDeployError as e:
            await channel.fail(StepId.DATABASE, f"{e.message}; continuing without a managed database")
            return refs
        env.update(database_environment(connection.connection_string))
        await channel.log(StepId.DATABASE, f"Database available at {connection.endpoint}:{connection.port}")
        await channel.succeed(StepId.DATABASE)
        return refs.model_copy(update={"database": connection.refs})

    async def _register_hostname(
        self, channel: ProgressChannel, record: DeploymentRecord, outcome: DeploymentOutcome
    ) -> None:
        if not self.dns_enabled:
            return
        await channel.start(StepId.DNS)
        hostname = self.dns.hostname_for(record.service_name)
        if not hostname or not outcome.dns_target:
            await channel.log(StepId.DNS, "No hostname target reported; skipping")
            await channel.succeed(StepId.DNS)
            return

        result = await self.dns.upsert_host_record(hostname, outcome.dns_target)
        if not result.success:
            await channel.fail(StepId.DNS, result.error or f"Could not register {hostname}")
            return
        record.custom_hostname = hostname
        custom_url = result.resolved_url or f"https://{hostname}"
        if custom_url not in record.urls:
            record.urls.append(custom_url)
        await channel.log(StepId.DNS, f"{hostname} -> {outcome.dns_target}")
        await channel.succeed(StepId.DNS)

    async def _finish(
        self,
        channel: ProgressChannel,
        user_id: str,
        request: DeploymentRequest,
        record: DeploymentRecord | None,
        refs: ResourceRefs,
        outcome: DeploymentOutcome | None,
        error: str | None,
        existed: bool,
        checkout: CheckoutResult | None,
        started: float,
    ) -> HistoryEntry:
        """Persist the record and history, then publish the terminal event."""
        success = error is None and outcome is not None and outcome.success
        url = outcome.url if outcome is not None else None
        if not success and record is not None:
            url = url or record.url

        if success:
            await channel.log(StepId.DONE, f"Deployed revision {record.revision}" + (f": {url}" if url else ""))
            await channel.succeed(StepId.DONE)
        else:
            await channel.fail(StepId.DONE, error or "Deployment failed")

        deployment_id = record.id if record is not None else "unknown"
        if record is not None:
            record.refs = refs
            created_resources = refs != ResourceRefs()
            if record.revision == 0 and record.status == DeploymentStatus.PENDING:
                record.status = DeploymentStatus.FAILED
            if existed or success or created_resources:
                await self.store.upsert_deployment(record)

        entry = HistoryEntry(
            deployment_id=deployment_id,
            user_id=user_id,
            success=success,
            url=url,
            steps=channel.ledger,
            config_snapshot=request.config_snapshot(),
            commit_sha=request.commit_sha or (checkout.commit_sha if checkout else None),
            branch=request.branch,
            duration_ms=int((time.monotonic() - started) * 1000),
            service_name=record.service_name if record is not None else None,
            repo_url=request.repo_url,
            error=error,
        )
        await self.store.append_history(deployment_id, entry)

        await channel.complete(success, url, refs.public_dump(), error)
        self.logger.info(
            "lifecycle.finished",
            deployment_id=deployment_id,
            success=success,
            revision=record.revision if record is not None else 0,
            duration_ms=entry.duration_ms,
        )
        return entry

    async def delete_deployment(self, deployment_id: str) -> TeardownReport:
        """De-provision a deployment and remove its record.

        Sub-step failures are reported and never block record deletion.

        Raises:
            DeploymentNotFoundError: If the record does not exist
        """
        record = await self.store.get_deployment(deployment_id)
        if record is None:
            raise DeploymentNotFoundError(deployment_id)

        aws = self.aws_factory(record.region)
        steps: list[TeardownStep] = []
        if record.target is not None:
            handler = self.handlers.create(record.target, aws, self.prober)
            steps.extend(await handler.teardown(record))
        if record.refs.database is not None:
            steps.append(
                await teardown_step(
                    "delete database",
                    DatabaseProvisioner(aws).delete(record.refs.database.instance_identifier),
                )
            )
        if record.custom_hostname:
            result = await self.dns.delete_host_record(record.custom_hostname)
            steps.append(TeardownStep(step="delete dns record", success=result.success, error=result.error))

        deleted = await self.store.delete_deployment(deployment_id)
        report = TeardownReport(deployment_id=deployment_id, record_deleted=deleted, steps=steps)
        self.logger.info(
            "lifecycle.deleted",
            deployment_id=deployment_id,
            partial_failure=report.partial_failure,
        )
        return report

    async def service_logs(
        self, deployment_id: str, service: str | None = None, lines: int | None = None
    ) -> ServiceLogs:
        """Recent application output of a deployment.

        Raises:
            DeploymentNotFoundError: If the record does not exist
            ConfigurationError: If the deployment has no readable instance
        """
        record = await self.store.get_deployment(deployment_id)
        if record is None:
            raise DeploymentNotFoundError(deployment_id)
        if record.target is None:
            raise ConfigurationError(f"Deployment {deployment_id} has not been rolled out")
        handler = self.handlers.create(record.target, self.aws_factory(record.region), self.prober)
        return await handler.fetch_service_logs(record, service, lines)


_controller: DeploymentController | None = None


def get_controller() -> DeploymentController:
    """Get the deployment controller singleton."""
    global _controller
    if _controller is None:
        _controller = DeploymentController()
    return _controller
