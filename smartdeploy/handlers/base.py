"""Base class for deployment target handlers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable

from smartdeploy.core.events import ProgressChannel
from smartdeploy.core.exceptions import ConfigurationError, SmartDeployError, StepFailedError
from smartdeploy.core.interfaces import HealthProber
from smartdeploy.core.polling import ProgressCallback
from smartdeploy.models.deployment import (
    DeploymentOutcome,
    DeploymentRecord,
    DeploymentRequest,
    ResourceRefs,
    ServiceLogs,
    TargetDecision,
    TargetPlatform,
    TeardownStep,
)
from smartdeploy.models.project import ProjectProfile
from smartdeploy.models.steps import StepId, StepStatus
from smartdeploy.provisioning.aws import AwsClient
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

STEP_VALUES = frozenset(s.value for s in StepId)


class DeploymentCancelledError(SmartDeployError):
    """The caller closed the progress channel."""

    def __init__(self, step: str):
        super().__init__(f"Deployment cancelled before step '{step}'", {"step": step})


@dataclass
class DeployContext:
    """Everything a handler needs for one attempt."""

    request: DeploymentRequest
    record: DeploymentRecord
    profile: ProjectProfile
    decision: TargetDecision
    source_dir: Path
    channel: ProgressChannel
    env: dict[str, str] = field(default_factory=dict)
    commit_sha: str | None = None
    # Hostname for host-based routing on the shared balancer
    hostname: str | None = None

    @property
    def service_name(self) -> str:
        return self.record.service_name

    async def log(self, step: StepId, line: str) -> None:
        await self.channel.log(step, line)

    def progress(self, step: StepId) -> ProgressCallback:
        """Poll progress callback that logs into ``step``."""

        async def report(attempt: int, message: str) -> None:
            await self.channel.log(step, f"[{attempt}] {message}")

        return report

    async def begin(self, step: StepId) -> None:
        """Start a step unless the caller has gone away."""
        if self.channel.closed:
            raise DeploymentCancelledError(step.value)
        await self.channel.start(step)


async def teardown_step(name: str, operation: Awaitable[Any]) -> TeardownStep:
    """Await one best-effort teardown operation and report its outcome."""
    try:
        await operation
    except SmartDeployError as e:
        logger.warning("teardown.step_failed", step=name, error=e.message)
        return TeardownStep(step=name, success=False, error=e.message)
    return TeardownStep(step=name, success=True)


class BaseHandler(ABC):
    """Base class for target handlers.

    Handlers implement:
    - target: The platform they deploy to
    - plan_steps(): Steps announced before the attempt starts
    - deploy(): The rollout itself
    - teardown(): Best-effort removal of owned resources
    """

    def __init__(self, aws: AwsClient, prober: HealthProber | None = None):
        self.aws = aws
        self.prober = prober
        self.logger = get_logger(f"handler.{self.target.value}")

    @property
    @abstractmethod
    def target(self) -> TargetPlatform:
        """Platform this handler deploys to."""
        pass

    def plan_steps(self, record: DeploymentRecord) -> list[StepId]:
        return [StepId.SETUP, StepId.BUILD, StepId.DEPLOY, StepId.VERIFY]

    @abstractmethod
    async def deploy(self, context: DeployContext) -> DeploymentOutcome:
        """Roll out the application.

        Raises:
            SmartDeployError: On fatal failures of the attempt
        """
        pass

    @abstractmethod
    async def teardown(self, record: DeploymentRecord) -> list[TeardownStep]:
        """Remove the resources this target owns for ``record``."""
        pass

    async def fetch_service_logs(
        self, record: DeploymentRecord, service: str | None = None, lines: int | None = None
    ) -> ServiceLogs:
        """Recent application output of a deployment.

        Raises:
            ConfigurationError: If the target does not expose service logs
        """
        raise ConfigurationError(f"Service logs are not available for {self.target.value} deployments")

    async def _teardown_step(self, name: str, operation: Awaitable[Any]) -> TeardownStep:
        return await teardown_step(name, operation)

    async def _failed(
        self, context: DeployContext, error: SmartDeployError, refs: ResourceRefs, label: str = ""
    ) -> DeploymentOutcome:
        """Fail the running step and report what was created so far.

        Resources created before the failure stay on the record so that a
        later delete can remove them.
        """
        message = f"{label}: {error.message}" if label else error.message
        if not isinstance(error, DeploymentCancelledError):
            step = context.channel.current_step() or StepId.DEPLOY
            running = {s.id for s in context.channel.ledger if s.status == StepStatus.IN_PROGRESS}
            # The named step wins only while it is still open
            if isinstance(error, StepFailedError) and error.step in STEP_VALUES:
                if StepId(error.step) in running:
                    step = StepId(error.step)
            await context.channel.fail(step, message)
        self.logger.warning("handler.rollout_failed", deployment_id=context.record.id, error=message)
        return DeploymentOutcome(success=False, url=context.record.url, refs=refs, message=message)
