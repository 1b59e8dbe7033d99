"""Deployment step and history models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Step progress status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


class StepId(str, Enum):
    """Known step identifiers, in lifecycle order."""

    CLONE = "clone"
    ANALYZE = "analyze"
    AUTH = "auth"
    SELECT = "select"
    DATABASE = "database"
    SETUP = "setup"
    BUILD = "build"
    DEPLOY = "deploy"
    VERIFY = "verify"
    ROUTING = "routing"
    RETIRE = "retire"
    DNS = "dns"
    DONE = "done"


STEP_LABELS: dict[StepId, str] = {
    StepId.CLONE: "Cloning repository",
    StepId.ANALYZE: "Analyzing project",
    StepId.AUTH: "Authenticating with AWS",
    StepId.SELECT: "Selecting deployment target",
    StepId.DATABASE: "Provisioning database",
    StepId.SETUP: "Preparing infrastructure",
    StepId.BUILD: "Building application",
    StepId.DEPLOY: "Deploying",
    StepId.VERIFY: "Verifying health",
    StepId.ROUTING: "Configuring routing",
    StepId.RETIRE: "Retiring previous instance",
    StepId.DNS: "Registering hostname",
    StepId.DONE: "Done",
}


class DeployStep(BaseModel):
    """One entry of the progress ledger."""

    id: StepId
    label: str
    logs: list[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def for_id(cls, step_id: StepId) -> "DeployStep":
        return cls(id=step_id, label=STEP_LABELS[step_id])


class HistoryEntry(BaseModel):
    """Persisted record of one deployment attempt."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    deployment_id: str
    user_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    success: bool
    url: str | None = None
    steps: list[DeployStep] = Field(default_factory=list)
    config_snapshot: dict[str, Any] = Field(default_factory=dict)
    commit_sha: str | None = None
    branch: str | None = None
    duration_ms: int = 0
    service_name: str | None = None
    repo_url: str | None = None
    error: str | None = None
