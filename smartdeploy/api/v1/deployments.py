"""Deployment endpoints."""

import asyncio
from typing import Annotated

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ValidationError

from smartdeploy.api.deps import ControllerDep, DeploymentDep, StoreDep
from smartdeploy.core.events import ProgressChannel
from smartdeploy.models.deployment import (
    DeploymentRequest,
    DeploymentResponse,
    ServiceLogs,
    TargetDecision,
    TargetPlatform,
    TeardownReport,
)
from smartdeploy.models.project import ProjectProfile
from smartdeploy.models.steps import HistoryEntry
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

# Attempts whose socket went away keep running to the next step boundary
_background: set[asyncio.Task] = set()


class DeploymentListResponse(BaseModel):
    """Response for listing deployments."""

    deployments: list[DeploymentResponse]
    total: int


class HistoryResponse(BaseModel):
    """Attempt history of one deployment, newest first."""

    deployment_id: str
    entries: list[HistoryEntry]


class DeployMessage(BaseModel):
    """First message a client sends on the deployment socket."""

    user_id: str
    deployment_id: str | None = None
    request: DeploymentRequest


@router.post(
    "/select-target",
    response_model=TargetDecision,
    summary="Preview the target for a project",
)
async def select_target(
    profile: ProjectProfile,
    controller: ControllerDep,
    target: Annotated[TargetPlatform | None, Query()] = None,
) -> TargetDecision:
    """Select a target for ``profile``, or validate the requested one."""
    return controller.select_target(profile, target)


@router.get(
    "",
    response_model=DeploymentListResponse,
    summary="List a user's deployments",
)
async def list_deployments(
    store: StoreDep,
    user_id: Annotated[str, Query(min_length=1)],
) -> DeploymentListResponse:
    records = await store.list_for_user(user_id)
    return DeploymentListResponse(
        deployments=[DeploymentResponse.from_record(r) for r in records],
        total=len(records),
    )


@router.get(
    "/{deployment_id}",
    response_model=DeploymentResponse,
    summary="Get deployment details",
)
async def get_deployment(deployment: DeploymentDep) -> DeploymentResponse:
    return DeploymentResponse.from_record(deployment)


@router.get(
    "/{deployment_id}/history",
    response_model=HistoryResponse,
    summary="Get deployment attempt history",
)
async def get_deployment_history(deployment_id: str, store: StoreDep) -> HistoryResponse:
    """History survives record deletion, so unknown ids return an empty list."""
    return HistoryResponse(
        deployment_id=deployment_id,
        entries=await store.get_history(deployment_id),
    )


@router.delete(
    "/{deployment_id}",
    response_model=TeardownReport,
    status_code=status.HTTP_200_OK,
    summary="Tear down a deployment",
)
async def delete_deployment(deployment: DeploymentDep, controller: ControllerDep) -> TeardownReport:
    """De-provision cloud resources and remove the record.

    Individual teardown failures are reported in the response body.
    """
    return await controller.delete_deployment(deployment.id)


@router.get(
    "/{deployment_id}/logs",
    response_model=ServiceLogs,
    summary="Get recent application logs",
)
async def get_service_logs(
    deployment: DeploymentDep,
    controller: ControllerDep,
    service: Annotated[str | None, Query(min_length=1, max_length=64)] = None,
    lines: Annotated[int | None, Query(ge=1, le=1000)] = None,
) -> ServiceLogs:
    """Read recent container output from a virtual-machine deployment.

    ``service`` narrows the output to one compose service.
    """
    return await controller.service_logs(deployment.id, service, lines)


def _report_outcome(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("deployment.background_failed", error=str(error), exc_info=error)


def _track(task: asyncio.Task) -> None:
    _background.add(task)
    task.add_done_callback(_report_outcome)


def running_attempts() -> int:
    """Deployment attempts still running in this process."""
    return sum(1 for task in _background if not task.done())


async def _forward(websocket: WebSocket, channel: ProgressChannel) -> None:
    async for event in channel.events():
        await websocket.send_text(event.to_json())


async def _watch_disconnect(websocket: WebSocket) -> None:
    while True:
        await websocket.receive_text()


@router.websocket("/ws")
async def deployment_socket(websocket: WebSocket, controller: ControllerDep) -> None:
    """Run one deployment attempt and stream its progress.

    The client sends a DeployMessage, then receives the steps event, log
    and status events, and exactly one terminal event. Closing the
    socket cancels the attempt at the next step boundary.
    """
    await websocket.accept()
    try:
        message = DeployMessage.model_validate(await websocket.receive_json())
    except (ValidationError, ValueError) as e:
        logger.warning("deploy_socket.invalid_message", error=str(e))
        await websocket.send_json({"type": "error", "message": "Invalid deployment message"})
        await websocket.close(code=1003)
        return

    channel = ProgressChannel()
    with structlog.contextvars.bound_contextvars(
        user_id=message.user_id, deployment_id=message.deployment_id
    ):
        run = asyncio.create_task(
            controller.run(message.user_id, message.request, channel, message.deployment_id)
        )
    _track(run)
    logger.info("deploy_socket.started", user_id=message.user_id, repo=message.request.repo_url)

    forward = asyncio.create_task(_forward(websocket, channel))
    watch = asyncio.create_task(_watch_disconnect(websocket))
    done, pending = await asyncio.wait({forward, watch}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()

    if forward in done and forward.exception() is None:
        await websocket.close()
        logger.info("deploy_socket.completed", user_id=message.user_id)
        return

    channel.close()
    error = (forward if forward in done else watch).exception()
    if not isinstance(error, WebSocketDisconnect):
        logger.warning("deploy_socket.error", error=str(error))
    logger.info("deploy_socket.disconnected", user_id=message.user_id)
