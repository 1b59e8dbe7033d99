"""Progress channel for a single deployment attempt.

Producers (the lifecycle controller and target handlers) push step
announcements, log lines, status changes and exactly one terminal
event. The transport (WebSocket endpoint) is the only consumer.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable

from smartdeploy.models.steps import DeployStep, StepId, StepStatus, utc_now
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Event:
    """A progress event."""

    event_type: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        """Serialize for the WebSocket transport."""
        return json.dumps(
            {"type": self.event_type, **self.data, "timestamp": self.timestamp.isoformat()}
        )

    @property
    def is_terminal(self) -> bool:
        return self.event_type == "terminal"


class ProgressChannel:
    """Ordered progress stream plus the authoritative step ledger."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._steps: dict[StepId, DeployStep] = {}
        self._announced = False
        self._terminal: Event | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the consumer has gone away."""
        return self._closed

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    @property
    def terminal(self) -> Event | None:
        return self._terminal

    @property
    def ledger(self) -> list[DeployStep]:
        return [step.model_copy(deep=True) for step in self._steps.values()]

    def close(self) -> None:
        """Mark the consumer as gone. Producers stop at the next step boundary."""
        self._closed = True

    async def _publish(self, event: Event) -> None:
        if not self._closed:
            await self._queue.put(event)

    async def announce_steps(self, step_ids: Iterable[StepId]) -> None:
        """Publish the list of steps for this attempt. Only the first call counts."""
        if self._announced:
            logger.warning("progress.steps_already_announced")
            return
        self._announced = True
        for step_id in step_ids:
            self._steps.setdefault(step_id, DeployStep.for_id(step_id))
        await self._publish(
            Event(
                event_type="steps",
                data={"steps": [{"id": s.id.value, "label": s.label} for s in self._steps.values()]},
            )
        )

    def _step(self, step_id: StepId) -> DeployStep:
        if step_id not in self._steps:
            self._steps[step_id] = DeployStep.for_id(step_id)
        return self._steps[step_id]

    async def log(self, step_id: StepId, line: str) -> None:
        """Append a log line to a step."""
        step = self._step(step_id)
        step.logs.append(line)
        if step.status == StepStatus.PENDING:
            await self.set_status(step_id, StepStatus.IN_PROGRESS)
        await self._publish(
            Event(event_type="log", data={"stepId": step_id.value, "logLine": line})
        )

    async def set_status(self, step_id: StepId, status: StepStatus) -> None:
        step = self._step(step_id)
        if step.status == status:
            return
        step.status = status
        now = utc_now()
        if status == StepStatus.IN_PROGRESS:
            step.started_at = now
        elif status in (StepStatus.SUCCESS, StepStatus.ERROR):
            step.completed_at = now
        await self._publish(
            Event(event_type="status", data={"stepId": step_id.value, "status": status.value})
        )

    async def start(self, step_id: StepId) -> None:
        await self.set_status(step_id, StepStatus.IN_PROGRESS)

    async def succeed(self, step_id: StepId) -> None:
        await self.set_status(step_id, StepStatus.SUCCESS)

    async def fail(self, step_id: StepId, error: str) -> None:
        step = self._step(step_id)
        step.logs.append(f"Error: {error}")
        await self._publish(
            Event(event_type="log", data={"stepId": step_id.value, "logLine": f"Error: {error}"})
        )
        await self.set_status(step_id, StepStatus.ERROR)

    def current_step(self) -> StepId | None:
        """The step most recently marked in progress."""
        for step in reversed(list(self._steps.values())):
            if step.status == StepStatus.IN_PROGRESS:
                return step.id
        return None

    async def complete(
        self,
        success: bool,
        url: str | None,
        resource_refs: dict[str, Any],
        error: str | None = None,
    ) -> bool:
        """Publish the terminal event. Returns False if one was already sent."""
        if self._terminal is not None:
            logger.warning("progress.duplicate_terminal", success=success)
            return False
        data: dict[str, Any] = {
            "success": success,
            "url": url,
            "resourceRefs": resource_refs,
        }
        if error:
            data["error"] = error
        self._terminal = Event(event_type="terminal", data=data)
        await self._publish(self._terminal)
        return True

    async def events(self) -> AsyncIterator[Event]:
        """Yield events in order until the terminal event."""
        while True:
            event = await self._queue.get()
            yield event
            if event.is_terminal:
                return
