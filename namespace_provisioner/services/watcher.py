"""Poll the workflow engine and turn phase changes into broadcast events."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from namespace_provisioner.config import settings
from namespace_provisioner.exceptions import DispatchError
from namespace_provisioner.models.schemas import WorkflowEvent, WorkflowPhase, WorkflowStatus
from namespace_provisioner.services.broadcaster import StatusBroadcaster
from namespace_provisioner.services.workflows import ArgoWorkflowClient

logger = logging.getLogger(__name__)


def event_from_status(status: WorkflowStatus) -> WorkflowEvent:
    """Build the event describing a workflow's current phase."""
    message = status.message or ""
    if not message and status.phase == WorkflowPhase.FAILED:
        message = "Workflow failed"

    return WorkflowEvent(
        workflow_id=status.workflow_id,
        phase=status.phase,
        message=message,
        timestamp=datetime.now(timezone.utc),
    )


class WorkflowEventWatcher:
    """Emits a WorkflowEvent whenever an engine workflow changes phase."""

    def __init__(
        self,
        engine: ArgoWorkflowClient,
        broadcaster: StatusBroadcaster,
        interval: Optional[float] = None,
    ):
        self.engine = engine
        self.broadcaster = broadcaster
        self.interval = interval if interval is not None else settings.status_poll_interval
        self._last_events: Dict[str, WorkflowEvent] = {}
        self._task: Optional[asyncio.Task] = None

    def last_event(self, workflow_id: str) -> Optional[WorkflowEvent]:
        """Last phase change seen for a workflow, if any."""
        return self._last_events.get(workflow_id)

    async def poll_once(self) -> List[WorkflowEvent]:
        """Query the engine once and broadcast every phase change.

        Returns:
            The events emitted, in engine order
        """
        statuses = await self.engine.list_statuses()

        emitted = []
        seen = set()
        for status in statuses:
            if not status.workflow_id:
                continue
            seen.add(status.workflow_id)

            previous = self._last_events.get(status.workflow_id)
            if previous is not None and previous.phase == status.phase:
                continue

            event = event_from_status(status)
            self._last_events[status.workflow_id] = event
            await self.broadcaster.on_engine_event(event)
            emitted.append(event)

        # Workflows garbage-collected by the engine are forgotten
        for workflow_id in set(self._last_events) - seen:
            del self._last_events[workflow_id]

        return emitted

    async def run(self) -> None:
        """Poll until cancelled; poll failures are logged and retried next tick."""
        logger.info(f"Watching workflow engine every {self.interval}s")
        while True:
            try:
                await self.poll_once()
            except DispatchError as e:
                logger.warning(f"Workflow status poll failed: {e.message}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
