"""WebSocket endpoint streaming workflow progress.

Clients send ``{"type": "subscribe_workflow", "workflowId": "..."}`` to watch
a workflow and ``{"type": "unsubscribe_workflow"}`` to stop. Progress arrives
as ``{"type": "workflow_update", "workflowId": ..., "data": {...}}``.
"""
import json
import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from namespace_provisioner.config import settings
from namespace_provisioner.exceptions import DispatchError
from namespace_provisioner.models.schemas import WorkflowEvent
from namespace_provisioner.services.broadcaster import StatusBroadcaster
from namespace_provisioner.services.watcher import WorkflowEventWatcher, event_from_status
from namespace_provisioner.services.workflows import ArgoWorkflowClient

logger = logging.getLogger(__name__)
router = APIRouter(tags=["live"])

engine = ArgoWorkflowClient()
broadcaster = StatusBroadcaster()
watcher = WorkflowEventWatcher(engine=engine, broadcaster=broadcaster)


async def _terminal_event(workflow_id: str) -> Optional[WorkflowEvent]:
    """Find a terminal event for a workflow that may have finished already.

    The broadcaster keeps no history, so a client subscribing after the
    workflow finished would otherwise hear nothing. The watcher's last seen
    event is used first, then the engine is asked directly.
    """
    event = watcher.last_event(workflow_id)
    if event is None:
        try:
            status = await engine.get_status(workflow_id)
        except DispatchError as e:
            logger.warning(f"Could not query status of workflow {workflow_id}: {e.message}")
            return None
        if status is None:
            return None
        event = event_from_status(status)

    return event if event.phase.is_terminal else None


async def _handle_message(websocket: WebSocket, connection_id: str, raw: str) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        await websocket.send_json({"type": "error", "message": "Message must be valid JSON"})
        return
    if not isinstance(data, dict):
        await websocket.send_json({"type": "error", "message": "Message must be a JSON object"})
        return

    message_type = data.get("type")
    if message_type == "subscribe_workflow":
        workflow_id = data.get("workflowId")
        if not isinstance(workflow_id, str) or not workflow_id:
            await websocket.send_json(
                {"type": "error", "message": "subscribe_workflow requires a workflowId"}
            )
            return

        await broadcaster.subscribe(connection_id, workflow_id)
        await websocket.send_json({"type": "subscribed", "workflowId": workflow_id})

        terminal = await _terminal_event(workflow_id)
        if terminal is not None:
            await broadcaster.replay(connection_id, terminal)

    elif message_type == "unsubscribe_workflow":
        await broadcaster.unsubscribe(connection_id)
        await websocket.send_json({"type": "unsubscribed"})

    else:
        await websocket.send_json(
            {"type": "error", "message": f"Unknown message type: {message_type}"}
        )


@router.websocket("/ws")
async def workflow_updates(websocket: WebSocket):
    """Live workflow progress for subscribed clients."""
    api_key = websocket.headers.get("X-API-Key") or websocket.query_params.get("api_key")
    if settings.api_key and api_key != settings.api_key:
        logger.warning("Rejected WebSocket connection with invalid API key")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection_id = uuid4().hex
    await broadcaster.register(connection_id, websocket.send_json)
    logger.info(f"WebSocket connection {connection_id} established")

    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_message(websocket, connection_id, raw)
    except WebSocketDisconnect:
        logger.info(f"WebSocket connection {connection_id} closed")
    finally:
        await broadcaster.disconnect(connection_id)
