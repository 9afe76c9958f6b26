"""Tests for the live workflow status WebSocket."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from namespace_provisioner.exceptions import DispatchError
from namespace_provisioner.main import app
from namespace_provisioner.models.schemas import WorkflowEvent, WorkflowPhase, WorkflowStatus

WORKFLOW_ID = "1a2b3c4d-0000-4000-8000-000000000000"


@pytest.fixture
def engine():
    """Patch the engine queried for workflows that already finished."""
    with patch("namespace_provisioner.api.live.engine") as mock_engine:
        mock_engine.get_status = AsyncMock(return_value=None)
        yield mock_engine


@pytest.fixture
def watcher():
    with patch("namespace_provisioner.api.live.watcher") as mock_watcher:
        mock_watcher.last_event = Mock(return_value=None)
        yield mock_watcher


@pytest.fixture
def client(engine, watcher):
    """Create FastAPI test client with authentication disabled."""
    with patch("namespace_provisioner.main.settings") as main_settings, \
            patch("namespace_provisioner.api.live.settings") as live_settings:
        main_settings.api_key = ""
        live_settings.api_key = ""
        yield TestClient(app)


class TestWorkflowSocket:
    """Test the /ws subscription protocol."""

    def test_subscribe_and_unsubscribe(self, client):
        """Test subscription acknowledgements."""
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe_workflow", "workflowId": WORKFLOW_ID})
            assert websocket.receive_json() == {"type": "subscribed", "workflowId": WORKFLOW_ID}

            websocket.send_json({"type": "unsubscribe_workflow"})
            assert websocket.receive_json() == {"type": "unsubscribed"}

    def test_subscribe_to_finished_workflow(self, client, engine):
        """Test a late subscriber still learns the final outcome."""
        engine.get_status.return_value = WorkflowStatus(
            workflow_id=WORKFLOW_ID,
            engine_name="namespace-provisioning-svc-api-1a2b3c4d",
            phase=WorkflowPhase.FAILED,
        )

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe_workflow", "workflowId": WORKFLOW_ID})

            assert websocket.receive_json()["type"] == "subscribed"
            update = websocket.receive_json()
            assert update["type"] == "workflow_update"
            assert update["workflowId"] == WORKFLOW_ID
            assert update["data"]["phase"] == "Failed"
            assert update["data"]["message"] == "Workflow failed"

    def test_subscribe_uses_last_seen_event(self, client, engine, watcher):
        """Test the watcher's last event is used before asking the engine."""
        watcher.last_event.return_value = WorkflowEvent(
            workflow_id=WORKFLOW_ID,
            phase=WorkflowPhase.SUCCEEDED,
            message="",
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe_workflow", "workflowId": WORKFLOW_ID})

            assert websocket.receive_json()["type"] == "subscribed"
            assert websocket.receive_json()["data"]["phase"] == "Succeeded"

        engine.get_status.assert_not_called()

    def test_subscribe_engine_unreachable(self, client, engine):
        """Test an engine outage does not break the subscription."""
        engine.get_status.side_effect = DispatchError("Workflow engine unreachable")

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe_workflow", "workflowId": WORKFLOW_ID})
            assert websocket.receive_json()["type"] == "subscribed"

            websocket.send_json({"type": "unsubscribe_workflow"})
            assert websocket.receive_json() == {"type": "unsubscribed"}

    def test_subscribe_without_workflow_id(self, client):
        """Test subscribing requires a workflow id."""
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe_workflow"})

            message = websocket.receive_json()
            assert message["type"] == "error"
            assert "workflowId" in message["message"]

    def test_invalid_messages(self, client):
        """Test malformed and unknown messages are answered with errors."""
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("not json")
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json(["subscribe_workflow"])
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json({"type": "ping"})
            message = websocket.receive_json()
            assert message["type"] == "error"
            assert "ping" in message["message"]

    def test_invalid_api_key(self, engine, watcher):
        """Test connections without the configured key are refused."""
        with patch("namespace_provisioner.api.live.settings") as live_settings:
            live_settings.api_key = "secret"
            client = TestClient(app)

            with pytest.raises(WebSocketDisconnect):
                with client.websocket_connect("/ws", headers={"X-API-Key": "wrong"}):
                    pass
