"""Relay of workflow progress events to live subscribers."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from namespace_provisioner.models.schemas import WorkflowEvent

logger = logging.getLogger(__name__)

Sender = Callable[[Dict[str, Any]], Awaitable[None]]


def workflow_update_message(event: WorkflowEvent) -> Dict[str, Any]:
    """Build the message sent to subscribers for one engine event."""
    return {
        "type": "workflow_update",
        "workflowId": event.workflow_id,
        "data": event.model_dump(mode="json", by_alias=True),
    }


class StatusBroadcaster:
    """Fans engine events out to the connections watching each workflow.

    A connection watches at most one workflow at a time and hears its
    terminal update once. Delivery is best-effort: nothing is buffered, and a
    connection whose send fails is dropped.
    """

    def __init__(self):
        self._senders: Dict[str, Sender] = {}
        self._subscriptions: Dict[str, str] = {}
        self._subscribers: Dict[str, Set[str]] = {}
        # Connections whose current subscription already got its terminal update
        self._finished: Set[str] = set()
        self._workflow_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection_id: str, send: Sender) -> None:
        """Register a live connection and the coroutine used to reach it."""
        async with self._lock:
            self._senders[connection_id] = send

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection and any subscription it holds."""
        async with self._lock:
            self._senders.pop(connection_id, None)
            self._drop_subscription(connection_id)
        logger.debug(f"Connection {connection_id} disconnected")

    async def subscribe(self, connection_id: str, workflow_id: str) -> None:
        """Subscribe a connection to a workflow, replacing any previous one."""
        async with self._lock:
            self._drop_subscription(connection_id)
            self._subscriptions[connection_id] = workflow_id
            self._subscribers.setdefault(workflow_id, set()).add(connection_id)
        logger.info(f"Connection {connection_id} subscribed to workflow {workflow_id}")

    async def unsubscribe(self, connection_id: str) -> None:
        async with self._lock:
            workflow_id = self._drop_subscription(connection_id)
        if workflow_id:
            logger.info(f"Connection {connection_id} unsubscribed from workflow {workflow_id}")

    async def subscription_of(self, connection_id: str) -> Optional[str]:
        async with self._lock:
            return self._subscriptions.get(connection_id)

    async def subscriber_count(self, workflow_id: str) -> int:
        async with self._lock:
            return len(self._subscribers.get(workflow_id, ()))

    async def on_engine_event(self, event: WorkflowEvent) -> int:
        """Deliver an engine event to every subscriber of its workflow.

        Events for one workflow are delivered one at a time, in call order.
        Connections that already received the workflow's terminal update are
        skipped.

        Returns:
            Number of connections the event reached
        """
        workflow_id = event.workflow_id
        async with self._workflow_turn(workflow_id):
            async with self._lock:
                targets = [
                    (connection_id, self._senders[connection_id])
                    for connection_id in sorted(self._subscribers.get(workflow_id, ()))
                    if connection_id in self._senders and connection_id not in self._finished
                ]

            if not targets:
                logger.debug(f"No subscribers for workflow {workflow_id}")

            message = workflow_update_message(event)
            delivered = []
            for connection_id, send in targets:
                if await self._deliver(connection_id, send, message):
                    delivered.append(connection_id)

            if event.phase.is_terminal and delivered:
                async with self._lock:
                    for connection_id in delivered:
                        self._mark_finished(connection_id, workflow_id)

        return len(delivered)

    async def replay(self, connection_id: str, event: WorkflowEvent) -> bool:
        """Send a finished workflow's terminal event to one late subscriber.

        Nothing is sent if the connection no longer watches the workflow or
        already received its terminal update from the engine stream.

        Returns:
            True if the event was sent
        """
        workflow_id = event.workflow_id
        async with self._workflow_turn(workflow_id):
            async with self._lock:
                send = self._senders.get(connection_id)
                if (
                    send is None
                    or self._subscriptions.get(connection_id) != workflow_id
                    or connection_id in self._finished
                ):
                    return False

            if not await self._deliver(connection_id, send, workflow_update_message(event)):
                return False

            async with self._lock:
                self._mark_finished(connection_id, workflow_id)
        return True

    async def _deliver(self, connection_id: str, send: Sender, message: Dict[str, Any]) -> bool:
        try:
            await send(message)
            return True
        except Exception as e:
            logger.warning(f"Dropping connection {connection_id}: send failed ({e})")

        async with self._lock:
            self._senders.pop(connection_id, None)
            self._drop_subscription(connection_id)
        return False

    @asynccontextmanager
    async def _workflow_turn(self, workflow_id: str):
        """Hold the workflow's delivery lock, discarding it once unused."""
        async with self._lock:
            workflow_lock = self._workflow_locks.setdefault(workflow_id, asyncio.Lock())
            self._lock_users[workflow_id] = self._lock_users.get(workflow_id, 0) + 1

        try:
            async with workflow_lock:
                yield
        finally:
            async with self._lock:
                self._lock_users[workflow_id] -= 1
                if not self._lock_users[workflow_id]:
                    del self._lock_users[workflow_id]
                    del self._workflow_locks[workflow_id]

    def _mark_finished(self, connection_id: str, workflow_id: str) -> None:
        """Caller must hold ``_lock``."""
        if self._subscriptions.get(connection_id) == workflow_id:
            self._finished.add(connection_id)

    def _drop_subscription(self, connection_id: str) -> Optional[str]:
        """Remove a connection's subscription. Caller must hold ``_lock``."""
        self._finished.discard(connection_id)
        workflow_id = self._subscriptions.pop(connection_id, None)
        if workflow_id is None:
            return None

        subscribers = self._subscribers.get(workflow_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._subscribers[workflow_id]
        return workflow_id
