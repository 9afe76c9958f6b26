"""Workflow engine client and dispatcher for provisioning workflows.

Workflows run on Argo Workflows and are submitted through the Argo Server
REST API. Submission is fire-and-forget: a WorkflowHandle comes back as soon
as the engine accepts the workflow, and progress is only observable through
status queries or the live event channel.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx

from namespace_provisioner.config import settings
from namespace_provisioner.exceptions import (
    ConflictError,
    DispatchError,
    NotFoundError,
    WorkflowStateError,
)
from namespace_provisioner.models.schemas import (
    GeneratedManifestSet,
    NamespaceChanges,
    NamespaceCreateRequest,
    ResourceLimits,
    WorkflowHandle,
    WorkflowKind,
    WorkflowPhase,
    WorkflowStatus,
    WorkflowStep,
)
from namespace_provisioner.services.kubernetes import NamespaceRegistry
from namespace_provisioner.services.manifests import (
    limit_range_manifest,
    network_policy_manifest,
    to_yaml,
)

logger = logging.getLogger(__name__)

# Engine-side workflow name prefix per kind
ENGINE_NAME_PREFIXES = {
    WorkflowKind.CREATE: "namespace-provisioning",
    WorkflowKind.UPDATE: "namespace-update",
    WorkflowKind.DELETE: "namespace-deletion",
}

# Argo reports "Error" for infrastructure failures; callers only see Failed
_ARGO_PHASES = {
    "": WorkflowPhase.PENDING,
    "Pending": WorkflowPhase.PENDING,
    "Running": WorkflowPhase.RUNNING,
    "Succeeded": WorkflowPhase.SUCCEEDED,
    "Failed": WorkflowPhase.FAILED,
    "Error": WorkflowPhase.FAILED,
}

# Argo phase labels matching each phase when filtering by label
_ARGO_PHASE_LABELS = {
    WorkflowPhase.FAILED: ("Failed", "Error"),
}


def _label(key: str) -> str:
    return f"{settings.label_prefix}/{key}"


def _template(kind: WorkflowKind) -> str:
    return {
        WorkflowKind.CREATE: settings.create_template,
        WorkflowKind.UPDATE: settings.update_template,
        WorkflowKind.DELETE: settings.delete_template,
    }[kind]


def _limit_parameters(resource_limits: ResourceLimits) -> Dict[str, str]:
    return {
        "cpu-request": resource_limits.cpu.request,
        "cpu-limit": resource_limits.cpu.limit,
        "memory-request": resource_limits.memory.request,
        "memory-limit": resource_limits.memory.limit,
    }


def map_phase(argo_phase: Optional[str]) -> WorkflowPhase:
    """Map an Argo workflow or node phase onto a WorkflowPhase."""
    return _ARGO_PHASES.get(argo_phase or "", WorkflowPhase.RUNNING)


class ArgoWorkflowClient:
    """Client for the Argo Server workflow API."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize the client.

        Args:
            transport: Optional httpx transport, mainly for tests
        """
        self.base_url = settings.workflow_engine_url.rstrip("/")
        self.namespace = settings.workflow_namespace
        self.token = settings.workflow_engine_token
        self.timeout = settings.workflow_engine_timeout
        self.retry_attempts = max(1, settings.retry_attempts)
        self.retry_backoff = settings.retry_backoff_seconds
        self._transport = transport

    @property
    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @property
    def _workflows_path(self) -> str:
        return f"/api/v1/workflows/{self.namespace}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, retrying connection failures and 5xx responses.

        Returns:
            The response (status < 500)

        Raises:
            DispatchError: If the engine stays unreachable after all retries
        """
        attempt = 1
        delay = self.retry_backoff
        while True:
            try:
                async with httpx.AsyncClient(
                    base_url=self.base_url,
                    headers=self._headers,
                    timeout=self.timeout,
                    transport=self._transport,
                ) as client:
                    response = await client.request(method, path, params=params, json=payload)
            except httpx.TransportError as e:
                error = DispatchError(f"Workflow engine unreachable: {e}", retryable=True)
            else:
                if response.status_code < 500:
                    return response
                logger.debug(f"Engine response details: {response.text}")
                error = DispatchError(
                    f"Workflow engine error: HTTP {response.status_code}",
                    retryable=True,
                    status_code=response.status_code,
                )

            if attempt >= self.retry_attempts:
                logger.error(f"{method} {path} failed after {attempt} attempts: {error.message}")
                raise error
            logger.warning(
                f"{method} {path} failed (attempt {attempt}/{self.retry_attempts}), "
                f"retrying in {delay:.2f}s: {error.message}"
            )
            await asyncio.sleep(delay)
            attempt += 1
            delay *= 2

    async def submit(
        self,
        template: str,
        name: str,
        parameters: Dict[str, str],
        labels: Dict[str, str],
    ) -> str:
        """Submit a workflow that runs a WorkflowTemplate.

        Args:
            template: WorkflowTemplate name
            name: Workflow object name
            parameters: Workflow arguments
            labels: Labels set on the workflow object

        Returns:
            The engine-side workflow name

        Raises:
            DispatchError: If the engine is unreachable or rejects the workflow
        """
        body = {
            "workflow": {
                "metadata": {
                    "name": name,
                    "namespace": self.namespace,
                    "labels": labels,
                },
                "spec": {
                    "serviceAccountName": settings.workflow_service_account,
                    "workflowTemplateRef": {"name": template},
                    "arguments": {
                        "parameters": [
                            {"name": key, "value": value}
                            for key, value in parameters.items()
                        ]
                    },
                },
            }
        }

        response = await self._request("POST", self._workflows_path, payload=body)
        if response.status_code not in (200, 201):
            detail = self._error_message(response)
            logger.error(f"Engine rejected workflow {name}: {response.status_code} {detail}")
            raise DispatchError(
                f"Workflow engine rejected submission: {detail}",
                retryable=False,
                status_code=response.status_code,
            )

        return response.json().get("metadata", {}).get("name", name)

    async def get_status(self, workflow_id: str) -> Optional[WorkflowStatus]:
        """Get the status of the workflow carrying a workflow id label.

        Returns:
            Workflow status, or None if the engine has no such workflow
        """
        statuses = await self._list({
            "listOptions.labelSelector": f"{_label('workflow-id')}={workflow_id}",
        })
        return statuses[0] if statuses else None

    async def list_statuses(
        self,
        phase: Optional[WorkflowPhase] = None,
        limit: Optional[int] = None,
        kind: Optional[WorkflowKind] = None,
        target_namespace: Optional[str] = None,
    ) -> List[WorkflowStatus]:
        """List provisioning workflows known to the engine.

        Args:
            phase: Only return workflows in this phase
            limit: Maximum number of workflows
            kind: Only return workflows of this kind
            target_namespace: Only return workflows acting on this namespace

        Returns:
            Workflow statuses, oldest first
        """
        selectors = [_label("workflow-id")]
        if kind is not None:
            selectors.append(f"{_label('workflow-type')}={kind.value}")
        if target_namespace is not None:
            selectors.append(f"{_label('namespace-name')}={target_namespace}")
        if phase is not None:
            argo_phases = _ARGO_PHASE_LABELS.get(phase, (phase.value,))
            selectors.append(f"workflows.argoproj.io/phase in ({','.join(argo_phases)})")
        params: Dict[str, Any] = {"listOptions.labelSelector": ",".join(selectors)}
        if limit:
            params["listOptions.limit"] = limit
        return await self._list(params)

    async def version(self) -> str:
        """Get the engine version (used by the health check)."""
        response = await self._request("GET", "/api/v1/version")
        if response.status_code != 200:
            raise DispatchError(
                f"Workflow engine version check failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json().get("version", "unknown")

    async def _list(self, params: Dict[str, Any]) -> List[WorkflowStatus]:
        response = await self._request("GET", self._workflows_path, params=params)
        if response.status_code != 200:
            raise DispatchError(
                f"Failed to list workflows: {self._error_message(response)}",
                retryable=False,
                status_code=response.status_code,
            )

        items = response.json().get("items") or []
        statuses = [self._parse_status(item) for item in items]
        return sorted(statuses, key=lambda s: (s.started_at or "", s.engine_name))

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("message") or response.text
        except ValueError:
            return response.text

    @staticmethod
    def _parse_status(data: Dict[str, Any]) -> WorkflowStatus:
        """Parse an Argo Workflow object into a WorkflowStatus."""
        metadata = data.get("metadata", {})
        labels = metadata.get("labels") or {}
        status = data.get("status") or {}

        kind = None
        kind_label = labels.get(_label("workflow-type"))
        if kind_label in {k.value for k in WorkflowKind}:
            kind = WorkflowKind(kind_label)

        steps = []
        nodes = sorted(
            (status.get("nodes") or {}).values(),
            key=lambda n: (n.get("startedAt") or "", n.get("displayName") or ""),
        )
        for node in nodes:
            if node.get("type") != "Pod":
                continue
            steps.append(
                WorkflowStep(
                    name=node.get("templateName") or node.get("displayName", ""),
                    phase=map_phase(node.get("phase")).value,
                    message=node.get("message"),
                )
            )

        spec = data.get("spec") or {}
        parameters = {
            p["name"]: str(p.get("value", ""))
            for p in (spec.get("arguments") or {}).get("parameters") or []
            if "name" in p
        }

        return WorkflowStatus(
            workflow_id=labels.get(_label("workflow-id"), ""),
            kind=kind,
            target_namespace=labels.get(_label("namespace-name")),
            engine_name=metadata.get("name", ""),
            phase=map_phase(status.get("phase")),
            message=status.get("message"),
            started_at=status.get("startedAt"),
            finished_at=status.get("finishedAt"),
            steps=steps,
            parameters=parameters,
        )


class WorkflowDispatcher:
    """Submits create, update and delete workflows for namespaces.

    A namespace has at most one create workflow in flight: creates are
    checked against the cluster and against the engine's unfinished create
    workflows, and the check and the submission run under one lock.
    """

    def __init__(self, registry: NamespaceRegistry, engine: ArgoWorkflowClient):
        self.registry = registry
        self.engine = engine
        self._create_lock = asyncio.Lock()

    async def submit_create(
        self,
        request: NamespaceCreateRequest,
        manifests: GeneratedManifestSet,
    ) -> WorkflowHandle:
        """Dispatch a provisioning workflow for a new namespace.

        Raises:
            ConflictError: If the namespace exists or a create workflow for it
                is still pending or running
            RegistryUnavailable: If the existence check cannot reach the cluster
            DispatchError: If the engine is unreachable or rejects the workflow
        """
        parameters = {
            "namespace-name": request.name,
            "description": request.description,
            **_limit_parameters(request.resource_limits),
            "network-isolated": str(request.network_isolated).lower(),
            "namespace-manifest": to_yaml(manifests.namespace),
            "limit-range-manifest": to_yaml(manifests.limit_range),
            "network-policy-manifest": to_yaml(manifests.network_policy),
        }

        async with self._create_lock:
            await self._ensure_creatable(request.name)
            return await self._submit(WorkflowKind.CREATE, request.name, parameters)

    async def submit_update(self, name: str, changes: NamespaceChanges) -> WorkflowHandle:
        """Dispatch an update workflow carrying only the changed fields."""
        parameters = {"namespace-name": name}
        fields = changes.model_fields_set

        if "description" in fields:
            parameters["description"] = changes.description or ""
        if "resource_limits" in fields and changes.resource_limits is not None:
            parameters.update(_limit_parameters(changes.resource_limits))
            parameters["limit-range-manifest"] = to_yaml(
                limit_range_manifest(name, changes.resource_limits)
            )
        if "network_isolated" in fields and changes.network_isolated is not None:
            parameters["network-isolated"] = str(changes.network_isolated).lower()
            if changes.network_isolated:
                parameters["network-policy-manifest"] = to_yaml(
                    network_policy_manifest(name)
                )
            else:
                parameters["remove-network-policy"] = "true"

        return await self._submit(WorkflowKind.UPDATE, name, parameters)

    async def submit_delete(self, name: str, force: bool = False) -> WorkflowHandle:
        """Dispatch a deletion workflow.

        With force=False the workflow stops if the namespace holds protected
        resources; force=True tells it to bypass that protection.
        """
        parameters = {
            "namespace-name": name,
            "force": str(force).lower(),
        }
        return await self._submit(WorkflowKind.DELETE, name, parameters)

    async def submit_retry(self, workflow_id: str) -> WorkflowHandle:
        """Resubmit a failed workflow with its original kind and arguments.

        The failed workflow is left in place; the retry gets a new handle and
        a label pointing back at the workflow it retries.

        Args:
            workflow_id: Id of the failed workflow

        Returns:
            Handle of the new workflow

        Raises:
            NotFoundError: If the engine has no provisioning workflow with this id
            WorkflowStateError: If the workflow has not failed
            ConflictError: If a retried create targets a namespace that exists
                or already has a create in flight
            DispatchError: If the engine is unreachable or rejects the workflow
        """
        status = await self.engine.get_status(workflow_id)
        if status is None or status.kind is None or not status.target_namespace:
            raise NotFoundError("Workflow", workflow_id)
        if status.phase != WorkflowPhase.FAILED:
            raise WorkflowStateError(workflow_id, status.phase.value, "retried")

        logger.info(f"Retrying {status.kind.value} workflow {status.engine_name} ({workflow_id})")
        if status.kind == WorkflowKind.CREATE:
            async with self._create_lock:
                await self._ensure_creatable(status.target_namespace)
                return await self._submit(
                    status.kind, status.target_namespace, status.parameters, retry_of=workflow_id
                )

        return await self._submit(
            status.kind, status.target_namespace, status.parameters, retry_of=workflow_id
        )

    async def _ensure_creatable(self, name: str) -> None:
        """Raise ConflictError if ``name`` exists or is already being created."""
        if await asyncio.to_thread(self.registry.exists, name):
            logger.info(f"Rejecting create for existing namespace {name}")
            raise ConflictError(name)

        in_flight = [
            status
            for status in await self.engine.list_statuses(
                kind=WorkflowKind.CREATE, target_namespace=name
            )
            if not status.phase.is_terminal
        ]
        if in_flight:
            logger.info(
                f"Rejecting create for {name}: workflow {in_flight[0].engine_name} "
                f"is {in_flight[0].phase.value}"
            )
            raise ConflictError(name, in_progress=True)

    async def _submit(
        self,
        kind: WorkflowKind,
        namespace: str,
        parameters: Dict[str, str],
        retry_of: Optional[str] = None,
    ) -> WorkflowHandle:
        workflow_id = uuid4()
        name = f"{ENGINE_NAME_PREFIXES[kind]}-{namespace}-{str(workflow_id)[:8]}"
        labels = {
            _label("workflow-id"): str(workflow_id),
            _label("workflow-type"): kind.value,
            _label("namespace-name"): namespace,
        }
        if retry_of:
            labels[_label("retry-of")] = retry_of

        engine_name = await self.engine.submit(_template(kind), name, parameters, labels)
        logger.info(f"Dispatched {kind.value} workflow {engine_name} ({workflow_id}) for {namespace}")

        return WorkflowHandle(
            workflow_id=workflow_id,
            kind=kind,
            target_namespace=namespace,
            submitted_at=datetime.now(timezone.utc),
            engine_name=engine_name,
        )
