"""Request handling for namespace provisioning.

A create request moves through
``Received -> Validating -> {Rejected | DryRunComplete | Dispatching}`` and
then ``{Accepted | DispatchFailed}``. Dry runs are served by
``preview_create``, a pure function with no access to the registry or the
dispatcher; only ``NamespaceProvisioner`` can dispatch workflows.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from namespace_provisioner.exceptions import NotFoundError, ValidationError
from namespace_provisioner.models.schemas import (
    DeletePreview,
    DryRunResult,
    GeneratedManifestSet,
    NamespaceChanges,
    NamespaceCreateRequest,
    NamespaceRecord,
    NamespaceStatusSummary,
    NamespaceUpdateRequest,
    ProvisionAccepted,
)
from namespace_provisioner.services.kubernetes import NamespaceRegistry
from namespace_provisioner.services.manifests import generate_manifests, removed_resources
from namespace_provisioner.services.validation import (
    validate_namespace_name,
    validate_resource_limits,
)
from namespace_provisioner.services.workflows import WorkflowDispatcher

logger = logging.getLogger(__name__)


def render_create(request: NamespaceCreateRequest) -> GeneratedManifestSet:
    """Validate a create request and render its manifests.

    Raises:
        ValidationError: On the first rule the request breaks; no manifest is
            rendered for an invalid request
    """
    validate_namespace_name(request.name)
    validate_resource_limits(request.resource_limits)
    return generate_manifests(
        request.name,
        request.description,
        request.resource_limits,
        request.network_isolated,
    )


def preview_create(request: NamespaceCreateRequest) -> DryRunResult:
    """Compute what a create request would submit, without side effects."""
    manifests = render_create(request)
    logger.info(f"Dry run for namespace {request.name}")
    return DryRunResult(namespace=request.name, manifests=manifests)


class NamespaceProvisioner:
    """Validates requests, reads namespace state and dispatches workflows."""

    def __init__(self, registry: NamespaceRegistry, dispatcher: WorkflowDispatcher):
        self.registry = registry
        self.dispatcher = dispatcher

    async def create(self, request: NamespaceCreateRequest) -> ProvisionAccepted:
        """Validate, render and dispatch a provisioning workflow."""
        manifests = render_create(request)
        handle = await self.dispatcher.submit_create(request, manifests)
        return ProvisionAccepted(
            namespace=request.name,
            workflow=handle,
            message="Namespace provisioning started",
        )

    async def update(self, name: str, update: NamespaceUpdateRequest) -> ProvisionAccepted:
        """Dispatch an update carrying only the fields present in ``update``.

        Raises:
            ValidationError: If nothing would change or the new limits are invalid
            NotFoundError: If the namespace does not exist
        """
        present = update.present_fields()
        if not present:
            raise ValidationError(
                "Update must include at least one of: description, "
                "resourceLimits, networkIsolated"
            )
        if "resource_limits" in present:
            validate_resource_limits(present["resource_limits"])

        await self._require(name)
        handle = await self.dispatcher.submit_update(name, NamespaceChanges(**present))
        return ProvisionAccepted(
            namespace=name,
            workflow=handle,
            message="Namespace update started",
        )

    async def delete(self, name: str, force: bool = False) -> ProvisionAccepted:
        await self._require(name)
        handle = await self.dispatcher.submit_delete(name, force)
        return ProvisionAccepted(
            namespace=name,
            workflow=handle,
            message=(
                "Forced namespace deletion started" if force
                else "Namespace deletion started"
            ),
        )

    async def retry(self, workflow_id: str) -> ProvisionAccepted:
        """Resubmit a failed workflow under a new handle."""
        handle = await self.dispatcher.submit_retry(workflow_id)
        return ProvisionAccepted(
            namespace=handle.target_namespace,
            workflow=handle,
            message="Workflow retry started",
        )

    async def preview_delete(self, name: str) -> DeletePreview:
        """List the resources a deletion would remove, without removing them."""
        record = await self._require(name)
        return DeletePreview(
            namespace=name,
            resources=removed_resources(name, record.network_isolated),
        )

    async def get(self, name: str) -> NamespaceRecord:
        return await self._require(name)

    async def list(self, label_selector: Optional[str] = None) -> List[NamespaceRecord]:
        return await asyncio.to_thread(self.registry.list, label_selector)

    async def manifests(self, name: str) -> GeneratedManifestSet:
        """Regenerate the manifests describing an existing namespace."""
        record = await self._require(name)
        if record.resource_limits is None:
            raise NotFoundError("Managed limit range for namespace", name)

        return generate_manifests(
            name,
            record.description,
            record.resource_limits,
            record.network_isolated,
        )

    async def status(self, name: str) -> NamespaceStatusSummary:
        """Summarize the namespace phase and its managed resources."""
        record = await self._require(name)

        resources = {
            "limitRange": "Active" if record.resource_limits else "Missing",
            "networkPolicy": "Active" if record.network_isolated else "Not Applied",
        }
        if record.status == "Terminating":
            health = "Terminating"
        elif record.status == "Active" and record.resource_limits:
            health = "Healthy"
        else:
            health = "Degraded"

        return NamespaceStatusSummary(
            namespace=name,
            phase=record.status,
            resources=resources,
            health=health,
            last_checked=datetime.now(timezone.utc),
        )

    async def _require(self, name: str) -> NamespaceRecord:
        validate_namespace_name(name)
        record = await asyncio.to_thread(self.registry.get, name)
        if record is None:
            raise NotFoundError("Namespace", name)
        return record
