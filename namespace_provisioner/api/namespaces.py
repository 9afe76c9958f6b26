"""API endpoints for namespace management."""
import logging
from typing import Optional, Union

from fastapi import APIRouter, Query, Response, status
from fastapi.responses import PlainTextResponse

from namespace_provisioner.models.schemas import (
    DeletePreview,
    DryRunResult,
    ManifestsResponse,
    NamespaceCreateRequest,
    NamespaceListResponse,
    NamespaceResponse,
    NamespaceStatusResponse,
    NamespaceUpdateRequest,
    ProvisionAccepted,
)
from namespace_provisioner.services.kubernetes import NamespaceRegistry
from namespace_provisioner.services.manifests import manifest_set_to_yaml
from namespace_provisioner.services.provisioner import NamespaceProvisioner, preview_create
from namespace_provisioner.services.workflows import ArgoWorkflowClient, WorkflowDispatcher

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/namespaces", tags=["namespaces"])

registry = NamespaceRegistry()
provisioner = NamespaceProvisioner(
    registry=registry,
    dispatcher=WorkflowDispatcher(registry=registry, engine=ArgoWorkflowClient()),
)


@router.get(
    "",
    response_model=NamespaceListResponse,
    summary="List namespaces",
)
async def list_namespaces(selector: Optional[str] = Query(None, description="Label selector")):
    """List tenant namespaces, excluding system namespaces."""
    namespaces = await provisioner.list(selector)
    return NamespaceListResponse(namespaces=namespaces, total=len(namespaces))


@router.post(
    "",
    response_model=Union[ProvisionAccepted, DryRunResult],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Provision a namespace",
)
async def create_namespace(request: NamespaceCreateRequest, response: Response):
    """Provision a new namespace with a limit range and optional isolation.

    With ``dryRun`` the rendered manifests are returned and nothing is
    dispatched. Otherwise a provisioning workflow is submitted and its handle
    returned with 202; subscribe to ``/ws`` with the ``workflowId`` for
    progress.

    Args:
        request: Namespace creation parameters

    Returns:
        The dry-run manifests or the accepted workflow
    """
    if request.dry_run:
        response.status_code = status.HTTP_200_OK
        return preview_create(request)

    accepted = await provisioner.create(request)
    logger.info(
        f"Accepted namespace {request.name} (workflow {accepted.workflow.workflow_id})"
    )
    return accepted


@router.get(
    "/{name}",
    response_model=NamespaceResponse,
    summary="Get namespace details",
)
async def get_namespace(name: str):
    return NamespaceResponse(namespace=await provisioner.get(name))


@router.patch(
    "/{name}",
    response_model=ProvisionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Update a namespace",
)
async def update_namespace(name: str, request: NamespaceUpdateRequest):
    """Start an update workflow for the fields present in the payload.

    Args:
        name: Namespace name
        request: Partial update; absent fields are left untouched

    Returns:
        The accepted workflow
    """
    accepted = await provisioner.update(name, request)
    logger.info(f"Accepted update of {name} (workflow {accepted.workflow.workflow_id})")
    return accepted


@router.delete(
    "/{name}",
    response_model=Union[ProvisionAccepted, DeletePreview],
    status_code=status.HTTP_202_ACCEPTED,
    summary="Delete a namespace",
)
async def delete_namespace(
    name: str,
    response: Response,
    force: bool = Query(False, description="Bypass protected-resource checks"),
    dry_run: bool = Query(False, alias="dryRun", description="Only list what would be removed"),
):
    """Start a deletion workflow, or list the resources it would remove."""
    if dry_run:
        response.status_code = status.HTTP_200_OK
        return await provisioner.preview_delete(name)

    accepted = await provisioner.delete(name, force=force)
    logger.info(f"Accepted deletion of {name} (workflow {accepted.workflow.workflow_id})")
    return accepted


@router.get(
    "/{name}/manifests",
    response_model=ManifestsResponse,
    summary="Get generated manifests for a namespace",
)
async def get_namespace_manifests(
    name: str,
    output_format: str = Query("json", alias="format", pattern="^(json|yaml)$"),
):
    """Regenerate the manifests of a managed namespace.

    With ``format=yaml`` the manifests are returned as a multi-document YAML
    stream that can be piped into ``kubectl apply -f -``.
    """
    manifests = await provisioner.manifests(name)
    if output_format == "yaml":
        return PlainTextResponse(manifest_set_to_yaml(manifests), media_type="application/yaml")
    return ManifestsResponse(manifests=manifests)


@router.get(
    "/{name}/status",
    response_model=NamespaceStatusResponse,
    summary="Get namespace status and health",
)
async def get_namespace_status(name: str):
    return NamespaceStatusResponse(status=await provisioner.status(name))
