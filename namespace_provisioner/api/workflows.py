"""API endpoints for workflow status queries and retries."""
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from namespace_provisioner.api.namespaces import provisioner
from namespace_provisioner.exceptions import NotFoundError
from namespace_provisioner.models.schemas import (
    ProvisionAccepted,
    WorkflowListResponse,
    WorkflowPhase,
    WorkflowStatus,
)
from namespace_provisioner.services.workflows import ArgoWorkflowClient

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])

engine = ArgoWorkflowClient()


@router.get(
    "",
    response_model=WorkflowListResponse,
    summary="List provisioning workflows",
)
async def list_workflows(
    phase: Optional[WorkflowPhase] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
):
    """List provisioning workflows known to the engine.

    Args:
        phase: Only return workflows in this phase
        limit: Maximum number of workflows

    Returns:
        Workflow statuses
    """
    workflows = await engine.list_statuses(phase=phase, limit=limit)
    return WorkflowListResponse(workflows=workflows, total=len(workflows))


@router.get(
    "/{workflow_id}",
    response_model=WorkflowStatus,
    summary="Get workflow status",
)
async def get_workflow(workflow_id: UUID):
    """Get the last known status of a workflow, including its steps."""
    workflow = await engine.get_status(str(workflow_id))
    if workflow is None:
        raise NotFoundError("Workflow", str(workflow_id))
    return workflow


@router.post(
    "/{workflow_id}/retry",
    response_model=ProvisionAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed workflow",
)
async def retry_workflow(workflow_id: UUID):
    """Resubmit a failed workflow with its original kind and arguments.

    Only failed workflows can be retried; the retry runs as a new workflow
    with its own id, which the response carries.
    """
    return await provisioner.retry(str(workflow_id))
