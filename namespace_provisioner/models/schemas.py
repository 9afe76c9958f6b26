"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """Base model serializing to the camelCase field names of the public API."""

    model_config = ConfigDict(populate_by_name=True)


class WorkflowKind(str, Enum):
    """Kind of provisioning workflow."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class WorkflowPhase(str, Enum):
    """Workflow phase as reported by the engine."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowPhase.SUCCEEDED, WorkflowPhase.FAILED)


# Request Models


class ResourceQuantity(ApiModel):
    """A request/limit pair for one resource dimension."""

    request: str = Field(..., description="Requested amount (e.g., '100m', '128Mi')")
    limit: str = Field(..., description="Upper bound (e.g., '500m', '256Mi')")


class ResourceLimits(ApiModel):
    """CPU and memory constraints for every container in a namespace."""

    cpu: ResourceQuantity
    memory: ResourceQuantity


class NamespaceCreateRequest(ApiModel):
    """Request to provision a namespace."""

    name: str = Field(..., description="Namespace name (DNS label, 3-63 chars)")
    description: str = Field(default="", max_length=255)
    resource_limits: ResourceLimits = Field(..., alias="resourceLimits")
    network_isolated: bool = Field(default=True, alias="networkIsolated")
    dry_run: bool = Field(
        default=False,
        alias="dryRun",
        description="Return the manifests without dispatching a workflow",
    )


class NamespaceUpdateRequest(ApiModel):
    """Partial update of a namespace.

    Only fields present in the payload are applied; absent fields are left
    untouched.
    """

    description: Optional[str] = Field(default=None, max_length=255)
    resource_limits: Optional[ResourceLimits] = Field(default=None, alias="resourceLimits")
    network_isolated: Optional[bool] = Field(default=None, alias="networkIsolated")

    def present_fields(self) -> Dict[str, Any]:
        """Return the fields the caller actually sent, keyed by attribute name."""
        return {
            field: getattr(self, field)
            for field in self.model_fields_set
            if getattr(self, field) is not None
        }


class NamespaceChanges(ApiModel):
    """Changes forwarded to an update workflow, with optional manifests."""

    description: Optional[str] = None
    resource_limits: Optional[ResourceLimits] = Field(default=None, alias="resourceLimits")
    network_isolated: Optional[bool] = Field(default=None, alias="networkIsolated")

    def is_empty(self) -> bool:
        return not self.model_fields_set


# Response Models


class GeneratedManifestSet(ApiModel):
    """Cluster resources rendered for a namespace."""

    namespace: Dict[str, Any]
    limit_range: Dict[str, Any] = Field(..., alias="limitRange")
    network_policy: Optional[Dict[str, Any]] = Field(None, alias="networkPolicy")


class NamespaceRecord(ApiModel):
    """A namespace as read back from the cluster."""

    name: str
    status: str = "Unknown"
    created_at: Optional[str] = Field(None, alias="createdAt")
    description: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    resource_limits: Optional[ResourceLimits] = Field(None, alias="resourceLimits")
    network_isolated: bool = Field(False, alias="networkIsolated")


class WorkflowHandle(ApiModel):
    """Tracking handle returned when a workflow is dispatched."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    workflow_id: UUID = Field(..., alias="workflowId")
    kind: WorkflowKind
    target_namespace: str = Field(..., alias="targetNamespace")
    submitted_at: datetime = Field(..., alias="submittedAt")
    engine_name: str = Field(..., alias="engineName")


class WorkflowEvent(ApiModel):
    """A phase change reported by the workflow engine."""

    workflow_id: str = Field(..., alias="workflowId")
    phase: WorkflowPhase
    message: str = ""
    timestamp: datetime


class WorkflowStep(ApiModel):
    """A single step of an engine workflow."""

    name: str
    phase: str
    message: Optional[str] = None


class WorkflowStatus(ApiModel):
    """Engine-reported snapshot of one workflow."""

    workflow_id: str = Field(..., alias="workflowId")
    kind: Optional[WorkflowKind] = None
    target_namespace: Optional[str] = Field(None, alias="targetNamespace")
    engine_name: str = Field(..., alias="engineName")
    phase: WorkflowPhase
    message: Optional[str] = None
    started_at: Optional[str] = Field(None, alias="startedAt")
    finished_at: Optional[str] = Field(None, alias="finishedAt")
    steps: List[WorkflowStep] = Field(default_factory=list)
    # Submitted arguments, kept for resubmission and never serialized
    parameters: Dict[str, str] = Field(default_factory=dict, exclude=True)


class DryRunResult(ApiModel):
    """Result of a dry-run create."""

    namespace: str
    manifests: GeneratedManifestSet
    dry_run: bool = Field(True, alias="dryRun")
    message: str = "Dry run completed - no resources were created"


class ProvisionAccepted(ApiModel):
    """Response for a dispatched create, update or delete."""

    namespace: str
    workflow: WorkflowHandle
    message: str


class DeletePreview(ApiModel):
    """Result of a dry-run delete."""

    namespace: str
    dry_run: bool = Field(True, alias="dryRun")
    resources: List[str]
    message: str = "Dry run - namespace would be deleted"


class NamespaceListResponse(ApiModel):
    """List of provisioned namespaces."""

    namespaces: List[NamespaceRecord]
    total: int


class NamespaceResponse(ApiModel):
    """Single namespace wrapper."""

    namespace: NamespaceRecord


class ManifestsResponse(ApiModel):
    """Manifests regenerated for an existing namespace."""

    manifests: GeneratedManifestSet


class NamespaceStatusSummary(ApiModel):
    """Status and health summary of a namespace."""

    namespace: str
    phase: str
    resources: Dict[str, str]
    health: str
    last_checked: datetime = Field(..., alias="lastChecked")


class NamespaceStatusResponse(ApiModel):
    """Status wrapper."""

    status: NamespaceStatusSummary


class WorkflowListResponse(ApiModel):
    """List of engine workflows."""

    workflows: List[WorkflowStatus]
    total: int


class HealthResponse(ApiModel):
    """Health check response."""

    status: str
    timestamp: datetime
    kubectl_version: Optional[str] = Field(None, alias="kubectlVersion")
    workflow_engine: Optional[str] = Field(None, alias="workflowEngine")


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str
    error_type: Optional[str] = None
    field: Optional[str] = None
