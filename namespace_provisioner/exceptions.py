"""Error taxonomy for namespace provisioning.

Every error a caller can see synchronously derives from ProvisioningError and
carries a human-readable ``message`` naming the rule or precondition that
failed. Failures that happen after the workflow engine accepted a workflow have no
exception class: they arrive as ``Failed`` phase events on the live channel.
"""
from typing import Optional


class ProvisioningError(Exception):
    """Base exception for all provisioning errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(ProvisioningError):
    """Raised when a request violates a validation rule."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class InvalidNamespaceName(ValidationError):
    """Raised when a namespace name does not follow the DNS label grammar."""

    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__(f"Invalid namespace name '{name}': {reason}", field="name")


class MalformedQuantity(ValidationError):
    """Raised when a resource quantity string cannot be parsed."""

    def __init__(self, field: str, value: str, expected: str):
        self.value = value
        super().__init__(
            f"{field} '{value}' is not a valid quantity (expected {expected})",
            field=field,
        )


class InvalidLimitOrdering(ValidationError):
    """Raised when a resource limit is lower than its request."""

    def __init__(self, dimension: str, request: str, limit: str):
        self.dimension = dimension
        self.request = request
        self.limit = limit
        super().__init__(
            f"{dimension} limit '{limit}' must be greater than or equal to "
            f"request '{request}'",
            field=f"{dimension}.limit",
        )


class ConflictError(ProvisioningError):
    """Raised when creating a namespace that exists or is already being created."""

    def __init__(self, name: str, in_progress: bool = False):
        self.name = name
        if in_progress:
            super().__init__(f"Namespace {name} is already being created")
        else:
            super().__init__(f"Namespace {name} already exists")


class NotFoundError(ProvisioningError):
    """Raised when operating on an unknown namespace or workflow."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name} not found")


class WorkflowStateError(ProvisioningError):
    """Raised when a workflow is not in a state that allows the operation."""

    def __init__(self, workflow_id: str, phase: str, operation: str):
        self.workflow_id = workflow_id
        self.phase = phase
        super().__init__(
            f"Workflow {workflow_id} is {phase}; only failed workflows can be {operation}"
        )


class RegistryUnavailable(ProvisioningError):
    """Raised when the cluster API cannot be reached. Safe to retry."""

    retryable = True


class DispatchError(ProvisioningError):
    """Raised when the workflow engine is unreachable or rejects a submission.

    No workflow was accepted, so the whole request may be retried when
    ``retryable`` is set.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)

