"""Service layer for business logic."""
from namespace_provisioner.services.broadcaster import StatusBroadcaster
from namespace_provisioner.services.kubernetes import KubectlException, NamespaceRegistry
from namespace_provisioner.services.provisioner import NamespaceProvisioner
from namespace_provisioner.services.watcher import WorkflowEventWatcher
from namespace_provisioner.services.workflows import ArgoWorkflowClient, WorkflowDispatcher

__all__ = [
    "ArgoWorkflowClient",
    "KubectlException",
    "NamespaceProvisioner",
    "NamespaceRegistry",
    "StatusBroadcaster",
    "WorkflowDispatcher",
    "WorkflowEventWatcher",
]
