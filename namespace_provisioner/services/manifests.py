"""Rendering of the cluster resources that make up a provisioned namespace.

Every function here is pure: the same inputs always produce structurally
identical manifests, so a dry-run preview matches what a live run submits.
"""
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

import yaml

from namespace_provisioner.config import settings
from namespace_provisioner.models.schemas import GeneratedManifestSet, ResourceLimits

LIMIT_RANGE_NAME = "resource-limits"
NETWORK_POLICY_NAME = "namespace-isolation"

CONTAINER_MIN = {"cpu": "10m", "memory": "64Mi"}
PVC_MIN_STORAGE = "1Gi"
PVC_MAX_STORAGE = "10Gi"
MAX_LIMIT_MULTIPLIER = 2

_QUANTITY_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(.*)")


def _label(key: str) -> str:
    return f"{settings.label_prefix}/{key}"


def _managed_labels() -> Dict[str, str]:
    return {"app.kubernetes.io/managed-by": settings.managed_by}


def scale_quantity(quantity: str, multiplier: int = MAX_LIMIT_MULTIPLIER) -> str:
    """Multiply a quantity while keeping its unit ('500m' x2 -> '1000m')."""
    match = _QUANTITY_PATTERN.fullmatch(quantity)
    if not match:
        return quantity

    value, unit = match.groups()
    scaled = Decimal(value) * multiplier
    # '1.5' x2 renders as '3', not '3.0'
    if scaled == scaled.to_integral_value():
        scaled = scaled.quantize(Decimal(1))
    else:
        scaled = scaled.normalize()
    return f"{scaled}{unit}"


def namespace_manifest(name: str, description: str = "") -> Dict[str, Any]:
    """Build the Namespace object."""
    labels = _managed_labels()
    labels[_label("created-by")] = "namespace-onboarding"
    labels[_label("resource-managed")] = "true"

    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": name,
            "labels": labels,
            "annotations": {
                _label("description"): description,
            },
        },
    }


def limit_range_manifest(name: str, resource_limits: ResourceLimits) -> Dict[str, Any]:
    """Build the LimitRange whose defaults are exactly the requested limits."""
    cpu = resource_limits.cpu
    memory = resource_limits.memory

    return {
        "apiVersion": "v1",
        "kind": "LimitRange",
        "metadata": {
            "name": LIMIT_RANGE_NAME,
            "namespace": name,
            "labels": _managed_labels(),
        },
        "spec": {
            "limits": [
                {
                    "type": "Container",
                    "default": {
                        "cpu": cpu.limit,
                        "memory": memory.limit,
                    },
                    "defaultRequest": {
                        "cpu": cpu.request,
                        "memory": memory.request,
                    },
                    "max": {
                        "cpu": scale_quantity(cpu.limit),
                        "memory": scale_quantity(memory.limit),
                    },
                    "min": dict(CONTAINER_MIN),
                },
                {
                    "type": "PersistentVolumeClaim",
                    "max": {"storage": PVC_MAX_STORAGE},
                    "min": {"storage": PVC_MIN_STORAGE},
                },
            ]
        },
    }


def network_policy_manifest(name: str) -> Dict[str, Any]:
    """Build the NetworkPolicy isolating a namespace.

    Ingress is allowed from pods in the same namespace and from the shared
    service namespaces; egress to the same namespace and to cluster DNS.
    """
    ingress_from: List[Dict[str, Any]] = [{"podSelector": {}}]
    for shared in sorted(set(settings.shared_service_namespaces)):
        ingress_from.append({
            "namespaceSelector": {
                "matchLabels": {"kubernetes.io/metadata.name": shared},
            },
        })

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {
            "name": NETWORK_POLICY_NAME,
            "namespace": name,
            "labels": _managed_labels(),
        },
        "spec": {
            "podSelector": {},
            "policyTypes": ["Ingress", "Egress"],
            "ingress": [{"from": ingress_from}],
            "egress": [
                {"to": [{"podSelector": {}}]},
                {
                    "to": [
                        {
                            "namespaceSelector": {
                                "matchLabels": {
                                    "kubernetes.io/metadata.name": "kube-system",
                                },
                            },
                        }
                    ],
                    "ports": [
                        {"protocol": "UDP", "port": 53},
                        {"protocol": "TCP", "port": 53},
                    ],
                },
            ],
        },
    }


def generate_manifests(
    name: str,
    description: str,
    resource_limits: ResourceLimits,
    network_isolated: bool,
) -> GeneratedManifestSet:
    """Render the full manifest set for a namespace.

    Args:
        name: Namespace name (already validated)
        description: Free-form description stored as an annotation
        resource_limits: Validated CPU/memory requests and limits
        network_isolated: Whether to include the isolation NetworkPolicy

    Returns:
        The namespace, limit range and (optional) network policy manifests
    """
    return GeneratedManifestSet(
        namespace=namespace_manifest(name, description),
        limit_range=limit_range_manifest(name, resource_limits),
        network_policy=network_policy_manifest(name) if network_isolated else None,
    )


def removed_resources(name: str, network_isolated: bool = True) -> List[str]:
    """List the resources a deletion of ``name`` would remove."""
    resources = [
        f"Namespace: {name}",
        f"LimitRange: {LIMIT_RANGE_NAME}",
    ]
    if network_isolated:
        resources.append(f"NetworkPolicy: {NETWORK_POLICY_NAME}")
    return resources


def to_yaml(manifest: Optional[Dict[str, Any]]) -> str:
    """Serialize one manifest for ``kubectl apply -f``; ``None`` becomes ''."""
    if manifest is None:
        return ""
    return yaml.safe_dump(manifest, default_flow_style=False, sort_keys=True)


def manifest_set_to_yaml(manifests: GeneratedManifestSet) -> str:
    """Serialize a manifest set as a multi-document YAML stream."""
    documents = [manifests.namespace, manifests.limit_range]
    if manifests.network_policy is not None:
        documents.append(manifests.network_policy)
    return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=True)
