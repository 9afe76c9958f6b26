"""Validation of namespace names and resource quantities."""
import re
from decimal import Decimal

from namespace_provisioner.exceptions import (
    InvalidLimitOrdering,
    InvalidNamespaceName,
    MalformedQuantity,
)
from namespace_provisioner.models.schemas import ResourceLimits

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 63

_NAME_PATTERN = re.compile(r"[a-z0-9]([a-z0-9-]*[a-z0-9])?")
_CPU_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(m)?")
_MEMORY_PATTERN = re.compile(r"(\d+(?:\.\d+)?)(Mi|Gi)?")

_MEMORY_MULTIPLIERS = {
    "": 1,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
}


def validate_namespace_name(name: str) -> None:
    """Validate a namespace name against the Kubernetes DNS label rules.

    Raises:
        InvalidNamespaceName: If the name is too short, too long or uses
            characters outside lowercase alphanumerics and inner hyphens.
    """
    if len(name) < NAME_MIN_LENGTH:
        raise InvalidNamespaceName(
            name, f"must be at least {NAME_MIN_LENGTH} characters long"
        )
    if len(name) > NAME_MAX_LENGTH:
        raise InvalidNamespaceName(
            name, f"must be at most {NAME_MAX_LENGTH} characters long"
        )
    if not _NAME_PATTERN.fullmatch(name):
        raise InvalidNamespaceName(
            name,
            "must be lowercase alphanumeric with hyphens, "
            "starting and ending with alphanumeric",
        )


def parse_cpu(value: str, field: str = "cpu") -> Decimal:
    """Parse a CPU quantity ('250m', '1', '1.5') into millicores."""
    match = _CPU_PATTERN.fullmatch(value)
    if not match:
        raise MalformedQuantity(field, value, "cores or millicores, e.g. 500m or 2")

    amount = Decimal(match.group(1))
    if match.group(2) == "m":
        return amount
    return amount * 1000


def parse_memory(value: str, field: str = "memory") -> Decimal:
    """Parse a memory quantity ('128Mi', '2Gi', '1048576') into bytes."""
    match = _MEMORY_PATTERN.fullmatch(value)
    if not match:
        raise MalformedQuantity(field, value, "bytes, Mi or Gi, e.g. 128Mi or 1Gi")

    return Decimal(match.group(1)) * _MEMORY_MULTIPLIERS[match.group(2) or ""]


def validate_resource_limits(resource_limits: ResourceLimits) -> None:
    """Check every quantity parses and that no limit is below its request.

    Quantities are checked in the order cpu.request, cpu.limit,
    memory.request, memory.limit and the first failure is raised.

    Raises:
        MalformedQuantity: If a quantity string does not parse.
        InvalidLimitOrdering: If limit < request for CPU or memory.
    """
    cpu = resource_limits.cpu
    memory = resource_limits.memory

    cpu_request = parse_cpu(cpu.request, "cpu.request")
    cpu_limit = parse_cpu(cpu.limit, "cpu.limit")
    memory_request = parse_memory(memory.request, "memory.request")
    memory_limit = parse_memory(memory.limit, "memory.limit")

    if cpu_limit < cpu_request:
        raise InvalidLimitOrdering("cpu", cpu.request, cpu.limit)
    if memory_limit < memory_request:
        raise InvalidLimitOrdering("memory", memory.request, memory.limit)
