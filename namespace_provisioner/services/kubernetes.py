"""Read-only view of namespace state in the cluster (via kubectl).

Nothing here mutates the cluster: every change goes through a workflow so
that it has an auditable execution behind it.
"""
import json
import logging
import subprocess
import time
from typing import Any, Dict, List, Optional

from namespace_provisioner.config import settings
from namespace_provisioner.exceptions import RegistryUnavailable
from namespace_provisioner.models.schemas import (
    NamespaceRecord,
    ResourceLimits,
    ResourceQuantity,
)
from namespace_provisioner.services.manifests import LIMIT_RANGE_NAME, NETWORK_POLICY_NAME

logger = logging.getLogger(__name__)

# stderr fragments kubectl prints when the API server cannot be reached
TRANSIENT_ERROR_MARKERS = (
    "connection refused",
    "was refused",
    "no such host",
    "no route to host",
    "unable to connect to the server",
    "i/o timeout",
    "tls handshake timeout",
    "context deadline exceeded",
    "the server is currently unable to handle the request",
    "service unavailable",
)


class KubectlException(Exception):
    """Exception raised when kubectl command fails."""

    def __init__(self, message: str, command: str, stderr: str, transient: bool = False):
        self.message = message
        self.command = command
        self.stderr = stderr
        self.transient = transient
        super().__init__(self.message)

    @property
    def not_found(self) -> bool:
        return "(notfound)" in self.stderr.lower()


class NamespaceRegistry:
    """Queries namespaces and their managed resources from the cluster API."""

    def __init__(self):
        self.kubectl_bin = settings.kubectl_binary
        self.timeout = settings.kubectl_timeout
        self.retry_attempts = max(1, settings.retry_attempts)
        self.retry_backoff = settings.retry_backoff_seconds

    def _run_command(self, args: List[str]) -> subprocess.CompletedProcess:
        """Execute a kubectl command.

        Args:
            args: Command arguments (without 'kubectl' prefix)

        Returns:
            CompletedProcess object

        Raises:
            KubectlException: If command fails or times out
        """
        cmd = [self.kubectl_bin] + args
        logger.info(f"Executing: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )

            if result.returncode != 0:
                stderr = result.stderr or ""
                raise KubectlException(
                    message=f"kubectl command failed with code {result.returncode}",
                    command=" ".join(cmd),
                    stderr=stderr,
                    transient=any(m in stderr.lower() for m in TRANSIENT_ERROR_MARKERS),
                )

            return result

        except subprocess.TimeoutExpired as e:
            raise KubectlException(
                message=f"kubectl command timed out after {self.timeout}s",
                command=" ".join(cmd),
                stderr=str(e),
                transient=True,
            )
        except FileNotFoundError:
            raise KubectlException(
                message=f"kubectl binary not found: {self.kubectl_bin}",
                command=" ".join(cmd),
                stderr="",
            )

    def _run_json(self, args: List[str]) -> Dict[str, Any]:
        """Run a kubectl command with JSON output, retrying transient failures.

        Raises:
            RegistryUnavailable: If the cluster stays unreachable after all retries
            KubectlException: For any other kubectl failure (including NotFound)
        """
        attempt = 1
        delay = self.retry_backoff
        while True:
            try:
                result = self._run_command(args + ["--output", "json"])
                return json.loads(result.stdout)
            except KubectlException as e:
                if not e.transient:
                    raise
                if attempt >= self.retry_attempts:
                    logger.error(
                        f"Cluster API unreachable after {attempt} attempts: {e.message}"
                    )
                    raise RegistryUnavailable(
                        f"Cluster API unavailable: {e.message}"
                    ) from e
                logger.warning(
                    f"Transient kubectl failure (attempt {attempt}/{self.retry_attempts}), "
                    f"retrying in {delay:.2f}s: {e.message}"
                )
                time.sleep(delay)
                attempt += 1
                delay *= 2

    def _get_optional(self, args: List[str]) -> Optional[Dict[str, Any]]:
        try:
            return self._run_json(args)
        except KubectlException as e:
            if e.not_found:
                return None
            raise

    def _namespace_object(self, name: str) -> Optional[Dict[str, Any]]:
        return self._get_optional(["get", "namespace", name])

    def exists(self, name: str) -> bool:
        """Check whether a namespace exists.

        Returns:
            True if the namespace exists, False if the cluster reports NotFound

        Raises:
            RegistryUnavailable: If the cluster API cannot be reached
        """
        return self._namespace_object(name) is not None

    def get(self, name: str) -> Optional[NamespaceRecord]:
        """Get a namespace together with its managed limit range and policy.

        Args:
            name: Namespace name

        Returns:
            The namespace record, or None if it does not exist
        """
        namespace = self._namespace_object(name)
        if namespace is None:
            return None

        limit_range = self._get_optional(
            ["get", "limitrange", LIMIT_RANGE_NAME, "--namespace", name]
        )
        policy = self._get_optional(
            ["get", "networkpolicy", NETWORK_POLICY_NAME, "--namespace", name]
        )
        return self._parse_record(namespace, limit_range, policy is not None)

    def list(self, label_selector: Optional[str] = None) -> List[NamespaceRecord]:
        """List user namespaces, excluding system namespaces.

        Args:
            label_selector: Optional label selector

        Returns:
            List of namespace records
        """
        args = ["get", "namespaces"]
        if label_selector:
            args.extend(["--selector", label_selector])
        namespaces = self._run_json(args).get("items", [])

        limit_ranges = self._run_json([
            "get", "limitranges", "--all-namespaces",
            "--field-selector", f"metadata.name={LIMIT_RANGE_NAME}",
        ]).get("items", [])
        policies = self._run_json([
            "get", "networkpolicies", "--all-namespaces",
            "--field-selector", f"metadata.name={NETWORK_POLICY_NAME}",
        ]).get("items", [])

        limit_ranges_by_ns = {
            lr.get("metadata", {}).get("namespace"): lr for lr in limit_ranges
        }
        isolated = {p.get("metadata", {}).get("namespace") for p in policies}

        records = []
        for ns in namespaces:
            name = ns.get("metadata", {}).get("name", "")
            if self.is_system_namespace(name):
                continue
            records.append(
                self._parse_record(ns, limit_ranges_by_ns.get(name), name in isolated)
            )
        return records

    def get_version(self) -> str:
        """Get the kubectl client version (used by the health check)."""
        data = self._run_json(["version", "--client"])
        return data.get("clientVersion", {}).get("gitVersion", "unknown")

    @staticmethod
    def is_system_namespace(name: str) -> bool:
        """Whether a namespace belongs to the platform rather than a tenant."""
        return name.startswith("kube-") or name in settings.system_namespaces

    @staticmethod
    def _parse_limits(limit_range: Optional[Dict[str, Any]]) -> Optional[ResourceLimits]:
        """Recover the requested limits from the managed LimitRange."""
        if not limit_range:
            return None

        for item in limit_range.get("spec", {}).get("limits", []):
            if item.get("type") != "Container":
                continue
            default = item.get("default", {})
            default_request = item.get("defaultRequest", {})
            try:
                return ResourceLimits(
                    cpu=ResourceQuantity(
                        request=default_request["cpu"], limit=default["cpu"]
                    ),
                    memory=ResourceQuantity(
                        request=default_request["memory"], limit=default["memory"]
                    ),
                )
            except KeyError:
                return None
        return None

    def _parse_record(
        self,
        namespace: Dict[str, Any],
        limit_range: Optional[Dict[str, Any]],
        network_isolated: bool,
    ) -> NamespaceRecord:
        """Parse kubectl namespace JSON into a NamespaceRecord."""
        metadata = namespace.get("metadata", {})
        annotations = metadata.get("annotations") or {}

        return NamespaceRecord(
            name=metadata.get("name", ""),
            status=namespace.get("status", {}).get("phase", "Unknown"),
            created_at=metadata.get("creationTimestamp"),
            description=annotations.get(f"{settings.label_prefix}/description", ""),
            labels=metadata.get("labels") or {},
            annotations=annotations,
            resource_limits=self._parse_limits(limit_range),
            network_isolated=network_isolated,
        )
