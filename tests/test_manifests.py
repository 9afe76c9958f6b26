"""Tests for manifest generation."""
import yaml

from namespace_provisioner.models.schemas import ResourceLimits, ResourceQuantity
from namespace_provisioner.services.manifests import (
    LIMIT_RANGE_NAME,
    NETWORK_POLICY_NAME,
    generate_manifests,
    limit_range_manifest,
    manifest_set_to_yaml,
    namespace_manifest,
    network_policy_manifest,
    removed_resources,
    scale_quantity,
    to_yaml,
)

LIMITS = ResourceLimits(
    cpu=ResourceQuantity(request="100m", limit="500m"),
    memory=ResourceQuantity(request="128Mi", limit="512Mi"),
)


class TestScaleQuantity:
    """Test quantity scaling for LimitRange maximums."""

    def test_keeps_unit(self):
        """Test scaling keeps the original unit."""
        assert scale_quantity("500m") == "1000m"
        assert scale_quantity("512Mi") == "1024Mi"
        assert scale_quantity("2Gi") == "4Gi"

    def test_fractional(self):
        """Test fractional cores scale without a trailing '.0'."""
        assert scale_quantity("1.5") == "3"
        assert scale_quantity("0.25") == "0.5"


class TestNamespaceManifest:
    """Test Namespace object rendering."""

    def test_labels_and_description(self):
        """Test managed labels and the description annotation."""
        manifest = namespace_manifest("svc-api", "Payments API")

        assert manifest["kind"] == "Namespace"
        assert manifest["metadata"]["name"] == "svc-api"
        labels = manifest["metadata"]["labels"]
        assert labels["app.kubernetes.io/managed-by"] == "idp-platform"
        assert labels["idp-platform/created-by"] == "namespace-onboarding"
        assert labels["idp-platform/resource-managed"] == "true"
        assert manifest["metadata"]["annotations"] == {
            "idp-platform/description": "Payments API"
        }


class TestLimitRangeManifest:
    """Test LimitRange rendering."""

    def test_defaults_match_request(self):
        """Test container defaults are exactly the requested strings."""
        manifest = limit_range_manifest("svc-api", LIMITS)

        assert manifest["metadata"]["name"] == LIMIT_RANGE_NAME
        assert manifest["metadata"]["namespace"] == "svc-api"
        container, pvc = manifest["spec"]["limits"]
        assert container["type"] == "Container"
        assert container["default"] == {"cpu": "500m", "memory": "512Mi"}
        assert container["defaultRequest"] == {"cpu": "100m", "memory": "128Mi"}
        assert container["max"] == {"cpu": "1000m", "memory": "1024Mi"}
        assert container["min"] == {"cpu": "10m", "memory": "64Mi"}
        assert pvc == {
            "type": "PersistentVolumeClaim",
            "max": {"storage": "10Gi"},
            "min": {"storage": "1Gi"},
        }


class TestNetworkPolicyManifest:
    """Test NetworkPolicy rendering."""

    def test_isolation_rules(self):
        """Test ingress from own namespace and shared services, egress to DNS."""
        manifest = network_policy_manifest("svc-api")

        assert manifest["metadata"]["name"] == NETWORK_POLICY_NAME
        spec = manifest["spec"]
        assert spec["podSelector"] == {}
        assert spec["policyTypes"] == ["Ingress", "Egress"]

        sources = spec["ingress"][0]["from"]
        assert sources[0] == {"podSelector": {}}
        shared = [
            s["namespaceSelector"]["matchLabels"]["kubernetes.io/metadata.name"]
            for s in sources[1:]
        ]
        assert shared == ["ingress-nginx", "monitoring"]

        dns = spec["egress"][1]
        assert {"protocol": "UDP", "port": 53} in dns["ports"]
        assert {"protocol": "TCP", "port": 53} in dns["ports"]


class TestGenerateManifests:
    """Test full manifest set generation."""

    def test_isolated_namespace(self):
        """Test an isolated namespace gets all three resources."""
        manifests = generate_manifests("svc-api", "Payments API", LIMITS, True)

        assert manifests.namespace["metadata"]["name"] == "svc-api"
        assert manifests.limit_range["kind"] == "LimitRange"
        assert manifests.network_policy["kind"] == "NetworkPolicy"

    def test_not_isolated(self):
        """Test no network policy is rendered when isolation is off."""
        manifests = generate_manifests("svc-api", "", LIMITS, False)

        assert manifests.network_policy is None
        dumped = manifests.model_dump(by_alias=True)
        assert dumped["networkPolicy"] is None
        assert "limitRange" in dumped

    def test_deterministic(self):
        """Test identical input renders identical manifests."""
        first = generate_manifests("svc-api", "Payments API", LIMITS, True)
        second = generate_manifests("svc-api", "Payments API", LIMITS, True)

        assert first == second
        assert manifest_set_to_yaml(first) == manifest_set_to_yaml(second)


class TestYamlOutput:
    """Test YAML serialization of manifests."""

    def test_single_manifest(self):
        """Test one manifest serializes to a loadable document."""
        manifest = namespace_manifest("svc-api", "Payments API")

        assert yaml.safe_load(to_yaml(manifest)) == manifest

    def test_missing_manifest(self):
        """Test an absent manifest serializes to an empty string."""
        assert to_yaml(None) == ""

    def test_manifest_set_stream(self):
        """Test a manifest set becomes one document per resource."""
        isolated = generate_manifests("svc-api", "", LIMITS, True)
        open_ns = generate_manifests("svc-api", "", LIMITS, False)

        kinds = [d["kind"] for d in yaml.safe_load_all(manifest_set_to_yaml(isolated))]
        assert kinds == ["Namespace", "LimitRange", "NetworkPolicy"]
        assert len(list(yaml.safe_load_all(manifest_set_to_yaml(open_ns)))) == 2


class TestRemovedResources:
    """Test the delete preview resource list."""

    def test_isolated(self):
        """Test the network policy is listed for isolated namespaces."""
        assert removed_resources("svc-api") == [
            "Namespace: svc-api",
            "LimitRange: resource-limits",
            "NetworkPolicy: namespace-isolation",
        ]

    def test_not_isolated(self):
        """Test only the namespace and limit range are listed otherwise."""
        assert len(removed_resources("svc-api", network_isolated=False)) == 2
