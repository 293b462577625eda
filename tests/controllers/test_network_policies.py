"""
NetworkPolicy synthesizer tests.

Baseline policies, peer construction for custom allow rules, labelling and
the generation-mismatch sweep that removes policies for deleted rules.
"""

import pytest

from package_operator.controllers.network_policies import (
    NetworkPolicyError,
    NetworkPolicySynthesizer,
    build_network_policies,
)
from package_operator.models.package import Package
from package_operator.utils.endpoint_resolver import EndpointResolver
from package_operator.utils.kubernetes_client import NETWORK_POLICY

from fakes import FakeKubernetesClient, package_resource


def build(network=None, peers=None, **kwargs):
    pkg = Package.from_resource(package_resource(network=network, **kwargs))
    return build_network_policies(pkg, pkg.namespace, peers)


def by_description(policies, fragment):
    matches = [p for p in policies if fragment in p["metadata"]["name"]]
    assert len(matches) == 1, [p["metadata"]["name"] for p in policies]
    return matches[0]


class TestBaselinePolicies:
    """Test the baseline policy set."""

    def test_full_baseline(self):
        """Test every baseline policy is present by default."""
        names = [p["metadata"]["name"] for p in build()]
        assert names == [
            "deny-test-pkg-default-deny-all",
            "allow-test-pkg-egress-istiod-communication",
            "allow-test-pkg-ingress-sidecar-monitoring",
            "allow-test-pkg-egress-dns-lookup-via-coredns",
            "allow-test-pkg-ingress-intra-namespace-ingress",
            "allow-test-pkg-egress-intra-namespace-egress",
        ]

    def test_deny_all(self):
        """Test the deny-all policy selects every pod in both directions."""
        deny = build()[0]
        assert deny["spec"] == {
            "podSelector": {},
            "policyTypes": ["Ingress", "Egress"],
            "ingress": [],
            "egress": [],
        }

    def test_dns_policy(self):
        """Test DNS egress targets kube-dns on UDP 53."""
        dns = by_description(build(), "dns-lookup")
        assert dns["spec"]["egress"] == [{
            "to": [{
                "namespaceSelector": {"matchLabels": {"kubernetes.io/metadata.name": "kube-system"}},
                "podSelector": {"matchLabels": {"k8s-app": "kube-dns"}},
            }],
            "ports": [{"port": 53, "protocol": "UDP"}],
        }]

    def test_disable_defaults(self):
        """Test DNS and intra-namespace policies can be disabled."""
        names = [p["metadata"]["name"] for p in build(
            network={"disableDefaults": ["DNSLookup", "PermissiveNamespace"]}
        )]
        assert names == [
            "deny-test-pkg-default-deny-all",
            "allow-test-pkg-egress-istiod-communication",
            "allow-test-pkg-ingress-sidecar-monitoring",
        ]

    def test_labels(self):
        """Test every policy carries the package identity and generation."""
        for policy in build(generation=4):
            labels = policy["metadata"]["labels"]
            assert labels["package"] == "test-pkg"
            assert labels["generation"] == "4"


class TestCustomAllowPolicies:
    """Test policies generated from custom allow rules."""

    def test_namespace_and_pod_selector(self):
        """Test remoteNamespace and remoteSelector build one peer."""
        policies = build(network={"allow": [{
            "direction": "Ingress",
            "selector": {"app": "api"},
            "remoteNamespace": "frontend",
            "remoteSelector": {"app": "web"},
            "port": 8080,
        }]})
        policy = policies[-1]

        assert policy["metadata"]["name"] == "allow-test-pkg-ingress-api-frontend-web-8080"
        assert policy["spec"]["podSelector"] == {"matchLabels": {"app": "api"}}
        assert policy["spec"]["policyTypes"] == ["Ingress"]
        assert policy["spec"]["ingress"] == [{
            "from": [{
                "namespaceSelector": {"matchLabels": {"kubernetes.io/metadata.name": "frontend"}},
                "podSelector": {"matchLabels": {"app": "web"}},
            }],
            "ports": [{"port": 8080, "protocol": "TCP"}],
        }]

    def test_no_remote_matches_any_namespace(self):
        """Test a rule without remote selectors matches every namespace and all ports."""
        policy = build(network={"allow": [{"direction": "Egress", "selector": {"app": "api"}}]})[-1]
        assert policy["spec"]["egress"] == [{"to": [{"namespaceSelector": {}}]}]

    def test_wildcard_namespace(self):
        """Test '*' and empty remoteNamespace select any namespace."""
        for remote_namespace in ("*", ""):
            policy = build(network={"allow": [{
                "direction": "Egress",
                "remoteNamespace": remote_namespace,
                "remoteSelector": {"app": "db"},
            }]})[-1]
            assert policy["spec"]["egress"][0]["to"] == [{
                "namespaceSelector": {},
                "podSelector": {"matchLabels": {"app": "db"}},
            }]

    def test_ports_and_protocol(self):
        """Test ports and port are combined with the declared protocol."""
        policy = build(network={"allow": [{
            "direction": "Egress",
            "remoteNamespace": "metrics",
            "ports": [8125, 8126],
            "port": 8127,
            "protocol": "UDP",
        }]})[-1]
        assert policy["spec"]["egress"][0]["ports"] == [
            {"port": 8125, "protocol": "UDP"},
            {"port": 8126, "protocol": "UDP"},
            {"port": 8127, "protocol": "UDP"},
        ]

    def test_kube_api_peers_take_precedence(self):
        """Test remoteGenerated KubeAPI replaces literal selectors."""
        peers = [{"ipBlock": {"cidr": "10.0.0.1/32"}}]
        policy = build(network={"allow": [{
            "direction": "Egress",
            "remoteGenerated": "KubeAPI",
            "remoteNamespace": "ignored",
            "remoteSelector": {"app": "ignored"},
        }]}, peers=peers)[-1]
        assert policy["spec"]["egress"] == [{"to": peers}]

    def test_kube_api_without_peers_is_open(self):
        """Test KubeAPI falls back to the open peer when nothing was resolved."""
        policy = build(network={"allow": [{"direction": "Egress", "remoteGenerated": "KubeAPI"}]})[-1]
        assert policy["spec"]["egress"] == [{"to": [{"ipBlock": {"cidr": "0.0.0.0/0"}}]}]

    def test_generated_peers(self):
        """Test the other generated peer sets."""
        network = {"allow": [
            {"direction": "Egress", "selector": {"app": "a"}, "remoteGenerated": "CloudMetadata"},
            {"direction": "Egress", "selector": {"app": "b"}, "remoteGenerated": "Anywhere"},
            {"direction": "Ingress", "selector": {"app": "c"}, "remoteGenerated": "IntraNamespace"},
        ]}
        policies = build(network=network)

        assert by_description(policies, "-a-cloudmetadata")["spec"]["egress"][0]["to"] == [
            {"ipBlock": {"cidr": "169.254.169.254/32"}}
        ]
        assert by_description(policies, "-b-anywhere")["spec"]["egress"][0]["to"] == [
            {"ipBlock": {"cidr": "0.0.0.0/0", "except": ["169.254.169.254/32"]}},
            {"namespaceSelector": {}},
        ]
        assert by_description(policies, "-c-intranamespace")["spec"]["ingress"][0]["from"] == [
            {"podSelector": {}}
        ]

    def test_remote_host_and_cidr(self):
        """Test remoteHost targets the egress gateway and remoteCidr an ipBlock."""
        policies = build(network={"allow": [
            {"direction": "Egress", "selector": {"app": "a"}, "remoteHost": "example.com", "port": 443},
            {"direction": "Egress", "selector": {"app": "b"}, "remoteCidr": "192.168.0.0/16"},
        ]})

        gateway_policy = by_description(policies, "-a-example-com-443")
        assert gateway_policy["spec"]["egress"][0]["to"] == [{
            "namespaceSelector": {"matchLabels": {"kubernetes.io/metadata.name": "istio-egress-gateway"}},
            "podSelector": {"matchLabels": {"app": "egressgateway"}},
        }]
        cidr_policy = by_description(policies, "-b-192-168-0-0-16")
        assert cidr_policy["spec"]["egress"][0]["to"] == [{"ipBlock": {"cidr": "192.168.0.0/16"}}]

    def test_description_names_policy(self):
        """Test a description names the policy and is kept as an annotation."""
        policy = build(network={"allow": [{
            "direction": "Egress",
            "remoteNamespace": "db",
            "description": "Postgres access",
            "labels": {"team": "data"},
        }]})[-1]
        assert policy["metadata"]["name"] == "allow-test-pkg-egress-postgres-access"
        assert policy["metadata"]["annotations"] == {"uds/description": "Postgres access"}
        assert policy["metadata"]["labels"]["team"] == "data"

    def test_name_collisions(self):
        """Test identical rules collapse and distinct rules with one name are suffixed."""
        rule = {"direction": "Egress", "remoteNamespace": "db", "description": "Database"}
        policies = build(network={"allow": [
            rule,
            dict(rule),
            {**rule, "port": 5432},
        ]})
        names = [p["metadata"]["name"] for p in policies if "database" in p["metadata"]["name"]]
        assert names == ["allow-test-pkg-egress-database", "allow-test-pkg-egress-database-2"]

    def test_expose_ingress(self):
        """Test each expose entry opens ingress from its gateway."""
        policy = build(network={"expose": [{
            "gateway": "admin",
            "host": "grafana",
            "service": "grafana",
            "port": 80,
            "targetPort": 3000,
            "selector": {"app": "grafana"},
        }]})[-1]

        assert policy["metadata"]["name"] == "allow-test-pkg-ingress-3000-grafana-istio-admin-gateway"
        assert policy["spec"]["podSelector"] == {"matchLabels": {"app": "grafana"}}
        assert policy["spec"]["ingress"] == [{
            "from": [{
                "namespaceSelector": {"matchLabels": {"kubernetes.io/metadata.name": "istio-admin-gateway"}},
                "podSelector": {"matchLabels": {"app": "admin-ingressgateway"}},
            }],
            "ports": [{"port": 3000, "protocol": "TCP"}],
        }]


class TestNetworkPolicySynthesizer:
    """Test applying policies and sweeping orphans."""

    def setup_method(self):
        """Set up test fixtures."""
        self.k8s = FakeKubernetesClient()
        self.resolver = EndpointResolver(self.k8s)
        self.synthesizer = NetworkPolicySynthesizer(self.k8s, self.resolver)

    def package(self, generation, allow):
        return Package.from_resource(package_resource(generation=generation, network={"allow": allow}))

    @pytest.mark.asyncio
    async def test_applies_with_owner_references(self):
        """Test policies are applied with the package as owner."""
        count = await self.synthesizer.reconcile(self.package(1, []), "test-ns")

        policies = self.k8s.objects_of(NETWORK_POLICY, "test-ns")
        assert count == len(policies) == 6
        for policy in policies:
            assert policy["metadata"]["ownerReferences"][0]["name"] == "test-pkg"
            assert policy["metadata"]["ownerReferences"][0]["kind"] == "Package"

    @pytest.mark.asyncio
    async def test_removed_rule_is_purged(self):
        """Test removing an allow rule deletes its policy on the next generation."""
        rule = {"direction": "Egress", "remoteNamespace": "db", "description": "Database"}
        await self.synthesizer.reconcile(self.package(1, [rule]), "test-ns")
        assert "allow-test-pkg-egress-database" in self.k8s.names_of(NETWORK_POLICY)

        await self.synthesizer.reconcile(self.package(2, []), "test-ns")

        assert "allow-test-pkg-egress-database" not in self.k8s.names_of(NETWORK_POLICY)
        assert ("NetworkPolicy", "test-ns", "allow-test-pkg-egress-database") in self.k8s.deleted

    @pytest.mark.asyncio
    async def test_every_policy_carries_current_generation(self):
        """Test no policy labelled with the package has a stale generation."""
        await self.synthesizer.reconcile(self.package(1, [{"direction": "Egress"}]), "test-ns")
        await self.synthesizer.reconcile(self.package(2, [{"direction": "Ingress"}]), "test-ns")

        generations = {
            p["metadata"]["labels"]["generation"]
            for p in self.k8s.objects_of(NETWORK_POLICY)
            if p["metadata"]["labels"]["package"] == "test-pkg"
        }
        assert generations == {"2"}

    @pytest.mark.asyncio
    async def test_kube_api_resolved_only_when_needed(self):
        """Test the API server is only resolved for packages using KubeAPI."""
        self.k8s.api_server_addresses = ["10.0.0.1:6443"]

        await self.synthesizer.reconcile(self.package(1, []), "test-ns")
        assert self.k8s.api_server_queries == 0

        await self.synthesizer.reconcile(
            self.package(2, [{"direction": "Egress", "remoteGenerated": "KubeAPI"}]), "test-ns"
        )
        policy = next(
            p for p in self.k8s.objects_of(NETWORK_POLICY) if p["metadata"]["name"].endswith("kubeapi")
        )
        assert policy["spec"]["egress"][0]["to"] == [{"ipBlock": {"cidr": "10.0.0.1/32"}}]

    @pytest.mark.asyncio
    async def test_apply_failure_names_kube_api_override(self):
        """Test a failed KubeAPI policy points at the static CIDR setting."""
        self.k8s.fail_apply.add(("NetworkPolicy", "allow-test-pkg-egress-all-pods-kubeapi"))

        with pytest.raises(NetworkPolicyError, match="kube_api_cidr"):
            await self.synthesizer.reconcile(
                self.package(1, [{"direction": "Egress", "remoteGenerated": "KubeAPI"}]), "test-ns"
            )

    @pytest.mark.asyncio
    async def test_purge_failure_does_not_fail(self):
        """Test purge errors are logged without failing the reconciliation."""
        self.k8s.fail_list.add("NetworkPolicy")
        assert await self.synthesizer.reconcile(self.package(1, []), "test-ns") == 6
