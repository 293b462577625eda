"""
Egress reconciler tests.

Host aggregation across packages, the shared per-host Gateway,
VirtualService and ServiceEntry, conflict detection against foreign
Gateways, egress gateway validation and workload Sidecar synthesis.
"""

import pytest

from package_operator.controllers.egress import (
    EgressApplyError,
    EgressConflictError,
    EgressGatewayValidationError,
    EgressPurgeError,
    EgressReconciler,
    build_shared_virtual_service,
    build_workload_egress_resources,
    create_host_resource_map,
    egress_generation,
    remap_egress_resources,
)
from package_operator.models.egress import EgressResource, HostResource, PortProtocol
from package_operator.models.package import Allow, Direction, Package, RemoteProtocol
from package_operator.utils.kubernetes_client import GATEWAY, SERVICE_ENTRY, SIDECAR, VIRTUAL_SERVICE

from fakes import FakeKubernetesClient, package_resource

TLS_443 = PortProtocol(port=443, protocol=RemoteProtocol.TLS)
HTTP_80 = PortProtocol(port=80, protocol=RemoteProtocol.HTTP)


def host_map(*port_protocols):
    return HostResource(port_protocol=list(port_protocols))


def foreign_gateway(name, namespace, host):
    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "Gateway",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"servers": [{"hosts": [host], "port": {"number": 443, "protocol": "TLS"}}]},
    }


def egress_package(name="test-pkg", generation=1, allow=None, egress=None):
    network = {"allow": allow or [], "egress": egress or {}}
    return Package.from_resource(package_resource(name=name, generation=generation, network=network))


class TestHostAggregation:
    """Test host maps and the remap across packages."""

    def test_remap_dedupes_identical_ports(self):
        """Test two packages requesting the same host and port share one entry."""
        resources = remap_egress_resources({
            "pkgA": {"h": host_map(TLS_443)},
            "pkgB": {"h": host_map(TLS_443)},
        })
        assert resources == {"h": EgressResource(packages=["pkgA", "pkgB"], port_protocols=[TLS_443])}

    def test_remap_empty(self):
        """Test an empty map remaps to an empty map."""
        assert remap_egress_resources({}) == {}

    def test_remap_unions_ports(self):
        """Test distinct ports for one host are unioned in first-seen order."""
        resources = remap_egress_resources({
            "pkgA": {"h": host_map(TLS_443)},
            "pkgB": {"h": host_map(HTTP_80, TLS_443), "other": host_map(TLS_443)},
        })
        assert resources["h"].port_protocols == [TLS_443, HTTP_80]
        assert resources["other"].packages == ["pkgB"]

    def test_host_resource_map(self):
        """Test hosts from network.egress and remoteHost allows are combined."""
        pkg = egress_package(
            allow=[
                {"direction": "Egress", "remoteHost": "example.com", "port": 443},
                {"direction": "Egress", "remoteHost": "httpbin.org", "remoteProtocol": "HTTP"},
                {"direction": "Egress", "remoteNamespace": "db"},
            ],
            egress={"example.com": [{"port": 443}]},
        )
        assert create_host_resource_map(pkg) == {
            "example.com": host_map(TLS_443),
            "httpbin.org": host_map(HTTP_80),
        }

    def test_no_egress(self):
        """Test packages without external hosts have no host map."""
        assert create_host_resource_map(egress_package()) is None

    def test_generation_tracks_content(self):
        """Test the sweep generation is stable and changes with the hosts."""
        first = remap_egress_resources({"pkgA": {"h": host_map(TLS_443)}})
        same = remap_egress_resources({"pkgA": {"h": host_map(TLS_443)}})
        changed = remap_egress_resources({"pkgA": {"h": host_map(TLS_443, HTTP_80)}})

        assert egress_generation(first) == egress_generation(same)
        assert egress_generation(first) != egress_generation(changed)
        assert len(egress_generation({})) == 16


class TestSharedManifests:
    """Test the shared egress manifests."""

    def test_virtual_service_routes(self):
        """Test mesh traffic goes to the gateway and the gateway forwards to the host."""
        vs = build_shared_virtual_service(
            "example.com", EgressResource(packages=["app-team"], port_protocols=[TLS_443]), "abc"
        )

        assert vs["metadata"]["annotations"] == {"uds.dev/user-app-team": "user"}
        assert vs["spec"]["gateways"] == ["mesh", "istio-egress-gateway/gateway-example-com"]
        assert [route["route"][0]["destination"]["host"] for route in vs["spec"]["tls"]] == [
            "egressgateway.istio-egress-gateway.svc.cluster.local",
            "example.com",
        ]
        assert vs["spec"]["tls"][0]["match"] == [
            {"gateways": ["mesh"], "port": 443, "sniHosts": ["example.com"]}
        ]


class TestWorkloadEgressResources:
    """Test Sidecar and local ServiceEntry synthesis."""

    hosts = {"example.com": host_map(TLS_443)}

    def test_same_selector_collapses(self):
        """Test entries with one selector produce one Sidecar."""
        allows = [
            Allow(direction=Direction.EGRESS, selector={"app": "my-app"}, remote_host="example.com"),
            Allow(direction=Direction.EGRESS, selector={"app": "my-app"}, remote_host="example.com"),
        ]
        sidecars, service_entries = build_workload_egress_resources(self.hosts, allows, "pkg", "ns", 1)

        assert len(sidecars) == 1
        assert sidecars[0]["spec"] == {
            "outboundTrafficPolicy": {"mode": "REGISTRY_ONLY"},
            "workloadSelector": {"labels": {"app": "my-app"}},
        }
        assert [se["metadata"]["name"] for se in service_entries] == ["pkg-egress-example-com"]

    def test_selector_and_default(self):
        """Test a selector and a missing selector produce two Sidecars."""
        allows = [
            Allow(direction=Direction.EGRESS, selector={"app": "my-app"}, remote_host="example.com"),
            Allow(direction=Direction.EGRESS, remote_host="example.com"),
        ]
        sidecars, _ = build_workload_egress_resources(self.hosts, allows, "pkg", "ns", 1)

        assert [s["metadata"]["name"] for s in sidecars] == ["pkg-egress-app-my-app", "pkg-egress-default"]
        assert "workloadSelector" not in sidecars[1]["spec"]

    def test_selector_key_order_ignored(self):
        """Test selectors differing only in key order produce one Sidecar."""
        allows = [
            Allow(direction=Direction.EGRESS, selector={"app": "a", "tier": "b"}, remote_host="example.com"),
            Allow(direction=Direction.EGRESS, selector={"tier": "b", "app": "a"}, remote_host="example.com"),
        ]
        sidecars, _ = build_workload_egress_resources(self.hosts, allows, "pkg", "ns", 1)

        assert [s["metadata"]["name"] for s in sidecars] == ["pkg-egress-app-a-tier-b"]

    def test_colliding_sidecar_names_suffixed(self):
        """Test distinct selectors that sanitize to one name keep distinct Sidecars."""
        allows = [
            Allow(direction=Direction.EGRESS, selector={"app": "my-app"}, remote_host="example.com"),
            Allow(direction=Direction.EGRESS, selector={"app-my": "app"}, remote_host="example.com"),
        ]
        sidecars, _ = build_workload_egress_resources(self.hosts, allows, "pkg", "ns", 1)

        assert [s["metadata"]["name"] for s in sidecars] == ["pkg-egress-app-my-app", "pkg-egress-app-my-app-2"]
        assert sidecars[1]["spec"]["workloadSelector"] == {"labels": {"app-my": "app"}}


class TestEgressGatewayValidation:
    """Test egress gateway checks."""

    @pytest.mark.asyncio
    async def test_exposed_ports_pass(self, k8s):
        """Test hosts on exposed ports validate."""
        reconciler = EgressReconciler(k8s)
        await reconciler.validate_egress_gateway({"example.com": host_map(TLS_443, HTTP_80)})

    @pytest.mark.asyncio
    async def test_missing_port(self, k8s):
        """Test a port the gateway service does not expose is rejected."""
        reconciler = EgressReconciler(k8s)
        with pytest.raises(EgressGatewayValidationError, match="does not expose port 8080 for host example.com"):
            await reconciler.validate_egress_gateway({"example.com": host_map(PortProtocol(port=8080))})

    @pytest.mark.asyncio
    async def test_missing_namespace(self):
        """Test a cluster without the egress gateway namespace is rejected."""
        reconciler = EgressReconciler(FakeKubernetesClient())
        with pytest.raises(EgressGatewayValidationError, match="not enabled in the cluster"):
            await reconciler.validate_egress_gateway({"example.com": host_map(TLS_443)})

    @pytest.mark.asyncio
    async def test_unreadable_namespace(self):
        """Test other namespace read failures are reported distinctly."""
        k8s = FakeKubernetesClient()
        k8s.add_namespace("istio-egress-gateway", status=403)
        reconciler = EgressReconciler(k8s)
        with pytest.raises(EgressGatewayValidationError, match="Unable to get the egress gateway namespace"):
            await reconciler.validate_egress_gateway({"example.com": host_map(TLS_443)})


class TestSharedEgressApply:
    """Test the shared per-host egress objects."""

    @pytest.mark.asyncio
    async def test_apply_is_idempotent(self, k8s):
        """Test applying one declaration twice keeps one triad per host."""
        reconciler = EgressReconciler(k8s)
        package_host_map = {"pkgA": {"example.com": host_map(TLS_443)}}

        await reconciler.apply_sidecar_egress_resources(package_host_map, "gen")
        await reconciler.apply_sidecar_egress_resources(package_host_map, "gen")

        assert k8s.names_of(GATEWAY) == ["gateway-example-com"]
        assert k8s.names_of(VIRTUAL_SERVICE) == ["egress-vs-example-com"]
        assert k8s.names_of(SERVICE_ENTRY) == ["service-entry-example-com"]

    @pytest.mark.asyncio
    async def test_second_host_gets_own_objects(self, k8s):
        """Test every distinct host gets an independent triad."""
        reconciler = EgressReconciler(k8s)
        await reconciler.apply_sidecar_egress_resources({
            "pkgA": {"example.com": host_map(TLS_443)},
            "pkgB": {"httpbin.org": host_map(TLS_443)},
        }, "gen")

        assert k8s.names_of(GATEWAY) == ["gateway-example-com", "gateway-httpbin-org"]
        assert len(k8s.objects_of(SERVICE_ENTRY)) == 2

    @pytest.mark.asyncio
    async def test_unrelated_gateway_is_not_a_conflict(self, k8s):
        """Test a foreign Gateway for another host does not block the apply."""
        k8s.add_object(foreign_gateway("google", "other", "google.com"))
        reconciler = EgressReconciler(k8s)

        await reconciler.apply_sidecar_egress_resources({"pkgA": {"example.com": host_map(TLS_443)}}, "gen")

        assert k8s.names_of(GATEWAY, "istio-egress-gateway") == ["gateway-example-com"]
        assert k8s.names_of(GATEWAY, "other") == ["google"]

    @pytest.mark.asyncio
    async def test_foreign_gateway_for_host_conflicts(self, k8s):
        """Test a foreign Gateway claiming the host aborts the apply."""
        k8s.add_object(foreign_gateway("example", "other", "example.com"))
        reconciler = EgressReconciler(k8s)

        with pytest.raises(EgressConflictError, match="example/other with matching host example.com"):
            await reconciler.apply_sidecar_egress_resources({"pkgA": {"example.com": host_map(TLS_443)}}, "gen")

        assert k8s.applied == []

    @pytest.mark.asyncio
    async def test_namespace_scoped_host_conflicts(self, k8s):
        """Test hosts written as namespace/host are matched too."""
        k8s.add_object(foreign_gateway("example", "other", "*/example.com"))
        reconciler = EgressReconciler(k8s)

        with pytest.raises(EgressConflictError):
            await reconciler.apply_sidecar_egress_resources({"pkgA": {"example.com": host_map(TLS_443)}}, "gen")

    @pytest.mark.asyncio
    async def test_apply_failure_names_host(self, k8s):
        """Test apply failures name the object kind and host."""
        k8s.fail_apply.add(("ServiceEntry", "service-entry-example-com"))
        reconciler = EgressReconciler(k8s)

        with pytest.raises(EgressApplyError, match="Failed to apply Service Entry for host example.com"):
            await reconciler.apply_sidecar_egress_resources({"pkgA": {"example.com": host_map(TLS_443)}}, "gen")

    @pytest.mark.asyncio
    async def test_sweep_removes_unreferenced_hosts(self, k8s):
        """Test hosts no package references are purged by the next sweep."""
        reconciler = EgressReconciler(k8s)
        first = egress_package(name="a", egress={"example.com": [{"port": 443}]})
        second = egress_package(name="b", egress={"httpbin.org": [{"port": 443}]})

        await reconciler.reconcile_shared([first, second])
        generation = await reconciler.reconcile_shared([second])

        assert k8s.names_of(GATEWAY) == ["gateway-httpbin-org"]
        assert k8s.names_of(VIRTUAL_SERVICE) == ["egress-vs-httpbin-org"]
        assert k8s.objects_of(SERVICE_ENTRY)[0]["metadata"]["labels"]["generation"] == generation

    @pytest.mark.asyncio
    async def test_purge_failure(self, k8s):
        """Test purge failures are wrapped."""
        k8s.fail_list.add("ServiceEntry")
        reconciler = EgressReconciler(k8s)

        with pytest.raises(EgressPurgeError, match="Failed to purge orphaned sidecar egress resources"):
            await reconciler.purge_sidecar_egress_resources("gen")


class TestPackageEgress:
    """Test package-scoped egress reconciliation."""

    @pytest.mark.asyncio
    async def test_sidecars_and_service_entries(self, k8s):
        """Test workload objects are created and swept with the package generation."""
        reconciler = EgressReconciler(k8s)
        allow = {"direction": "Egress", "selector": {"app": "web"}, "remoteHost": "example.com", "port": 443}

        await reconciler.reconcile_package(egress_package(allow=[allow]), "test-ns")

        assert k8s.names_of(SIDECAR, "test-ns") == ["test-pkg-egress-app-web"]
        assert k8s.names_of(SERVICE_ENTRY, "test-ns") == ["test-pkg-egress-example-com"]
        sidecar = k8s.objects_of(SIDECAR)[0]
        assert sidecar["metadata"]["ownerReferences"][0]["name"] == "test-pkg"

        await reconciler.reconcile_package(egress_package(generation=2), "test-ns")

        assert k8s.objects_of(SIDECAR) == []
        assert k8s.objects_of(SERVICE_ENTRY, "test-ns") == []

    @pytest.mark.asyncio
    async def test_validation_blocks_workload_objects(self):
        """Test nothing is applied when the egress gateway is missing."""
        k8s = FakeKubernetesClient()
        reconciler = EgressReconciler(k8s)
        pkg = egress_package(allow=[{"direction": "Egress", "remoteHost": "example.com"}])

        with pytest.raises(EgressGatewayValidationError):
            await reconciler.reconcile_package(pkg, "test-ns")
        assert k8s.applied == []
