"""
Egress resource reconciler.

Packages declare the external hosts their workloads call. Those
declarations are aggregated across every package into one shared set of
egress objects per host in the egress gateway namespace: a Gateway
listener, a VirtualService steering mesh traffic through the gateway, and
a ServiceEntry registering the host. Inside each package namespace a
Sidecar per workload selector restricts outbound traffic to registered
hosts, and a local ServiceEntry registers each host for those workloads.

Shared objects are never owned by a single package. They are labelled with
a sweep generation derived from the aggregated state, and objects for hosts
no package references any more are purged by generation mismatch.
"""

import hashlib
import json
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import structlog
from prometheus_client import Counter, Gauge

from ..models.egress import (
    EgressResource,
    EgressResources,
    HostResource,
    HostResourceMap,
    PackageHostMap,
    PortProtocol,
)
from ..models.package import Allow, Direction, Package, RemoteProtocol
from ..utils.kubernetes_client import (
    GATEWAY,
    SERVICE_ENTRY,
    SIDECAR,
    VIRTUAL_SERVICE,
    KubernetesClient,
    KubernetesClientError,
)
from ..utils.resources import (
    MANAGED_BY,
    MANAGED_BY_LABEL,
    apply_resource,
    owner_references,
    package_labels,
    purge_orphans,
    sanitize_resource_name,
)

SHARED_EGRESS_PACKAGE = "shared-egress-resource"
USER_ANNOTATION_PREFIX = "uds.dev/user-"

EGRESS_CONFLICTS = Counter(
    "package_egress_conflicts_total",
    "Egress hosts rejected because a foreign Gateway already claims them"
)
EGRESS_HOSTS = Gauge(
    "package_egress_hosts",
    "External hosts routed through the shared egress gateway"
)


class EgressError(Exception):
    """Base class for egress reconciliation errors."""
    pass


class EgressGatewayValidationError(EgressError):
    """Raised when the egress gateway cannot serve the requested hosts."""
    pass


class EgressConflictError(EgressError):
    """Raised when a foreign Gateway already claims an external host."""
    pass


class EgressApplyError(EgressError):
    """Raised when a shared egress object fails to apply."""
    pass


class EgressPurgeError(EgressError):
    """Raised when orphaned shared egress objects cannot be purged."""
    pass


def default_port(protocol: RemoteProtocol) -> int:
    return 80 if protocol == RemoteProtocol.HTTP else 443


def create_host_resource_map(pkg: Package) -> Optional[HostResourceMap]:
    """
    Collect the external hosts a package needs.

    Hosts come from ``network.egress`` and from egress allow rules with a
    ``remoteHost``. Ports are deduplicated per host.

    Returns:
        The host map, or None when the package declares no egress
    """
    host_map: HostResourceMap = {}

    def add(host: str, port_protocols: Iterable[PortProtocol]) -> None:
        resource = host_map.setdefault(host, HostResource())
        for port_protocol in port_protocols:
            if port_protocol not in resource.port_protocol:
                resource.port_protocol.append(port_protocol)

    for host, ports in pkg.spec.network.egress.items():
        add(host, (PortProtocol(port=p.port, protocol=p.protocol) for p in ports))

    for allow in pkg.spec.network.allow:
        if allow.direction != Direction.EGRESS or not allow.remote_host:
            continue
        protocol = allow.remote_protocol or RemoteProtocol.TLS
        ports = allow.port_list() or [default_port(protocol)]
        add(allow.remote_host, (PortProtocol(port=port, protocol=protocol) for port in ports))

    return host_map or None


def collect_package_host_map(packages: Iterable[Package]) -> PackageHostMap:
    """Build the PackageHostMap for every package that declares egress."""
    package_host_map: PackageHostMap = {}
    for pkg in packages:
        host_map = create_host_resource_map(pkg)
        if host_map:
            package_host_map[pkg.package_id] = host_map
    return package_host_map


def remap_egress_resources(package_host_map: PackageHostMap) -> EgressResources:
    """
    Regroup per-package host maps by host.

    Packages referencing a host and the port/protocol pairs requested for it
    are unioned across packages, keeping first-seen order.
    """
    egress_resources: EgressResources = {}
    for package_id, host_map in package_host_map.items():
        for host, resource in host_map.items():
            entry = egress_resources.setdefault(host, EgressResource())
            if package_id not in entry.packages:
                entry.packages.append(package_id)
            for port_protocol in resource.port_protocol:
                if port_protocol not in entry.port_protocols:
                    entry.port_protocols.append(port_protocol)
    return egress_resources


def egress_generation(egress_resources: EgressResources) -> str:
    """
    Sweep generation for the shared egress objects.

    A short digest of the aggregated state: it changes whenever a host,
    package or port changes and stays stable across controller restarts.
    """
    canonical = json.dumps(
        {
            host: {
                "packages": sorted(resource.packages),
                "portProtocols": sorted(
                    [pp.port, pp.protocol.value] for pp in resource.port_protocols
                ),
            }
            for host, resource in egress_resources.items()
        },
        sort_keys=True,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def selector_key(selector: Optional[Dict[str, str]]) -> str:
    """Canonical key for a workload selector; no selector maps to ``default``."""
    if not selector:
        return "default"
    return json.dumps(selector, sort_keys=True)


def _port_name(port_protocol: PortProtocol) -> str:
    return f"{port_protocol.protocol.value.lower()}-{port_protocol.port}"


def _service_entry_ports(port_protocols: Iterable[PortProtocol]) -> List[Dict[str, Any]]:
    return [
        {"name": _port_name(pp), "number": pp.port, "protocol": pp.protocol.value}
        for pp in port_protocols
    ]


def _user_annotations(packages: Iterable[str]) -> Dict[str, str]:
    # the name segment after the prefix is limited to 63 characters
    limit = len(USER_ANNOTATION_PREFIX.split("/")[0]) + 1 + 63
    return {
        f"{USER_ANNOTATION_PREFIX}{package_id}"[:limit].rstrip("-"): "user"
        for package_id in packages
    }


def gateway_name(host: str) -> str:
    return sanitize_resource_name(f"gateway-{host}")


def build_shared_gateway(host: str,
                         resource: EgressResource,
                         generation: str,
                         egress_namespace: str = "istio-egress-gateway") -> Dict[str, Any]:
    """Gateway listener on the egress gateway for one external host."""
    servers = []
    for port_protocol in resource.port_protocols:
        server: Dict[str, Any] = {
            "hosts": [host],
            "port": {
                "name": _port_name(port_protocol),
                "number": port_protocol.port,
                "protocol": port_protocol.protocol.value,
            },
        }
        if port_protocol.protocol == RemoteProtocol.TLS:
            server["tls"] = {"mode": "PASSTHROUGH"}
        servers.append(server)

    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "Gateway",
        "metadata": {
            "name": gateway_name(host),
            "namespace": egress_namespace,
            "labels": package_labels(SHARED_EGRESS_PACKAGE, generation),
            "annotations": _user_annotations(resource.packages),
        },
        "spec": {
            "selector": {"app": "egressgateway"},
            "servers": servers,
        },
    }


def build_shared_virtual_service(host: str,
                                 resource: EgressResource,
                                 generation: str,
                                 egress_namespace: str = "istio-egress-gateway",
                                 egress_service: str = "egressgateway") -> Dict[str, Any]:
    """
    VirtualService steering mesh traffic for a host through the egress gateway.

    Each port gets two routes: sidecars send traffic to the egress gateway
    service, and the egress gateway forwards it to the external host.
    """
    gateway = f"{egress_namespace}/{gateway_name(host)}"
    gateway_host = f"{egress_service}.{egress_namespace}.svc.cluster.local"
    spec: Dict[str, Any] = {"hosts": [host], "gateways": ["mesh", gateway]}

    for port_protocol in resource.port_protocols:
        kind = "tls" if port_protocol.protocol == RemoteProtocol.TLS else "http"
        for source, target in (("mesh", gateway_host), (gateway, host)):
            match: Dict[str, Any] = {"gateways": [source], "port": port_protocol.port}
            if kind == "tls":
                match["sniHosts"] = [host]
            spec.setdefault(kind, []).append({
                "match": [match],
                "route": [
                    {"destination": {"host": target, "port": {"number": port_protocol.port}}}
                ],
            })

    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "VirtualService",
        "metadata": {
            "name": sanitize_resource_name(f"egress-vs-{host}"),
            "namespace": egress_namespace,
            "labels": package_labels(SHARED_EGRESS_PACKAGE, generation),
            "annotations": _user_annotations(resource.packages),
        },
        "spec": spec,
    }


def build_shared_service_entry(host: str,
                               resource: EgressResource,
                               generation: str,
                               egress_namespace: str = "istio-egress-gateway") -> Dict[str, Any]:
    """ServiceEntry registering the external host with the egress gateway."""
    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "ServiceEntry",
        "metadata": {
            "name": sanitize_resource_name(f"service-entry-{host}"),
            "namespace": egress_namespace,
            "labels": package_labels(SHARED_EGRESS_PACKAGE, generation),
            "annotations": _user_annotations(resource.packages),
        },
        "spec": {
            "hosts": [host],
            "location": "MESH_EXTERNAL",
            "resolution": "DNS",
            "ports": _service_entry_ports(resource.port_protocols),
            "exportTo": ["."],
        },
    }


def build_sidecar(package_name: str,
                  namespace: str,
                  selector: Optional[Dict[str, str]],
                  generation: Any) -> Dict[str, Any]:
    """Sidecar limiting a workload's outbound traffic to registered hosts."""
    suffix = "-".join(f"{key}-{value}" for key, value in sorted((selector or {}).items()))
    spec: Dict[str, Any] = {"outboundTrafficPolicy": {"mode": "REGISTRY_ONLY"}}
    if selector:
        spec["workloadSelector"] = {"labels": dict(selector)}

    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "Sidecar",
        "metadata": {
            "name": sanitize_resource_name(f"{package_name}-egress-{suffix or 'default'}"),
            "namespace": namespace,
            "labels": package_labels(package_name, generation),
        },
        "spec": spec,
    }


def build_local_service_entry(package_name: str,
                              namespace: str,
                              host: str,
                              resource: HostResource,
                              generation: Any) -> Dict[str, Any]:
    """ServiceEntry registering an external host inside the package namespace."""
    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "ServiceEntry",
        "metadata": {
            "name": sanitize_resource_name(f"{package_name}-egress-{host}"),
            "namespace": namespace,
            "labels": package_labels(package_name, generation),
        },
        "spec": {
            "hosts": [host],
            "location": "MESH_EXTERNAL",
            "resolution": "DNS",
            "ports": _service_entry_ports(resource.port_protocol),
            "exportTo": ["."],
        },
    }


def build_workload_egress_resources(host_resource_map: HostResourceMap,
                                    allow_entries: Iterable[Allow],
                                    package_name: str,
                                    namespace: str,
                                    generation: Any) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Build the Sidecars and local ServiceEntries for a package.

    One Sidecar is built per distinct selector among the egress allow
    entries, selectors being compared by content. Distinct selectors that
    sanitize to the same name get a numeric suffix. One ServiceEntry is
    built per host.

    Returns:
        Tuple of (sidecars, service entries)
    """
    selectors: Dict[str, Optional[Dict[str, str]]] = {}
    for allow in allow_entries:
        if allow.direction != Direction.EGRESS:
            continue
        selectors.setdefault(selector_key(allow.selector), allow.selector or None)

    sidecars = []
    names: Set[str] = set()
    for selector in selectors.values():
        sidecar = build_sidecar(package_name, namespace, selector, generation)
        base_name = sidecar["metadata"]["name"]
        name = base_name
        index = 1
        while name in names:
            index += 1
            name = f"{base_name}-{index}"
        sidecar["metadata"]["name"] = name
        names.add(name)
        sidecars.append(sidecar)

    service_entries = [
        build_local_service_entry(package_name, namespace, host, resource, generation)
        for host, resource in host_resource_map.items()
    ]
    return sidecars, service_entries


def _gateway_hosts(gateway: Dict[str, Any]) -> List[str]:
    hosts = []
    for server in gateway.get("spec", {}).get("servers") or []:
        for host in server.get("hosts") or []:
            # hosts may be scoped as <namespace>/<host>
            hosts.append(host.split("/", 1)[-1])
    return hosts


class EgressReconciler:
    """
    Reconciles egress objects for packages.

    Package-scoped objects (Sidecars, local ServiceEntries) are applied per
    package. The shared objects in the egress gateway namespace are applied
    by a sweep over every package's declarations.
    """

    def __init__(self,
                 k8s: KubernetesClient,
                 egress_namespace: str = "istio-egress-gateway",
                 egress_service: str = "egressgateway",
                 logger: Optional[Any] = None) -> None:
        self.k8s = k8s
        self.egress_namespace = egress_namespace
        self.egress_service = egress_service
        self.logger = (logger or structlog.get_logger()).bind(
            component="egress",
            egress_namespace=egress_namespace
        )

    async def validate_egress_gateway(self, host_resource_map: HostResourceMap) -> None:
        """
        Check the egress gateway can carry every requested host and port.

        Raises:
            EgressGatewayValidationError: If the gateway namespace or service
                cannot be read, or the service lacks a requested port
        """
        try:
            await self.k8s.read_namespace(self.egress_namespace)
        except KubernetesClientError as e:
            if e.status == 404:
                raise EgressGatewayValidationError(
                    "Egress gateway is not enabled in the cluster. "
                    f"Namespace {self.egress_namespace} was not found."
                ) from e
            raise EgressGatewayValidationError(
                f"Unable to get the egress gateway namespace {self.egress_namespace}."
            ) from e

        try:
            ports = set(await self.k8s.service_ports(self.egress_service, self.egress_namespace))
        except KubernetesClientError as e:
            raise EgressGatewayValidationError(
                f"Unable to get the egress gateway service {self.egress_service} "
                f"in namespace {self.egress_namespace}."
            ) from e

        for host, resource in host_resource_map.items():
            for port_protocol in resource.port_protocol:
                if port_protocol.port not in ports:
                    raise EgressGatewayValidationError(
                        f"Egress gateway does not expose port {port_protocol.port} for host {host}. "
                        "Please update the egress gateway service to expose this port."
                    )

    async def check_host_conflicts(self, host: str) -> None:
        """
        Reject a host already claimed by a Gateway this operator did not generate.

        Raises:
            EgressConflictError: If a foreign Gateway lists the host
        """
        expected = gateway_name(host)
        for gateway in await self.k8s.list(GATEWAY):
            metadata = gateway.get("metadata", {})
            labels = metadata.get("labels") or {}
            owned = (
                metadata.get("name") == expected
                and metadata.get("namespace") == self.egress_namespace
                and labels.get(MANAGED_BY_LABEL) == MANAGED_BY
            )
            if owned or host not in _gateway_hosts(gateway):
                continue

            EGRESS_CONFLICTS.inc()
            raise EgressConflictError(
                f"Found existing Gateway {metadata.get('name')}/{metadata.get('namespace')} "
                f"with matching host {host}. Istio will not behave properly with multiple "
                "Gateways using the same hosts."
            )

    async def apply_sidecar_egress_resources(self,
                                             package_host_map: PackageHostMap,
                                             generation: str) -> None:
        """
        Apply the shared Gateway, VirtualService and ServiceEntry per host.

        Hosts are processed in sorted order. A conflict or apply failure
        aborts the remaining hosts; hosts applied before it stay live.

        Raises:
            EgressConflictError: If a foreign Gateway claims a host
            EgressApplyError: If an object fails to apply
        """
        egress_resources = remap_egress_resources(package_host_map)

        for host in sorted(egress_resources):
            resource = egress_resources[host]
            log = self.logger.bind(host=host, packages=resource.packages)

            await self.check_host_conflicts(host)

            steps = (
                ("Gateway", GATEWAY,
                 build_shared_gateway(host, resource, generation, self.egress_namespace)),
                ("Virtual Service", VIRTUAL_SERVICE,
                 build_shared_virtual_service(
                     host, resource, generation, self.egress_namespace, self.egress_service)),
                ("Service Entry", SERVICE_ENTRY,
                 build_shared_service_entry(host, resource, generation, self.egress_namespace)),
            )
            for label, kind, body in steps:
                try:
                    await apply_resource(self.k8s, kind, body)
                except KubernetesClientError as e:
                    log.error("Shared egress apply failed", kind=kind.kind, error=str(e))
                    raise EgressApplyError(f"Failed to apply {label} for host {host}") from e

            log.debug("Shared egress resources applied", generation=generation)

    async def create_sidecar_workload_egress_resources(self,
                                                       host_resource_map: HostResourceMap,
                                                       allow_entries: Iterable[Allow],
                                                       package_name: str,
                                                       namespace: str,
                                                       generation: Any,
                                                       owner_refs: List[Dict[str, Any]]) -> None:
        """
        Apply the package's Sidecars and local ServiceEntries.

        Raises:
            KubernetesClientError: If an object fails to apply
        """
        sidecars, service_entries = build_workload_egress_resources(
            host_resource_map, allow_entries, package_name, namespace, generation
        )
        for kind, bodies in ((SIDECAR, sidecars), (SERVICE_ENTRY, service_entries)):
            for body in bodies:
                body["metadata"]["ownerReferences"] = owner_refs
                await apply_resource(self.k8s, kind, body)

        self.logger.info(
            "Workload egress resources applied",
            package=package_name,
            namespace=namespace,
            sidecars=len(sidecars),
            service_entries=len(service_entries)
        )

    async def purge_sidecar_egress_resources(self, generation: str) -> None:
        """
        Delete shared egress objects left over from an earlier sweep.

        Raises:
            EgressPurgeError: If any of the three sweeps fails
        """
        try:
            for kind in (GATEWAY, VIRTUAL_SERVICE, SERVICE_ENTRY):
                await purge_orphans(
                    self.k8s, kind, self.egress_namespace, SHARED_EGRESS_PACKAGE,
                    generation, self.logger
                )
        except KubernetesClientError as e:
            self.logger.error("Shared egress purge failed", error=str(e))
            raise EgressPurgeError("Failed to purge orphaned sidecar egress resources") from e

    async def reconcile_package(self, pkg: Package, namespace: str) -> None:
        """
        Reconcile the package-scoped egress objects.

        Validates the egress gateway when the package declares hosts, applies
        its Sidecars and local ServiceEntries, then sweeps stale ones. Sweep
        failures are logged only.
        """
        log = self.logger.bind(package=pkg.name, namespace=namespace)
        host_map = create_host_resource_map(pkg)

        if host_map:
            await self.validate_egress_gateway(host_map)
            allow_entries = [
                allow for allow in pkg.spec.network.allow
                if allow.direction == Direction.EGRESS and allow.remote_host
            ]
            await self.create_sidecar_workload_egress_resources(
                host_map, allow_entries, pkg.name, namespace, pkg.generation,
                owner_references(pkg)
            )

        try:
            for kind in (SIDECAR, SERVICE_ENTRY):
                await purge_orphans(self.k8s, kind, namespace, pkg.name, pkg.generation, log)
        except KubernetesClientError as e:
            log.warning("Failed to purge orphaned workload egress resources", error=str(e))

    async def reconcile_shared(self, packages: Iterable[Package]) -> str:
        """
        Sweep the shared egress objects for the given packages.

        Returns:
            The sweep generation the objects were labelled with
        """
        package_host_map = collect_package_host_map(packages)
        egress_resources = remap_egress_resources(package_host_map)
        generation = egress_generation(egress_resources)

        await self.apply_sidecar_egress_resources(package_host_map, generation)
        await self.purge_sidecar_egress_resources(generation)

        EGRESS_HOSTS.set(len(egress_resources))
        self.logger.info(
            "Shared egress resources reconciled",
            hosts=sorted(egress_resources),
            generation=generation
        )
        return generation
