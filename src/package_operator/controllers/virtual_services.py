"""
Mesh route synthesizer.

Turns a Package's expose entries into Istio VirtualServices bound to the
shared ingress gateways. One VirtualService is generated per exposed
service and named after the package and service, so re-exposing the same
service updates the same object. Routes for expose entries that were
removed are deleted by the same generation sweep used for NetworkPolicies.
"""

from typing import Any, Dict, List, Optional

import structlog

from ..models.package import Expose, ExposeMode, Gateway, Package
from ..utils.kubernetes_client import VIRTUAL_SERVICE, KubernetesClient, KubernetesClientError
from ..utils.resources import (
    apply_resource,
    owner_references,
    package_labels,
    purge_orphans,
    sanitize_resource_name,
)


class VirtualServiceError(Exception):
    """Raised when a VirtualService cannot be applied."""
    pass


def gateway_reference(gateway: Gateway) -> str:
    """``<namespace>/<name>`` of a shared ingress gateway."""
    return f"istio-{gateway.value}-gateway/{gateway.value}-gateway"


def expose_fqdn(expose: Expose, domain: str, admin_domain: Optional[str] = None) -> str:
    """Fully qualified host for an expose entry."""
    if expose.gateway == Gateway.ADMIN and admin_domain:
        return f"{expose.host}.{admin_domain}"
    return f"{expose.host}.{domain}"


def _destination(expose: Expose, namespace: str) -> Dict[str, Any]:
    return {
        "destination": {
            "host": f"{expose.service}.{namespace}.svc.cluster.local",
            "port": {"number": expose.port},
        }
    }


def _route(expose: Expose, namespace: str, fqdn: str, restrict: bool) -> Dict[str, Any]:
    """
    Build one route for an expose entry.

    ``restrict`` pins the route to its own gateway and host; it is needed
    when several expose entries share a VirtualService.
    """
    route: Dict[str, Any] = {"route": [_destination(expose, namespace)]}
    gateway = gateway_reference(expose.gateway)

    if expose.gateway == Gateway.PASSTHROUGH:
        route["match"] = [{"gateways": [gateway], "port": 443, "sniHosts": [fqdn]}]
        return route

    if expose.mode == ExposeMode.HTTP:
        matches = [dict(match) for match in (expose.advanced_http.match if expose.advanced_http else [])]
        if restrict:
            pin = {"gateways": [gateway], "authority": {"exact": fqdn}}
            matches = [{**match, **pin} for match in matches] or [pin]
        if matches:
            route["match"] = matches
    elif restrict:
        route["match"] = [{"gateways": [gateway]}]

    return route


def _route_kind(expose: Expose) -> str:
    if expose.gateway == Gateway.PASSTHROUGH:
        return "tls"
    return expose.mode.value


def build_virtual_service(pkg: Package,
                          namespace: str,
                          service: str,
                          exposes: List[Expose],
                          domain: str,
                          admin_domain: Optional[str] = None) -> Dict[str, Any]:
    """Build the VirtualService for every expose entry of one service."""
    restrict = len(exposes) > 1
    hosts: List[str] = []
    gateways: List[str] = []
    spec: Dict[str, Any] = {}

    for expose in exposes:
        fqdn = expose_fqdn(expose, domain, admin_domain)
        gateway = gateway_reference(expose.gateway)
        if fqdn not in hosts:
            hosts.append(fqdn)
        if gateway not in gateways:
            gateways.append(gateway)
        spec.setdefault(_route_kind(expose), []).append(_route(expose, namespace, fqdn, restrict))

    return {
        "apiVersion": "networking.istio.io/v1beta1",
        "kind": "VirtualService",
        "metadata": {
            "name": sanitize_resource_name(f"{pkg.name}-{service}"),
            "namespace": namespace,
            "labels": package_labels(pkg.name, pkg.generation),
        },
        "spec": {"hosts": hosts, "gateways": gateways, **spec},
    }


def build_virtual_services(pkg: Package,
                           namespace: str,
                           domain: str,
                           admin_domain: Optional[str] = None) -> List[Dict[str, Any]]:
    """Build one VirtualService per exposed service, in declaration order."""
    grouped: Dict[str, List[Expose]] = {}
    for expose in pkg.spec.network.expose:
        grouped.setdefault(expose.service, []).append(expose)

    return [
        build_virtual_service(pkg, namespace, service, exposes, domain, admin_domain)
        for service, exposes in grouped.items()
    ]


class VirtualServiceSynthesizer:
    """Applies the package's ingress VirtualServices and sweeps orphans."""

    def __init__(self,
                 k8s: KubernetesClient,
                 domain: str,
                 admin_domain: Optional[str] = None,
                 logger: Optional[Any] = None) -> None:
        self.k8s = k8s
        self.domain = domain
        self.admin_domain = admin_domain
        self.logger = (logger or structlog.get_logger()).bind(component="virtual_services")

    async def reconcile(self, pkg: Package, namespace: str) -> List[str]:
        """
        Apply the package's VirtualServices and delete stale ones.

        Args:
            pkg: Package being reconciled
            namespace: Resolved namespace of the package

        Returns:
            Exposed fully qualified hostnames

        Raises:
            VirtualServiceError: If any VirtualService fails to apply
        """
        log = self.logger.bind(package=pkg.name, namespace=namespace)
        owners = owner_references(pkg)
        endpoints: List[str] = []

        for vs in build_virtual_services(pkg, namespace, self.domain, self.admin_domain):
            vs["metadata"]["ownerReferences"] = owners
            name = vs["metadata"]["name"]
            try:
                await apply_resource(self.k8s, VIRTUAL_SERVICE, vs)
            except KubernetesClientError as e:
                log.error("VirtualService apply failed", virtual_service=name, error=str(e))
                raise VirtualServiceError(
                    f"Failed to apply VirtualService {namespace}/{name}: {e}"
                ) from e
            endpoints.extend(host for host in vs["spec"]["hosts"] if host not in endpoints)

        log.info("VirtualServices applied", endpoints=endpoints, generation=pkg.generation)

        try:
            await purge_orphans(
                self.k8s, VIRTUAL_SERVICE, namespace, pkg.name, pkg.generation, log
            )
        except KubernetesClientError as e:
            log.warning("Failed to purge orphaned VirtualServices", error=str(e))

        return endpoints
