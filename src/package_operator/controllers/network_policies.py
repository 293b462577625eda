"""
NetworkPolicy synthesizer.

Derives the complete set of NetworkPolicies for a Package: the baseline
isolation policies, one policy per expose entry for gateway ingress, and
one policy per custom allow rule. Every policy is labelled with the
package and its current generation, force-applied, and any previously
generated policy carrying a stale generation is deleted afterwards.
"""

from typing import Any, Dict, List, Optional, Set

import structlog

from ..models.package import (
    Allow,
    Direction,
    DisableDefault,
    Expose,
    Package,
    Protocol,
    RemoteGenerated,
)
from ..utils.endpoint_resolver import ANYWHERE_CIDR, EndpointResolver, open_peers
from ..utils.kubernetes_client import NETWORK_POLICY, KubernetesClient, KubernetesClientError
from ..utils.resources import (
    apply_resource,
    owner_references,
    package_labels,
    purge_orphans,
    sanitize_resource_name,
)

CLOUD_METADATA_CIDR = "169.254.169.254/32"
DESCRIPTION_ANNOTATION = "uds/description"

DEFAULT_DENY_NAME = "default-deny-all"


class NetworkPolicyError(Exception):
    """Raised when the desired NetworkPolicies cannot be applied."""
    pass


def default_allows(pkg: Package) -> List[Allow]:
    """
    Baseline allow rules for a package namespace.

    Mesh control plane egress and metrics scraping ingress are always
    present; DNS and intra-namespace traffic can be disabled per package.
    """
    disabled = set(pkg.spec.network.disable_defaults)
    allows = [
        Allow(
            direction=Direction.EGRESS,
            description="Istiod communication",
            remote_namespace="istio-system",
            remote_selector={"istio": "pilot"},
            port=15012,
        ),
        Allow(
            direction=Direction.INGRESS,
            description="Sidecar monitoring",
            remote_namespace="monitoring",
            remote_selector={"app": "prometheus"},
            port=15020,
        ),
    ]

    if DisableDefault.DNS_LOOKUP not in disabled:
        allows.append(
            Allow(
                direction=Direction.EGRESS,
                description="DNS lookup via CoreDNS",
                remote_namespace="kube-system",
                remote_selector={"k8s-app": "kube-dns"},
                port=53,
                protocol=Protocol.UDP,
            )
        )

    if DisableDefault.PERMISSIVE_NAMESPACE not in disabled:
        allows.extend([
            Allow(
                direction=Direction.INGRESS,
                description="Intra-namespace ingress",
                remote_generated=RemoteGenerated.INTRA_NAMESPACE,
            ),
            Allow(
                direction=Direction.EGRESS,
                description="Intra-namespace egress",
                remote_generated=RemoteGenerated.INTRA_NAMESPACE,
            ),
        ])

    return allows


def expose_allow(expose: Expose) -> Allow:
    """Ingress rule letting the gateway pods reach the exposed workload."""
    gateway = expose.gateway.value
    port = expose.target_port or expose.port
    selector_name = "-".join(expose.selector.values()) or "all pods"
    return Allow(
        direction=Direction.INGRESS,
        selector=expose.selector or None,
        remote_namespace=f"istio-{gateway}-gateway",
        remote_selector={"app": f"{gateway}-ingressgateway"},
        port=port,
        description=f"{port}-{selector_name} Istio {gateway} gateway",
    )


def policy_suffix(allow: Allow) -> str:
    """Readable, deterministic name fragment for an allow rule."""
    if allow.description:
        return f"{allow.direction.value}-{allow.description}"

    parts = list(allow.selector.values()) if allow.selector else ["all pods"]
    if allow.remote_generated:
        parts.append(allow.remote_generated.value)
    elif allow.remote_host:
        parts.append(allow.remote_host)
    elif allow.remote_cidr:
        parts.append(allow.remote_cidr)
    else:
        parts.append(allow.remote_namespace or "")
        parts.extend((allow.remote_selector or {}).values())
    parts.extend(str(port) for port in allow.port_list())
    return f"{allow.direction.value}-{'-'.join(parts)}"


def remote_peers(allow: Allow,
                 kube_api_peers: List[Dict[str, Any]],
                 egress_gateway_namespace: str = "istio-egress-gateway") -> List[Dict[str, Any]]:
    """
    Build the peer list for an allow rule.

    A generated peer set wins over literal selectors. A rule with no remote
    at all matches any pod in any namespace.
    """
    if allow.remote_generated == RemoteGenerated.KUBE_API:
        return kube_api_peers
    if allow.remote_generated == RemoteGenerated.CLOUD_METADATA:
        return [{"ipBlock": {"cidr": CLOUD_METADATA_CIDR}}]
    if allow.remote_generated == RemoteGenerated.INTRA_NAMESPACE:
        return [{"podSelector": {}}]
    if allow.remote_generated == RemoteGenerated.ANYWHERE:
        return [
            {"ipBlock": {"cidr": ANYWHERE_CIDR, "except": [CLOUD_METADATA_CIDR]}},
            {"namespaceSelector": {}},
        ]

    if allow.remote_host:
        return [
            {
                "namespaceSelector": {
                    "matchLabels": {"kubernetes.io/metadata.name": egress_gateway_namespace}
                },
                "podSelector": {"matchLabels": {"app": "egressgateway"}},
            }
        ]

    if allow.remote_cidr:
        return [{"ipBlock": {"cidr": allow.remote_cidr}}]

    if allow.remote_namespace is None and allow.remote_selector is None:
        return [{"namespaceSelector": {}}]

    peer: Dict[str, Any] = {}
    if allow.remote_namespace is not None:
        if allow.remote_namespace in ("", "*"):
            peer["namespaceSelector"] = {}
        else:
            peer["namespaceSelector"] = {
                "matchLabels": {"kubernetes.io/metadata.name": allow.remote_namespace}
            }
    if allow.remote_selector is not None:
        peer["podSelector"] = {"matchLabels": allow.remote_selector} if allow.remote_selector else {}
    return [peer]


def generate_policy(allow: Allow,
                    name: str,
                    namespace: str,
                    labels: Dict[str, str],
                    kube_api_peers: List[Dict[str, Any]],
                    egress_gateway_namespace: str = "istio-egress-gateway") -> Dict[str, Any]:
    """Build one NetworkPolicy for an allow rule."""
    rule: Dict[str, Any] = {}
    peers = remote_peers(allow, kube_api_peers, egress_gateway_namespace)
    rule["from" if allow.direction == Direction.INGRESS else "to"] = peers

    ports = allow.port_list()
    if ports:
        rule["ports"] = [{"port": port, "protocol": allow.protocol.value} for port in ports]

    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "labels": {**allow.labels, **labels},
    }
    if allow.description:
        metadata["annotations"] = {DESCRIPTION_ANNOTATION: allow.description}

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": metadata,
        "spec": {
            "podSelector": {"matchLabels": allow.selector} if allow.selector else {},
            "policyTypes": [allow.direction.value],
            "ingress" if allow.direction == Direction.INGRESS else "egress": [rule],
        },
    }


def default_deny_policy(pkg: Package, namespace: str, labels: Dict[str, str]) -> Dict[str, Any]:
    """Deny all ingress and egress for every pod in the namespace."""
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {
            "name": sanitize_resource_name(f"deny-{pkg.name}-{DEFAULT_DENY_NAME}"),
            "namespace": namespace,
            "labels": dict(labels),
        },
        "spec": {
            "podSelector": {},
            "policyTypes": ["Ingress", "Egress"],
            "ingress": [],
            "egress": [],
        },
    }


def uses_kube_api(pkg: Package) -> bool:
    return any(
        allow.remote_generated == RemoteGenerated.KUBE_API for allow in pkg.spec.network.allow
    )


def build_network_policies(pkg: Package,
                           namespace: str,
                           kube_api_peers: Optional[List[Dict[str, Any]]] = None,
                           egress_gateway_namespace: str = "istio-egress-gateway") -> List[Dict[str, Any]]:
    """
    Build the desired NetworkPolicies for a package.

    The deny-all policy comes first, followed by the baseline allows, the
    gateway ingress allows for each expose entry and the custom allows.
    Identical rules collapse into one policy; distinct rules that would
    share a name get a numeric suffix.

    Args:
        pkg: Package to build policies for
        namespace: Namespace the policies live in
        kube_api_peers: Resolved API server peers, the open peer when None
        egress_gateway_namespace: Namespace of the egress gateway pods

    Returns:
        NetworkPolicy manifests without owner references
    """
    peers = kube_api_peers if kube_api_peers is not None else open_peers()
    labels = package_labels(pkg.name, pkg.generation)
    network = pkg.spec.network

    allows = default_allows(pkg)
    allows.extend(expose_allow(expose) for expose in network.expose)
    allows.extend(network.allow)

    policies = [default_deny_policy(pkg, namespace, labels)]
    by_name: Dict[str, Dict[str, Any]] = {policies[0]["metadata"]["name"]: policies[0]}

    for allow in allows:
        base_name = sanitize_resource_name(f"allow-{pkg.name}-{policy_suffix(allow)}")
        policy = generate_policy(allow, base_name, namespace, labels, peers, egress_gateway_namespace)

        name = base_name
        index = 1
        while name in by_name and by_name[name]["spec"] != policy["spec"]:
            index += 1
            name = f"{base_name}-{index}"
        if name in by_name:
            continue

        policy["metadata"]["name"] = name
        by_name[name] = policy
        policies.append(policy)

    return policies


class NetworkPolicySynthesizer:
    """
    Applies the desired NetworkPolicies of a package and sweeps orphans.

    Policies for allow rules removed from the spec are found by their stale
    generation label and deleted once the current set has been applied.
    """

    def __init__(self,
                 k8s: KubernetesClient,
                 endpoint_resolver: EndpointResolver,
                 egress_gateway_namespace: str = "istio-egress-gateway",
                 logger: Optional[Any] = None) -> None:
        self.k8s = k8s
        self.endpoint_resolver = endpoint_resolver
        self.egress_gateway_namespace = egress_gateway_namespace
        self.logger = (logger or structlog.get_logger()).bind(component="network_policies")

    async def reconcile(self, pkg: Package, namespace: str) -> int:
        """
        Apply the package's NetworkPolicies and delete stale ones.

        Args:
            pkg: Package being reconciled
            namespace: Resolved namespace of the package

        Returns:
            Number of policies applied

        Raises:
            NetworkPolicyError: If any policy fails to apply
        """
        log = self.logger.bind(package=pkg.name, namespace=namespace)

        kube_api_peers = None
        if uses_kube_api(pkg):
            kube_api_peers = await self.endpoint_resolver.resolve_peers()

        policies = build_network_policies(
            pkg, namespace, kube_api_peers, self.egress_gateway_namespace
        )
        kube_api_names = self._kube_api_policy_names(pkg)
        owners = owner_references(pkg)

        for policy in policies:
            policy["metadata"]["ownerReferences"] = owners
            name = policy["metadata"]["name"]
            try:
                await apply_resource(self.k8s, NETWORK_POLICY, policy)
            except KubernetesClientError as e:
                message = f"Failed to apply NetworkPolicy {namespace}/{name}: {e}"
                if name in kube_api_names:
                    message += (
                        ". The KubeAPI peer list may be incomplete; set kube_api_cidr"
                        " to pin the API server address"
                    )
                log.error("NetworkPolicy apply failed", policy=name, error=str(e))
                raise NetworkPolicyError(message) from e

        log.info("NetworkPolicies applied", count=len(policies), generation=pkg.generation)

        try:
            await purge_orphans(
                self.k8s, NETWORK_POLICY, namespace, pkg.name, pkg.generation, log
            )
        except KubernetesClientError as e:
            log.warning("Failed to purge orphaned NetworkPolicies", error=str(e))

        return len(policies)

    def _kube_api_policy_names(self, pkg: Package) -> Set[str]:
        return {
            sanitize_resource_name(f"allow-{pkg.name}-{policy_suffix(allow)}")
            for allow in pkg.spec.network.allow
            if allow.remote_generated == RemoteGenerated.KUBE_API
        }
