"""
Kubernetes client wrapper for the Package operator.

This module wraps the official Kubernetes Python client behind the small
surface the reconcilers need: server-side apply, list by label and
delete for any resource kind, plus the handful of core reads and Package
status writes the orchestrator performs.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, NamedTuple, Optional

import structlog
from kubernetes import client, dynamic, watch
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import DynamicApiError, ResourceNotFoundError


class ResourceKind(NamedTuple):
    """API version and kind of a resource the operator manages."""

    api_version: str
    kind: str


NETWORK_POLICY = ResourceKind("networking.k8s.io/v1", "NetworkPolicy")
VIRTUAL_SERVICE = ResourceKind("networking.istio.io/v1beta1", "VirtualService")
GATEWAY = ResourceKind("networking.istio.io/v1beta1", "Gateway")
SERVICE_ENTRY = ResourceKind("networking.istio.io/v1beta1", "ServiceEntry")
SIDECAR = ResourceKind("networking.istio.io/v1beta1", "Sidecar")

WATCH_CONNECT_TIMEOUT = 10
WATCH_READ_GRACE = 15


class KubernetesClientError(Exception):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, status: Optional[int] = None, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


def _label_selector(labels: Optional[Dict[str, str]]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class KubernetesClient:
    """
    Kubernetes client wrapper.

    Generic operations go through the dynamic client so the same code path
    serves NetworkPolicies and the Istio custom resources. Every call runs
    in a worker thread so reconciliations of different packages do not block
    each other on API round trips.
    """

    def __init__(self,
                 logger: Any,
                 field_manager: str = "package-operator",
                 package_group: str = "uds.dev",
                 package_version: str = "v1alpha1",
                 package_plural: str = "packages") -> None:
        """
        Initialize the Kubernetes client.

        The client configuration must already be loaded, either in-cluster
        or from a kubeconfig.

        Args:
            logger: Structured logger instance
            field_manager: Field manager name for server-side apply
            package_group: API group of the Package resource
            package_version: API version of the Package resource
            package_plural: Plural name of the Package resource
        """
        self.logger = logger.bind(component="k8s_client")
        self.field_manager = field_manager
        self.package_group = package_group
        self.package_version = package_version
        self.package_plural = package_plural

        api_client = client.ApiClient()
        self.v1 = client.CoreV1Api(api_client)
        self.core = client.CoreApi(api_client)
        self.custom = client.CustomObjectsApi(api_client)
        self.dynamic = dynamic.DynamicClient(api_client)

        self._operation_counts: Dict[str, int] = {}
        self._watcher: Optional[watch.Watch] = None

    def _resource(self, kind: ResourceKind) -> Any:
        try:
            return self.dynamic.resources.get(api_version=kind.api_version, kind=kind.kind)
        except ResourceNotFoundError as e:
            raise KubernetesClientError(
                f"{kind.kind} ({kind.api_version}) is not served by the cluster: {e}"
            )

    def _count(self, operation: str) -> None:
        self._operation_counts[operation] = self._operation_counts.get(operation, 0) + 1

    async def apply(self, kind: ResourceKind, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Force-apply a resource with server-side apply.

        Args:
            kind: Resource kind
            body: Full resource manifest

        Returns:
            The applied resource as returned by the API server

        Raises:
            KubernetesClientError: If the apply fails
        """
        metadata = body.get("metadata", {})
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        resource = self._resource(kind)

        try:
            result = await asyncio.to_thread(
                self.dynamic.server_side_apply,
                resource,
                body=body,
                name=name,
                namespace=namespace,
                field_manager=self.field_manager,
                force_conflicts=True,
            )
        except DynamicApiError as e:
            self.logger.error(
                "Kubernetes API error applying resource",
                kind=kind.kind,
                name=name,
                resource_namespace=namespace,
                status_code=e.status,
                reason=e.reason
            )
            raise KubernetesClientError(
                f"Failed to apply {kind.kind} {namespace}/{name}: {e.reason}",
                status=e.status,
                reason=e.reason,
            )

        self._count(f"{kind.kind}_apply")
        self.logger.debug("Resource applied", kind=kind.kind, name=name, resource_namespace=namespace)
        return result.to_dict()

    async def list(self,
                   kind: ResourceKind,
                   namespace: Optional[str] = None,
                   labels: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """
        List resources of a kind, optionally filtered by namespace and labels.

        Args:
            kind: Resource kind
            namespace: Namespace to list in, all namespaces when None
            labels: Equality label filter

        Returns:
            List of resource dictionaries
        """
        resource = self._resource(kind)
        try:
            result = await asyncio.to_thread(
                self.dynamic.get,
                resource,
                namespace=namespace,
                label_selector=_label_selector(labels),
            )
        except DynamicApiError as e:
            self.logger.error(
                "Kubernetes API error listing resources",
                kind=kind.kind,
                resource_namespace=namespace,
                status_code=e.status,
                reason=e.reason
            )
            raise KubernetesClientError(
                f"Failed to list {kind.kind}: {e.reason}", status=e.status, reason=e.reason
            )

        self._count(f"{kind.kind}_list")
        return result.to_dict().get("items") or []

    async def delete(self, kind: ResourceKind, name: str, namespace: str) -> bool:
        """
        Delete a resource.

        Args:
            kind: Resource kind
            name: Resource name
            namespace: Resource namespace

        Returns:
            True once the resource is gone, including when it was already gone

        Raises:
            KubernetesClientError: If the delete fails
        """
        resource = self._resource(kind)
        try:
            await asyncio.to_thread(self.dynamic.delete, resource, name=name, namespace=namespace)
        except DynamicApiError as e:
            if e.status == 404:
                self.logger.info(
                    "Resource not found (already deleted)",
                    kind=kind.kind,
                    name=name,
                    resource_namespace=namespace
                )
                return True
            self.logger.error(
                "Kubernetes API error deleting resource",
                kind=kind.kind,
                name=name,
                resource_namespace=namespace,
                status_code=e.status,
                reason=e.reason
            )
            raise KubernetesClientError(
                f"Failed to delete {kind.kind} {namespace}/{name}: {e.reason}",
                status=e.status,
                reason=e.reason,
            )

        self._count(f"{kind.kind}_delete")
        return True

    async def read_namespace(self, name: str) -> Dict[str, Any]:
        """
        Read a namespace.

        Raises:
            KubernetesClientError: If the namespace cannot be read, with the
                API status preserved so callers can tell 404 apart
        """
        try:
            namespace = await asyncio.to_thread(self.v1.read_namespace, name=name)
        except ApiException as e:
            raise KubernetesClientError(
                f"Failed to read namespace {name}: {e.reason}", status=e.status, reason=e.reason
            )
        return namespace.to_dict()

    async def service_ports(self, name: str, namespace: str) -> List[int]:
        """Return the port numbers a Service exposes."""
        try:
            service = await asyncio.to_thread(
                self.v1.read_namespaced_service, name=name, namespace=namespace
            )
        except ApiException as e:
            raise KubernetesClientError(
                f"Failed to read service {namespace}/{name}: {e.reason}",
                status=e.status,
                reason=e.reason,
            )
        return [port.port for port in (service.spec.ports or [])]

    async def get_api_server_addresses(self) -> List[str]:
        """
        Return the API server addresses advertised by the discovery endpoint.

        Returns:
            ``host:port`` strings from ``serverAddressByClientCIDRs``
        """
        try:
            versions = await asyncio.to_thread(self.core.get_api_versions)
        except ApiException as e:
            raise KubernetesClientError(
                f"Failed to query API discovery: {e.reason}", status=e.status, reason=e.reason
            )
        entries = versions.server_address_by_client_cid_rs or []
        return [entry.server_address for entry in entries if entry.server_address]

    async def list_packages(self) -> List[Dict[str, Any]]:
        """List every Package in the cluster."""
        try:
            result = await asyncio.to_thread(
                self.custom.list_cluster_custom_object,
                group=self.package_group,
                version=self.package_version,
                plural=self.package_plural,
            )
        except ApiException as e:
            raise KubernetesClientError(
                f"Failed to list packages: {e.reason}", status=e.status, reason=e.reason
            )
        return result.get("items") or []

    async def patch_package_status(self, name: str, namespace: str, status: Dict[str, Any]) -> None:
        """Merge-patch the status subresource of a Package."""
        try:
            await asyncio.to_thread(
                self.custom.patch_namespaced_custom_object_status,
                group=self.package_group,
                version=self.package_version,
                namespace=namespace,
                plural=self.package_plural,
                name=name,
                body={"status": status},
            )
        except ApiException as e:
            raise KubernetesClientError(
                f"Failed to update status of package {namespace}/{name}: {e.reason}",
                status=e.status,
                reason=e.reason,
            )
        self._count("package_status_patch")

    async def create_event(self,
                           involved_object: Dict[str, Any],
                           reason: str,
                           message: str,
                           event_type: str = "Warning") -> None:
        """
        Record a core/v1 Event against an object.

        Args:
            involved_object: Object reference (apiVersion, kind, name, namespace, uid)
            reason: Short machine readable reason
            message: Human readable message
            event_type: Normal or Warning
        """
        now = datetime.now(timezone.utc).isoformat()
        body = {
            "metadata": {
                "generateName": f"{involved_object['name']}-",
                "namespace": involved_object["namespace"],
            },
            "involvedObject": involved_object,
            "reason": reason,
            "message": message,
            "type": event_type,
            "count": 1,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "source": {"component": self.field_manager},
        }
        try:
            await asyncio.to_thread(
                self.v1.create_namespaced_event,
                namespace=involved_object["namespace"],
                body=body,
            )
        except ApiException as e:
            raise KubernetesClientError(
                f"Failed to create event: {e.reason}", status=e.status, reason=e.reason
            )
        self._count("event_create")

    def stream_packages(self, timeout_seconds: int) -> Iterator[Dict[str, Any]]:
        """
        Watch Package events cluster-wide.

        Blocking generator; it ends when the server closes the stream after
        ``timeout_seconds``, or after ``stop_watch``. Each new stream starts
        with ADDED events for every existing Package. The client-side read
        timeout bounds a connection the server stopped answering on.
        """
        watcher = watch.Watch()
        self._watcher = watcher
        try:
            for event in watcher.stream(
                self.custom.list_cluster_custom_object,
                group=self.package_group,
                version=self.package_version,
                plural=self.package_plural,
                timeout_seconds=timeout_seconds,
                _request_timeout=(WATCH_CONNECT_TIMEOUT, timeout_seconds + WATCH_READ_GRACE),
            ):
                yield event
        finally:
            watcher.stop()
            self._watcher = None

    def stop_watch(self) -> None:
        """Ask the running Package watch to end after its current event."""
        watcher = self._watcher
        if watcher is not None:
            watcher.stop()

    async def close(self) -> None:
        """Log operation statistics on shutdown."""
        self.logger.info(
            "Kubernetes client closing",
            operation_counts=self._operation_counts
        )
