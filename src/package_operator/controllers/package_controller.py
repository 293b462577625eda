"""
Package reconciliation controller.

This module implements the watch-and-reconcile loop for the Package
custom resource. Every event runs the synthesizers in a fixed order:
namespace sync, NetworkPolicies, VirtualServices, package egress objects
and finally the shared egress sweep across all packages. Failures are
reported on the Package status and as Kubernetes Events; they are not
retried inline, the next watch event or resync picks the package up again.
"""

import asyncio
import threading
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog
from kubernetes import config
from prometheus_client import Counter, Histogram, start_http_server
from pydantic import ValidationError

from ..models.config import ControllerConfiguration
from ..models.package import Package, Phase
from ..utils.endpoint_resolver import EndpointResolver
from ..utils.kubernetes_client import KubernetesClient, KubernetesClientError
from .egress import EgressPurgeError, EgressReconciler
from .network_policies import NetworkPolicySynthesizer, uses_kube_api
from .virtual_services import VirtualServiceSynthesizer


RECONCILIATIONS = Counter(
    "package_reconciliations_total",
    "Package reconciliations",
    ["result"]
)
RECONCILE_DURATION = Histogram(
    "package_reconciliation_duration_seconds",
    "Package reconciliation duration in seconds"
)
WATCH_EVENTS = Counter(
    "package_watch_events_total",
    "Package watch events received",
    ["type"]
)

NamespaceSync = Callable[[Package], Awaitable[str]]

WATCH_JOIN_TIMEOUT = 2.0


class PackageController:
    """
    Watches Packages and reconciles their derived resources.

    Events are consumed one at a time from a queue fed by the watch thread,
    so a package is always processed to completion before its next event.
    """

    def __init__(self,
                 config: ControllerConfiguration,
                 k8s_client: Optional[KubernetesClient] = None,
                 sync_namespace: Optional[NamespaceSync] = None) -> None:
        """
        Initialize the controller.

        Args:
            config: Controller configuration
            k8s_client: Kubernetes client, created on start when omitted
            sync_namespace: Namespace provisioning hook, returns the
                namespace a package's resources belong in
        """
        self.config = config
        self.logger = structlog.get_logger().bind(component="package_controller")

        self.k8s_client: Optional[KubernetesClient] = None
        self._sync_namespace = sync_namespace or self.default_sync_namespace

        # uid -> (generation, succeeded) of the last handled event
        self._handled: Dict[str, Tuple[int, bool]] = {}

        # uid -> (package, namespace) whose KubeAPI policies fell back to the open peer
        self._open_kube_api: Dict[str, Tuple[Package, str]] = {}

        self._running = False
        self._watch_thread: Optional[threading.Thread] = None
        self._shutdown_event = asyncio.Event()
        self._queue: "asyncio.Queue[Tuple[str, Dict[str, Any]]]" = asyncio.Queue()

        if k8s_client is not None:
            self._build_reconcilers(k8s_client)

        self.logger.info(
            "Package controller initialized",
            domain=config.domain,
            egress_namespace=config.egress_gateway_namespace
        )

    def _build_reconcilers(self, k8s_client: KubernetesClient) -> None:
        self.k8s_client = k8s_client
        self.endpoint_resolver = EndpointResolver(
            k8s_client, static_cidr=self.config.kube_api_cidr, logger=self.logger
        )
        self.network_policies = NetworkPolicySynthesizer(
            k8s_client,
            self.endpoint_resolver,
            egress_gateway_namespace=self.config.egress_gateway_namespace,
            logger=self.logger,
        )
        self.virtual_services = VirtualServiceSynthesizer(
            k8s_client,
            domain=self.config.domain,
            admin_domain=self.config.admin_domain,
            logger=self.logger,
        )
        self.egress = EgressReconciler(
            k8s_client,
            egress_namespace=self.config.egress_gateway_namespace,
            egress_service=self.config.egress_gateway_service,
            logger=self.logger,
        )

    async def start(self) -> None:
        """
        Start the controller and block until stopped.

        Raises:
            RuntimeError: If the controller is already running
            ConnectionError: If the Kubernetes client cannot be initialized
        """
        if self._running:
            raise RuntimeError("Controller is already running")

        self.logger.info("Starting package controller")
        consumer: Optional[asyncio.Task] = None

        try:
            if self.k8s_client is None:
                await self._initialize_kubernetes_client()

            if self.config.enable_metrics:
                start_http_server(self.config.monitoring_port)
                self.logger.info("Metrics server started", port=self.config.monitoring_port)

            self._running = True
            # daemon thread: a blocked watch read must not hold up interpreter exit
            self._watch_thread = threading.Thread(
                target=self._watch_packages,
                args=(asyncio.get_running_loop(),),
                name="package-watch",
                daemon=True,
            )
            self._watch_thread.start()
            consumer = asyncio.create_task(self._process_events())
            self.logger.info("Package controller started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            self.logger.error("Failed to start controller", error=str(e))
            raise
        finally:
            self._running = False
            if consumer is not None:
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)

    async def stop(self) -> None:
        """
        Stop the controller.

        The watch is asked to stop and its thread is given
        ``WATCH_JOIN_TIMEOUT`` seconds to finish; a read still blocked on the
        server after that is abandoned with the daemon thread.
        """
        self.logger.info("Stopping package controller")
        self._running = False
        if self.k8s_client:
            self.k8s_client.stop_watch()
            await self.k8s_client.close()
        self._shutdown_event.set()

        if self._watch_thread is not None:
            await asyncio.to_thread(self._watch_thread.join, WATCH_JOIN_TIMEOUT)
            if self._watch_thread.is_alive():
                self.logger.warning(
                    "Package watch thread still blocked, abandoning it",
                    timeout=WATCH_JOIN_TIMEOUT
                )
            self._watch_thread = None

    async def _initialize_kubernetes_client(self) -> None:
        """Load cluster credentials and build the reconcilers."""
        try:
            try:
                config.load_incluster_config()
                self.logger.info("Loaded in-cluster Kubernetes configuration")
            except config.ConfigException:
                config.load_kube_config()
                self.logger.info("Loaded local Kubernetes configuration")

            self._build_reconcilers(
                KubernetesClient(
                    logger=self.logger,
                    field_manager=self.config.field_manager,
                    package_group=self.config.package_group,
                    package_version=self.config.package_version,
                    package_plural=self.config.package_plural,
                )
            )
        except Exception as e:
            self.logger.error("Failed to initialize Kubernetes client", error=str(e))
            raise ConnectionError(f"Kubernetes initialization failed: {e}")

    def _watch_packages(self, loop: asyncio.AbstractEventLoop) -> None:
        """Feed watch events into the queue; runs in a worker thread."""
        while self._running:
            try:
                for event in self.k8s_client.stream_packages(self.config.watch_timeout_seconds):
                    if not self._running:
                        return
                    loop.call_soon_threadsafe(
                        self._queue.put_nowait, (event["type"], event["object"])
                    )
            except Exception as e:
                self.logger.error("Package watch failed, restarting", error=str(e))
                time.sleep(5)

    async def _process_events(self) -> None:
        """Consume watch events in arrival order."""
        while self._running:
            event_type, obj = await self._queue.get()
            try:
                await self.handle_event(event_type, obj)
            except Exception as e:
                self.logger.error("Error handling package event", event_type=event_type, error=str(e))
            finally:
                self._queue.task_done()

    async def handle_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        """
        Dispatch a single watch event.

        Args:
            event_type: ADDED, MODIFIED, DELETED or ERROR
            obj: The Package resource as delivered by the watch
        """
        WATCH_EVENTS.labels(type=event_type).inc()

        if event_type == "ERROR":
            self.logger.warning("Package watch returned an error", error=obj)
            return

        try:
            pkg = Package.from_resource(obj)
        except ValidationError as e:
            metadata = obj.get("metadata", {})
            self.logger.error(
                "Invalid Package resource",
                package=metadata.get("name"),
                namespace=metadata.get("namespace"),
                error=str(e)
            )
            return

        if event_type == "DELETED":
            await self.remove_package(pkg)
        else:
            await self.reconcile(pkg, resync=event_type == "ADDED")

    def should_skip(self, pkg: Package, resync: bool = False) -> bool:
        """
        Whether this event's generation has already been handled.

        Status writes produce MODIFIED events for a generation that was just
        reconciled; those are skipped. Resync events retry failed packages.
        A package this process has not seen yet is skipped when its status
        already reports the generation as Ready. Packages with KubeAPI rules
        are never skipped on resync while the API server peers are still
        unresolved, so each resync retries the resolution.
        """
        if resync and uses_kube_api(pkg) and not self.endpoint_resolver.cached:
            return False

        handled = self._handled.get(pkg.metadata.uid)
        if handled is None:
            status = pkg.status
            return bool(
                status
                and status.phase == Phase.READY
                and status.observed_generation == pkg.generation
            )
        generation, succeeded = handled
        if generation != pkg.generation:
            return False
        return succeeded or not resync

    async def reconcile(self, pkg: Package, resync: bool = False) -> bool:
        """
        Reconcile a single package.

        Args:
            pkg: Package to reconcile
            resync: Whether the event came from a watch (re)list

        Returns:
            True when the package reached phase Ready
        """
        log = self.logger.bind(package=pkg.name, namespace=pkg.namespace, generation=pkg.generation)

        if self.should_skip(pkg, resync):
            log.debug("Skipping already handled generation")
            return True

        log.info("Reconciling package")
        started = time.monotonic()
        await self._update_status(pkg, {"phase": Phase.PENDING.value})

        try:
            namespace = await self._sync_namespace(pkg)
            policy_count = await self.network_policies.reconcile(pkg, namespace)
            endpoints = await self.virtual_services.reconcile(pkg, namespace)
            await self.egress.reconcile_package(pkg, namespace)
            await self.reconcile_shared_egress()
        except Exception as e:
            self._handled[pkg.metadata.uid] = (pkg.generation, False)
            self._open_kube_api.pop(pkg.metadata.uid, None)
            RECONCILIATIONS.labels(result="failure").inc()
            await self._handle_failure(pkg, e)
            return False
        finally:
            RECONCILE_DURATION.observe(time.monotonic() - started)

        self._handled[pkg.metadata.uid] = (pkg.generation, True)
        RECONCILIATIONS.labels(result="success").inc()
        await self._update_status(pkg, {
            "phase": Phase.READY.value,
            "observedGeneration": pkg.generation,
            "endpoints": endpoints,
            "networkPolicyCount": policy_count,
            "conditions": [self._condition("True", "Reconciled", "Package reconciled")],
        })
        log.info("Package reconciled", network_policies=policy_count, endpoints=endpoints)

        if uses_kube_api(pkg) and not self.endpoint_resolver.cached:
            log.warning("KubeAPI policies applied with the open peer until the API server is resolved")
            self._open_kube_api[pkg.metadata.uid] = (pkg, namespace)
        else:
            self._open_kube_api.pop(pkg.metadata.uid, None)
        await self.refresh_kube_api_policies()
        return True

    async def refresh_kube_api_policies(self) -> None:
        """
        Re-apply the NetworkPolicies of packages that fell back to the open peer.

        Does nothing until the API server peers have been resolved. A package
        whose refresh fails stays queued for the next attempt.
        """
        if not self._open_kube_api or not self.endpoint_resolver.cached:
            return

        for uid, (pkg, namespace) in list(self._open_kube_api.items()):
            try:
                await self.network_policies.reconcile(pkg, namespace)
            except Exception as e:
                self.logger.error(
                    "Failed to refresh KubeAPI policies",
                    package=pkg.name,
                    namespace=namespace,
                    error=str(e)
                )
                continue
            self._open_kube_api.pop(uid, None)
            self.logger.info(
                "KubeAPI policies refreshed with resolved peers",
                package=pkg.name,
                namespace=namespace
            )

    async def remove_package(self, pkg: Package) -> None:
        """
        Handle a deleted package.

        Package-scoped objects go with the Package through owner
        references; the shared egress objects are re-swept without it.
        """
        self._handled.pop(pkg.metadata.uid, None)
        self._open_kube_api.pop(pkg.metadata.uid, None)
        self.logger.info("Package deleted", package=pkg.name, namespace=pkg.namespace)
        try:
            await self.reconcile_shared_egress()
        except Exception as e:
            self.logger.error(
                "Failed to reconcile shared egress after package deletion",
                package=pkg.name,
                namespace=pkg.namespace,
                error=str(e)
            )

    async def reconcile_shared_egress(self) -> None:
        """
        Sweep the shared egress objects across every package.

        Purge failures are logged; apply and conflict errors propagate.
        """
        packages = []
        for obj in await self.k8s_client.list_packages():
            if obj.get("metadata", {}).get("deletionTimestamp"):
                continue
            try:
                packages.append(Package.from_resource(obj))
            except ValidationError as e:
                self.logger.warning(
                    "Ignoring invalid Package in egress sweep",
                    package=obj.get("metadata", {}).get("name"),
                    error=str(e)
                )

        try:
            await self.egress.reconcile_shared(packages)
        except EgressPurgeError as e:
            self.logger.error("Shared egress purge failed", error=str(e), cause=str(e.__cause__))

    async def default_sync_namespace(self, pkg: Package) -> str:
        """Confirm the package namespace exists and return its name."""
        await self.k8s_client.read_namespace(pkg.namespace)
        return pkg.namespace

    async def _handle_failure(self, pkg: Package, error: Exception) -> None:
        """Record a failed reconciliation on the Package and as an Event."""
        message = str(error)
        self.logger.error(
            "Package reconciliation failed",
            package=pkg.name,
            namespace=pkg.namespace,
            error_type=type(error).__name__,
            error=message
        )

        await self._update_status(pkg, {
            "phase": Phase.FAILED.value,
            "observedGeneration": pkg.generation,
            "conditions": [self._condition("False", "ReconciliationFailed", message)],
        })

        try:
            await self.k8s_client.create_event(
                {
                    "apiVersion": pkg.api_version,
                    "kind": pkg.kind,
                    "name": pkg.name,
                    "namespace": pkg.namespace,
                    "uid": pkg.metadata.uid,
                },
                reason="ReconciliationFailed",
                message=message,
            )
        except KubernetesClientError as e:
            self.logger.warning("Failed to record failure event", package=pkg.name, error=str(e))

    async def _update_status(self, pkg: Package, status: Dict[str, Any]) -> None:
        try:
            await self.k8s_client.patch_package_status(pkg.name, pkg.namespace, status)
        except KubernetesClientError as e:
            self.logger.warning(
                "Failed to update package status",
                package=pkg.name,
                namespace=pkg.namespace,
                phase=status.get("phase"),
                error=str(e)
            )

    @staticmethod
    def _condition(status: str, reason: str, message: str) -> Dict[str, Any]:
        return {
            "type": "Ready",
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }

    def get_status(self) -> Dict[str, Any]:
        """Summary of handled packages."""
        return {
            "running": self._running,
            "queued_events": self._queue.qsize(),
            "handled_packages": len(self._handled),
            "failed_packages": sum(1 for _, ok in self._handled.values() if not ok),
            "open_kube_api_packages": len(self._open_kube_api),
        }
