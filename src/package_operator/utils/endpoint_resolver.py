"""
API server endpoint resolver.

Resolves the addresses the cluster API server advertises to clients and
turns them into NetworkPolicy peers. The first successful resolution is
kept for the lifetime of the process.
"""

import copy
import ipaddress
import threading
from typing import Any, Dict, List, Optional

import structlog

from .kubernetes_client import KubernetesClient

ANYWHERE_CIDR = "0.0.0.0/0"


def open_peers() -> List[Dict[str, Any]]:
    """Peer list matching every address."""
    return [{"ipBlock": {"cidr": ANYWHERE_CIDR}}]


def parse_server_address(address: str) -> Dict[str, Any]:
    """
    Convert a ``host:port`` address into a single-host ipBlock peer.

    IPv6 hosts carry a port only when bracketed; a bare IPv6 address is
    taken as the host itself.

    Raises:
        ValueError: If the host part is not an IP address
    """
    if address.startswith("["):
        host = address[1:].split("]", 1)[0]
    elif address.count(":") == 1:
        host = address.split(":", 1)[0]
    else:
        host = address
    ip = ipaddress.ip_address(host)
    prefix = 32 if ip.version == 4 else 128
    return {"ipBlock": {"cidr": f"{ip}/{prefix}"}}


class EndpointResolver:
    """
    Cache of the API server peers, filled by the first successful resolution.

    A successful resolution is stored and returned on every later call
    without querying the cluster again. Failures are not stored: the open
    peer is returned and the next call retries. When a static CIDR is
    configured the discovery endpoint is never queried.
    """

    def __init__(self,
                 k8s: KubernetesClient,
                 static_cidr: Optional[str] = None,
                 logger: Optional[Any] = None) -> None:
        self.k8s = k8s
        self.static_cidr = static_cidr
        self.logger = (logger or structlog.get_logger()).bind(component="endpoint_resolver")
        self._lock = threading.Lock()
        self._peers: Optional[List[Dict[str, Any]]] = None

    @property
    def cached(self) -> bool:
        return self._peers is not None

    async def resolve_peers(self) -> List[Dict[str, Any]]:
        """
        Return the API server peers.

        Returns:
            Cached peers, freshly resolved peers, or the open peer when
            resolution fails or yields nothing
        """
        with self._lock:
            if self._peers is not None:
                return copy.deepcopy(self._peers)

        if self.static_cidr:
            peers = [{"ipBlock": {"cidr": self.static_cidr}}]
        else:
            try:
                addresses = await self.k8s.get_api_server_addresses()
            except Exception as e:
                self.logger.warning(
                    "Unable to resolve API server endpoints, allowing all addresses",
                    error=str(e)
                )
                return open_peers()

            peers = []
            for address in addresses:
                try:
                    peer = parse_server_address(address)
                except ValueError:
                    self.logger.warning("Skipping non-IP API server address", address=address)
                    continue
                if peer not in peers:
                    peers.append(peer)

            if not peers:
                self.logger.warning(
                    "API discovery advertised no usable endpoints, allowing all addresses",
                    addresses=addresses
                )
                return open_peers()

        with self._lock:
            if self._peers is None:
                self._peers = peers
                self.logger.info(
                    "Cached API server endpoints",
                    cidrs=[peer["ipBlock"]["cidr"] for peer in peers]
                )
            return copy.deepcopy(self._peers)
