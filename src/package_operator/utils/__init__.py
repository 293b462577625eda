"""
Utility modules for the Package operator.

This package contains the Kubernetes client wrapper, the API server
endpoint resolver and helpers shared by the resource synthesizers.
"""

from .endpoint_resolver import EndpointResolver
from .kubernetes_client import KubernetesClient, KubernetesClientError
from .resources import purge_orphans, sanitize_resource_name

__all__ = [
    "EndpointResolver",
    "KubernetesClient",
    "KubernetesClientError",
    "purge_orphans",
    "sanitize_resource_name",
]
