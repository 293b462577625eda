"""
Helpers shared by the resource synthesizers.

Naming, ownership and labelling of generated objects, the apply wrapper
that records metrics, and the generation-label orphan purge.
"""

import re
from typing import Any, Dict, List

from prometheus_client import Counter

from ..models.package import Package
from .kubernetes_client import KubernetesClient, ResourceKind

PACKAGE_LABEL = "package"
GENERATION_LABEL = "generation"
MANAGED_BY_LABEL = "managed-by"
MANAGED_BY = "package-operator"

RESOURCES_APPLIED = Counter(
    "package_resources_applied_total",
    "Generated resources applied",
    ["kind"]
)
ORPHANS_PURGED = Counter(
    "package_orphans_purged_total",
    "Generated resources deleted for carrying a stale generation",
    ["kind"]
)

_INVALID_CHARS = re.compile(r"[^a-z0-9]+")
_LEADING = re.compile(r"^[^a-z]+")
_TRAILING = re.compile(r"[^a-z0-9]+$")


def sanitize_resource_name(name: str) -> str:
    """
    Turn arbitrary text into a valid resource name.

    Lowercases, collapses every run of characters outside ``[a-z0-9]`` into
    a single hyphen, truncates to 250 characters and trims the ends so the
    name starts with a letter and ends with a letter or digit.
    """
    name = _INVALID_CHARS.sub("-", name.lower())[:250]
    name = _LEADING.sub("", name)
    return _TRAILING.sub("", name)


def owner_references(pkg: Package) -> List[Dict[str, Any]]:
    """Owner reference list pointing at the Package, for cascade deletion."""
    return [
        {
            "apiVersion": pkg.api_version,
            "kind": pkg.kind,
            "name": pkg.metadata.name,
            "uid": pkg.metadata.uid,
        }
    ]


def package_labels(package_name: str, generation: Any) -> Dict[str, str]:
    """Identity labels carried by every generated object."""
    return {
        PACKAGE_LABEL: package_name,
        GENERATION_LABEL: str(generation),
        MANAGED_BY_LABEL: MANAGED_BY,
    }


async def apply_resource(k8s: KubernetesClient, kind: ResourceKind, body: Dict[str, Any]) -> Dict[str, Any]:
    """Force-apply a generated object and count it."""
    result = await k8s.apply(kind, body)
    RESOURCES_APPLIED.labels(kind=kind.kind).inc()
    return result


async def purge_orphans(k8s: KubernetesClient,
                        kind: ResourceKind,
                        namespace: str,
                        package_name: str,
                        generation: Any,
                        logger: Any) -> int:
    """
    Delete generated objects whose generation label is stale.

    Lists every object of ``kind`` in ``namespace`` that this operator
    generated for ``package_name`` and deletes each one not labelled with
    the current ``generation``.

    Args:
        k8s: Kubernetes client
        kind: Resource kind to sweep
        namespace: Namespace to sweep
        package_name: Value of the package label
        generation: Current generation
        logger: Structured logger instance

    Returns:
        Number of deleted objects

    Raises:
        KubernetesClientError: If listing or deleting fails
    """
    current = str(generation)
    items = await k8s.list(
        kind,
        namespace=namespace,
        labels={PACKAGE_LABEL: package_name, MANAGED_BY_LABEL: MANAGED_BY},
    )

    purged = 0
    for item in items:
        metadata = item.get("metadata", {})
        labels = metadata.get("labels") or {}
        if labels.get(GENERATION_LABEL) == current:
            continue

        await k8s.delete(kind, metadata["name"], metadata.get("namespace", namespace))
        ORPHANS_PURGED.labels(kind=kind.kind).inc()
        purged += 1
        logger.info(
            "Deleted orphaned resource",
            kind=kind.kind,
            name=metadata["name"],
            stale_generation=labels.get(GENERATION_LABEL),
            generation=current
        )

    return purged
