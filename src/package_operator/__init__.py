"""
Package operator for Kubernetes.

A controller that reconciles the Package custom resource into the cluster
objects it implies and removes the ones no longer wanted.

This package implements:
- NetworkPolicy synthesis with generation-labelled orphan cleanup
- Istio VirtualService routes for exposed services
- Shared egress gateway routing with cross-package conflict detection
- Prometheus metrics and structured logging
"""

__version__ = "0.1.0"

from .controllers.package_controller import PackageController
from .models.config import ControllerConfiguration
from .models.package import Package, Phase

__all__ = [
    "ControllerConfiguration",
    "Package",
    "PackageController",
    "Phase",
]
