"""
Package operator controllers.

This package contains the reconciliation loop and the synthesizers that
derive NetworkPolicies, mesh routes and egress objects from a Package.
"""

from .egress import EgressReconciler
from .network_policies import NetworkPolicySynthesizer
from .package_controller import PackageController
from .virtual_services import VirtualServiceSynthesizer

__all__ = [
    "EgressReconciler",
    "NetworkPolicySynthesizer",
    "PackageController",
    "VirtualServiceSynthesizer",
]
