"""
Data models for the Package operator.

Package resource models, egress aggregation shapes and the controller
configuration.
"""

from .config import ControllerConfiguration
from .egress import (
    EgressResource,
    EgressResources,
    HostResource,
    HostResourceMap,
    PackageHostMap,
    PortProtocol,
)
from .package import (
    Allow,
    Direction,
    DisableDefault,
    Expose,
    ExposeMode,
    Gateway,
    Package,
    Phase,
    Protocol,
    RemoteGenerated,
    RemoteProtocol,
)

__all__ = [
    "Allow",
    "ControllerConfiguration",
    "Direction",
    "DisableDefault",
    "EgressResource",
    "EgressResources",
    "Expose",
    "ExposeMode",
    "Gateway",
    "HostResource",
    "HostResourceMap",
    "Package",
    "PackageHostMap",
    "Phase",
    "PortProtocol",
    "Protocol",
    "RemoteGenerated",
    "RemoteProtocol",
]
