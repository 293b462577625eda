"""
Egress aggregation models.

A package declares the external hosts it needs as a HostResourceMap. The
controller collects those into a PackageHostMap spanning every package and
remaps it into EgressResources, the package-agnostic shape used to emit one
shared set of egress objects per host.
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field

from .package import RemoteProtocol


class PortProtocol(BaseModel):
    """A port and protocol pair on an external host."""

    model_config = ConfigDict(frozen=True)

    port: int = Field(..., ge=1, le=65535)
    protocol: RemoteProtocol = RemoteProtocol.TLS


class HostResource(BaseModel):
    """Ports a single package requires on one external host."""

    port_protocol: List[PortProtocol] = Field(default_factory=list)


class EgressResource(BaseModel):
    """Ports required on one external host across every referencing package."""

    packages: List[str] = Field(default_factory=list)
    port_protocols: List[PortProtocol] = Field(default_factory=list)


# host -> HostResource
HostResourceMap = Dict[str, HostResource]

# package id -> host -> HostResource
PackageHostMap = Dict[str, HostResourceMap]

# host -> EgressResource
EgressResources = Dict[str, EgressResource]
