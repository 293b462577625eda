"""
Package custom resource models.

This module defines the tenant-facing Package resource as the controller
reads it from the cluster: exposure rules, network allow rules, egress
declarations and the status block the controller writes back.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Direction(str, Enum):
    """Traffic direction of an allow rule."""

    INGRESS = "Ingress"
    EGRESS = "Egress"


class RemoteGenerated(str, Enum):
    """
    Generated peer sets.

    Each value is expanded by the NetworkPolicy synthesizer into a concrete
    peer list instead of a literal namespace/pod selector pair.
    """

    KUBE_API = "KubeAPI"
    INTRA_NAMESPACE = "IntraNamespace"
    CLOUD_METADATA = "CloudMetadata"
    ANYWHERE = "Anywhere"


class Gateway(str, Enum):
    """Shared ingress gateways an expose entry can bind to."""

    ADMIN = "admin"
    TENANT = "tenant"
    PASSTHROUGH = "passthrough"


class ExposeMode(str, Enum):
    """Route kind generated for an expose entry."""

    HTTP = "http"
    TCP = "tcp"


class Protocol(str, Enum):
    """Transport protocol of a NetworkPolicy port."""

    TCP = "TCP"
    UDP = "UDP"
    SCTP = "SCTP"


class RemoteProtocol(str, Enum):
    """Protocol used to reach an external host through the egress gateway."""

    TLS = "TLS"
    HTTP = "HTTP"


class DisableDefault(str, Enum):
    """Baseline policies a package may opt out of."""

    DNS_LOOKUP = "DNSLookup"
    PERMISSIVE_NAMESPACE = "PermissiveNamespace"


class Phase(str, Enum):
    """Package reconciliation phase written to the status subresource."""

    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


class PackageModel(BaseModel):
    """Base model mapping camelCase resource fields onto snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Allow(PackageModel):
    """
    A single network allow rule.

    Peers are chosen by precedence: ``remote_generated`` first, then
    ``remote_host`` (through the egress gateway), then ``remote_cidr``, and
    finally the ``remote_namespace``/``remote_selector`` pair.
    """

    direction: Direction = Field(
        ...,
        description="Traffic direction the rule opens"
    )
    selector: Optional[Dict[str, str]] = Field(
        default=None,
        description="Labels of the local pods the rule applies to"
    )
    remote_namespace: Optional[str] = Field(
        default=None,
        description="Remote namespace name, empty or '*' for any namespace"
    )
    remote_selector: Optional[Dict[str, str]] = Field(
        default=None,
        description="Labels of the remote pods"
    )
    remote_generated: Optional[RemoteGenerated] = Field(
        default=None,
        description="Generated peer set replacing the literal selectors"
    )
    remote_cidr: Optional[str] = Field(
        default=None,
        description="Remote CIDR block"
    )
    remote_host: Optional[str] = Field(
        default=None,
        description="External host reached through the egress gateway"
    )
    remote_protocol: Optional[RemoteProtocol] = Field(
        default=None,
        description="Protocol used for remote_host, TLS when unset"
    )
    port: Optional[int] = Field(
        default=None,
        ge=1,
        le=65535,
        description="Single port, all ports when neither port nor ports is set"
    )
    ports: Optional[List[int]] = Field(
        default=None,
        description="Port list"
    )
    protocol: Protocol = Field(
        default=Protocol.TCP,
        description="Transport protocol for the listed ports"
    )
    description: Optional[str] = Field(
        default=None,
        description="Human readable description, also used for the policy name"
    )
    labels: Dict[str, str] = Field(
        default_factory=dict,
        description="Extra labels copied onto the generated policy"
    )

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        """Validate every listed port is in range."""
        if v is not None:
            for port in v:
                if not 1 <= port <= 65535:
                    raise ValueError(f"Port {port} is out of range")
        return v

    @model_validator(mode="after")
    def validate_remote_host(self) -> "Allow":
        """remoteHost only makes sense for egress rules."""
        if self.remote_host and self.direction != Direction.EGRESS:
            raise ValueError("remoteHost is only valid for Egress rules")
        return self

    def port_list(self) -> List[int]:
        """Return the declared ports, ``ports`` first, then ``port``."""
        ports = list(self.ports or [])
        if self.port is not None:
            ports.append(self.port)
        return ports


class AdvancedHTTP(PackageModel):
    """Advanced HTTP routing options for an expose entry."""

    match: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Istio HTTPMatchRequest entries copied onto the route"
    )


class Expose(PackageModel):
    """A service exposed through one of the shared ingress gateways."""

    gateway: Gateway = Field(
        default=Gateway.TENANT,
        description="Gateway the route binds to"
    )
    host: str = Field(
        ...,
        description="Host prefix, joined with the cluster domain"
    )
    port: int = Field(
        ...,
        ge=1,
        le=65535,
        description="Service port"
    )
    target_port: Optional[int] = Field(
        default=None,
        ge=1,
        le=65535,
        description="Pod port opened by the ingress NetworkPolicy"
    )
    service: str = Field(
        ...,
        description="Service name in the package namespace"
    )
    selector: Dict[str, str] = Field(
        default_factory=dict,
        description="Labels of the pods backing the service"
    )
    mode: ExposeMode = Field(
        default=ExposeMode.HTTP,
        description="Route kind"
    )
    advanced_http: Optional[AdvancedHTTP] = Field(
        default=None,
        alias="advancedHTTP",
        description="Advanced HTTP routing options"
    )
    description: Optional[str] = Field(
        default=None,
        description="Human readable description"
    )


class EgressPort(PackageModel):
    """Port and protocol declared for an external host."""

    port: int = Field(..., ge=1, le=65535, description="External port")
    protocol: RemoteProtocol = Field(
        default=RemoteProtocol.TLS,
        description="Protocol spoken to the external host"
    )


class Network(PackageModel):
    """Network section of the Package spec."""

    expose: List[Expose] = Field(default_factory=list)
    allow: List[Allow] = Field(default_factory=list)
    egress: Dict[str, List[EgressPort]] = Field(
        default_factory=dict,
        description="External hosts keyed by hostname"
    )
    disable_defaults: List[DisableDefault] = Field(
        default_factory=list,
        description="Baseline policies this package opts out of"
    )


class PackageSpec(PackageModel):
    """Package spec."""

    network: Network = Field(default_factory=Network)


class PackageMetadata(PackageModel):
    """Subset of object metadata the controller relies on."""

    name: str
    namespace: str
    uid: str = ""
    generation: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)


class PackageStatus(PackageModel):
    """Status subresource written by the controller."""

    phase: Optional[Phase] = None
    observed_generation: Optional[int] = None
    endpoints: List[str] = Field(default_factory=list)
    network_policy_count: int = 0
    conditions: List[Dict[str, Any]] = Field(default_factory=list)


class Package(PackageModel):
    """
    The Package custom resource.

    Application teams declare what they want exposed or allowed; the
    controller derives NetworkPolicies, mesh routes and egress objects from
    it and reports the outcome in ``status``.
    """

    api_version: str = "uds.dev/v1alpha1"
    kind: str = "Package"
    metadata: PackageMetadata
    spec: PackageSpec = Field(default_factory=PackageSpec)
    status: Optional[PackageStatus] = None

    @classmethod
    def from_resource(cls, obj: Dict[str, Any]) -> "Package":
        """Build a Package from a raw resource dictionary."""
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def package_id(self) -> str:
        """Cluster-unique package identifier, ``<name>-<namespace>``."""
        return f"{self.metadata.name}-{self.metadata.namespace}"
