"""
Controller configuration model.

Settings are read from a YAML or JSON file by the CLI and validated here
before the controller starts.
"""

from __future__ import annotations

import ipaddress
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.types import PositiveInt


class ControllerConfiguration(BaseModel):
    """
    Main controller configuration.

    Aggregates the cluster facts (DNS domain, egress gateway location) and
    the operational settings (metrics, logging, watch) the controller needs.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    domain: str = Field(
        default="uds.dev",
        description="Cluster DNS domain used for tenant and passthrough routes"
    )
    admin_domain: Optional[str] = Field(
        default=None,
        description="DNS domain for admin gateway routes, admin.<domain> when unset"
    )
    kube_api_cidr: Optional[str] = Field(
        default=None,
        description="Static CIDR for the API server peer, skips discovery when set"
    )
    egress_gateway_namespace: str = Field(
        default="istio-egress-gateway",
        description="Namespace of the shared egress gateway"
    )
    egress_gateway_service: str = Field(
        default="egressgateway",
        description="Service fronting the shared egress gateway"
    )
    package_group: str = Field(
        default="uds.dev",
        description="API group of the Package resource"
    )
    package_version: str = Field(
        default="v1alpha1",
        description="API version of the Package resource"
    )
    package_plural: str = Field(
        default="packages",
        description="Plural resource name of the Package resource"
    )
    field_manager: str = Field(
        default="package-operator",
        description="Field manager used for server-side apply"
    )
    watch_timeout_seconds: PositiveInt = Field(
        default=300,
        description="Watch stream timeout, a full resync follows every restart"
    )
    monitoring_port: PositiveInt = Field(
        default=8080,
        description="Port for the Prometheus metrics endpoint"
    )
    log_level: str = Field(
        default="INFO",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    log_format: str = Field(
        default="json",
        pattern=r"^(json|console)$",
        description="Log renderer"
    )
    enable_metrics: bool = Field(
        default=True,
        description="Enable Prometheus metrics"
    )

    @field_validator("kube_api_cidr")
    @classmethod
    def validate_kube_api_cidr(cls, v: Optional[str]) -> Optional[str]:
        """Validate the static API server CIDR."""
        if v is None:
            return v
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid kube_api_cidr {v}: {e}")
        return v

    @model_validator(mode="after")
    def default_admin_domain(self) -> "ControllerConfiguration":
        """Derive the admin domain from the cluster domain."""
        if not self.admin_domain:
            # object.__setattr__ avoids re-running validate_assignment
            object.__setattr__(self, "admin_domain", f"admin.{self.domain}")
        return self

    @property
    def package_api_version(self) -> str:
        return f"{self.package_group}/{self.package_version}"
