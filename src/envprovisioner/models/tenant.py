"""Tenant declaration enforced by the reconciler."""
from __future__ import annotations

import re
from typing import List

from pydantic import Field, field_validator

from .environment import CamelModel, NetworkPolicy, validate_quantity

NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class TenantResourceLimits(CamelModel):
    """Hard limits applied to every namespace of a tenant."""

    cpu: str
    memory: str
    storage: str
    max_pods: int = Field(..., ge=0)
    max_services: int = Field(..., ge=0)
    max_endpoints: int = Field(0, ge=0)

    @field_validator("cpu", "memory", "storage")
    def _validate_quantities(cls, value: str) -> str:
        return validate_quantity(value)


class Tenant(CamelModel):
    """Declared namespace set with shared quota, network, RBAC and mesh policy."""

    id: str = Field(..., min_length=1, max_length=63)
    name: str = Field(..., min_length=1, max_length=63)
    owner_id: str = Field(..., min_length=1)
    namespaces: List[str] = Field(default_factory=list)
    resource_limits: TenantResourceLimits
    network_policy: NetworkPolicy = Field(default_factory=NetworkPolicy)
    service_mesh_enabled: bool = False

    @field_validator("namespaces")
    def _validate_namespaces(cls, values: List[str]) -> List[str]:
        for value in values:
            if len(value) > 63 or not NAMESPACE_PATTERN.match(value):
                raise ValueError(f"'{value}' is not a valid namespace name")
        return list(dict.fromkeys(values))


__all__ = ["Tenant", "TenantResourceLimits"]
