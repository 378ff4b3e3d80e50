"""Domain models for environments and their lifecycle."""
from __future__ import annotations

import ipaddress
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

QUANTITY_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)?(m|k|Ki|M|Mi|G|Gi|T|Ti|P|Pi|E|Ei)?$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_quantity(value: str) -> str:
    """Reject strings that Kubernetes would not accept as a resource quantity."""

    value = value.strip()
    if not QUANTITY_PATTERN.match(value):
        raise ValueError(f"'{value}' is not a valid resource quantity")
    return value


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EnvironmentStatus(str, Enum):
    """Lifecycle states of an environment."""

    CREATING = "CREATING"
    PROVISIONING = "PROVISIONING"
    ACTIVE = "ACTIVE"
    UPDATING = "UPDATING"
    ERROR = "ERROR"
    DELETING = "DELETING"
    DELETED = "DELETED"


ALLOWED_TRANSITIONS: Dict[EnvironmentStatus, frozenset] = {
    EnvironmentStatus.CREATING: frozenset({EnvironmentStatus.PROVISIONING, EnvironmentStatus.ERROR}),
    EnvironmentStatus.PROVISIONING: frozenset({EnvironmentStatus.ACTIVE, EnvironmentStatus.ERROR}),
    EnvironmentStatus.ACTIVE: frozenset(
        {EnvironmentStatus.UPDATING, EnvironmentStatus.DELETING, EnvironmentStatus.ERROR}
    ),
    EnvironmentStatus.UPDATING: frozenset({EnvironmentStatus.ACTIVE, EnvironmentStatus.ERROR}),
    EnvironmentStatus.ERROR: frozenset(
        {EnvironmentStatus.UPDATING, EnvironmentStatus.DELETING, EnvironmentStatus.ERROR}
    ),
    EnvironmentStatus.DELETING: frozenset({EnvironmentStatus.DELETED, EnvironmentStatus.ERROR}),
    EnvironmentStatus.DELETED: frozenset(),
}


def is_transition_allowed(current: EnvironmentStatus, target: EnvironmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class ResourceLimits(CamelModel):
    """Resource limits for an environment."""

    cpu: str = Field(..., min_length=1)
    memory: str = Field(..., min_length=1)
    storage: str = Field(..., min_length=1)
    max_node_count: int = Field(..., ge=1, le=10)
    max_namespaces: int = Field(..., ge=1, le=20)
    max_load_balancers: int = Field(..., ge=0, le=5)

    @field_validator("cpu", "memory", "storage")
    def _validate_quantities(cls, value: str) -> str:
        return validate_quantity(value)


class NetworkPolicy(CamelModel):
    """Network policy declaration shared by environments and tenants."""

    allow_ingress_from_cidr: List[str] = Field(default_factory=list, alias="allowIngressFromCIDR")
    allow_egress_to_cidr: List[str] = Field(default_factory=list, alias="allowEgressToCIDR")
    default_deny_ingress: bool = False
    default_deny_egress: bool = False
    allow_intra_namespace: bool = False
    allow_cross_namespace: bool = False
    allow_external_services: List[str] = Field(default_factory=list)

    @field_validator("allow_ingress_from_cidr", "allow_egress_to_cidr")
    def _validate_cidrs(cls, values: List[str]) -> List[str]:
        normalized = []
        for value in values:
            try:
                normalized.append(str(ipaddress.ip_network(value.strip(), strict=False)))
            except ValueError as exc:
                raise ValueError(f"'{value}' is not a valid CIDR") from exc
        return normalized


class ServiceMeshConfig(CamelModel):
    enabled: bool = False
    mtls_mode: Optional[Literal["STRICT", "PERMISSIVE", "DISABLE"]] = Field(None, alias="mtlsMode")
    enable_tracing: bool = False
    enable_metrics: bool = False
    enable_circuit_breaker: bool = False
    enable_outlier_detection: bool = False
    enable_fault_injection: bool = False
    enable_request_throttling: bool = False
    enable_virtual_service_rbac: bool = Field(False, alias="enableVirtualServiceRBAC")


class MonitoringConfig(CamelModel):
    enable_prometheus: bool = False
    enable_grafana: bool = False
    enable_alert_manager: bool = False
    scrape_interval: Optional[Literal["15s", "30s", "1m", "5m"]] = None
    retention_period: Optional[Literal["1d", "7d", "14d", "30d"]] = None
    default_alert_threshold: Optional[str] = None


class GitOpsConfig(CamelModel):
    enabled: bool = False
    git_repository: Optional[str] = None
    git_branch: Optional[str] = None
    sync_interval: Optional[Literal["1m", "5m", "10m", "15m", "30m", "1h"]] = None
    automated_sync: bool = False
    sync_timeout: Optional[Literal["1m", "5m", "10m"]] = None
    git_credential_id: Optional[str] = None

    @field_validator("git_repository")
    def _validate_repository(cls, value: Optional[str]) -> Optional[str]:
        if value and not re.match(r"^(https?|ssh|git)://[^\s/]+", value):
            raise ValueError("gitRepository must be a URL")
        return value


def _dedupe(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    return list(dict.fromkeys(values))


class EnvironmentRequest(CamelModel):
    """Payload accepted when creating a new environment."""

    name: str = Field(..., min_length=3, max_length=63)
    description: str = Field("", max_length=255)
    template_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    resource_limits: ResourceLimits
    network_policy: Optional[NetworkPolicy] = None
    service_mesh: Optional[ServiceMeshConfig] = None
    monitoring: Optional[MonitoringConfig] = None
    git_ops: Optional[GitOpsConfig] = Field(None, alias="gitOps")
    addons: List[str] = Field(default_factory=list)
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("addons")
    def _unique_addons(cls, values):
        return _dedupe(values)


class EnvironmentPatch(CamelModel):
    """Partial update; fields that are absent or null leave the record unchanged."""

    description: Optional[str] = Field(None, max_length=255)
    resource_limits: Optional[ResourceLimits] = None
    network_policy: Optional[NetworkPolicy] = None
    service_mesh: Optional[ServiceMeshConfig] = None
    monitoring: Optional[MonitoringConfig] = None
    git_ops: Optional[GitOpsConfig] = Field(None, alias="gitOps")
    addons: Optional[List[str]] = None
    tags: Optional[Dict[str, str]] = None

    @field_validator("addons")
    def _unique_addons(cls, values):
        return _dedupe(values)

    def changes(self) -> Dict[str, object]:
        """Return only the fields the caller supplied."""

        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if getattr(self, name) is not None
        }


class Environment(CamelModel):
    """Persisted environment record."""

    id: str
    name: str
    description: str = ""
    template_id: str
    owner_id: str
    resource_limits: ResourceLimits
    network_policy: Optional[NetworkPolicy] = None
    service_mesh: Optional[ServiceMeshConfig] = None
    monitoring: Optional[MonitoringConfig] = None
    git_ops: Optional[GitOpsConfig] = Field(None, alias="gitOps")
    addons: List[str] = Field(default_factory=list)
    tags: Dict[str, str] = Field(default_factory=dict)
    status: EnvironmentStatus = EnvironmentStatus.CREATING
    status_message: str = ""
    cluster_name: str
    credential_ref: Optional[str] = None
    console_url: str = Field("", alias="consoleUrl")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @staticmethod
    def cluster_name_for(environment_id: str) -> str:
        return "env-" + environment_id[:8]


class StatusHistoryEntry(CamelModel):
    status: str
    message: str = ""
    timestamp: datetime


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Environment",
    "EnvironmentPatch",
    "EnvironmentRequest",
    "EnvironmentStatus",
    "GitOpsConfig",
    "MonitoringConfig",
    "NetworkPolicy",
    "ResourceLimits",
    "ServiceMeshConfig",
    "StatusHistoryEntry",
    "is_transition_allowed",
    "validate_quantity",
]
