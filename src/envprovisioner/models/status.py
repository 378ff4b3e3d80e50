"""Read-only composite status views."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import Field

from .environment import CamelModel, EnvironmentStatus


class ResourceUsage(CamelModel):
    cpu_usage: str = ""
    cpu_percentage: float = 0.0
    memory_usage: str = ""
    memory_percentage: float = 0.0
    storage_usage: str = ""
    storage_percentage: float = 0.0
    node_count: int = 0
    namespace_count: int = 0
    pod_count: int = 0
    service_count: int = 0


class NodeStatus(CamelModel):
    name: str
    status: str
    ready: bool
    pod_count: int = 0
    version: str = ""
    internal_ip: str = Field("", alias="internalIP")
    age: str = ""


class NamespaceStatus(CamelModel):
    name: str
    status: str
    pod_count: int = 0
    service_count: int = 0
    owner: str = ""
    age: str = ""


class LiveStatus(CamelModel):
    """Metrics gathered from the cluster API by a status aggregator."""

    resource_utilization: ResourceUsage = Field(default_factory=ResourceUsage)
    node_status: List[NodeStatus] = Field(default_factory=list)
    namespace_statuses: List[NamespaceStatus] = Field(default_factory=list)
    service_mesh_status: str = "Unknown"
    git_ops_status: str = Field("Unknown", alias="gitOpsStatus")
    last_sync_time: Optional[datetime] = None
    health_checks: Dict[str, str] = Field(default_factory=dict)


class EnvironmentStatusView(LiveStatus):
    """Persisted lifecycle state merged with live cluster data."""

    status: EnvironmentStatus
    status_message: str = ""
    resource_allocation_ratio: float = 0.0


__all__ = ["EnvironmentStatusView", "LiveStatus", "NamespaceStatus", "NodeStatus", "ResourceUsage"]
