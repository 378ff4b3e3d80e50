"""Live cluster views merged into the environment status read."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity
from urllib3.exceptions import HTTPError

from ..errors import ExecutionError
from ..models.environment import Environment, utcnow
from ..models.status import LiveStatus, NamespaceStatus, NodeStatus, ResourceUsage
from ..tenancy.objects import OWNER_ID_LABEL

LOGGER = logging.getLogger(__name__)

MESH_NAMESPACE = "istio-system"
GITOPS_NAMESPACE = "argocd"


class StatusAggregator(ABC):
    """Collect live metrics for an environment's cluster.

    Implementations raise :class:`ExecutionError` when the cluster cannot be
    queried; callers degrade the view instead of failing.
    """

    @abstractmethod
    def collect(self, environment: Environment, kubeconfig: str) -> LiveStatus:
        """Return live metrics for ``environment``."""


def _age(created: Optional[datetime]) -> str:
    if created is None:
        return ""
    seconds = int((utcnow() - created).total_seconds())
    if seconds >= 86400:
        return f"{seconds // 86400}d"
    if seconds >= 3600:
        return f"{seconds // 3600}h"
    if seconds >= 60:
        return f"{seconds // 60}m"
    return f"{max(seconds, 0)}s"


def _sum_quantities(values: Iterable[Any]) -> Decimal:
    total = Decimal(0)
    for value in values:
        if value is None:
            continue
        try:
            total += parse_quantity(value)
        except ValueError:
            LOGGER.debug("Skipping unparseable quantity", extra={"quantity": value})
    return total


def _percentage(used: Decimal, capacity: Decimal) -> float:
    if not capacity:
        return 0.0
    return round(float(used / capacity * 100), 2)


def _pods_ready(pods: List[Any]) -> str:
    if not pods:
        return "NotInstalled"
    ready = [
        pod
        for pod in pods
        if pod.status
        and pod.status.phase == "Running"
        and all(cs.ready for cs in (pod.status.container_statuses or []))
    ]
    return "Healthy" if len(ready) == len(pods) else "Degraded"


class KubernetesStatusAggregator(StatusAggregator):
    """Query an environment's cluster through the Kubernetes API."""

    def __init__(self, request_timeout_seconds: Optional[float] = 10.0) -> None:
        self._timeout = request_timeout_seconds

    def _kwargs(self) -> Dict[str, Any]:
        return {"_request_timeout": self._timeout} if self._timeout else {}

    def _api_client(self, kubeconfig: str) -> client.ApiClient:
        try:
            return config.new_client_from_config_dict(yaml.safe_load(kubeconfig))
        except (yaml.YAMLError, config.ConfigException, TypeError, AttributeError) as exc:
            raise ExecutionError(f"invalid kubeconfig: {exc}", step="status") from exc

    def collect(self, environment: Environment, kubeconfig: str) -> LiveStatus:
        api_client = self._api_client(kubeconfig)
        try:
            return self._collect(environment, client.CoreV1Api(api_client))
        except (ApiException, HTTPError) as exc:
            raise ExecutionError(f"cluster API unreachable: {exc}", step="status") from exc
        except (AttributeError, TypeError) as exc:
            raise ExecutionError(f"unexpected cluster API response: {exc}", step="status") from exc
        finally:
            api_client.close()

    def _collect(self, environment: Environment, core_v1: client.CoreV1Api) -> LiveStatus:
        nodes = core_v1.list_node(**self._kwargs()).items
        namespaces = core_v1.list_namespace(**self._kwargs()).items
        pods = core_v1.list_pod_for_all_namespaces(**self._kwargs()).items
        services = core_v1.list_service_for_all_namespaces(**self._kwargs()).items

        pods_by_node: Dict[str, int] = {}
        pods_by_namespace: Dict[str, int] = {}
        for pod in pods:
            node_name = pod.spec.node_name if pod.spec else None
            if node_name:
                pods_by_node[node_name] = pods_by_node.get(node_name, 0) + 1
            pods_by_namespace[pod.metadata.namespace] = pods_by_namespace.get(pod.metadata.namespace, 0) + 1
        services_by_namespace: Dict[str, int] = {}
        for service in services:
            namespace = service.metadata.namespace
            services_by_namespace[namespace] = services_by_namespace.get(namespace, 0) + 1

        node_statuses = []
        for node in nodes:
            ready = any(
                condition.type == "Ready" and condition.status == "True"
                for condition in (node.status.conditions or [])
            )
            internal_ip = next(
                (address.address for address in (node.status.addresses or []) if address.type == "InternalIP"),
                "",
            )
            node_statuses.append(
                NodeStatus(
                    name=node.metadata.name,
                    status="Ready" if ready else "NotReady",
                    ready=ready,
                    pod_count=pods_by_node.get(node.metadata.name, 0),
                    version=node.status.node_info.kubelet_version if node.status.node_info else "",
                    internal_ip=internal_ip,
                    age=_age(node.metadata.creation_timestamp),
                )
            )

        namespace_statuses = [
            NamespaceStatus(
                name=namespace.metadata.name,
                status=namespace.status.phase if namespace.status else "Unknown",
                pod_count=pods_by_namespace.get(namespace.metadata.name, 0),
                service_count=services_by_namespace.get(namespace.metadata.name, 0),
                owner=(namespace.metadata.labels or {}).get(OWNER_ID_LABEL, ""),
                age=_age(namespace.metadata.creation_timestamp),
            )
            for namespace in namespaces
        ]

        running = [pod for pod in pods if pod.status and pod.status.phase == "Running"]
        containers = [container for pod in running for container in (pod.spec.containers or [])]
        requests = [(container.resources.requests or {}) if container.resources else {} for container in containers]
        cpu_used = _sum_quantities(item.get("cpu") for item in requests)
        memory_used = _sum_quantities(item.get("memory") for item in requests)
        storage_used = _sum_quantities(item.get("ephemeral-storage") for item in requests)
        allocatable = [node.status.allocatable or {} for node in nodes]
        cpu_total = _sum_quantities(item.get("cpu") for item in allocatable)
        memory_total = _sum_quantities(item.get("memory") for item in allocatable)
        storage_total = _sum_quantities(item.get("ephemeral-storage") for item in allocatable)

        usage = ResourceUsage(
            cpu_usage=str(cpu_used),
            cpu_percentage=_percentage(cpu_used, cpu_total),
            memory_usage=str(memory_used),
            memory_percentage=_percentage(memory_used, memory_total),
            storage_usage=str(storage_used),
            storage_percentage=_percentage(storage_used, storage_total),
            node_count=len(nodes),
            namespace_count=len(namespaces),
            pod_count=len(pods),
            service_count=len(services),
        )

        mesh_status = "Disabled"
        if environment.service_mesh and environment.service_mesh.enabled:
            mesh_status = _pods_ready([pod for pod in pods if pod.metadata.namespace == MESH_NAMESPACE])
        gitops_status = "Disabled"
        if environment.git_ops and environment.git_ops.enabled:
            gitops_status = _pods_ready([pod for pod in pods if pod.metadata.namespace == GITOPS_NAMESPACE])

        ready_nodes = sum(1 for status in node_statuses if status.ready)
        health_checks = {
            "api-server": "Healthy",
            "nodes": "Healthy" if nodes and ready_nodes == len(nodes) else "Degraded",
        }
        LOGGER.debug(
            "Collected live cluster status",
            extra={"environment_id": environment.id, "nodes": len(nodes), "pods": len(pods)},
        )
        return LiveStatus(
            resource_utilization=usage,
            node_status=node_statuses,
            namespace_statuses=namespace_statuses,
            service_mesh_status=mesh_status,
            git_ops_status=gitops_status,
            last_sync_time=utcnow(),
            health_checks=health_checks,
        )


__all__ = ["KubernetesStatusAggregator", "StatusAggregator"]
