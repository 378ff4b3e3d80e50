"""Converge cluster objects toward the declared tenants."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ..config import ReconcilerConfig
from ..errors import ExecutionError
from ..models.tenant import Tenant
from ..services.tenant_store import TenantStore
from .objects import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    OWNER_BINDING_NAME,
    QUOTA_NAME,
    TENANT_ID_LABEL,
    build_namespace,
    build_owner_binding,
    build_resource_quota,
    desired_network_policies,
    is_reserved_namespace,
    label_value,
    managed_selector,
    namespace_labels,
    quota_hard_limits,
    quota_matches,
    spec_matches,
)

LOGGER = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Mutations performed by one reconcile pass."""

    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def merge(self, other: "ReconcileReport") -> None:
        self.created.extend(other.created)
        self.updated.extend(other.updated)
        self.deleted.extend(other.deleted)
        self.errors.extend(other.errors)


class TenantReconciler:
    """Periodically enforce namespaces, quotas, network policies, RBAC and mesh labels.

    Each pass compares live objects with the declaration and only writes on
    a difference, so an unchanged declaration produces no API mutations.
    Failures are scoped to the namespace (or tenant) being processed.
    """

    def __init__(
        self,
        reconciler_config: ReconcilerConfig,
        tenant_store: TenantStore,
        core_v1: client.CoreV1Api,
        networking_v1: client.NetworkingV1Api,
        rbac_v1: client.RbacAuthorizationV1Api,
    ) -> None:
        self._config = reconciler_config
        self._tenant_store = tenant_store
        self._core_v1 = core_v1
        self._networking_v1 = networking_v1
        self._rbac_v1 = rbac_v1
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @classmethod
    def from_config(cls, reconciler_config: ReconcilerConfig, tenant_store: TenantStore) -> "TenantReconciler":
        """Build API clients from a kubeconfig path or the in-cluster service account."""

        if reconciler_config.kubeconfig:
            config.load_kube_config(config_file=reconciler_config.kubeconfig)
        else:
            config.load_incluster_config()
        return cls(
            reconciler_config,
            tenant_store,
            client.CoreV1Api(),
            client.NetworkingV1Api(),
            client.RbacAuthorizationV1Api(),
        )

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Run the reconcile loop in a daemon thread."""

        if self._thread and self._thread.is_alive():
            LOGGER.debug("Tenant reconciler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="tenant-reconciler", daemon=True)
        self._thread.start()
        LOGGER.info("Tenant reconciler thread started", extra={"interval": self._config.interval_seconds})

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop to stop after the current tick and wait for it."""

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        LOGGER.info("Tenant reconciler thread stopped")

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:  # pragma: no cover
                LOGGER.exception("Unhandled exception in reconcile tick", exc_info=exc)
            self._stop_event.wait(self._config.interval_seconds)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def tick(self) -> ReconcileReport:
        """Reconcile every declared tenant once."""

        report = ReconcileReport()
        tenants, invalid = self._tenant_store.scan()
        for key in invalid:
            LOGGER.error("Skipping undecodable tenant declaration", extra={"key": key})
            report.errors.append(f"{key}: undecodable tenant declaration")
        for tenant in tenants:
            try:
                report.merge(self.reconcile_tenant(tenant))
            except Exception as exc:
                LOGGER.exception("Failed to reconcile tenant", extra={"tenant_id": tenant.id})
                report.errors.append(f"{tenant.id}: {exc}")
        if invalid:
            LOGGER.warning("Orphaned namespace pruning skipped this tick", extra={"invalid": len(invalid)})
        elif self._config.prune_namespaces:
            try:
                self._prune_orphaned_namespaces({tenant.id for tenant in tenants}, report)
            except ExecutionError as exc:
                LOGGER.error("Failed to prune orphaned namespaces", extra={"error": str(exc)})
                report.errors.append(f"orphans: {exc}")
        LOGGER.info(
            "Reconcile tick finished",
            extra={
                "tenants": len(tenants),
                "created": len(report.created),
                "updated": len(report.updated),
                "deleted": len(report.deleted),
                "errors": len(report.errors),
            },
        )
        return report

    def reconcile_tenant(self, tenant: Tenant) -> ReconcileReport:
        """Converge every namespace of ``tenant`` and prune what it no longer declares."""

        report = ReconcileReport()
        for namespace in tenant.namespaces:
            try:
                self._reconcile_namespace(namespace, tenant, report)
            except ExecutionError as exc:
                LOGGER.error(
                    "Failed to reconcile namespace",
                    extra={"tenant_id": tenant.id, "namespace": namespace, "error": str(exc)},
                )
                report.errors.append(f"{namespace}: {exc}")
        if self._config.prune_namespaces:
            try:
                self._prune_tenant_namespaces(tenant, report)
            except ExecutionError as exc:
                LOGGER.error(
                    "Failed to prune tenant namespaces", extra={"tenant_id": tenant.id, "error": str(exc)}
                )
                report.errors.append(f"{tenant.id}: {exc}")
        return report

    def _reconcile_namespace(self, namespace: str, tenant: Tenant, report: ReconcileReport) -> None:
        if is_reserved_namespace(namespace, self._config.reserved_namespaces):
            raise ExecutionError(f"namespace {namespace} is reserved", step="namespace")
        self._ensure_namespace(namespace, tenant, report)
        self._ensure_quota(namespace, tenant, report)
        self._ensure_network_policies(namespace, tenant, report)
        self._ensure_owner_binding(namespace, tenant, report)

    # ------------------------------------------------------------------
    # Object converge steps
    # ------------------------------------------------------------------
    def _ensure_namespace(self, namespace: str, tenant: Tenant, report: ReconcileReport) -> None:
        live = self._read(self._core_v1.read_namespace, namespace)
        if live is None:
            self._call(self._core_v1.create_namespace, build_namespace(namespace, tenant, self._config.cluster_name))
            report.created.append(f"namespace/{namespace}")
            LOGGER.info("Created namespace", extra={"tenant_id": tenant.id, "namespace": namespace})
            return
        labels = live.metadata.labels or {}
        desired = namespace_labels(tenant, self._config.cluster_name)
        if labels.get(MANAGED_BY_LABEL) != MANAGED_BY_VALUE:
            raise ExecutionError(
                f"namespace {namespace} exists and is not managed by the reconciler", step="namespace"
            )
        if labels.get(TENANT_ID_LABEL) != label_value(tenant.id):
            raise ExecutionError(
                f"namespace {namespace} is managed for tenant {labels.get(TENANT_ID_LABEL)}", step="namespace"
            )
        missing = {key: value for key, value in desired.items() if labels.get(key) != value}
        if missing:
            self._call(self._core_v1.patch_namespace, namespace, {"metadata": {"labels": missing}})
            report.updated.append(f"namespace/{namespace}")
            LOGGER.info(
                "Patched namespace labels",
                extra={"tenant_id": tenant.id, "namespace": namespace, "labels": sorted(missing)},
            )

    def _ensure_quota(self, namespace: str, tenant: Tenant, report: ReconcileReport) -> None:
        desired = build_resource_quota(namespace, tenant)
        live = self._read(self._core_v1.read_namespaced_resource_quota, QUOTA_NAME, namespace)
        if live is None:
            self._call(self._core_v1.create_namespaced_resource_quota, namespace, desired)
            report.created.append(f"{namespace}/resourcequota/{QUOTA_NAME}")
            return
        if quota_matches(live.spec.hard if live.spec else None, quota_hard_limits(tenant)):
            return
        desired.metadata.resource_version = live.metadata.resource_version
        self._call(self._core_v1.replace_namespaced_resource_quota, QUOTA_NAME, namespace, desired)
        report.updated.append(f"{namespace}/resourcequota/{QUOTA_NAME}")
        LOGGER.info("Replaced drifted resource quota", extra={"tenant_id": tenant.id, "namespace": namespace})

    def _ensure_network_policies(self, namespace: str, tenant: Tenant, report: ReconcileReport) -> None:
        desired_policies = desired_network_policies(namespace, tenant)
        for name, desired in desired_policies.items():
            live = self._read(self._networking_v1.read_namespaced_network_policy, name, namespace)
            if live is None:
                self._call(self._networking_v1.create_namespaced_network_policy, namespace, desired)
                report.created.append(f"{namespace}/networkpolicy/{name}")
                continue
            if spec_matches(desired.spec, live.spec) and _annotations_match(desired, live):
                continue
            desired.metadata.resource_version = live.metadata.resource_version
            self._call(self._networking_v1.replace_namespaced_network_policy, name, namespace, desired)
            report.updated.append(f"{namespace}/networkpolicy/{name}")
            LOGGER.info(
                "Replaced drifted network policy",
                extra={"tenant_id": tenant.id, "namespace": namespace, "policy": name},
            )
        self._prune_network_policies(namespace, tenant, set(desired_policies), report)

    def _prune_network_policies(
        self, namespace: str, tenant: Tenant, keep: Set[str], report: ReconcileReport
    ) -> None:
        live = self._call(
            self._networking_v1.list_namespaced_network_policy, namespace, label_selector=managed_selector(tenant)
        )
        for policy in live.items:
            name = policy.metadata.name
            if name in keep:
                continue
            self._delete(self._networking_v1.delete_namespaced_network_policy, name, namespace)
            report.deleted.append(f"{namespace}/networkpolicy/{name}")
            LOGGER.info(
                "Pruned stale network policy",
                extra={"tenant_id": tenant.id, "namespace": namespace, "policy": name},
            )

    def _ensure_owner_binding(self, namespace: str, tenant: Tenant, report: ReconcileReport) -> None:
        desired = build_owner_binding(namespace, tenant, self._config.owner_cluster_role)
        live = self._read(self._rbac_v1.read_namespaced_role_binding, OWNER_BINDING_NAME, namespace)
        if live is None:
            self._call(self._rbac_v1.create_namespaced_role_binding, namespace, desired)
            report.created.append(f"{namespace}/rolebinding/{OWNER_BINDING_NAME}")
            return
        if spec_matches(desired.role_ref, live.role_ref):
            if spec_matches(desired.subjects, live.subjects):
                return
            desired.metadata.resource_version = live.metadata.resource_version
            self._call(self._rbac_v1.replace_namespaced_role_binding, OWNER_BINDING_NAME, namespace, desired)
            report.updated.append(f"{namespace}/rolebinding/{OWNER_BINDING_NAME}")
        else:
            # roleRef is immutable.
            self._delete(self._rbac_v1.delete_namespaced_role_binding, OWNER_BINDING_NAME, namespace)
            self._call(self._rbac_v1.create_namespaced_role_binding, namespace, desired)
            report.updated.append(f"{namespace}/rolebinding/{OWNER_BINDING_NAME}")
        LOGGER.info(
            "Rebound namespace owner",
            extra={"tenant_id": tenant.id, "namespace": namespace, "owner_id": tenant.owner_id},
        )

    # ------------------------------------------------------------------
    # Namespace pruning
    # ------------------------------------------------------------------
    def _prune_tenant_namespaces(self, tenant: Tenant, report: ReconcileReport) -> None:
        live = self._call(self._core_v1.list_namespace, label_selector=managed_selector(tenant))
        for namespace in live.items:
            name = namespace.metadata.name
            if name in tenant.namespaces or _terminating(namespace):
                continue
            self._delete(self._core_v1.delete_namespace, name)
            report.deleted.append(f"namespace/{name}")
            LOGGER.info("Pruned undeclared namespace", extra={"tenant_id": tenant.id, "namespace": name})

    def _prune_orphaned_namespaces(self, tenant_ids: Set[str], report: ReconcileReport) -> None:
        declared = {label_value(tenant_id) for tenant_id in tenant_ids}
        live = self._call(self._core_v1.list_namespace, label_selector=managed_selector())
        for namespace in live.items:
            owner = (namespace.metadata.labels or {}).get(TENANT_ID_LABEL)
            if owner in declared or _terminating(namespace):
                continue
            name = namespace.metadata.name
            self._delete(self._core_v1.delete_namespace, name)
            report.deleted.append(f"namespace/{name}")
            LOGGER.info("Pruned namespace of removed tenant", extra={"tenant_id": owner, "namespace": name})

    # ------------------------------------------------------------------
    # API helpers
    # ------------------------------------------------------------------
    def _kwargs(self, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        if self._config.request_timeout_seconds:
            kwargs["_request_timeout"] = self._config.request_timeout_seconds
        return kwargs

    def _call(self, method: Callable[..., Any], *args: Any, allow_missing: bool = False, **kwargs: Any) -> Any:
        """Invoke an API method; with ``allow_missing`` a 404 yields ``None``."""

        try:
            return method(*args, **self._kwargs(kwargs))
        except ApiException as exc:
            if allow_missing and exc.status == 404:
                return None
            raise ExecutionError(
                f"{method.__name__} failed with status {exc.status}: {exc.reason}", step=method.__name__
            ) from exc
        except HTTPError as exc:
            raise ExecutionError(f"{method.__name__} failed: {exc}", step=method.__name__) from exc

    def _read(self, method: Callable[..., Any], *args: Any) -> Any:
        return self._call(method, *args, allow_missing=True)

    def _delete(self, method: Callable[..., Any], *args: Any) -> None:
        self._call(method, *args, allow_missing=True)


def _terminating(namespace: client.V1Namespace) -> bool:
    return bool(namespace.status and namespace.status.phase == "Terminating")


def _annotations_match(desired: client.V1NetworkPolicy, live: client.V1NetworkPolicy) -> bool:
    wanted = desired.metadata.annotations or {}
    present = live.metadata.annotations or {}
    return all(present.get(key) == value for key, value in wanted.items())


__all__ = ["ReconcileReport", "TenantReconciler"]
