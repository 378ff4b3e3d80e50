"""Builders for the cluster objects a tenant declaration implies."""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from kubernetes import client
from kubernetes.utils import parse_quantity

from ..models.tenant import Tenant

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "tenant-reconciler"
TENANT_ID_LABEL = "envprovisioner.io/tenant-id"
TENANT_NAME_LABEL = "envprovisioner.io/tenant"
OWNER_ID_LABEL = "envprovisioner.io/owner-id"
CLUSTER_NAME_LABEL = "envprovisioner.io/cluster-name"
CIDR_ANNOTATION = "envprovisioner.io/cidr"
MESH_INJECTION_LABEL = "istio-injection"

QUOTA_NAME = "tenant-quota"
OWNER_BINDING_NAME = "tenant-owner"
DEFAULT_DENY_INGRESS = "default-deny-ingress"
DEFAULT_DENY_EGRESS = "default-deny-egress"
ALLOW_INTRA_NAMESPACE = "allow-intra-namespace"
ALLOW_CROSS_NAMESPACE = "allow-cross-namespace"
INGRESS_CIDR_TEMPLATE = "allow-ingress-cidr-{index}"
EGRESS_CIDR_TEMPLATE = "allow-egress-cidr-{index}"
RBAC_API_GROUP = "rbac.authorization.k8s.io"
SYSTEM_NAMESPACE_PREFIX = "kube-"

_LABEL_VALUE_INVALID = re.compile(r"[^A-Za-z0-9_.-]+")

_SERIALIZER = client.ApiClient()


def label_value(value: str) -> str:
    """Coerce ``value`` into a valid label value (63 chars, alphanumeric ends)."""

    cleaned = _LABEL_VALUE_INVALID.sub("-", value)[:63]
    return cleaned.strip("-_.")


def is_reserved_namespace(name: str, reserved: Iterable[str] = ()) -> bool:
    return name.startswith(SYSTEM_NAMESPACE_PREFIX) or name in set(reserved)


def managed_labels(tenant: Tenant) -> Dict[str, str]:
    return {MANAGED_BY_LABEL: MANAGED_BY_VALUE, TENANT_ID_LABEL: label_value(tenant.id)}


def managed_selector(tenant: Optional[Tenant] = None) -> str:
    """Label selector matching objects managed for ``tenant`` (or any tenant)."""

    selector = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"
    if tenant is not None:
        selector += f",{TENANT_ID_LABEL}={label_value(tenant.id)}"
    return selector


def namespace_labels(tenant: Tenant, cluster_name: str) -> Dict[str, str]:
    labels = {
        **managed_labels(tenant),
        TENANT_NAME_LABEL: label_value(tenant.name),
        OWNER_ID_LABEL: label_value(tenant.owner_id),
    }
    if cluster_name:
        labels[CLUSTER_NAME_LABEL] = label_value(cluster_name)
    if tenant.service_mesh_enabled:
        labels[MESH_INJECTION_LABEL] = "enabled"
    return labels


def build_namespace(name: str, tenant: Tenant, cluster_name: str) -> client.V1Namespace:
    return client.V1Namespace(
        metadata=client.V1ObjectMeta(name=name, labels=namespace_labels(tenant, cluster_name))
    )


def quota_hard_limits(tenant: Tenant) -> Dict[str, str]:
    """Hard limits copied verbatim from the tenant declaration."""

    limits = tenant.resource_limits
    hard = {
        "cpu": limits.cpu,
        "memory": limits.memory,
        "ephemeral-storage": limits.storage,
        "pods": str(limits.max_pods),
        "services": str(limits.max_services),
        "requests.cpu": limits.cpu,
        "requests.memory": limits.memory,
        "limits.cpu": limits.cpu,
        "limits.memory": limits.memory,
    }
    if limits.max_endpoints:
        hard["count/endpoints"] = str(limits.max_endpoints)
    return hard


def build_resource_quota(namespace: str, tenant: Tenant) -> client.V1ResourceQuota:
    return client.V1ResourceQuota(
        metadata=client.V1ObjectMeta(name=QUOTA_NAME, namespace=namespace, labels=managed_labels(tenant)),
        spec=client.V1ResourceQuotaSpec(hard=quota_hard_limits(tenant)),
    )


def _quantity(value: Any) -> Any:
    try:
        return parse_quantity(value)
    except (ValueError, InvalidOperation, TypeError):
        return value


def quota_matches(live_hard: Optional[Dict[str, str]], desired_hard: Dict[str, str]) -> bool:
    """Compare hard limits by quantity so server-side normalisation is not drift."""

    live_hard = live_hard or {}
    if set(live_hard) != set(desired_hard):
        return False
    for key, desired in desired_hard.items():
        live_value, desired_value = _quantity(live_hard[key]), _quantity(desired)
        if isinstance(live_value, Decimal) and isinstance(desired_value, Decimal):
            if live_value != desired_value:
                return False
        elif str(live_hard[key]) != str(desired):
            return False
    return True


def _policy(
    name: str,
    namespace: str,
    tenant: Tenant,
    policy_types: List[str],
    ingress: Optional[List[client.V1NetworkPolicyIngressRule]] = None,
    egress: Optional[List[client.V1NetworkPolicyEgressRule]] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> client.V1NetworkPolicy:
    return client.V1NetworkPolicy(
        metadata=client.V1ObjectMeta(
            name=name, namespace=namespace, labels=managed_labels(tenant), annotations=annotations
        ),
        spec=client.V1NetworkPolicySpec(
            pod_selector=client.V1LabelSelector(),
            policy_types=policy_types,
            ingress=ingress,
            egress=egress,
        ),
    )


def desired_network_policies(namespace: str, tenant: Tenant) -> Dict[str, client.V1NetworkPolicy]:
    """Return every network policy the tenant declares for ``namespace``, keyed by name.

    CIDR rules produce one object per CIDR, named by the CIDR's index.
    """

    declared = tenant.network_policy
    policies: Dict[str, client.V1NetworkPolicy] = {}
    if declared.default_deny_ingress:
        policies[DEFAULT_DENY_INGRESS] = _policy(DEFAULT_DENY_INGRESS, namespace, tenant, ["Ingress"])
    if declared.default_deny_egress:
        policies[DEFAULT_DENY_EGRESS] = _policy(DEFAULT_DENY_EGRESS, namespace, tenant, ["Egress"])
    if declared.allow_intra_namespace:
        policies[ALLOW_INTRA_NAMESPACE] = _policy(
            ALLOW_INTRA_NAMESPACE,
            namespace,
            tenant,
            ["Ingress"],
            ingress=[
                client.V1NetworkPolicyIngressRule(
                    _from=[client.V1NetworkPolicyPeer(pod_selector=client.V1LabelSelector())]
                )
            ],
        )
    if declared.allow_cross_namespace:
        policies[ALLOW_CROSS_NAMESPACE] = _policy(
            ALLOW_CROSS_NAMESPACE,
            namespace,
            tenant,
            ["Ingress"],
            ingress=[
                client.V1NetworkPolicyIngressRule(
                    _from=[
                        client.V1NetworkPolicyPeer(
                            namespace_selector=client.V1LabelSelector(
                                match_labels={TENANT_ID_LABEL: label_value(tenant.id)}
                            )
                        )
                    ]
                )
            ],
        )
    for index, cidr in enumerate(declared.allow_ingress_from_cidr):
        name = INGRESS_CIDR_TEMPLATE.format(index=index)
        policies[name] = _policy(
            name,
            namespace,
            tenant,
            ["Ingress"],
            ingress=[
                client.V1NetworkPolicyIngressRule(
                    _from=[client.V1NetworkPolicyPeer(ip_block=client.V1IPBlock(cidr=cidr))]
                )
            ],
            annotations={CIDR_ANNOTATION: cidr},
        )
    for index, cidr in enumerate(declared.allow_egress_to_cidr):
        name = EGRESS_CIDR_TEMPLATE.format(index=index)
        policies[name] = _policy(
            name,
            namespace,
            tenant,
            ["Egress"],
            egress=[client.V1NetworkPolicyEgressRule(to=[client.V1NetworkPolicyPeer(ip_block=client.V1IPBlock(cidr=cidr))])],
            annotations={CIDR_ANNOTATION: cidr},
        )
    return policies


def build_owner_binding(namespace: str, tenant: Tenant, cluster_role: str) -> client.V1RoleBinding:
    return client.V1RoleBinding(
        metadata=client.V1ObjectMeta(name=OWNER_BINDING_NAME, namespace=namespace, labels=managed_labels(tenant)),
        subjects=[client.RbacV1Subject(kind="User", api_group=RBAC_API_GROUP, name=tenant.owner_id)],
        role_ref=client.V1RoleRef(kind="ClusterRole", api_group=RBAC_API_GROUP, name=cluster_role),
    )


def serialize(obj: Any) -> Any:
    """Render a kubernetes model (or plain value) as JSON-compatible data."""

    return _SERIALIZER.sanitize_for_serialization(obj)


def is_subset(desired: Any, live: Any) -> bool:
    """True when every value set in ``desired`` is present and equal in ``live``.

    Keys the server defaults but ``desired`` leaves unset are ignored.
    """

    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return not desired
        return all(is_subset(value, live.get(key)) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def spec_matches(desired: Any, live: Any) -> bool:
    return is_subset(serialize(desired), serialize(live))


__all__ = [
    "ALLOW_CROSS_NAMESPACE",
    "ALLOW_INTRA_NAMESPACE",
    "CIDR_ANNOTATION",
    "DEFAULT_DENY_EGRESS",
    "DEFAULT_DENY_INGRESS",
    "MANAGED_BY_LABEL",
    "MANAGED_BY_VALUE",
    "MESH_INJECTION_LABEL",
    "OWNER_BINDING_NAME",
    "OWNER_ID_LABEL",
    "QUOTA_NAME",
    "TENANT_ID_LABEL",
    "build_namespace",
    "build_owner_binding",
    "build_resource_quota",
    "desired_network_policies",
    "is_reserved_namespace",
    "label_value",
    "managed_labels",
    "managed_selector",
    "namespace_labels",
    "quota_hard_limits",
    "quota_matches",
    "serialize",
    "spec_matches",
]
