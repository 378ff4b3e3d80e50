from __future__ import annotations

import pytest

from envprovisioner.models.environment import NetworkPolicy
from envprovisioner.models.tenant import Tenant, TenantResourceLimits
from envprovisioner.tenancy import objects


@pytest.fixture
def tenant() -> Tenant:
    return Tenant(
        id="team-alpha",
        name="Team Alpha",
        owner_id="alice@example.com",
        namespaces=["alpha-1"],
        resource_limits=TenantResourceLimits(
            cpu="4", memory="8Gi", storage="50Gi", max_pods=30, max_services=10, max_endpoints=40
        ),
        network_policy=NetworkPolicy(
            default_deny_ingress=True,
            allow_cross_namespace=True,
            allow_ingress_from_cidr=["10.0.0.0/8", "192.168.0.0/16"],
            allow_egress_to_cidr=["0.0.0.0/0"],
        ),
        service_mesh_enabled=True,
    )


def test_quota_passes_values_through_verbatim(tenant):
    assert objects.quota_hard_limits(tenant) == {
        "cpu": "4",
        "memory": "8Gi",
        "ephemeral-storage": "50Gi",
        "pods": "30",
        "services": "10",
        "count/endpoints": "40",
        "requests.cpu": "4",
        "requests.memory": "8Gi",
        "limits.cpu": "4",
        "limits.memory": "8Gi",
    }


def test_quota_matching_ignores_unit_normalisation(tenant):
    desired = objects.quota_hard_limits(tenant)
    normalised = {**desired, "cpu": "4000m", "memory": "8192Mi"}

    assert objects.quota_matches(normalised, desired)
    assert not objects.quota_matches({**desired, "pods": "31"}, desired)
    assert not objects.quota_matches({k: v for k, v in desired.items() if k != "services"}, desired)
    assert not objects.quota_matches(None, desired)


def test_desired_policies_one_object_per_cidr(tenant):
    policies = objects.desired_network_policies("alpha-1", tenant)

    assert sorted(policies) == [
        "allow-cross-namespace",
        "allow-egress-cidr-0",
        "allow-ingress-cidr-0",
        "allow-ingress-cidr-1",
        "default-deny-ingress",
    ]
    second = policies["allow-ingress-cidr-1"]
    assert second.spec.ingress[0]._from[0].ip_block.cidr == "192.168.0.0/16"
    assert second.metadata.annotations == {objects.CIDR_ANNOTATION: "192.168.0.0/16"}
    assert second.metadata.labels == {
        objects.MANAGED_BY_LABEL: "tenant-reconciler",
        objects.TENANT_ID_LABEL: "team-alpha",
    }
    cross = policies["allow-cross-namespace"].spec.ingress[0]._from[0]
    assert cross.namespace_selector.match_labels == {objects.TENANT_ID_LABEL: "team-alpha"}
    assert policies["default-deny-ingress"].spec.policy_types == ["Ingress"]


def test_namespace_labels_are_valid_label_values(tenant):
    labels = objects.namespace_labels(tenant, "shared-cluster")

    assert labels[objects.OWNER_ID_LABEL] == "alice-example.com"
    assert labels["envprovisioner.io/tenant"] == "Team-Alpha"
    assert labels[objects.MESH_INJECTION_LABEL] == "enabled"
    assert labels["envprovisioner.io/cluster-name"] == "shared-cluster"


def test_owner_binding_targets_cluster_role(tenant):
    binding = objects.build_owner_binding("alpha-1", tenant, "admin")

    assert binding.metadata.name == "tenant-owner"
    assert binding.role_ref.kind == "ClusterRole"
    assert binding.role_ref.name == "admin"
    assert [subject.name for subject in binding.subjects] == ["alice@example.com"]


def test_label_value_truncates_and_trims():
    assert objects.label_value("-" + "a" * 70) == "a" * 62
    assert objects.label_value("x y") == "x-y"


def test_is_subset_ignores_server_defaults():
    desired = {"podSelector": {}, "policyTypes": ["Ingress"]}
    live = {"podSelector": {"matchLabels": None}, "policyTypes": ["Ingress"], "ingress": None}

    assert objects.is_subset(desired, live)
    assert not objects.is_subset({"policyTypes": ["Egress"]}, live)
    assert not objects.is_subset({"ingress": [{"from": []}]}, live)


def test_managed_selector(tenant):
    assert objects.managed_selector() == "app.kubernetes.io/managed-by=tenant-reconciler"
    assert objects.managed_selector(tenant) == (
        "app.kubernetes.io/managed-by=tenant-reconciler,envprovisioner.io/tenant-id=team-alpha"
    )


def test_reserved_namespaces():
    assert objects.is_reserved_namespace("kube-system")
    assert objects.is_reserved_namespace("kube-node-lease")
    assert objects.is_reserved_namespace("default", ["default", "istio-system"])
    assert not objects.is_reserved_namespace("default")
    assert not objects.is_reserved_namespace("env-5d7e2f10", ["default", "istio-system"])
