from __future__ import annotations

import pytest

from envprovisioner.config import BootstrapConfig
from envprovisioner.models.environment import Environment, NetworkPolicy, ResourceLimits, ServiceMeshConfig
from envprovisioner.orchestration.bootstrap import ClusterBootstrapper, namespace_for


@pytest.fixture
def environment() -> Environment:
    environment_id = "5d7e2f10-0000-4000-8000-000000000000"
    return Environment(
        id=environment_id,
        name="Dev Env_01",
        template_id="tmpl",
        owner_id="alice",
        resource_limits=ResourceLimits(
            cpu="2", memory="4Gi", storage="20Gi", max_node_count=3, max_namespaces=5, max_load_balancers=1
        ),
        network_policy=NetworkPolicy(default_deny_egress=True),
        service_mesh=ServiceMeshConfig(enabled=True),
        cluster_name=Environment.cluster_name_for(environment_id),
    )


def test_namespace_follows_cluster_name(environment):
    assert namespace_for(environment) == "env-5d7e2f10"
    assert namespace_for(environment.model_copy(update={"name": "kube-system"})) == "env-5d7e2f10"


def test_tenant_for_maps_environment_limits(tenant_store, environment):
    bootstrapper = ClusterBootstrapper(BootstrapConfig(max_pods=40, max_services=5, max_endpoints=0), tenant_store)

    tenant = bootstrapper.tenant_for(environment)

    assert tenant.id == environment.id
    assert tenant.namespaces == ["env-5d7e2f10"]
    assert tenant.resource_limits.cpu == "2"
    assert tenant.resource_limits.max_pods == 40
    assert tenant.resource_limits.max_endpoints == 0
    assert tenant.network_policy.default_deny_egress is True
    assert tenant.service_mesh_enabled is True


def test_bootstrap_preserves_out_of_band_namespaces(tenant_store, environment):
    bootstrapper = ClusterBootstrapper(BootstrapConfig(), tenant_store)
    first = bootstrapper.bootstrap(environment)
    tenant_store.put(first.model_copy(update={"namespaces": first.namespaces + ["dev-extra"]}))

    refreshed = bootstrapper.bootstrap(environment.model_copy(update={"owner_id": "bob"}))

    assert refreshed.namespaces == ["env-5d7e2f10", "dev-extra"]
    assert tenant_store.get(environment.id).owner_id == "bob"


def test_teardown_removes_declaration(tenant_store, environment):
    bootstrapper = ClusterBootstrapper(BootstrapConfig(), tenant_store)
    bootstrapper.bootstrap(environment)

    bootstrapper.teardown(environment)

    assert tenant_store.get(environment.id) is None
