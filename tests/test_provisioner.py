from __future__ import annotations

from typing import Any, Dict, List

import pytest

from envprovisioner.config import TerraformConfig
from envprovisioner.errors import ExecutionError
from envprovisioner.models.environment import Environment, ResourceLimits, ServiceMeshConfig
from envprovisioner.orchestration.executor import WorkspaceHandle
from envprovisioner.orchestration.provisioner import ProvisioningOrchestrator


class FakeExecutor:
    def __init__(self, outputs: Dict[str, Any]) -> None:
        self.outputs = outputs
        self.calls: List[tuple] = []

    def handle_for(self, environment_id, module):
        return WorkspaceHandle(environment_id=environment_id, module=module, path=f"/state/{module}/{environment_id}")

    def apply(self, module, variables, environment_id):
        self.calls.append(("apply", module, variables))
        return self.handle_for(environment_id, module)

    def get_outputs(self, handle):
        self.calls.append(("output", handle.environment_id))
        return self.outputs

    def destroy(self, module, variables, handle):
        self.calls.append(("destroy", module, handle.environment_id))

    def release(self, handle):
        self.calls.append(("release", handle.environment_id))


@pytest.fixture
def environment() -> Environment:
    environment_id = "9b2c1e7a-0000-4000-8000-000000000000"
    return Environment(
        id=environment_id,
        name="dev-env",
        template_id="tmpl",
        owner_id="alice",
        resource_limits=ResourceLimits(
            cpu="2", memory="4Gi", storage="20Gi", max_node_count=1, max_namespaces=5, max_load_balancers=1
        ),
        service_mesh=ServiceMeshConfig(enabled=True, mtls_mode="STRICT"),
        addons=["cert-manager"],
        tags={"team": "platform"},
        cluster_name=Environment.cluster_name_for(environment_id),
    )


def test_build_variables_caps_node_sizing(environment):
    orchestrator = ProvisioningOrchestrator(TerraformConfig(min_nodes=2, desired_nodes=3), FakeExecutor({}))

    variables = orchestrator.build_variables(environment)

    assert variables["cluster_name"] == "env-9b2c1e7a"
    assert variables["max_nodes"] == 1
    assert variables["min_nodes"] == 1
    assert variables["desired_nodes"] == 1
    assert variables["region"] == "us-west-2"
    assert variables["resource_limits"]["max_node_count"] == 1
    assert variables["service_mesh"]["enabled"] is True
    assert variables["network_policy"] is None
    assert variables["addons"] == ["cert-manager"]
    assert variables["tags"] == {"team": "platform"}


def test_provision_returns_validated_outputs(environment):
    executor = FakeExecutor({"kubeconfig": "apiVersion: v1", "console_url": "https://console"})
    orchestrator = ProvisioningOrchestrator(TerraformConfig(), executor)

    result = orchestrator.provision(environment)

    assert result.kubeconfig == "apiVersion: v1"
    assert result.console_url == "https://console"
    assert result.handle.environment_id == environment.id
    assert [call[0] for call in executor.calls] == ["apply", "output"]


@pytest.mark.parametrize("outputs", [{}, {"kubeconfig": ""}, {"kubeconfig": 42}])
def test_provision_requires_kubeconfig(environment, outputs):
    orchestrator = ProvisioningOrchestrator(TerraformConfig(), FakeExecutor(outputs))

    with pytest.raises(ExecutionError) as excinfo:
        orchestrator.provision(environment)

    assert excinfo.value.step == "output"


def test_console_url_is_optional(environment):
    orchestrator = ProvisioningOrchestrator(TerraformConfig(), FakeExecutor({"kubeconfig": "k", "console_url": None}))

    assert orchestrator.update(environment).console_url == ""


def test_teardown_destroys_and_releases(environment):
    executor = FakeExecutor({})
    orchestrator = ProvisioningOrchestrator(TerraformConfig(module="aws"), executor)

    orchestrator.teardown(environment)

    assert executor.calls == [("destroy", "aws", environment.id), ("release", environment.id)]
