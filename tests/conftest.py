from __future__ import annotations

import stat
import sys
from typing import Any, Dict, List, Optional, Tuple

import fakeredis
import pytest

from envprovisioner.config import AppConfig, ReconcilerConfig, TerraformConfig, WorkflowConfig
from envprovisioner.events.publisher import AuditEventPublisher
from envprovisioner.models.environment import Environment
from envprovisioner.models.status import LiveStatus, ResourceUsage
from envprovisioner.orchestration.bootstrap import ClusterBootstrapper
from envprovisioner.orchestration.executor import WorkspaceExecutor
from envprovisioner.orchestration.lifecycle import EnvironmentLifecycleManager
from envprovisioner.orchestration.provisioner import ProvisioningOrchestrator
from envprovisioner.services.state_manager import EnvironmentStore
from envprovisioner.services.status import StatusAggregator
from envprovisioner.services.tenant_store import TenantStore

# Stands in for the terraform CLI. Outputs are derived from the variables file
# written into the workspace, so each workspace reports its own cluster.
FAKE_TERRAFORM = """#!{python}
import json
import os
import sys
import time

command = sys.argv[1]
with open("calls.log", "a") as log:
    log.write(" ".join(sys.argv[1:]) + "\\n")

delay = float(os.environ.get("FAKE_TF_SLEEP", "0"))
if delay and command in ("apply", "destroy"):
    time.sleep(delay)

if os.environ.get("FAKE_TF_FAIL") == command:
    sys.stderr.write("Error: quota exceeded for " + command + "\\n")
    sys.exit(1)

if os.environ.get("FAKE_TF_FAIL_ONCE") == command and not os.path.exists(command + ".failed"):
    open(command + ".failed", "w").close()
    sys.stderr.write("Error: transient failure\\n")
    sys.exit(1)

if command == "apply":
    with open("terraform.tfvars.json") as handle:
        variables = json.load(handle)
    cluster = variables["cluster_name"]
    outputs = {{
        "cluster_name": {{"value": cluster, "type": "string"}},
        "console_url": {{"value": "https://console.example.com/" + cluster, "type": "string"}},
        "max_nodes": {{"value": variables["max_nodes"], "type": "number"}},
    }}
    if not os.environ.get("FAKE_TF_NO_KUBECONFIG"):
        outputs["kubeconfig"] = {{"value": "apiVersion: v1\\nkind: Config\\ncurrent-context: " + cluster + "\\n"}}
    with open("state.json", "w") as handle:
        json.dump(outputs, handle)
elif command == "output":
    if os.path.exists("state.json"):
        with open("state.json") as handle:
            sys.stdout.write(handle.read())
    else:
        sys.stdout.write("{{}}")
elif command == "destroy":
    if os.path.exists("state.json"):
        os.remove("state.json")
sys.exit(0)
"""


class RecordingPublisher:
    """Captures published messages instead of talking to RabbitMQ."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, routing_key: str, payload: Dict[str, Any], headers: Optional[Dict[str, Any]] = None) -> None:
        self.messages.append((routing_key, payload))

    def routing_keys(self) -> List[str]:
        return [routing_key for routing_key, _ in self.messages]

    def audit_outcomes(self) -> List[Tuple[str, str]]:
        return [
            (payload["action"], payload["outcome"])
            for routing_key, payload in self.messages
            if routing_key == "audit.environment.event"
        ]


class StubStatusAggregator(StatusAggregator):
    def __init__(self, live: Optional[LiveStatus] = None, error: Optional[Exception] = None) -> None:
        self.live = live or LiveStatus(resource_utilization=ResourceUsage(node_count=2, pod_count=12))
        self.error = error
        self.calls: List[str] = []

    def collect(self, environment: Environment, kubeconfig: str) -> LiveStatus:
        self.calls.append(environment.id)
        if self.error is not None:
            raise self.error
        return self.live


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def fake_terraform(tmp_path):
    path = tmp_path / "bin" / "terraform"
    path.parent.mkdir()
    path.write_text(FAKE_TERRAFORM.format(python=sys.executable), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def settings(tmp_path, fake_terraform) -> AppConfig:
    modules = tmp_path / "modules"
    (modules / "aws").mkdir(parents=True)
    return AppConfig(
        terraform=TerraformConfig(
            binary=str(fake_terraform),
            modules_path=str(modules),
            state_path=str(tmp_path / "state"),
            command_timeout_seconds=30,
        ),
        workflow=WorkflowConfig(max_workers=4, max_attempts=1, backoff_initial_seconds=0, backoff_max_seconds=0),
        reconciler=ReconcilerConfig(enabled=False),
    )


@pytest.fixture
def store(redis_client) -> EnvironmentStore:
    return EnvironmentStore(redis_client, lease_ttl_seconds=60)


@pytest.fixture
def tenant_store(redis_client) -> TenantStore:
    return TenantStore(redis_client)


@pytest.fixture
def executor(settings) -> WorkspaceExecutor:
    return WorkspaceExecutor(settings.terraform)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def aggregator() -> StubStatusAggregator:
    return StubStatusAggregator()


@pytest.fixture
def lifecycle(settings, store, tenant_store, executor, publisher, aggregator):
    manager = EnvironmentLifecycleManager(
        settings,
        store,
        ProvisioningOrchestrator(settings.terraform, executor),
        ClusterBootstrapper(settings.bootstrap, tenant_store),
        aggregator,
        publisher,
        AuditEventPublisher(publisher),
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def dev_env_request() -> Dict[str, Any]:
    return {
        "name": "dev-env",
        "description": "Development sandbox",
        "templateId": "tmpl-basic",
        "ownerId": "alice",
        "resourceLimits": {
            "cpu": "2",
            "memory": "4Gi",
            "storage": "20Gi",
            "maxNodeCount": 3,
            "maxNamespaces": 5,
            "maxLoadBalancers": 1,
        },
        "networkPolicy": {"defaultDenyIngress": True, "allowIngressFromCIDR": ["10.0.0.0/8"]},
        "addons": ["ingress-nginx", "ingress-nginx", "cert-manager"],
        "tags": {"team": "platform"},
    }

