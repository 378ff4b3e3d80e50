"""Sequences infrastructure tool runs for one environment and validates their outputs."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..config import TerraformConfig
from ..errors import ExecutionError
from ..models.environment import Environment
from .executor import WorkspaceExecutor, WorkspaceHandle

LOGGER = logging.getLogger(__name__)


@dataclass
class ProvisioningResult:
    """Validated outputs of a successful apply."""

    handle: WorkspaceHandle
    kubeconfig: str
    console_url: str = ""
    outputs: Dict[str, Any] = field(default_factory=dict)


def _dump(model: Optional[Any]) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode="json") if model is not None else None


class ProvisioningOrchestrator:
    """Drive the workspace executor through create, update and teardown of a cluster."""

    def __init__(self, config: TerraformConfig, executor: WorkspaceExecutor) -> None:
        self._config = config
        self._executor = executor

    @property
    def module(self) -> str:
        return self._config.module

    def build_variables(self, environment: Environment) -> Dict[str, Any]:
        """Derive module variables from the environment record."""

        max_nodes = environment.resource_limits.max_node_count
        return {
            "cluster_name": environment.cluster_name,
            "region": self._config.region,
            "environment": self._config.environment_label,
            "instance_types": list(self._config.instance_types),
            "min_nodes": min(self._config.min_nodes, max_nodes),
            "max_nodes": max_nodes,
            "desired_nodes": min(self._config.desired_nodes, max_nodes),
            "kubernetes_version": self._config.kubernetes_version,
            "vpc_cidr": self._config.vpc_cidr,
            "resource_limits": _dump(environment.resource_limits),
            "network_policy": _dump(environment.network_policy),
            "service_mesh": _dump(environment.service_mesh),
            "monitoring": _dump(environment.monitoring),
            "gitops": _dump(environment.git_ops),
            "addons": list(environment.addons),
            "tags": dict(environment.tags),
        }

    def provision(self, environment: Environment) -> ProvisioningResult:
        """Apply the module for ``environment`` and return its validated outputs."""

        LOGGER.info(
            "Provisioning cluster",
            extra={"environment_id": environment.id, "cluster_name": environment.cluster_name},
        )
        handle = self._executor.apply(self.module, self.build_variables(environment), environment.id)
        outputs = self._executor.get_outputs(handle)
        return self._validate_outputs(handle, outputs)

    def update(self, environment: Environment) -> ProvisioningResult:
        """Re-apply the module with the environment's current declaration."""

        LOGGER.info("Updating cluster", extra={"environment_id": environment.id})
        return self.provision(environment)

    def teardown(self, environment: Environment) -> None:
        """Destroy the environment's infrastructure and drop its workspace."""

        LOGGER.info(
            "Destroying cluster",
            extra={"environment_id": environment.id, "cluster_name": environment.cluster_name},
        )
        handle = self._executor.handle_for(environment.id, self.module)
        self._executor.destroy(self.module, self.build_variables(environment), handle)
        self._executor.release(handle)

    @staticmethod
    def _validate_outputs(handle: WorkspaceHandle, outputs: Dict[str, Any]) -> ProvisioningResult:
        kubeconfig = outputs.get("kubeconfig")
        if not isinstance(kubeconfig, str) or not kubeconfig.strip():
            raise ExecutionError("kubeconfig output missing or empty", step="output")
        console_url = outputs.get("console_url")
        if not isinstance(console_url, str):
            console_url = ""
        return ProvisioningResult(handle=handle, kubeconfig=kubeconfig, console_url=console_url, outputs=outputs)


__all__ = ["ProvisioningOrchestrator", "ProvisioningResult"]
