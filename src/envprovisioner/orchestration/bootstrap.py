"""Hands an environment's tenant declaration to the reconciler."""
from __future__ import annotations

import logging

from ..config import BootstrapConfig
from ..models.environment import Environment, NetworkPolicy
from ..models.tenant import Tenant, TenantResourceLimits
from ..services.tenant_store import TenantStore

LOGGER = logging.getLogger(__name__)


def namespace_for(environment: Environment) -> str:
    """Namespace for an environment: its cluster name, which is unique per environment id."""

    return environment.cluster_name


class ClusterBootstrapper:
    """Translate environments into tenant declarations and register them."""

    def __init__(self, config: BootstrapConfig, tenant_store: TenantStore) -> None:
        self._config = config
        self._tenant_store = tenant_store

    def tenant_for(self, environment: Environment) -> Tenant:
        limits = environment.resource_limits
        return Tenant(
            id=environment.id,
            name=environment.name,
            owner_id=environment.owner_id,
            namespaces=[namespace_for(environment)],
            resource_limits=TenantResourceLimits(
                cpu=limits.cpu,
                memory=limits.memory,
                storage=limits.storage,
                max_pods=self._config.max_pods,
                max_services=self._config.max_services,
                max_endpoints=self._config.max_endpoints,
            ),
            network_policy=environment.network_policy or NetworkPolicy(),
            service_mesh_enabled=bool(environment.service_mesh and environment.service_mesh.enabled),
        )

    def bootstrap(self, environment: Environment) -> Tenant:
        """Register (or refresh) the tenant declaration for ``environment``."""

        tenant = self.tenant_for(environment)
        existing = self._tenant_store.get(tenant.id)
        if existing is not None:
            # Namespaces added to the tenant out of band survive a re-bootstrap.
            extra = [name for name in existing.namespaces if name not in tenant.namespaces]
            tenant = tenant.model_copy(update={"namespaces": tenant.namespaces + extra})
        self._tenant_store.put(tenant)
        LOGGER.info(
            "Registered tenant declaration",
            extra={"environment_id": environment.id, "namespaces": tenant.namespaces},
        )
        return tenant

    def teardown(self, environment: Environment) -> None:
        self._tenant_store.delete(environment.id)
        LOGGER.info("Removed tenant declaration", extra={"environment_id": environment.id})


__all__ = ["ClusterBootstrapper", "namespace_for"]
