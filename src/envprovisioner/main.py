"""Application entrypoint for the Environment Provisioner."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis
from fastapi import FastAPI, HTTPException, status
from kubernetes.config import ConfigException
from redis.exceptions import RedisError

from .api.routes import router as api_router
from .config import AppConfig, get_settings
from .events.publisher import AuditEventPublisher, RabbitMQPublisher
from .orchestration.bootstrap import ClusterBootstrapper
from .orchestration.executor import WorkspaceExecutor
from .orchestration.lifecycle import EnvironmentLifecycleManager
from .orchestration.provisioner import ProvisioningOrchestrator
from .services.state_manager import EnvironmentStore
from .services.status import KubernetesStatusAggregator
from .services.tenant_store import TenantStore
from .tenancy.reconciler import TenantReconciler

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: AppConfig = app.state.settings
    lifecycle_manager: EnvironmentLifecycleManager = app.state.lifecycle_manager
    redis_client = app.state.redis
    LOGGER.info("Starting Environment Provisioner", extra={"service": settings.service_name})
    reconciler: Optional[TenantReconciler] = app.state.reconciler
    if reconciler is None and settings.reconciler.enabled:
        try:
            reconciler = TenantReconciler.from_config(settings.reconciler, app.state.tenant_store)
        except ConfigException as exc:
            LOGGER.error("Tenant reconciler disabled: no cluster configuration", extra={"error": str(exc)})
        app.state.reconciler = reconciler
    if reconciler is not None:
        reconciler.start()
    yield
    LOGGER.info("Shutting down Environment Provisioner")
    if reconciler is not None:
        reconciler.stop()
    lifecycle_manager.shutdown()
    redis_client.close()


def create_app(settings: Optional[AppConfig] = None, redis_client: Optional[redis.Redis] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    logging.basicConfig(level=settings.logging.level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    if redis_client is None:
        redis_client = redis.from_url(settings.redis.url, decode_responses=settings.redis.decode_responses)
    store = EnvironmentStore(redis_client, lease_ttl_seconds=settings.redis.lease_ttl_seconds)
    tenant_store = TenantStore(redis_client)
    executor = WorkspaceExecutor(settings.terraform)
    orchestrator = ProvisioningOrchestrator(settings.terraform, executor)
    bootstrapper = ClusterBootstrapper(settings.bootstrap, tenant_store)
    status_aggregator = KubernetesStatusAggregator(settings.reconciler.request_timeout_seconds)
    event_publisher = RabbitMQPublisher(settings)
    audit_publisher = AuditEventPublisher(event_publisher)
    lifecycle_manager = EnvironmentLifecycleManager(
        settings,
        store,
        orchestrator,
        bootstrapper,
        status_aggregator,
        event_publisher,
        audit_publisher,
    )

    app = FastAPI(
        title="Environment Provisioner",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    def health() -> dict:
        try:
            redis_client.ping()
        except RedisError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return {"status": "ok", "service": settings.service_name}

    app.state.settings = settings
    app.state.redis = redis_client
    app.state.store = store
    app.state.tenant_store = tenant_store
    app.state.lifecycle_manager = lifecycle_manager
    app.state.event_publisher = event_publisher
    app.state.audit_publisher = audit_publisher
    app.state.reconciler = None

    return app


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("envprovisioner.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)
