"""Environment lifecycle state machine and its asynchronous workflows."""
from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as ModelValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import AppConfig
from ..errors import ConflictError, ExecutionError, NotFoundError, ProvisionerError, ValidationError
from ..events.models import LifecycleAction
from ..events.publisher import AuditEventPublisher, RabbitMQPublisher
from ..models.environment import (
    Environment,
    EnvironmentPatch,
    EnvironmentRequest,
    EnvironmentStatus,
    StatusHistoryEntry,
    is_transition_allowed,
    utcnow,
)
from ..models.status import EnvironmentStatusView, LiveStatus
from ..services.state_manager import EnvironmentStore
from ..services.status import StatusAggregator
from .bootstrap import ClusterBootstrapper
from .provisioner import ProvisioningOrchestrator

LOGGER = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

RETRY_HISTORY_STATUS = "RETRYING"


class EnvironmentLifecycleManager:
    """Accept lifecycle requests and drive their workflows to a terminal state.

    Requests are validated and persisted synchronously; the infrastructure
    work runs on a bounded worker pool. Each environment has at most one
    workflow in flight, enforced by a lease in the record store, and every
    record write is conditional on the version that was read.
    """

    CAS_ATTEMPTS = 3

    def __init__(
        self,
        config: AppConfig,
        store: EnvironmentStore,
        orchestrator: ProvisioningOrchestrator,
        bootstrapper: ClusterBootstrapper,
        status_aggregator: StatusAggregator,
        event_publisher: RabbitMQPublisher,
        audit_publisher: AuditEventPublisher,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._orchestrator = orchestrator
        self._bootstrapper = bootstrapper
        self._status_aggregator = status_aggregator
        self._event_publisher = event_publisher
        self._audit_publisher = audit_publisher
        self._pool = executor or ThreadPoolExecutor(
            max_workers=config.workflow.max_workers, thread_name_prefix="lifecycle"
        )
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create(self, request: Union[EnvironmentRequest, Dict[str, Any]]) -> Environment:
        """Persist a new environment in CREATING and launch its create workflow."""

        payload = self._validate(EnvironmentRequest, request)
        environment_id = str(uuid.uuid4())
        now = utcnow()
        environment = Environment(
            id=environment_id,
            cluster_name=Environment.cluster_name_for(environment_id),
            status=EnvironmentStatus.CREATING,
            status_message="Environment creation initiated",
            created_at=now,
            updated_at=now,
            **{name: getattr(payload, name) for name in EnvironmentRequest.model_fields},
        )
        token = self._acquire_lease(environment_id)
        try:
            stored = self._store.put(environment, expected_version=0)
        except ProvisionerError:
            self._release_lease(environment_id, token)
            raise
        LOGGER.info(
            "Environment creation accepted",
            extra={"environment_id": environment_id, "cluster_name": stored.cluster_name},
        )
        self._launch(stored, token, LifecycleAction.CREATE_ENVIRONMENT, self._run_create)
        return stored

    def get(self, environment_id: str) -> Environment:
        environment = self._store.get(environment_id)
        if environment is None or environment.is_deleted:
            raise NotFoundError(f"Environment {environment_id} not found")
        return environment

    def list(
        self, owner_id: Optional[str] = None, status: Optional[EnvironmentStatus] = None
    ) -> List[Environment]:
        return self._store.scan(owner_id=owner_id, status=status)

    def update(
        self, environment_id: str, patch: Union[EnvironmentPatch, Dict[str, Any]]
    ) -> Environment:
        """Merge the supplied fields, move to UPDATING and launch the update workflow."""

        changes = self._validate(EnvironmentPatch, patch).changes()
        current = self.get(environment_id)
        self._require_transition(current, EnvironmentStatus.UPDATING)
        token = self._acquire_lease(environment_id)
        try:
            merged = current.model_copy(
                update={
                    **changes,
                    "status": EnvironmentStatus.UPDATING,
                    "status_message": "Environment update initiated",
                    "updated_at": utcnow(),
                }
            )
            stored = self._store.put(merged, expected_version=current.version)
        except ProvisionerError:
            self._release_lease(environment_id, token)
            raise
        LOGGER.info(
            "Environment update accepted",
            extra={"environment_id": environment_id, "fields": sorted(changes)},
        )
        self._launch(stored, token, LifecycleAction.UPDATE_ENVIRONMENT, self._run_update)
        return stored

    def delete(self, environment_id: str) -> None:
        """Soft-delete the record and launch teardown of its infrastructure."""

        current = self.get(environment_id)
        self._require_transition(current, EnvironmentStatus.DELETING)
        token = self._acquire_lease(environment_id)
        try:
            now = utcnow()
            deleting = current.model_copy(
                update={
                    "status": EnvironmentStatus.DELETING,
                    "status_message": "Environment deletion initiated",
                    "deleted_at": now,
                    "updated_at": now,
                }
            )
            stored = self._store.put(deleting, expected_version=current.version)
        except ProvisionerError:
            self._release_lease(environment_id, token)
            raise
        LOGGER.info("Environment deletion accepted", extra={"environment_id": environment_id})
        self._launch(stored, token, LifecycleAction.DELETE_ENVIRONMENT, self._run_delete)

    def get_status(self, environment_id: str) -> EnvironmentStatusView:
        """Merge the persisted status with live cluster data. Never writes."""

        environment = self.get(environment_id)
        view = {"status": environment.status, "status_message": environment.status_message}
        kubeconfig = self._store.get_credential(environment.credential_ref) if environment.credential_ref else None
        if not kubeconfig:
            return EnvironmentStatusView(**view)
        try:
            live = self._status_aggregator.collect(environment, kubeconfig)
        except ExecutionError as exc:
            LOGGER.warning(
                "Live status unavailable", extra={"environment_id": environment_id, "error": str(exc)}
            )
            return EnvironmentStatusView(**view, health_checks={"api-server": "Unreachable"})
        node_count = live.resource_utilization.node_count
        ratio = round(node_count / environment.resource_limits.max_node_count, 2)
        return EnvironmentStatusView(
            **view,
            **{name: getattr(live, name) for name in LiveStatus.model_fields},
            resource_allocation_ratio=ratio,
        )

    def history(self, environment_id: str) -> List[StatusHistoryEntry]:
        self.get(environment_id)
        return self._store.get_history(environment_id)

    def wait(self, environment_id: str, timeout: Optional[float] = None) -> None:
        """Block until the in-flight workflow for ``environment_id`` (if any) finishes."""

        with self._futures_lock:
            future = self._futures.get(environment_id)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------
    def _run_create(self, environment: Environment) -> None:
        action = LifecycleAction.CREATE_ENVIRONMENT
        environment = self._transition(environment, EnvironmentStatus.PROVISIONING, "Provisioning resources")
        try:
            result = self._with_retries(environment, "apply", lambda: self._orchestrator.provision(environment))
        except Exception as exc:
            if isinstance(exc, ExecutionError) and exc.step == "output":
                message = f"Failed to get provisioning outputs: {exc}"
            else:
                message = f"Failed to provision resources: {exc}"
            self._fail(environment, action, message, exc, stage="apply")
            return
        credential_ref = self._store.set_credential(environment.id, result.kubeconfig)
        environment = environment.model_copy(
            update={"credential_ref": credential_ref, "console_url": result.console_url}
        )
        if not self._bootstrap(environment, action):
            return
        environment = self._transition(environment, EnvironmentStatus.ACTIVE, "Environment provisioned successfully")
        self._publish_audit_event(
            environment.id,
            action.value,
            "SUCCESS",
            {"clusterName": environment.cluster_name, "consoleUrl": environment.console_url or None},
        )

    def _run_update(self, environment: Environment) -> None:
        action = LifecycleAction.UPDATE_ENVIRONMENT
        try:
            result = self._with_retries(environment, "apply", lambda: self._orchestrator.update(environment))
        except Exception as exc:
            self._fail(environment, action, f"Failed to update resources: {exc}", exc, stage="apply")
            return
        credential_ref = self._store.set_credential(environment.id, result.kubeconfig)
        changes: Dict[str, Any] = {"credential_ref": credential_ref}
        if result.console_url:
            changes["console_url"] = result.console_url
        environment = environment.model_copy(update=changes)
        if not self._bootstrap(environment, action):
            return
        environment = self._transition(environment, EnvironmentStatus.ACTIVE, "Environment updated successfully")
        self._publish_audit_event(
            environment.id, action.value, "SUCCESS", {"clusterName": environment.cluster_name}
        )

    def _run_delete(self, environment: Environment) -> None:
        action = LifecycleAction.DELETE_ENVIRONMENT
        try:
            self._with_retries(environment, "destroy", lambda: self._orchestrator.teardown(environment))
        except Exception as exc:
            self._fail(environment, action, f"Failed to delete resources: {exc}", exc, stage="destroy")
            return
        try:
            self._bootstrapper.teardown(environment)
            self._store.delete_credential(environment.id)
        except ProvisionerError as exc:
            self._fail(environment, action, f"Failed to clean up environment: {exc}", exc, stage="cleanup")
            return
        environment = self._transition(
            environment, EnvironmentStatus.DELETED, "Environment deleted successfully", credential_ref=None
        )
        self._publish_audit_event(
            environment.id, action.value, "SUCCESS", {"clusterName": environment.cluster_name}
        )

    def _bootstrap(self, environment: Environment, action: LifecycleAction) -> bool:
        try:
            self._with_retries(environment, "bootstrap", lambda: self._bootstrapper.bootstrap(environment))
        except Exception as exc:
            self._fail(
                environment, action, f"Failed to configure Kubernetes resources: {exc}", exc, stage="bootstrap"
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _validate(model: Type[ModelT], payload: Union[ModelT, Dict[str, Any]]) -> ModelT:
        if isinstance(payload, model):
            return payload
        try:
            return model.model_validate(payload)
        except ModelValidationError as exc:
            raise ValidationError(str(exc)) from exc

    @staticmethod
    def _require_transition(environment: Environment, target: EnvironmentStatus) -> None:
        if not is_transition_allowed(environment.status, target):
            raise ConflictError(
                f"Environment {environment.id} is {environment.status.value} and cannot move to {target.value}"
            )

    def _acquire_lease(self, environment_id: str) -> str:
        token = self._store.acquire_lease(environment_id)
        if token is None:
            raise ConflictError(f"A workflow is already running for environment {environment_id}")
        return token

    def _release_lease(self, environment_id: str, token: str) -> None:
        try:
            self._store.release_lease(environment_id, token)
        except ProvisionerError:
            LOGGER.exception("Failed to release workflow lease", extra={"environment_id": environment_id})

    def _launch(
        self,
        environment: Environment,
        token: str,
        action: LifecycleAction,
        workflow: Callable[[Environment], None],
    ) -> None:
        def _run() -> None:
            try:
                workflow(environment)
            except Exception as exc:
                LOGGER.exception(
                    "Workflow aborted", extra={"environment_id": environment.id, "action": action.value}
                )
                self._fail(environment, action, f"Workflow aborted: {exc}", exc, stage="workflow")
            finally:
                self._release_lease(environment.id, token)

        try:
            future = self._pool.submit(_run)
        except RuntimeError as exc:
            self._fail(environment, action, f"Failed to schedule workflow: {exc}", exc, stage="schedule")
            self._release_lease(environment.id, token)
            raise ProvisionerError(f"Workflow pool unavailable: {exc}") from exc
        with self._futures_lock:
            self._futures[environment.id] = future
        future.add_done_callback(lambda done: self._forget(environment.id, done))

    def _forget(self, environment_id: str, future: Future) -> None:
        with self._futures_lock:
            if self._futures.get(environment_id) is future:
                del self._futures[environment_id]

    def _transition(
        self, environment: Environment, target: EnvironmentStatus, message: str, **changes: Any
    ) -> Environment:
        """Persist ``target`` with a conditional write, re-reading on a lost race."""

        current = environment
        for _ in range(self.CAS_ATTEMPTS):
            self._require_transition(current, target)
            updated = current.model_copy(
                update={"status": target, "status_message": message, "updated_at": utcnow(), **changes}
            )
            try:
                return self._store.put(updated, expected_version=current.version)
            except ConflictError:
                LOGGER.warning(
                    "Conditional write lost a race; re-reading",
                    extra={"environment_id": current.id, "target_status": target.value},
                )
                reloaded = self._store.get(current.id)
                if reloaded is None:
                    raise NotFoundError(f"Environment {current.id} disappeared during workflow")
                current = reloaded
        raise ConflictError(f"Environment {environment.id} kept changing while moving to {target.value}")

    def _with_retries(self, environment: Environment, step: str, func: Callable[[], Any]) -> Any:
        workflow = self._config.workflow

        def _record_retry(retry_state) -> None:
            error = retry_state.outcome.exception()
            message = f"Retrying {step} after attempt {retry_state.attempt_number} failed: {error}"
            LOGGER.warning(message, extra={"environment_id": environment.id, "step": step})
            try:
                self._store.append_history(environment.id, RETRY_HISTORY_STATUS, message)
            except ProvisionerError:
                LOGGER.exception("Failed to record retry", extra={"environment_id": environment.id})

        @retry(
            stop=stop_after_attempt(workflow.max_attempts),
            wait=wait_exponential(multiplier=workflow.backoff_initial_seconds, max=workflow.backoff_max_seconds),
            retry=retry_if_exception_type(ExecutionError),
            before_sleep=_record_retry,
            reraise=True,
        )
        def _attempt() -> Any:
            return func()

        return _attempt()

    def _fail(
        self,
        environment: Environment,
        action: LifecycleAction,
        message: str,
        error: Exception,
        *,
        stage: str,
    ) -> None:
        LOGGER.error(
            "Environment workflow failed",
            extra={"environment_id": environment.id, "action": action.value, "stage": stage, "error": str(error)},
        )
        try:
            self._transition(environment, EnvironmentStatus.ERROR, message)
        except ProvisionerError:
            LOGGER.exception("Failed to record workflow failure", extra={"environment_id": environment.id})
        failure_payload: Dict[str, Any] = {
            "environmentId": environment.id,
            "action": action.value,
            "status": EnvironmentStatus.ERROR.value,
            "clusterName": environment.cluster_name,
            "error": {"message": str(error), "type": error.__class__.__name__},
            "details": {"stage": stage},
        }
        self._publish_event(action.failure_routing_key, failure_payload)
        self._publish_audit_event(
            environment.id,
            action.value,
            "FAILURE",
            {"clusterName": environment.cluster_name, "error": str(error), "stage": stage},
        )

    def _publish_event(self, routing_key: str, payload: Dict[str, Any]) -> None:
        if self._config.disable_events:
            LOGGER.info("Event publishing disabled", extra={"routing_key": routing_key, "payload": payload})
            return
        try:
            self._event_publisher.publish(routing_key, payload)
        except Exception:
            LOGGER.exception(
                "Failed to publish environment event",
                extra={"routing_key": routing_key, "environment_id": payload.get("environmentId")},
            )

    def _publish_audit_event(
        self, environment_id: str, action: str, outcome: str, details: Dict[str, Any]
    ) -> None:
        filtered_details = {key: value for key, value in details.items() if value is not None}
        if self._config.disable_events:
            LOGGER.info(
                "Audit publishing disabled",
                extra={"environment_id": environment_id, "action": action, "outcome": outcome},
            )
            return
        self._audit_publisher.publish(environment_id, action, outcome, filtered_details)


__all__ = ["EnvironmentLifecycleManager"]
