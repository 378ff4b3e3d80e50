"""Redis-backed environment record store."""
from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import ValidationError as ModelValidationError
from redis import Redis
from redis.exceptions import RedisError, WatchError

from ..errors import ConflictError, PersistenceError
from ..models.environment import Environment, EnvironmentStatus, StatusHistoryEntry

LOGGER = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class EnvironmentStore:
    """Persist and retrieve environment records using Redis.

    Every write is a compare-and-swap on the record's ``version`` field,
    implemented with ``WATCH``/``MULTI``/``EXEC``. A write whose expected
    version no longer matches the stored one raises :class:`ConflictError`.
    """

    RECORD_KEY_TEMPLATE = "env:{environment_id}:record"
    HISTORY_KEY_TEMPLATE = "env:{environment_id}:history"
    CREDENTIAL_KEY_TEMPLATE = "env:{environment_id}:credential"
    LEASE_KEY_TEMPLATE = "env:{environment_id}:lease"

    def __init__(self, redis_client: Redis, lease_ttl_seconds: int = 3600) -> None:
        self._redis = redis_client
        self._lease_ttl_ms = lease_ttl_seconds * 1000

    @staticmethod
    def _record_key(environment_id: str) -> str:
        return EnvironmentStore.RECORD_KEY_TEMPLATE.format(environment_id=environment_id)

    @staticmethod
    def _history_key(environment_id: str) -> str:
        return EnvironmentStore.HISTORY_KEY_TEMPLATE.format(environment_id=environment_id)

    @staticmethod
    def _credential_key(environment_id: str) -> str:
        return EnvironmentStore.CREDENTIAL_KEY_TEMPLATE.format(environment_id=environment_id)

    @staticmethod
    def _lease_key(environment_id: str) -> str:
        return EnvironmentStore.LEASE_KEY_TEMPLATE.format(environment_id=environment_id)

    @staticmethod
    def _decode(raw: Any) -> Optional[Environment]:
        if not raw:
            return None
        try:
            return Environment.model_validate_json(raw)
        except ModelValidationError:
            LOGGER.warning("Stored environment record is invalid", extra={"payload": raw})
            return None

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def get(self, environment_id: str) -> Optional[Environment]:
        """Return the stored record, soft-deleted or not."""

        try:
            raw = self._redis.get(self._record_key(environment_id))
        except RedisError as exc:
            raise PersistenceError(f"Failed to read environment {environment_id}: {exc}") from exc
        environment = self._decode(raw)
        LOGGER.debug(
            "Fetched environment record",
            extra={"environment_id": environment_id, "found": environment is not None},
        )
        return environment

    def put(self, environment: Environment, expected_version: int) -> Environment:
        """Write ``environment`` if the stored version equals ``expected_version``.

        ``expected_version`` is 0 for a record that must not exist yet. The
        returned copy carries the new version.
        """

        key = self._record_key(environment.id)
        try:
            with self._redis.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    previous = self._decode(pipe.get(key))
                    stored_version = previous.version if previous else 0
                    if stored_version != expected_version:
                        raise ConflictError(
                            f"Environment {environment.id} changed concurrently "
                            f"(expected version {expected_version}, found {stored_version})"
                        )
                    updated = environment.model_copy(update={"version": expected_version + 1})
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    if previous is None or (
                        previous.status != updated.status or previous.status_message != updated.status_message
                    ):
                        pipe.lpush(
                            self._history_key(environment.id),
                            self._history_entry(updated.status.value, updated.status_message),
                        )
                    pipe.execute()
                except WatchError as exc:
                    raise ConflictError(f"Environment {environment.id} changed concurrently") from exc
        except RedisError as exc:
            raise PersistenceError(f"Failed to persist environment {environment.id}: {exc}") from exc
        LOGGER.debug(
            "Persisted environment record",
            extra={"environment_id": updated.id, "status": updated.status.value, "version": updated.version},
        )
        return updated

    def scan(
        self,
        owner_id: Optional[str] = None,
        status: Optional[EnvironmentStatus] = None,
        include_deleted: bool = False,
    ) -> List[Environment]:
        """Return records matching the filters, oldest first."""

        pattern = self.RECORD_KEY_TEMPLATE.format(environment_id="*")
        results: List[Environment] = []
        try:
            for key in self._redis.scan_iter(pattern):
                environment = self._decode(self._redis.get(key))
                if environment is None:
                    continue
                if not include_deleted and environment.is_deleted:
                    continue
                if owner_id is not None and environment.owner_id != owner_id:
                    continue
                if status is not None and environment.status != status:
                    continue
                results.append(environment)
        except RedisError as exc:
            raise PersistenceError(f"Failed to scan environments: {exc}") from exc
        results.sort(key=lambda item: item.created_at)
        return results

    # ------------------------------------------------------------------
    # Status history
    # ------------------------------------------------------------------
    @staticmethod
    def _history_entry(status: str, message: str) -> str:
        return json.dumps(
            {"status": status, "message": message, "timestamp": datetime.now(timezone.utc).isoformat()}
        )

    def append_history(self, environment_id: str, status: str, message: str) -> None:
        """Record a note that does not change the stored record (e.g. a retried step)."""

        try:
            self._redis.lpush(self._history_key(environment_id), self._history_entry(status, message))
        except RedisError as exc:
            raise PersistenceError(f"Failed to append history for {environment_id}: {exc}") from exc

    def get_history(self, environment_id: str) -> List[StatusHistoryEntry]:
        """Return status history, newest first."""

        try:
            raw_entries = self._redis.lrange(self._history_key(environment_id), 0, -1)
        except RedisError as exc:
            raise PersistenceError(f"Failed to read history for {environment_id}: {exc}") from exc
        entries = []
        for raw in raw_entries:
            try:
                entries.append(StatusHistoryEntry.model_validate(json.loads(raw)))
            except (json.JSONDecodeError, ModelValidationError):
                LOGGER.warning("Stored history entry is invalid", extra={"environment_id": environment_id})
        return entries

    # ------------------------------------------------------------------
    # Cluster credentials
    # ------------------------------------------------------------------
    def set_credential(self, environment_id: str, kubeconfig: str) -> str:
        """Store cluster-access material and return the opaque reference to it."""

        key = self._credential_key(environment_id)
        LOGGER.debug("Saving cluster credential", extra={"environment_id": environment_id})
        try:
            self._redis.set(key, kubeconfig)
        except RedisError as exc:
            raise PersistenceError(f"Failed to store credential for {environment_id}: {exc}") from exc
        return key

    def get_credential(self, reference: str) -> Optional[str]:
        if not reference.startswith("env:") or not reference.endswith(":credential"):
            LOGGER.warning("Ignoring unknown credential reference", extra={"reference": reference})
            return None
        try:
            return _text(self._redis.get(reference))
        except RedisError as exc:
            raise PersistenceError(f"Failed to read credential {reference}: {exc}") from exc

    def delete_credential(self, environment_id: str) -> None:
        try:
            self._redis.delete(self._credential_key(environment_id))
        except RedisError as exc:
            raise PersistenceError(f"Failed to delete credential for {environment_id}: {exc}") from exc

    # ------------------------------------------------------------------
    # Workflow leases
    # ------------------------------------------------------------------
    def acquire_lease(self, environment_id: str) -> Optional[str]:
        """Take the exclusive workflow lease for an environment.

        Returns the lease token, or ``None`` when another workflow holds it.
        """

        token = secrets.token_hex(16)
        try:
            acquired = self._redis.set(self._lease_key(environment_id), token, nx=True, px=self._lease_ttl_ms)
        except RedisError as exc:
            raise PersistenceError(f"Failed to acquire lease for {environment_id}: {exc}") from exc
        if not acquired:
            LOGGER.debug("Lease busy", extra={"environment_id": environment_id})
            return None
        return token

    def release_lease(self, environment_id: str, token: str) -> bool:
        """Release the lease if ``token`` still owns it."""

        key = self._lease_key(environment_id)
        try:
            with self._redis.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    if _text(pipe.get(key)) != token:
                        pipe.unwatch()
                        LOGGER.warning("Lease no longer owned", extra={"environment_id": environment_id})
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    pipe.execute()
                except WatchError:
                    LOGGER.warning("Lease changed while releasing", extra={"environment_id": environment_id})
                    return False
        except RedisError as exc:
            raise PersistenceError(f"Failed to release lease for {environment_id}: {exc}") from exc
        return True

    def lease_holder(self, environment_id: str) -> Optional[str]:
        try:
            return _text(self._redis.get(self._lease_key(environment_id)))
        except RedisError as exc:
            raise PersistenceError(f"Failed to read lease for {environment_id}: {exc}") from exc


__all__ = ["EnvironmentStore"]
