"""Redis-backed store of tenant declarations consumed by the reconciler."""
from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError as ModelValidationError
from redis import Redis
from redis.exceptions import RedisError

from ..errors import PersistenceError
from ..models.tenant import Tenant

LOGGER = logging.getLogger(__name__)


class TenantStore:
    """Persist and retrieve tenant declarations."""

    TENANT_KEY_TEMPLATE = "tenant:{tenant_id}"

    def __init__(self, redis_client: Redis) -> None:
        self._redis = redis_client

    @staticmethod
    def _tenant_key(tenant_id: str) -> str:
        return TenantStore.TENANT_KEY_TEMPLATE.format(tenant_id=tenant_id)

    @staticmethod
    def _decode(raw: Any) -> Optional[Tenant]:
        if not raw:
            return None
        try:
            return Tenant.model_validate_json(raw)
        except ModelValidationError:
            LOGGER.warning("Stored tenant declaration is invalid", extra={"payload": raw})
            return None

    def put(self, tenant: Tenant) -> None:
        LOGGER.debug("Persisting tenant declaration", extra={"tenant_id": tenant.id})
        try:
            self._redis.set(self._tenant_key(tenant.id), tenant.model_dump_json())
        except RedisError as exc:
            raise PersistenceError(f"Failed to persist tenant {tenant.id}: {exc}") from exc

    def get(self, tenant_id: str) -> Optional[Tenant]:
        try:
            raw = self._redis.get(self._tenant_key(tenant_id))
        except RedisError as exc:
            raise PersistenceError(f"Failed to read tenant {tenant_id}: {exc}") from exc
        return self._decode(raw)

    def delete(self, tenant_id: str) -> None:
        LOGGER.debug("Deleting tenant declaration", extra={"tenant_id": tenant_id})
        try:
            self._redis.delete(self._tenant_key(tenant_id))
        except RedisError as exc:
            raise PersistenceError(f"Failed to delete tenant {tenant_id}: {exc}") from exc

    def scan(self) -> Tuple[List[Tenant], List[str]]:
        """Return every decodable tenant ordered by ID, and the keys that failed to decode."""

        tenants = []
        invalid = []
        try:
            for key in self._redis.scan_iter(self.TENANT_KEY_TEMPLATE.format(tenant_id="*")):
                if isinstance(key, bytes):
                    key = key.decode("utf-8")
                raw = self._redis.get(key)
                if not raw:
                    continue
                tenant = self._decode(raw)
                if tenant is None:
                    invalid.append(key)
                else:
                    tenants.append(tenant)
        except RedisError as exc:
            raise PersistenceError(f"Failed to scan tenants: {exc}") from exc
        tenants.sort(key=lambda item: item.id)
        return tenants, sorted(invalid)

    def list(self) -> List[Tenant]:
        """Return every declared tenant ordered by ID."""

        return self.scan()[0]


__all__ = ["TenantStore"]
