"""Event vocabulary for environment lifecycle notifications."""
from __future__ import annotations

from enum import Enum


class LifecycleAction(str, Enum):
    """Workflows whose outcome is published as an audit event."""

    CREATE_ENVIRONMENT = "CREATE_ENVIRONMENT"
    UPDATE_ENVIRONMENT = "UPDATE_ENVIRONMENT"
    DELETE_ENVIRONMENT = "DELETE_ENVIRONMENT"

    @property
    def failure_routing_key(self) -> str:
        return FAILURE_ROUTING_KEYS[self].value


class EventType(str, Enum):
    """Routing keys published on the message bus."""

    AUDIT = "audit.environment.event"
    ENVIRONMENT_CREATE_FAILED = "environment.create_failed"
    ENVIRONMENT_UPDATE_FAILED = "environment.update_failed"
    ENVIRONMENT_DELETE_FAILED = "environment.delete_failed"


FAILURE_ROUTING_KEYS = {
    LifecycleAction.CREATE_ENVIRONMENT: EventType.ENVIRONMENT_CREATE_FAILED,
    LifecycleAction.UPDATE_ENVIRONMENT: EventType.ENVIRONMENT_UPDATE_FAILED,
    LifecycleAction.DELETE_ENVIRONMENT: EventType.ENVIRONMENT_DELETE_FAILED,
}


__all__ = ["EventType", "LifecycleAction"]
