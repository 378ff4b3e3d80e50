"""RabbitMQ publishers for environment lifecycle and audit events."""
from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import pika

from ..config import AppConfig
from .models import EventType, LifecycleAction

LOGGER = logging.getLogger(__name__)


class RabbitMQPublisher:
    """Publish lifecycle events to the provisioner topic exchange.

    Each message opens and closes its own connection.
    """

    def __init__(self, config: AppConfig) -> None:
        self._exchange = config.rabbitmq.exchange
        self._declare = config.rabbitmq.declare_exchange
        self._app_id = config.service_name
        self._parameters = pika.URLParameters(config.rabbitmq.url)

    def _properties(self, headers: Optional[Dict[str, Any]]) -> pika.BasicProperties:
        return pika.BasicProperties(
            app_id=self._app_id,
            content_type="application/json",
            delivery_mode=2,
            message_id=uuid.uuid4().hex,
            timestamp=int(time.time()),
            headers=headers or {},
        )

    def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        connection: Optional[pika.BlockingConnection] = None
        try:
            connection = pika.BlockingConnection(self._parameters)
            channel = connection.channel()
            if self._declare:
                channel.exchange_declare(exchange=self._exchange, exchange_type="topic", durable=True)
            channel.basic_publish(
                exchange=self._exchange,
                routing_key=routing_key,
                body=json.dumps(payload, default=str).encode("utf-8"),
                properties=self._properties(headers),
            )
            LOGGER.debug(
                "Published event",
                extra={"routing_key": routing_key, "environment_id": payload.get("environmentId")},
            )
        except Exception:
            LOGGER.exception("Failed to publish event", extra={"routing_key": routing_key})
            raise
        finally:
            if connection and connection.is_open:
                connection.close()


class AuditEventPublisher:
    """Best-effort audit trail: one event per workflow outcome, failures only logged."""

    def __init__(self, publisher: RabbitMQPublisher, routing_key: str = EventType.AUDIT.value) -> None:
        self._publisher = publisher
        self._routing_key = routing_key

    def publish(
        self,
        environment_id: str,
        action: Union[LifecycleAction, str],
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        action_name = action.value if isinstance(action, LifecycleAction) else action
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environmentId": environment_id,
            "action": action_name,
            "outcome": outcome,
            "details": details or {},
        }
        try:
            self._publisher.publish(self._routing_key, event, headers={"outcome": outcome})
        except Exception:
            LOGGER.exception(
                "Failed to publish audit event", extra={"environment_id": environment_id, "action": action_name}
            )


__all__ = ["AuditEventPublisher", "RabbitMQPublisher"]
