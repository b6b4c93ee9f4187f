"""
Per-command context for Device Connector handlers.

A ResponseEmitter is the only way a handler talks to the broker: it is bound to
one response topic and retain flag, JSON-encodes payloads, and counts what it
sent so the dispatcher can enforce one response per request.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from device_connector.core.status import Intent

logger = logging.getLogger(__name__)


class MqttPublisher(Protocol):
    """
    Minimal MQTT publisher interface for command context.

    This protocol defines the contract that the MQTT session must fulfill.
    """

    def publish(
        self, topic: str, payload: Any, *, qos: int = 1, retain: bool = False
    ) -> Any:
        """Publish a message to MQTT broker."""
        ...


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Handler return value carrying a response payload and state-change intents."""

    payload: Any = None
    intents: Sequence[Intent] = field(default_factory=tuple)


def error_payload(message: str, kind: str, request_id: Optional[str] = None) -> dict[str, Any]:
    """Structured error body published on a capability's response topic."""
    payload: dict[str, Any] = {"error": message, "kind": kind}
    if request_id:
        payload["request_id"] = request_id
    return payload


class ResponseEmitter:
    """Publishes responses for one inbound command."""

    def __init__(
        self,
        mqtt: MqttPublisher,
        topic: str,
        *,
        retain: bool = False,
        request_id: Optional[str] = None,
        qos: int = 1,
    ) -> None:
        self.mqtt = mqtt
        self.topic = topic
        self.retain = retain
        self.request_id = request_id
        self.qos = qos
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def emit(self, payload: Any) -> Any:
        """
        JSON-encode payload and publish it on the response topic.

        Dict payloads get the request_id echoed unless they already carry one.

        Raises:
            TypeError/ValueError: If the payload is not JSON-serializable
        """
        if self.request_id and isinstance(payload, dict) and "request_id" not in payload:
            payload = {**payload, "request_id": self.request_id}
        try:
            payload_str = json.dumps(payload)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to JSON-encode payload for %s: %s", self.topic, exc)
            raise

        info = self.mqtt.publish(self.topic, payload_str, qos=self.qos, retain=self.retain)
        with self._lock:
            self._count += 1
        return info

    def error(self, message: str, kind: str = "handler_error") -> None:
        """Publish a structured error; failures to publish are logged, not raised."""
        try:
            self.emit(error_payload(message, kind, self.request_id))
            logger.info("Published error on %s: %s", self.topic, message)
        except Exception as exc:
            logger.exception("Failed to publish error on %s: %s", self.topic, exc)
