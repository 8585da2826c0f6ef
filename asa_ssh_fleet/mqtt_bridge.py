"""Forward fleet events to an MQTT broker."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from . import DOMAIN
from .events import (
    ConnectionLostEvent,
    Event,
    EventBus,
    InstanceUpdated,
    OperationFinished,
    StatusTransition,
)

_LOGGER = logging.getLogger(__name__)


def _sanitize(name: str) -> str:
    """Return a lowercase, MQTT friendly name."""
    return re.sub(r"[^a-zA-Z0-9_]+", "_", name).lower()


def _default_client() -> mqtt.Client:
    return mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)


class MqttBridge:
    """Publish snapshots, transitions and connection loss as JSON.

    Without a host, or when the broker is unreachable, events are written to
    the log instead.
    """

    def __init__(
        self,
        host: Optional[str],
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        topic_prefix: str = DOMAIN,
        client_factory: Callable[[], mqtt.Client] = _default_client,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._prefix = topic_prefix.rstrip("/")
        self._client_factory = client_factory
        self._client: Optional[mqtt.Client] = None
        self._connect_attempted = False
        self._remove: Optional[Callable[[], None]] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    def attach(self, bus: EventBus) -> None:
        self._remove = bus.add_listener(self.handle)

    def detach(self) -> None:
        if self._remove is not None:
            self._remove()
            self._remove = None
        if self._client is not None:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None

    def _ensure_client(self) -> Optional[mqtt.Client]:
        if self._client is not None or self._connect_attempted:
            return self._client
        self._connect_attempted = True
        if not self._host:
            _LOGGER.info("MQTT disabled; events will be printed to log")
            return None

        client = self._client_factory()
        if self._username:
            client.username_pw_set(self._username, self._password)
        try:
            rc = client.connect(self._host, self._port, 60)
        except Exception as exc:  # pragma: no cover - connection best effort
            _LOGGER.error("MQTT connection failed: %s", exc)
            return None

        if rc == mqtt.MQTT_ERR_SUCCESS:
            _LOGGER.info("Connected to MQTT broker at %s:%s", self._host, self._port)
            client.loop_start()
            self._client = client
            return client

        _LOGGER.error("Failed to connect to MQTT broker: %s", mqtt.error_string(rc))
        return None

    def handle(self, event: Event) -> None:
        message = self._message(event)
        if message is None:
            return
        topic, payload, retain = message
        client = self._ensure_client()
        body = json.dumps(payload)
        if client is None:
            _LOGGER.info("%s %s", topic, body)
            return
        client.publish(topic, body, retain=retain)

    def _message(self, event: Event) -> Optional[tuple]:
        if isinstance(event, InstanceUpdated):
            return f"{self._prefix}/{_sanitize(event.name)}/state", event.snapshot.as_dict(), True
        if isinstance(event, StatusTransition):
            payload: Dict[str, Any] = {
                "previous": event.previous.value,
                "current": event.current.value,
                "kind": event.kind.value,
            }
            return f"{self._prefix}/{_sanitize(event.name)}/transition", payload, False
        if isinstance(event, OperationFinished):
            return f"{self._prefix}/{_sanitize(event.name)}/operation", asdict(event), False
        if isinstance(event, ConnectionLostEvent):
            payload = {"host": event.host, "reason": event.reason, "connected": False}
            return f"{self._prefix}/connection", payload, True
        return None
