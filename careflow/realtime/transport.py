"""
Physical change-feed channels.

A transport is one connection for one tenant. It is started with three
callbacks and reports back from its own network thread:

* ``on_open()`` once the connection is acknowledged,
* ``on_message(body)`` for every decoded change body,
* ``on_error(exc)`` when the connection fails or drops.

Transports are single-use; the multiplexer builds a new one per connect
attempt.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from ..core.config import settings
from ..core.errors import ChannelError, log_exception
from ..services.change_publisher import change_topic, resolve_protocol


OpenCallback = Callable[[], None]
MessageCallback = Callable[[dict], None]
ErrorCallback = Callable[[Exception], None]


class ChangeFeedTransport(ABC):
    @abstractmethod
    def connect(self, on_open: OpenCallback, on_message: MessageCallback, on_error: ErrorCallback) -> None:
        """Start connecting. Must not block on the network."""

    @abstractmethod
    def close(self) -> None:
        """Release the connection. Safe to call more than once."""


class MqttChangeFeed(ChangeFeedTransport):
    """Subscribes to ``{prefix}/{tenant_id}/changes`` on the MQTT broker."""

    def __init__(
        self,
        tenant_id: str,
        *,
        client: Optional[mqtt.Client] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        topic_prefix: Optional[str] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.tenant_id = tenant_id
        self.host = host or settings.mqtt_broker_host
        self.port = port or settings.mqtt_broker_port
        self.topic = change_topic(tenant_id, topic_prefix)
        if client is None:
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"careflow-feed-{tenant_id}-{id(self)}",
                protocol=resolve_protocol(),
            )
            if settings.mqtt_username:
                client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
        self.client = client
        self._on_open: Optional[OpenCallback] = None
        self._on_message: Optional[MessageCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._closed = False

    def connect(self, on_open: OpenCallback, on_message: MessageCallback, on_error: ErrorCallback) -> None:
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self.client.on_connect = self.on_connect  # type: ignore
        self.client.on_disconnect = self.on_disconnect  # type: ignore
        self.client.on_message = self.handle_message  # type: ignore
        try:
            self.client.connect_async(self.host, self.port, keepalive=30)
            self.client.loop_start()
        except Exception as exc:
            raise ChannelError(f"MQTT connect to {self.host}:{self.port} failed: {exc}") from exc

    def on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:  # type: ignore
        if getattr(reason_code, "is_failure", False):
            self.logger.error("Change feed connect refused tenant=%s reason=%s", self.tenant_id, reason_code)
            self._emit_error(ChannelError(f"connect refused: {reason_code}"))
            return
        client.subscribe(self.topic, qos=1)
        self.logger.info("Change feed subscribed topic=%s", self.topic)
        if self._on_open:
            self._on_open()

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:  # type: ignore
        if self._closed:
            return
        self.logger.warning("Change feed disconnected tenant=%s reason=%s", self.tenant_id, reason_code)
        self._emit_error(ChannelError(f"disconnected: {reason_code}"))

    def handle_message(self, client, userdata, msg) -> None:  # type: ignore
        try:
            body: Any = json.loads(msg.payload.decode("utf-8"))
        except Exception as exc:
            self.logger.warning(
                "Invalid change payload topic=%s payload_len=%s err=%s",
                getattr(msg, "topic", None),
                len(msg.payload) if getattr(msg, "payload", None) is not None else None,
                exc,
            )
            return
        if not isinstance(body, dict):
            self.logger.warning("Change payload is not an object topic=%s", getattr(msg, "topic", None))
            return
        if self._on_message:
            self._on_message(body)

    def _emit_error(self, exc: Exception) -> None:
        if self._on_error:
            self._on_error(exc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as exc:
            log_exception(self.logger, "Change feed shutdown failed", extra={"tenant": self.tenant_id}, exc=exc)


def mqtt_transport_factory(tenant_id: str) -> ChangeFeedTransport:
    return MqttChangeFeed(tenant_id)
