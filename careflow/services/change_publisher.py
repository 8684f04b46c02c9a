"""
MQTT publisher for the per-tenant change feed.

Notifications go to ``{CHANGE_FEED_TOPIC_PREFIX}/{tenant_id}/changes`` as JSON
with QoS 1. The client runs paho's network loop in the background and
reconnects on its own; a publish while disconnected is queued by paho.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt

from ..core.config import settings
from ..core.errors import log_exception
from ..schemas.changes import ChangeNotification


def change_topic(tenant_id: str, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.change_feed_topic_prefix}/{tenant_id}/changes"


def resolve_protocol(name: Optional[str] = None) -> int:
    protocol = (name or settings.mqtt_protocol or "v311").lower()
    if protocol == "v31":
        return mqtt.MQTTv31
    if protocol == "v5":
        return mqtt.MQTTv5
    return mqtt.MQTTv311


class MqttChangePublisher:
    """Publishes committed store changes to the MQTT change feed."""

    def __init__(self, client: Optional[mqtt.Client] = None, *, topic_prefix: Optional[str] = None) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.topic_prefix = topic_prefix or settings.change_feed_topic_prefix
        if client is None:
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=f"careflow-publisher-{id(self)}",
                protocol=resolve_protocol(),
            )
            if settings.mqtt_username:
                client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
            client.reconnect_delay_set(min_delay=1, max_delay=10)
        self.client = client
        self.client.on_connect = self.on_connect  # type: ignore
        self.client.on_disconnect = self.on_disconnect  # type: ignore
        self._connected = threading.Event()

    def on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:  # type: ignore
        if getattr(reason_code, "is_failure", False):
            self.logger.error("Change publisher connect refused: %s", reason_code)
            return
        self.logger.info("Change publisher connected to %s:%s", settings.mqtt_broker_host, settings.mqtt_broker_port)
        self._connected.set()

    def on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:  # type: ignore
        self._connected.clear()
        self.logger.warning("Change publisher disconnected: %s", reason_code)

    def start(self) -> None:
        try:
            self.client.connect_async(settings.mqtt_broker_host, settings.mqtt_broker_port, keepalive=60)
            self.client.loop_start()
        except Exception as exc:
            self.logger.error(
                "Change publisher connection failed for %s:%s (%s)",
                settings.mqtt_broker_host,
                settings.mqtt_broker_port,
                exc,
            )

    def stop(self) -> None:
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as exc:
            log_exception(self.logger, "Change publisher shutdown failed", exc=exc)

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def publish(self, notification: ChangeNotification) -> bool:
        topic = change_topic(notification.tenant_id, self.topic_prefix)
        try:
            payload = json.dumps(notification.to_wire(), default=str)
            info = self.client.publish(topic, payload, qos=1)
        except Exception as exc:
            self.logger.warning(
                "Failed to publish change entity=%s op=%s: %s",
                notification.entity_type,
                notification.operation.value,
                exc,
            )
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.warning("Change publish queued with rc=%s topic=%s", info.rc, topic)
        return True
