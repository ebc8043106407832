#!/usr/bin/env python3
"""
MQTT publisher: gateway/unit state, availability, Home Assistant discovery
and command subscriptions.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable

import paho.mqtt.client as mqtt

from config import (
    MQTT_CONNECT_TIMEOUT,
    MQTT_HEALTH_CHECK_INTERVAL,
    MQTT_HOST,
    MQTT_NAMESPACE,
    MQTT_PASSWORD,
    MQTT_PORT,
    MQTT_PUBLISH_QOS,
    MQTT_STATE_RETAIN,
    MQTT_USERNAME,
)
from models import HVACMode

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes, int, bool], None]

HA_MODES = {
    HVACMode.OFF: "off",
    HVACMode.AUTO: "auto",
    HVACMode.HEAT: "heat",
    HVACMode.COOL: "cool",
    HVACMode.DRY: "dry",
    HVACMode.FAN: "fan_only",
}


class MQTTPublisher:
    """Publishes bridge state to MQTT and routes command messages."""

    # MQTT return codes
    RC_CODES = {
        0: "Connection successful",
        1: "Incorrect protocol version",
        2: "Invalid client identifier",
        3: "Server unavailable",
        4: "Bad username or password",
        5: "Not authorized",
    }

    CONNECT_TIMEOUT = MQTT_CONNECT_TIMEOUT
    HEALTH_CHECK_INTERVAL = MQTT_HEALTH_CHECK_INTERVAL
    PUBLISH_LOG_EVERY = 100

    def __init__(self, client_id: str = "bridge", namespace: str = MQTT_NAMESPACE):
        self.client_id = client_id
        self.namespace = namespace
        self.client: mqtt.Client | None = None
        self.connected = False
        self.discovery_sent: set[str] = set()
        self._last_payload_by_topic: dict[str, str] = {}
        self._handlers: list[tuple[str, MessageHandler, int]] = []

        # Statistiky
        self.publish_count = 0
        self.publish_success = 0
        self.publish_failed = 0
        self.last_publish_time: float = 0
        self.last_error_time: float = 0
        self.last_error_msg: str = ""
        self.reconnect_attempts = 0

        self._health_check_task: asyncio.Task[Any] | None = None

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    @property
    def bridge_availability_topic(self) -> str:
        return f"{self.namespace}/{self.client_id}/availability"

    def availability_topic(self, gateway_id: str) -> str:
        return f"{self.namespace}/{gateway_id}/availability"

    def status_topic(self, gateway_id: str) -> str:
        return f"{self.namespace}/{gateway_id}/status"

    def unit_state_topic(self, gateway_id: str, unit_id: int) -> str:
        return f"{self.namespace}/{gateway_id}/{unit_id}/state"

    def command_topic(self, gateway_id: str, unit_id: int | None, action: str) -> str:
        if unit_id is None:
            return f"{self.namespace}/{gateway_id}/set/{action}"
        return f"{self.namespace}/{gateway_id}/{unit_id}/set/{action}"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self, timeout: float | None = None) -> bool:
        """Connect to the broker, waiting up to ``timeout`` for CONNACK."""
        timeout = timeout or self.CONNECT_TIMEOUT

        try:
            self.client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION1,
                client_id=f"{self.namespace}_{self.client_id}",
                protocol=mqtt.MQTTv311,
            )
            if MQTT_USERNAME:
                self.client.username_pw_set(MQTT_USERNAME, MQTT_PASSWORD)

            self.client.will_set(self.bridge_availability_topic, "offline", retain=True)

            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_publish = self._on_publish
            self.client.on_message = self._on_message

            logger.info("MQTT: connecting to %s:%s (timeout %ss)", MQTT_HOST, MQTT_PORT, timeout)

            self.client.connect(MQTT_HOST, MQTT_PORT, 60)
            self.client.loop_start()

            start = time.time()
            while not self.connected and (time.time() - start) < timeout:
                time.sleep(0.1)

            if self.connected:
                logger.info("MQTT: ✅ connected to %s:%s", MQTT_HOST, MQTT_PORT)
                self.reconnect_attempts = 0
                return True
            logger.error("MQTT: ❌ connect timed out after %ss", timeout)
            self._cleanup_client()
            return False

        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("MQTT: ❌ connect failed: %s", e)
            self._cleanup_client()
            return False

    def disconnect(self) -> None:
        if self.client is not None and self.connected:
            try:
                self.client.publish(self.bridge_availability_topic, "offline", retain=True, qos=1)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.debug("MQTT: offline publish failed: %s", e)
        self._cleanup_client()

    def _cleanup_client(self) -> None:
        if self.client:
            try:
                self.client.loop_stop()
                self.client.disconnect()
            except Exception:  # pylint: disable=broad-exception-caught
                pass
            self.client = None
        self.connected = False

    def _on_connect(self, client: Any, userdata: Any, flags: Any, rc: int) -> None:
        rc_msg = self.RC_CODES.get(rc, f"Unknown error ({rc})")

        if rc == 0:
            logger.info("MQTT: connected (flags=%s)", flags)
            self.connected = True
            self.reconnect_attempts = 0
            self._last_payload_by_topic.clear()
            client.publish(self.bridge_availability_topic, "online", retain=True, qos=1)
            self.discovery_sent.clear()
            for topic, _handler, qos in self._handlers:
                self._subscribe(topic, qos)
        else:
            logger.error("MQTT: ❌ connection refused: %s", rc_msg)
            self.connected = False
            self.last_error_time = time.time()
            self.last_error_msg = rc_msg

    def _on_disconnect(self, client: Any, userdata: Any, rc: int) -> None:
        self.connected = False
        self._last_payload_by_topic.clear()
        if rc == 0:
            logger.info("MQTT: disconnected")
        else:
            logger.warning("MQTT: ⚠️ unexpected disconnect (rc=%s)", rc)
            self.last_error_time = time.time()
            self.last_error_msg = f"Unexpected disconnect (rc={rc})"

    def _on_publish(self, client: Any, userdata: Any, mid: int) -> None:
        self.publish_success += 1
        self.last_publish_time = time.time()
        if self.publish_success % self.PUBLISH_LOG_EVERY == 0:
            logger.info(
                "MQTT: 📊 stats: %s OK, %s failed of %s",
                self.publish_success,
                self.publish_failed,
                self.publish_count,
            )

    def is_ready(self) -> bool:
        return self.client is not None and self.connected

    async def health_check_loop(self) -> None:
        """Reconnect periodically while the broker is unreachable."""
        logger.info("MQTT: health check every %ss", self.HEALTH_CHECK_INTERVAL)
        while True:
            await asyncio.sleep(self.HEALTH_CHECK_INTERVAL)
            if self.connected:
                continue
            self.reconnect_attempts += 1
            logger.warning("MQTT: 🔄 reconnect attempt #%s", self.reconnect_attempts)
            if self.connect(timeout=self.CONNECT_TIMEOUT):
                logger.info("MQTT: ✅ reconnected after %s attempt(s)", self.reconnect_attempts)

    async def start_health_check(self) -> None:
        if self._health_check_task is None or self._health_check_task.done():
            self._health_check_task = asyncio.create_task(self.health_check_loop())

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @staticmethod
    def _topic_matches(pattern: str, topic: str) -> bool:
        p_parts = pattern.split("/")
        t_parts = topic.split("/")
        for i, part in enumerate(p_parts):
            if part == "#":
                return True
            if i >= len(t_parts):
                return False
            if part != "+" and part != t_parts[i]:
                return False
        return len(p_parts) == len(t_parts)

    def _subscribe(self, topic: str, qos: int) -> None:
        if self.client is None:
            return
        try:
            self.client.subscribe(topic, qos=qos)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.warning("MQTT: subscribe %s failed: %s", topic, e)

    def add_message_handler(self, *, topic: str, handler: MessageHandler, qos: int) -> None:
        """Register ``handler(topic, payload, qos, retain)``; called on the MQTT thread."""
        self._handlers.append((topic, handler, qos))
        if self.is_ready():
            self._subscribe(topic, qos)

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        for pattern, handler, _qos in list(self._handlers):
            if not self._topic_matches(pattern, msg.topic):
                continue
            try:
                handler(msg.topic, msg.payload, msg.qos, msg.retain)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("MQTT: handler for %s failed", msg.topic)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_json(self, topic: str, data: Any, *, retain: bool = MQTT_STATE_RETAIN) -> bool:
        payload = data if isinstance(data, str) else json.dumps(data, sort_keys=True)
        if self._last_payload_by_topic.get(topic) == payload:
            return True
        if not self.is_ready():
            self.publish_failed += 1
            return False
        self.publish_count += 1
        try:
            result = self.client.publish(topic, payload, qos=MQTT_PUBLISH_QOS, retain=retain)
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.publish_failed += 1
            self.last_error_time = time.time()
            self.last_error_msg = str(e)
            logger.error("MQTT: publish exception: %s", e)
            return False
        if result.rc != 0:
            self.publish_failed += 1
            logger.error("MQTT: publish to %s failed rc=%s", topic, result.rc)
            return False
        self._last_payload_by_topic[topic] = payload
        logger.debug("MQTT: → %s", topic)
        return True

    def publish_gateway(self, gateway: Any) -> None:
        """Availability, status and every assigned unit of one gateway."""
        if not self.is_ready():
            return
        snapshot = gateway.as_dict()
        availability = "online" if snapshot["connected"] else "offline"
        self.publish_json(self.availability_topic(gateway.gateway_id), availability, retain=True)
        status = {k: v for k, v in snapshot.items() if k != "units"}
        self.publish_json(self.status_topic(gateway.gateway_id), status)
        for unit in gateway.units:
            if unit.assigned:
                self.publish_unit(gateway, unit)

    def publish_unit(self, gateway: Any, unit: Any) -> None:
        if not self.is_ready():
            return
        self.send_discovery(gateway, unit)
        state = unit.as_dict()
        state["status"] = gateway.unit_status(unit)
        state["ha_mode"] = HA_MODES.get(unit.mode, "off")
        state["ha_fan_mode"] = (
            "auto" if unit.fan_speed in (None, "AUTO") else str(unit.fan_speed)
        )
        self.publish_json(self.unit_state_topic(gateway.gateway_id, unit.unit_id), state)

    # ------------------------------------------------------------------
    # Home Assistant discovery
    # ------------------------------------------------------------------

    def _build_discovery_payload(self, gateway: Any, unit: Any) -> tuple[str, dict[str, Any]]:
        gid = gateway.gateway_id
        uid = unit.unit_id
        unique_id = f"{self.namespace}_{gid}_{uid}"
        state_topic = self.unit_state_topic(gid, uid)
        min_temp, max_temp = unit.setpoint_range()

        modes = [HA_MODES[HVACMode.OFF]]
        for mode in (HVACMode.AUTO, HVACMode.HEAT, HVACMode.COOL, HVACMode.DRY, HVACMode.FAN):
            if unit.allowed_modes is None or mode in unit.allowed_modes:
                modes.append(HA_MODES[mode])

        fan_modes = ["auto"]
        fan_limits = unit.limits.get("FANSP")
        if fan_limits is not None and fan_limits.is_range:
            fan_modes += [str(n) for n in range(int(fan_limits.minimum), int(fan_limits.maximum) + 1)]
        else:
            fan_modes += ["1", "2", "3", "4"]

        payload: dict[str, Any] = {
            "name": None if uid == 1 else f"Unit {uid}",
            "unique_id": unique_id,
            "availability": [
                {"topic": self.bridge_availability_topic},
                {"topic": self.availability_topic(gid)},
            ],
            "availability_mode": "all",
            "modes": modes,
            "mode_state_topic": state_topic,
            "mode_state_template": "{{ value_json.ha_mode }}",
            "mode_command_topic": self.command_topic(gid, uid, "mode"),
            "temperature_state_topic": state_topic,
            "temperature_state_template": "{{ value_json.setpoint }}",
            "temperature_command_topic": self.command_topic(gid, uid, "setpoint"),
            "current_temperature_topic": state_topic,
            "current_temperature_template": "{{ value_json.ambient_temp }}",
            "fan_modes": fan_modes,
            "fan_mode_state_topic": state_topic,
            "fan_mode_state_template": "{{ value_json.ha_fan_mode }}",
            "fan_mode_command_topic": self.command_topic(gid, uid, "fan_speed"),
            "min_temp": min_temp,
            "max_temp": max_temp,
            "temp_step": 0.5 if unit.temp_units == "C" else 1,
            "temperature_unit": unit.temp_units,
            "device": {
                "identifiers": [f"{self.namespace}_{gid}_{uid}"],
                "name": f"{gateway.name} unit {uid}",
                "manufacturer": "Intesis",
                "model": gateway.store.get("Model") or "WMP gateway",
                "via_device": f"{self.namespace}_{gid}",
            },
        }
        topic = f"homeassistant/climate/{unique_id}/config"
        return topic, payload

    def send_discovery(self, gateway: Any, unit: Any) -> None:
        if not self.is_ready():
            return
        topic, payload = self._build_discovery_payload(gateway, unit)
        encoded = json.dumps(payload, sort_keys=True)
        key = f"{topic}|{encoded}"
        if key in self.discovery_sent:
            return
        result = self.client.publish(topic, encoded, retain=True, qos=1)
        self.discovery_sent.add(key)
        logger.debug("MQTT: discovery %s (mid=%s)", topic, result.mid)
