#!/usr/bin/env python3
"""
WMP bridge - registry of gateways plus the outer surfaces (MQTT, HTTP).

The scheduler, every gateway and the discovery engine run on the asyncio
loop thread. MQTT callbacks and HTTP requests arrive on their own threads
and are handed to the loop with ``call_soon_threadsafe`` /
``run_coroutine_threadsafe``.
"""

# pylint: disable=broad-exception-caught

from __future__ import annotations

import asyncio
import json
import logging
import socket
from typing import Any, Callable

from attribute_store import GatewayRegistry
from config import (
    CONTROL_API_HOST,
    CONTROL_API_PORT,
    CONTROL_API_TIMEOUT,
    DISCOVERY_ON_START,
    MQTT_ENABLED,
    MQTT_PUBLISH_QOS,
    WMP_GATEWAYS,
    WMP_PORT,
)
from control_api import ControlAPIServer
from discovery import DirectConnectResolver, DiscoveryEngine, NeighborTableResolver
from errors import DiscoveryError
from gateway import WMPGateway
from models import DiscoveryRecord
from mqtt_publisher import MQTTPublisher
from parser import normalize_mac
from scheduler import AsyncioTimer, Scheduler
from status import StatusReporter
from units import Unit

logger = logging.getLogger(__name__)


def parse_gateway_list(value: str) -> list[tuple[str, int]]:
    """``"192.168.1.10, 192.168.1.11:3311"`` -> [(host, port), ...]"""
    out: list[tuple[str, int]] = []
    for item in (value or "").split(","):
        item = item.strip()
        if not item:
            continue
        host, _, port = item.partition(":")
        try:
            out.append((host.strip(), int(port) if port else WMP_PORT))
        except ValueError:
            logger.warning("Ignoring invalid gateway address %r", item)
    return out


class WMPBridge:
    """Owns the scheduler, the gateways and the outer surfaces."""

    def __init__(
        self,
        *,
        registry: GatewayRegistry | None = None,
        mqtt_publisher: MQTTPublisher | None = None,
        connect_fn: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self.registry = registry or GatewayRegistry()
        self.gateways: dict[str, WMPGateway] = {}
        self.scheduler: Scheduler | None = None
        self.discovery: DiscoveryEngine | None = None
        if mqtt_publisher is None and MQTT_ENABLED:
            mqtt_publisher = MQTTPublisher()
        self.mqtt_publisher = mqtt_publisher
        self.status_reporter = StatusReporter(self)
        self._connect_fn = connect_fn
        self._loop: asyncio.AbstractEventLoop | None = None
        self._control_api: ControlAPIServer | None = None
        self._status_task: asyncio.Task[Any] | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self, loop: asyncio.AbstractEventLoop, scheduler: Scheduler | None = None) -> None:
        self._loop = loop
        self.scheduler = scheduler or Scheduler(AsyncioTimer(loop))
        self.discovery = DiscoveryEngine(
            self.scheduler,
            on_record=self.handle_discovery_record,
            resolvers=[
                NeighborTableResolver(),
                DirectConnectResolver(self._known_hosts, connect_fn=self._connect_fn),
            ],
        )

    def _known_hosts(self) -> list[str]:
        hosts = {gw.connection.host for gw in self.gateways.values() if gw.connection.host}
        return sorted(hosts)

    def load_gateways(self) -> int:
        self.registry.load()
        for host, port in parse_gateway_list(WMP_GATEWAYS):
            if self.registry.find_by_host(host) is None:
                self.registry.provision(host=host, port=port)
        for gateway_id, store in self.registry:
            if gateway_id not in self.gateways:
                self.add_gateway(gateway_id, store)
            if not store.get("MACAddress") and store.get("IPAddress"):
                self._identify(gateway_id, store.get("IPAddress"))
        return len(self.gateways)

    def _identify(self, gateway_id: str, ip: str) -> None:
        # Without a MAC a gateway cannot be followed to a new address.
        assert self.discovery is not None
        record = self.discovery.identify(ip)
        if record is not None and self.registry.find_by_mac(record.mac) is None:
            self._adopt_mac(gateway_id, record)

    def add_gateway(self, gateway_id: str, store: Any) -> WMPGateway:
        assert self.scheduler is not None and self.discovery is not None
        gateway = WMPGateway(
            gateway_id,
            store,
            self.scheduler,
            resolver=self.discovery.resolve_mac_to_ips,
            connect_fn=self._connect_fn,
        )
        gateway.add_listener(self._on_gateway_change)
        self.gateways[gateway_id] = gateway
        return gateway

    # ------------------------------------------------------------------
    # Discovery routing
    # ------------------------------------------------------------------

    def handle_discovery_record(self, record: DiscoveryRecord) -> None:
        """Known MAC: refresh the stored address. Unknown MAC: provision it.

        A gateway configured by address only has no MAC until its first ID
        reply, so a miss by MAC falls back to a lookup by IP.
        """
        gateway_id = self.registry.find_by_mac(record.mac)
        if gateway_id is None:
            by_host = self.registry.find_by_host(record.ip)
            store = self.registry.get(by_host) if by_host is not None else None
            if store is not None and not store.get("MACAddress"):
                gateway_id = by_host
                self._adopt_mac(gateway_id, record)
        if gateway_id is not None:
            if self.registry.update_address(gateway_id, record.ip):
                gateway = self.gateways.get(gateway_id)
                if gateway is not None:
                    gateway.connection.host = record.ip
                    if gateway.running and not gateway.connection.is_connected():
                        gateway.pacer.kick()
            return

        gateway_id, store = self.registry.provision(record)
        gateway = self.gateways.get(gateway_id) or self.add_gateway(gateway_id, store)
        if not gateway.running:
            gateway.start()

    def _adopt_mac(self, gateway_id: str, record: DiscoveryRecord) -> None:
        mac = normalize_mac(record.mac)
        store = self.registry.get(gateway_id)
        if not mac or store is None:
            return
        store.set("MACAddress", mac)
        gateway = self.gateways.get(gateway_id)
        if gateway is not None:
            gateway.connection.mac = mac
        logger.info("DISCOVERY: %s at %s is gateway %s", mac, record.ip, gateway_id)

    def start_discovery(self) -> dict[str, Any]:
        if self.discovery is None:
            return {"ok": False, "error": "not_started"}
        try:
            run = self.discovery.start_broadcast()
        except DiscoveryError as e:
            logger.warning("DISCOVERY: %s", e)
            return {"ok": False, "error": str(e)}
        return {"ok": True, "run": run.run_id, "window_s": self.discovery.window_s}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def execute(
        self,
        gateway_id: str,
        unit_id: Any,
        action: str,
        value: Any = None,
    ) -> dict[str, Any]:
        gateway = self.gateways.get(gateway_id)
        if gateway is None:
            return {"ok": False, "error": f"unknown gateway {gateway_id!r}"}
        if unit_id is not None:
            try:
                unit_id = int(unit_id)
            except (TypeError, ValueError):
                return {"ok": False, "error": f"invalid unit {unit_id!r}"}
        return gateway.execute(action, unit_id, value)

    def _on_gateway_change(self, gateway: WMPGateway, unit: Unit | None) -> None:
        publisher = self.mqtt_publisher
        if publisher is None or not publisher.is_ready():
            return
        if unit is None:
            publisher.publish_gateway(gateway)
        elif unit.assigned:
            publisher.publish_unit(gateway, unit)

    # ------------------------------------------------------------------
    # MQTT commands
    # ------------------------------------------------------------------

    def _setup_command_mqtt(self) -> None:
        publisher = self.mqtt_publisher
        if publisher is None or self._loop is None:
            return
        loop = self._loop

        def _handler(topic: str, payload: bytes, qos: int, retain: bool) -> None:
            if retain:
                # Stale retained commands are not replayed.
                return
            loop.call_soon_threadsafe(self.handle_command_message, topic, payload)

        ns = publisher.namespace
        for pattern in (f"{ns}/+/+/set/+", f"{ns}/+/set/+"):
            publisher.add_message_handler(topic=pattern, handler=_handler, qos=MQTT_PUBLISH_QOS)
        logger.info("MQTT: command topics %s/<gateway>/[<unit>/]set/<action>", ns)

    def handle_command_message(self, topic: str, payload: bytes) -> dict[str, Any]:
        parts = topic.split("/")
        if len(parts) == 5:
            _ns, gateway_id, unit_id, _set, action = parts
        elif len(parts) == 4:
            _ns, gateway_id, _set, action = parts
            unit_id = None
        else:
            return {"ok": False, "error": "invalid_topic"}
        raw = payload.decode("utf-8", errors="replace").strip() if payload else ""
        value: Any = raw
        if raw.startswith("{"):
            try:
                value = json.loads(raw).get("value")
            except (json.JSONDecodeError, AttributeError):
                value = raw
        result = self.execute(gateway_id, unit_id, action, value or None)
        logger.info("MQTT command %s=%r -> %s", topic, raw, result)
        if self.mqtt_publisher is not None:
            self.mqtt_publisher.publish_json(
                f"{self.mqtt_publisher.namespace}/{gateway_id}/result",
                {"topic": topic, "value": raw, **result},
                retain=False,
            )
        return result

    # ------------------------------------------------------------------
    # Control API (called from the HTTP thread)
    # ------------------------------------------------------------------

    def _call_in_loop(self, fn: Callable[[], Any]) -> Any:
        if self._loop is None:
            return {"ok": False, "error": "event_loop_not_ready"}

        async def _run() -> Any:
            return fn()

        fut = asyncio.run_coroutine_threadsafe(_run(), self._loop)
        try:
            return fut.result(timeout=CONTROL_API_TIMEOUT)
        except Exception as e:
            return {"ok": False, "error": f"send_failed:{type(e).__name__}"}

    def get_control_api_health(self) -> dict[str, Any]:
        return {"ok": True, **self.status_reporter.build_status_payload()}

    def control_api_gateways(self) -> Any:
        return self._call_in_loop(lambda: [g.as_dict() for g in self.gateways.values()])

    def control_api_command(
        self,
        *,
        gateway_id: str,
        unit_id: Any,
        action: str,
        value: Any,
    ) -> dict[str, Any]:
        return self._call_in_loop(lambda: self.execute(gateway_id, unit_id, action, value))

    def control_api_discover(self) -> dict[str, Any]:
        return self._call_in_loop(self.start_discovery)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start everything and run until ``stop()``."""
        self.setup(asyncio.get_running_loop())
        self._stop_event = asyncio.Event()

        count = self.load_gateways()
        logger.info("🚀 WMP bridge: %s gateway(s) configured", count)

        if self.mqtt_publisher is not None:
            self._setup_command_mqtt()
            if not self.mqtt_publisher.connect():
                logger.warning("MQTT: initial connect failed, health check will retry")
            await self.mqtt_publisher.start_health_check()

        if CONTROL_API_PORT and CONTROL_API_PORT > 0:
            try:
                self._control_api = ControlAPIServer(
                    host=CONTROL_API_HOST,
                    port=CONTROL_API_PORT,
                    bridge=self,
                )
                self._control_api.start()
                logger.info(
                    "🧪 Control API listening on http://%s:%s",
                    CONTROL_API_HOST,
                    CONTROL_API_PORT,
                )
            except Exception as e:
                logger.error("Control API start failed: %s", e)

        for gateway in list(self.gateways.values()):
            gateway.start()

        if DISCOVERY_ON_START or not self.gateways:
            self.start_discovery()

        self.status_reporter.publish()
        if self._status_task is None or self._status_task.done():
            self._status_task = asyncio.create_task(self.status_reporter.status_loop())

        try:
            await self._stop_event.wait()
        finally:
            self.shutdown()

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def shutdown(self) -> None:
        for gateway in self.gateways.values():
            gateway.stop()
        if self.discovery is not None:
            self.discovery.stop()
        if self.scheduler is not None:
            self.scheduler.shutdown()
        if self._status_task is not None:
            self._status_task.cancel()
            self._status_task = None
        if self._control_api is not None:
            self._control_api.stop()
            self._control_api = None
        if self.mqtt_publisher is not None:
            self.mqtt_publisher.disconnect()
        logger.info("WMP bridge stopped")
