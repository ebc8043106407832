"""StatusReporter – periodic bridge status publish and heartbeat log."""

# pylint: disable=broad-exception-caught

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from config import STATUS_INTERVAL

if TYPE_CHECKING:
    from bridge import WMPBridge

logger = logging.getLogger(__name__)


class StatusReporter:
    """Builds the bridge status payload and republishes gateway state."""

    def __init__(self, bridge: WMPBridge, interval_s: float = STATUS_INTERVAL) -> None:
        self._bridge = bridge
        self.interval_s = interval_s
        self.started_at = time.time()
        self.last_hb_ts: float = 0.0

    def build_status_payload(self) -> dict[str, Any]:
        b = self._bridge
        gateways = list(b.gateways.values())
        discovery = b.discovery
        last_run = discovery.last_run if discovery else None
        return {
            "uptime_s": int(time.time() - self.started_at),
            "gateways": len(gateways),
            "gateways_connected": sum(1 for g in gateways if g.connection.is_connected()),
            "gateways_failed": sorted(g.gateway_id for g in gateways if g.failed),
            "units": sum(len(g.units.assigned_ids()) for g in gateways),
            "mqtt_connected": bool(b.mqtt_publisher and b.mqtt_publisher.is_ready()),
            "discovery_running": bool(discovery and discovery.running),
            "discovery_last_found": len(last_run.records) if last_run else None,
            "scheduler_generation": b.scheduler.generation if b.scheduler else 0,
        }

    def publish(self) -> None:
        b = self._bridge
        publisher = b.mqtt_publisher
        if publisher is None or not publisher.is_ready():
            return
        publisher.publish_json(
            f"{publisher.namespace}/{publisher.client_id}/status",
            self.build_status_payload(),
        )
        for gateway in b.gateways.values():
            try:
                publisher.publish_gateway(gateway)
            except Exception as e:
                logger.debug("Status publish for %s failed: %s", gateway.gateway_id, e)

    def log_heartbeat(self) -> None:
        if self.interval_s <= 0:
            return
        now = time.time()
        if (now - self.last_hb_ts) < self.interval_s:
            return
        self.last_hb_ts = now
        payload = self.build_status_payload()
        logger.info(
            "💓 HB: gateways=%s connected=%s failed=%s units=%s mqtt=%s",
            payload["gateways"],
            payload["gateways_connected"],
            ",".join(payload["gateways_failed"]) or "-",
            payload["units"],
            "on" if payload["mqtt_connected"] else "off",
        )

    async def status_loop(self) -> None:
        if self.interval_s <= 0:
            logger.info("Status loop disabled (interval <= 0)")
            return
        logger.info("Status: periodic publish every %ss", self.interval_s)
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                self.publish()
                self.log_heartbeat()
            except Exception as e:
                logger.debug("Status loop publish failed: %s", e)
