#!/usr/bin/env python3
"""
WMP Bridge - application entry point.
"""

import asyncio
import logging
import signal
import sys

from config import (
    CONTROL_API_PORT,
    DATA_DIR,
    DEFAULT_PING_INTERVAL,
    DEFAULT_REFRESH_INTERVAL,
    GATEWAYS_PATH,
    LOG_LEVEL,
    MQTT_ENABLED,
    MQTT_HOST,
    MQTT_PORT,
    WMP_GATEWAYS,
)
from bridge import WMPBridge

# Logging setup
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)


async def main():
    logger.info("=" * 60)
    logger.info("WMP Bridge - Intesis WMP gateway client")
    logger.info("=" * 60)

    logger.info("📋 Configuration:")
    logger.info("   Gateways (env): %s", WMP_GATEWAYS or "-")
    logger.info("   Registry: %s", GATEWAYS_PATH)
    logger.info("   Data directory: %s", DATA_DIR)
    logger.info("   Ping/refresh: %ss/%ss", DEFAULT_PING_INTERVAL, DEFAULT_REFRESH_INTERVAL)
    logger.info("   MQTT: %s", f"{MQTT_HOST}:{MQTT_PORT}" if MQTT_ENABLED else "Disabled")
    logger.info("   Control API port: %s", CONTROL_API_PORT or "Disabled")
    logger.info("   Log level: %s", LOG_LEVEL)

    bridge = WMPBridge()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bridge.stop)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        await bridge.start()
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("❌ Fatal error: %s", e, exc_info=True)
        sys.exit(1)


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    run()
