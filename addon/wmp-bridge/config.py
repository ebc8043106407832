#!/usr/bin/env python3
"""
WMP Bridge configuration - all constants and environment variables.
"""

import os

# ============================================================================
# Helpers
# ============================================================================


def _get_int_env(name: str, default: int) -> int:
    """Return an int from an env variable, falling back safely."""
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = str(raw).strip()
    if raw == "" or raw.lower() == "null":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """Return a float from an env variable, falling back safely."""
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = str(raw).strip()
    if raw == "" or raw.lower() == "null":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = str(raw).strip().lower()
    if raw in ("", "null"):
        return default
    return raw in ("1", "true", "yes", "on")


# ============================================================================
# Logging
# ============================================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ============================================================================
# WMP protocol
# ============================================================================
WMP_PORT = _get_int_env("WMP_PORT", 3310)
WMP_PROXY_HOST = os.getenv("WMP_PROXY_HOST", "127.0.0.1")
WMP_PROXY_PORT = _get_int_env("WMP_PROXY_PORT", 2504)
WMP_CONNECT_TIMEOUT = _get_float_env("WMP_CONNECT_TIMEOUT", 5.0)
WMP_PROXY_TIMEOUT = _get_float_env("WMP_PROXY_TIMEOUT", 2.0)
WMP_SEND_TIMEOUT = _get_float_env("WMP_SEND_TIMEOUT", 2.0)
WMP_EOL = "\r"  # gateway accepts CR, LF or both

# ============================================================================
# Pacing (master tick)
# ============================================================================
DEFAULT_PING_INTERVAL = _get_int_env("DEFAULT_PING_INTERVAL", 32)
DEFAULT_REFRESH_INTERVAL = _get_int_env("DEFAULT_REFRESH_INTERVAL", 64)
CLOCK_SYNC_ENABLED = _get_bool_env("CLOCK_SYNC_ENABLED", True)
CLOCK_SYNC_INTERVAL = _get_int_env("CLOCK_SYNC_INTERVAL", 3600)
QUEUE_TICK_DELAY = _get_float_env("QUEUE_TICK_DELAY", 0.25)
MAX_SEND_ATTEMPTS = _get_int_env("MAX_SEND_ATTEMPTS", 3)
MIN_TICK_DELAY = _get_float_env("MIN_TICK_DELAY", 1.0)
MAX_TICK_DELAY = _get_float_env("MAX_TICK_DELAY", 7200.0)

# ============================================================================
# Receive polling
# ============================================================================
RECV_MIN_DELAY = _get_float_env("RECV_MIN_DELAY", 0.05)
RECV_MAX_DELAY = _get_float_env("RECV_MAX_DELAY", 2.0)
RECV_BACKOFF_FACTOR = _get_float_env("RECV_BACKOFF_FACTOR", 2.0)
RECV_CHUNK_SIZE = 1024

# ============================================================================
# Reconnect
# ============================================================================
RECONNECT_MIN_DELAY = _get_float_env("RECONNECT_MIN_DELAY", 5.0)
RECONNECT_MAX_DELAY = _get_float_env("RECONNECT_MAX_DELAY", 300.0)

# ============================================================================
# Discovery
# ============================================================================
DISCOVERY_WINDOW = _get_float_env("DISCOVERY_WINDOW", 30.0)
DISCOVERY_POLL_INTERVAL = _get_float_env("DISCOVERY_POLL_INTERVAL", 0.5)
DISCOVERY_BROADCAST_ADDR = os.getenv(
    "DISCOVERY_BROADCAST_ADDR", "255.255.255.255"
)
DISCOVERY_MODEL_PATTERN = os.getenv("DISCOVERY_MODEL_PATTERN", "WMP")
DISCOVERY_ON_START = _get_bool_env("DISCOVERY_ON_START", False)
RESOLVER_PING_TIMEOUT = _get_float_env("RESOLVER_PING_TIMEOUT", 5.0)

# ============================================================================
# Units
# ============================================================================
AUTO_ADD_UNITS = _get_bool_env("AUTO_ADD_UNITS", True)
DEFAULT_UNITS = os.getenv("DEFAULT_UNITS", "1")
FORCE_UNITS = os.getenv("FORCE_UNITS", "").strip().upper()
ERRCODE_HISTORY = 10

# ============================================================================
# Persistence
# ============================================================================
DATA_DIR = os.getenv("DATA_DIR", "/data")
GATEWAYS_PATH = os.path.join(DATA_DIR, "gateways.json")
WMP_GATEWAYS = os.getenv("WMP_GATEWAYS", "")

# ============================================================================
# MQTT
# ============================================================================
MQTT_ENABLED = _get_bool_env("MQTT_ENABLED", True)
MQTT_HOST = os.getenv("MQTT_HOST", "core-mosquitto")
MQTT_PORT = _get_int_env("MQTT_PORT", 1883)
MQTT_USERNAME = os.getenv("MQTT_USERNAME", "")
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD", "")
MQTT_NAMESPACE = os.getenv("MQTT_NAMESPACE", "wmp")
MQTT_PUBLISH_QOS = 1
MQTT_STATE_RETAIN = _get_bool_env("MQTT_STATE_RETAIN", True)
MQTT_CONNECT_TIMEOUT = _get_int_env("MQTT_CONNECT_TIMEOUT", 10)
MQTT_HEALTH_CHECK_INTERVAL = _get_int_env("MQTT_HEALTH_CHECK_INTERVAL", 30)

# ============================================================================
# Control API
# ============================================================================
CONTROL_API_HOST = os.getenv("CONTROL_API_HOST", "0.0.0.0")
CONTROL_API_PORT = _get_int_env("CONTROL_API_PORT", 0)
CONTROL_API_TIMEOUT = _get_float_env("CONTROL_API_TIMEOUT", 10.0)

# ============================================================================
# Status
# ============================================================================
STATUS_INTERVAL = _get_int_env("STATUS_INTERVAL", 60)
