#!/usr/bin/env python3
"""
Data models for WMP Bridge.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


# ============================================================================
# Connection state
# ============================================================================

class ConnectionState(Enum):
    """Lifecycle of a gateway TCP session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# ============================================================================
# Wire message types
# ============================================================================

class MessageType(Enum):
    """Inbound WMP message types."""
    ID = "ID"
    INFO = "INFO"
    CHN = "CHN"
    LIMITS = "LIMITS"
    ACK = "ACK"
    ERR = "ERR"
    PONG = "PONG"
    CLOSE = "CLOSE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_token(cls, token: str) -> MessageType:
        try:
            return cls(token.strip().upper())
        except ValueError:
            return cls.UNKNOWN


@dataclass
class WMPMessage:
    """One parsed protocol line.

    ``segments`` holds the colon separated payload segments (without the
    ``TYPE[,unit]`` head); ``args`` holds the first segment split on commas,
    which is where CHN and LIMITS carry function name and value.
    """
    type: MessageType
    token: str
    unit: int | None
    segments: list[str]
    raw: str

    @property
    def args(self) -> list[str]:
        if not self.segments:
            return []
        return [a.strip() for a in self.segments[0].split(",")]

    @property
    def function(self) -> str | None:
        args = self.args
        return args[0].upper() if args and args[0] else None

    @property
    def value(self) -> str | None:
        args = self.args
        if len(args) < 2:
            return None
        return ",".join(args[1:])


# ============================================================================
# HVAC modes
# ============================================================================

class HVACMode(Enum):
    """Externally visible operating mode (Off is a mode here, not in WMP)."""
    OFF = "Off"
    AUTO = "Auto"
    HEAT = "Heat"
    COOL = "Cool"
    DRY = "Dry"
    FAN = "Fan"

    @classmethod
    def parse(cls, value: str) -> HVACMode:
        norm = str(value).strip().lower()
        for mode in cls:
            if mode.value.lower() == norm or mode.name.lower() == norm:
                return mode
        # Names used by UPnP-style HVAC services
        aliases = {
            "coolon": cls.COOL,
            "heaton": cls.HEAT,
            "autochangeover": cls.AUTO,
            "fanonly": cls.FAN,
            "fan_only": cls.FAN,
        }
        if norm in aliases:
            return aliases[norm]
        raise ValueError(f"Unknown HVAC mode: {value}")


VENDOR_TO_MODE: dict[str, HVACMode] = {
    "AUTO": HVACMode.AUTO,
    "HEAT": HVACMode.HEAT,
    "COOL": HVACMode.COOL,
    "DRY": HVACMode.DRY,
    "FAN": HVACMode.FAN,
}
MODE_TO_VENDOR: dict[HVACMode, str] = {v: k for k, v in VENDOR_TO_MODE.items()}


class FanMode(Enum):
    AUTO = "Auto"
    ON = "ContinuousOn"


class VaneAxis(Enum):
    """Vane axes and the WMP function that drives them."""
    UP_DOWN = "VANEUD"
    LEFT_RIGHT = "VANELR"


# ============================================================================
# Discovery
# ============================================================================

@dataclass
class DiscoveryRecord:
    """A gateway seen by one discovery run."""
    mac: str
    ip: str
    model: str
    name: str = ""
    firmware: str = ""
    rssi: str = ""
    protocol: str = "ASCII"
    flags: str = ""
    method: str = "broadcast"


# ============================================================================
# Connection stats / outbound queue
# ============================================================================

@dataclass
class ConnectionStats:
    connects: int = 0
    proxy_connects: int = 0
    disconnects: int = 0
    errors: int = 0
    timeouts: int = 0
    rediscoveries: int = 0
    lines_sent: int = 0
    lines_received: int = 0


@dataclass
class QueuedCommand:
    """One outbound line waiting for the pacer."""
    line: str
    unit: int | None = None
    attempts: int = 0
    on_done: Callable[[bool], Any] | None = field(default=None, repr=False)
