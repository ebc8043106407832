#!/usr/bin/env python3
"""
Line framing and command builders for the WMP ASCII protocol.
"""

from __future__ import annotations

import logging
from datetime import datetime

from config import WMP_EOL

logger = logging.getLogger(__name__)

_CR = 0x0D
_LF = 0x0A
MAX_LINE_LENGTH = 4096


class LineBuffer:
    """Accumulates inbound bytes and splits them into protocol lines.

    A line ends at CR or LF. Empty lines are skipped, so CRLF (even when the
    two bytes arrive in separate reads) counts as a single terminator. Bytes
    after the last terminator stay buffered for the next ``feed``.
    """

    def __init__(self, max_length: int = MAX_LINE_LENGTH) -> None:
        self._buf = bytearray()
        self.max_length = max_length

    def __len__(self) -> int:
        return len(self._buf)

    @property
    def pending(self) -> bytes:
        return bytes(self._buf)

    def clear(self) -> None:
        self._buf.clear()

    def feed(self, data: bytes) -> list[bytes]:
        lines: list[bytes] = []
        for byte in data:
            if byte in (_CR, _LF):
                if self._buf:
                    lines.append(bytes(self._buf))
                    self._buf.clear()
                continue
            if len(self._buf) >= self.max_length:
                logger.warning(
                    "WMP: line exceeds %s bytes without terminator, dropped",
                    self.max_length,
                )
                self._buf.clear()
            self._buf.append(byte)
        return lines


# ---------------------------------------------------------------------------
# Outbound command lines
# ---------------------------------------------------------------------------


def encode_line(line: str) -> bytes:
    """Terminate a command line for the wire."""
    return (line + WMP_EOL).encode("ascii", errors="replace")


def cmd_id() -> str:
    return "ID"


def cmd_info() -> str:
    return "INFO"


def cmd_ping() -> str:
    return "PING"


def cmd_limits(capability: str = "*") -> str:
    return f"LIMITS:{capability.upper()}"


def cmd_get(unit: int, capability: str = "*") -> str:
    return f"GET,{int(unit)}:{capability.upper()}"


def cmd_set(unit: int, capability: str, value: str | int) -> str:
    return f"SET,{int(unit)}:{capability.upper()},{str(value).upper()}"


def cmd_device_name(name: str) -> str:
    return f"CFG:DEVICENAME,{name.strip().upper()}"


def cmd_datetime(when: datetime) -> str:
    return f"CFG:DATETIME,{when.strftime('%d/%m/%Y %H:%M:%S')}"


# ---------------------------------------------------------------------------
# Relay proxy handshake
# ---------------------------------------------------------------------------


def proxy_conn_directive(host: str, port: int, notify_id: str, rtim_ms: int) -> str:
    """``CONN`` request sent to the local relay proxy after its banner."""
    return f"CONN {host}:{int(port)} NTFY={notify_id} RTIM={int(rtim_ms)} PACE=1\n"


def is_proxy_banner(line: str) -> bool:
    return line.strip().upper().startswith("OK")


def is_proxy_conn_ok(line: str) -> bool:
    return line.strip().upper().startswith("OK CONN")
