#!/usr/bin/env python3
"""
Parser for WMP protocol lines.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from errors import ProtocolError
from models import DiscoveryRecord, MessageType, WMPMessage

logger = logging.getLogger(__name__)

_LIST_RE = re.compile(r"^\s*\[(.*)\]\s*$")
_MAC_CLEAN_RE = re.compile(r"[^0-9A-Fa-f]")


def normalize_mac(mac: str) -> str:
    """``00:1d:c9:a1:83:e1`` / ``001DC9A183E1`` -> ``001DC9A183E1``."""
    return _MAC_CLEAN_RE.sub("", str(mac or "")).upper()


class WMPDataParser:
    """Parser for lines received from a WMP gateway."""

    @staticmethod
    def parse_line(line: str | bytes) -> WMPMessage:
        """Parse ``TYPE[,unit][:seg1[:seg2...]]`` into a WMPMessage.

        Raises:
            ProtocolError: empty line, non-numeric unit, or a CHN/LIMITS
                line without its function segment.
        """
        if isinstance(line, bytes):
            text = line.decode("ascii", errors="replace")
        else:
            text = line
        text = text.strip()
        if not text:
            raise ProtocolError("empty line")

        head, sep, payload = text.partition(":")
        head_parts = [p.strip() for p in head.split(",")]
        token = head_parts[0].upper()
        if not token:
            raise ProtocolError(f"missing message type in {text!r}")

        unit: int | None = None
        if len(head_parts) > 1 and head_parts[1] != "":
            try:
                unit = int(head_parts[1])
            except ValueError as exc:
                raise ProtocolError(
                    f"invalid unit {head_parts[1]!r} in {text!r}"
                ) from exc

        segments = payload.split(":") if sep else []
        msg_type = MessageType.from_token(token)
        message = WMPMessage(
            type=msg_type, token=token, unit=unit, segments=segments, raw=text
        )

        if msg_type in (MessageType.CHN, MessageType.LIMITS) and not message.function:
            raise ProtocolError(f"insufficient segments in {text!r}")
        return message

    @staticmethod
    def parse_value_list(value: str | None) -> list[str]:
        """``[160,320]`` -> ``['160', '320']``; a bare value is a 1-item list."""
        if value is None:
            return []
        match = _LIST_RE.match(value)
        inner = match.group(1) if match else value
        return [v.strip().upper() for v in inner.split(",") if v.strip()]

    @staticmethod
    def parse_identity(payload: str) -> dict[str, Any]:
        """Parse the ``ID`` payload.

        Example: ``IS-IR-WMP-1,001DC9A183E1,192.168.0.177,ASCII,v1.0.5,-51,TEST,N``
        """
        fields = [f.strip() for f in payload.split(",")]
        fields += [""] * (8 - len(fields))
        return {
            "model": fields[0],
            "mac": normalize_mac(fields[1]),
            "ip": fields[2],
            "protocol": fields[3].upper(),
            "firmware": fields[4],
            "rssi": fields[5],
            "name": fields[6],
            "flags": fields[7],
        }

    @staticmethod
    def parse_discovery_reply(data: str | bytes) -> DiscoveryRecord | None:
        """Parse a ``DISCOVER:<model>,<mac>,<ip>,ASCII,<fw>,<rssi>,<name>,<flags>,<count>`` reply."""
        if isinstance(data, bytes):
            text = data.decode("ascii", errors="replace")
        else:
            text = data
        text = text.strip()
        head, sep, payload = text.partition(":")
        if not sep or head.strip().upper() != "DISCOVER":
            return None
        fields = [f.strip() for f in payload.split(",")]
        if len(fields) < 4:
            logger.debug("DISCOVERY: short reply ignored: %r", text)
            return None
        fields += [""] * (9 - len(fields))
        mac = normalize_mac(fields[1])
        if not mac:
            return None
        return DiscoveryRecord(
            mac=mac,
            ip=fields[2],
            model=fields[0],
            name=fields[6],
            firmware=fields[4],
            rssi=fields[5],
            protocol=fields[3].upper(),
            flags=fields[7],
        )
