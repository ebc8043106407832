"""
Gateway discovery: UDP broadcast search and MAC/IP address resolution.
"""

from __future__ import annotations

import logging
import platform
import re
import socket
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from config import (
    DISCOVERY_BROADCAST_ADDR,
    DISCOVERY_MODEL_PATTERN,
    DISCOVERY_POLL_INTERVAL,
    DISCOVERY_WINDOW,
    RESOLVER_PING_TIMEOUT,
    WMP_CONNECT_TIMEOUT,
    WMP_PORT,
)
from errors import DiscoveryError
from models import DiscoveryRecord
from parser import WMPDataParser, normalize_mac
from scheduler import Scheduler, Task
from wmp_frame import LineBuffer, cmd_id, encode_line

logger = logging.getLogger(__name__)

DISCOVERY_REQUEST = b"DISCOVER\r\n"

_PROC_ARP = Path("/proc/net/arp")
_MAC_RE = re.compile(r"([0-9A-Fa-f]{1,2}(?:[:-][0-9A-Fa-f]{1,2}){5})")
_IP_RE = re.compile(r"(\d{1,3}(?:\.\d{1,3}){3})")


# ============================================================================
# Address resolution
# ============================================================================

class AddressResolver(Protocol):
    def resolve_mac_to_ips(self, mac: str) -> list[str]: ...

    def resolve_ip_to_mac(self, ip: str) -> Optional[str]: ...


def parse_proc_arp(text: str) -> dict[str, str]:
    """Parse /proc/net/arp into {ip: MAC}."""
    table: dict[str, str] = {}
    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 4:
            continue
        ip, flags, mac = parts[0], parts[2], parts[3]
        if flags == "0x0" or normalize_mac(mac) in ("", "000000000000"):
            continue
        table[ip] = normalize_mac(mac)
    return table


def parse_neighbor_output(text: str) -> dict[str, str]:
    """Parse ``ip neigh`` or ``arp -an`` output into {ip: MAC}."""
    table: dict[str, str] = {}
    for line in text.splitlines():
        ip_match = _IP_RE.search(line)
        mac_match = _MAC_RE.search(line)
        if not ip_match or not mac_match:
            continue
        # arp -an on BSD drops leading zeros: 0:1d:c9:...
        octets = re.split(r"[:-]", mac_match.group(1))
        mac = "".join(o.zfill(2) for o in octets).upper()
        if len(mac) == 12 and mac != "000000000000":
            table[ip_match.group(1)] = mac
    return table


class NeighborTableResolver:
    """Resolve through the OS neighbour (ARP) cache, pinging first."""

    def __init__(self, ping_timeout: float = RESOLVER_PING_TIMEOUT) -> None:
        self.ping_timeout = ping_timeout

    def _ping(self, ip: str) -> bool:
        if platform.system() == "Windows":
            cmd = ["ping", "-n", "1", ip]
        else:
            cmd = ["ping", "-c", "1", "-W", str(int(self.ping_timeout)), ip]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.ping_timeout + 2,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("RESOLVE: ping %s failed: %s", ip, exc)
            return False
        return result.returncode == 0

    def _run(self, cmd: list[str]) -> str:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("RESOLVE: %s failed: %s", " ".join(cmd), exc)
            return ""
        return result.stdout if result.returncode == 0 else ""

    def read_table(self) -> dict[str, str]:
        if _PROC_ARP.exists():
            try:
                return parse_proc_arp(_PROC_ARP.read_text(encoding="ascii", errors="replace"))
            except OSError as exc:
                logger.debug("RESOLVE: cannot read %s: %s", _PROC_ARP, exc)
        if platform.system() == "Linux":
            output = self._run(["ip", "neigh", "show"])
            if output:
                return parse_neighbor_output(output)
        return parse_neighbor_output(self._run(["arp", "-an"]))

    def resolve_ip_to_mac(self, ip: str) -> Optional[str]:
        self._ping(ip)
        return self.read_table().get(ip)

    def resolve_mac_to_ips(self, mac: str) -> list[str]:
        mac = normalize_mac(mac)
        return sorted(ip for ip, m in self.read_table().items() if m == mac)


class DirectConnectResolver:
    """Last resort: connect to the protocol port and ask the gateway for its ID."""

    def __init__(
        self,
        candidates: Callable[[], list[str]] | None = None,
        port: int = WMP_PORT,
        timeout: float = WMP_CONNECT_TIMEOUT,
        connect_fn: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self.candidates = candidates
        self.port = port
        self.timeout = timeout
        self._connect_fn = connect_fn

    def resolve_ip_to_mac(self, ip: str) -> Optional[str]:
        try:
            sock = self._connect_fn((ip, self.port), timeout=self.timeout)
        except OSError as exc:
            logger.debug("RESOLVE: %s:%s unreachable: %s", ip, self.port, exc)
            return None
        try:
            sock.settimeout(self.timeout)
            sock.sendall(encode_line(cmd_id()))
            deadline = time.monotonic() + self.timeout
            buffer = LineBuffer()
            while time.monotonic() < deadline:
                chunk = sock.recv(1024)
                if not chunk:
                    break
                for raw in buffer.feed(chunk):
                    text = raw.decode("ascii", errors="replace").strip()
                    if text.upper().startswith("ID:"):
                        mac = WMPDataParser.parse_identity(text[3:]).get("mac")
                        return mac or None
        except OSError as exc:
            logger.debug("RESOLVE: ID query of %s failed: %s", ip, exc)
        finally:
            sock.close()
        return None

    def resolve_mac_to_ips(self, mac: str) -> list[str]:
        if self.candidates is None:
            return []
        mac = normalize_mac(mac)
        for ip in self.candidates():
            if self.resolve_ip_to_mac(ip) == mac:
                return [ip]
        return []


# ============================================================================
# Broadcast discovery
# ============================================================================

@dataclass
class DiscoveryRun:
    """State of one broadcast run."""
    run_id: int
    started_at: float
    deadline: float
    sock: socket.socket | None = None
    records: dict[str, DiscoveryRecord] = field(default_factory=dict)
    incompatible: int = 0

    @property
    def found(self) -> bool:
        return bool(self.records)


class DiscoveryEngine:
    """Broadcast discovery as a self-terminating scheduler task, plus resolution."""

    TASK_ID = "discovery"

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        on_record: Callable[[DiscoveryRecord], None] | None = None,
        resolvers: list[AddressResolver] | None = None,
        broadcast_addr: str = DISCOVERY_BROADCAST_ADDR,
        port: int = WMP_PORT,
        window_s: float = DISCOVERY_WINDOW,
        poll_interval_s: float = DISCOVERY_POLL_INTERVAL,
        model_pattern: str = DISCOVERY_MODEL_PATTERN,
        socket_factory: Callable[[], socket.socket] | None = None,
    ) -> None:
        self._scheduler = scheduler
        self.on_record = on_record
        self.resolvers: list[AddressResolver] = (
            list(resolvers) if resolvers is not None else [NeighborTableResolver()]
        )
        self.broadcast_addr = broadcast_addr
        self.port = port
        self.window_s = window_s
        self.poll_interval_s = poll_interval_s
        self.model_re = re.compile(model_pattern, re.IGNORECASE)
        self._socket_factory = socket_factory or self._udp_socket
        self._run_counter = 0
        self.current: DiscoveryRun | None = None
        self.last_run: DiscoveryRun | None = None

    @staticmethod
    def _udp_socket() -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("", 0))
        return sock

    @property
    def running(self) -> bool:
        return self.current is not None

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    def start_broadcast(
        self,
        on_complete: Callable[[DiscoveryRun], None] | None = None,
    ) -> DiscoveryRun:
        """Send the request and collect replies for the discovery window.

        A run already in progress is ended first.

        Raises:
            DiscoveryError: the request could not be sent.
        """
        if self.current is not None:
            self._finish(self.current, None)

        try:
            sock = self._socket_factory()
        except OSError as exc:
            raise DiscoveryError(f"cannot open discovery socket: {exc}") from exc
        try:
            sock.setblocking(False)
            sock.sendto(DISCOVERY_REQUEST, (self.broadcast_addr, self.port))
        except OSError as exc:
            sock.close()
            raise DiscoveryError(f"cannot send discovery request: {exc}") from exc

        self._run_counter += 1
        now = self._scheduler.now()
        run = DiscoveryRun(
            run_id=self._run_counter,
            started_at=now,
            deadline=now + self.window_s,
            sock=sock,
        )
        self.current = run
        logger.info(
            "🔎 DISCOVERY: request sent to %s:%s (run %s, %.0fs window)",
            self.broadcast_addr,
            self.port,
            run.run_id,
            self.window_s,
        )
        task = self._scheduler.new_task(
            self.TASK_ID, self.TASK_ID, self._collect, run.run_id, on_complete
        )
        task.delay(self.poll_interval_s)
        return run

    def stop(self) -> None:
        if self.current is not None:
            self._finish(self.current, None)
        self._scheduler.close_owner(self.TASK_ID)

    def _collect(
        self,
        task: Task,
        run_id: int,
        on_complete: Callable[[DiscoveryRun], None] | None,
    ) -> None:
        run = self.current
        if run is None or run.run_id != run_id:
            logger.debug("DISCOVERY: stale run %s ignored", run_id)
            return
        self._drain(run)
        if self._scheduler.now() >= run.deadline:
            task.close()
            self._finish(run, on_complete)
            return
        task.delay(self.poll_interval_s)

    def _drain(self, run: DiscoveryRun) -> None:
        sock = run.sock
        if sock is None:
            return
        while True:
            try:
                data, addr = sock.recvfrom(1024)
            except (BlockingIOError, InterruptedError, socket.timeout):
                return
            except OSError as exc:
                logger.warning("DISCOVERY: receive failed: %s", exc)
                return
            self.handle_reply(run, data, addr[0] if addr else "")

    def handle_reply(self, run: DiscoveryRun, data: bytes, sender: str = "") -> Optional[DiscoveryRecord]:
        record = WMPDataParser.parse_discovery_reply(data)
        if record is None:
            logger.debug("DISCOVERY: unparsable reply from %s: %r", sender, data)
            return None
        if not record.ip:
            record.ip = sender
        if record.protocol != "ASCII" or not self.model_re.search(record.model):
            run.incompatible += 1
            logger.info(
                "DISCOVERY: incompatible device %s (%s, %s) at %s ignored",
                record.mac,
                record.model,
                record.protocol,
                record.ip,
            )
            return None
        if record.mac in run.records:
            return None
        run.records[record.mac] = record
        logger.info(
            "DISCOVERY: found %s %s at %s (%s)",
            record.model,
            record.mac,
            record.ip,
            record.name or "-",
        )
        if self.on_record is not None:
            try:
                self.on_record(record)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("DISCOVERY: record handler failed for %s", record.mac)
        return record

    def _finish(
        self,
        run: DiscoveryRun,
        on_complete: Callable[[DiscoveryRun], None] | None,
    ) -> None:
        if run.sock is not None:
            try:
                run.sock.close()
            except OSError:
                pass
            run.sock = None
        if self.current is run:
            self.current = None
        self.last_run = run
        if run.found:
            logger.info(
                "DISCOVERY: run %s finished, %s gateway(s) found",
                run.run_id,
                len(run.records),
            )
        else:
            logger.info(
                "DISCOVERY: run %s finished, not found (%s incompatible)",
                run.run_id,
                run.incompatible,
            )
        if on_complete is not None:
            on_complete(run)

    # ------------------------------------------------------------------
    # Targeted resolution
    # ------------------------------------------------------------------

    def resolve_mac_to_ips(self, mac: str) -> list[str]:
        mac = normalize_mac(mac)
        for resolver in self.resolvers:
            ips = resolver.resolve_mac_to_ips(mac)
            if ips:
                logger.debug("RESOLVE: %s -> %s via %s", mac, ips, type(resolver).__name__)
                return ips
        return []

    def resolve_ip_to_mac(self, ip: str) -> Optional[str]:
        for resolver in self.resolvers:
            mac = resolver.resolve_ip_to_mac(ip)
            if mac:
                return mac
        return None

    def identify(self, ip: str) -> Optional[DiscoveryRecord]:
        """Targeted lookup of one address, returning a record on success."""
        mac = self.resolve_ip_to_mac(ip)
        if not mac:
            return None
        return DiscoveryRecord(mac=mac, ip=ip, model="", method="resolve")
