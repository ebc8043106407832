#!/usr/bin/env python3
"""
Gateway connection manager - one TCP session per WMP gateway.

Provides:
- optional relay-proxy negotiation with fallback to a direct connect
- rediscovery of a gateway whose stored IP address stopped answering
- bounded-time send and zero-timeout receive polling
- a liveness check driven from the master tick

Every socket operation uses a short timeout so that the scheduler callbacks
calling into this module return promptly.
"""

from __future__ import annotations

import logging
import select
import socket
import time
from typing import Any, Callable

from config import (
    RECV_CHUNK_SIZE,
    RECV_MAX_DELAY,
    WMP_CONNECT_TIMEOUT,
    WMP_PORT,
    WMP_PROXY_HOST,
    WMP_PROXY_PORT,
    WMP_PROXY_TIMEOUT,
    WMP_SEND_TIMEOUT,
)
from errors import ProxyHandshakeError, SendTimeout, TransportError
from models import ConnectionState, ConnectionStats
from wmp_frame import (
    encode_line,
    is_proxy_banner,
    is_proxy_conn_ok,
    proxy_conn_directive,
)

logger = logging.getLogger(__name__)

ConnectFn = Callable[..., socket.socket]
ResolveFn = Callable[[str], list[str]]


def liveness_timeout(ping_interval: float, refresh_interval: float) -> float:
    """Silence after which a connection is considered dead."""
    return max(2.0 * refresh_interval, 3.0 * ping_interval)


class GatewayConnection:
    """Owns the one socket of one gateway."""

    def __init__(
        self,
        gateway_id: str,
        host: str,
        port: int = WMP_PORT,
        *,
        mac: str | None = None,
        use_proxy: bool = False,
        store: Any = None,
        resolver: ResolveFn | None = None,
        connect_fn: ConnectFn = socket.create_connection,
        clock: Callable[[], float] = time.time,
        proxy_host: str = WMP_PROXY_HOST,
        proxy_port: int = WMP_PROXY_PORT,
        connect_timeout_s: float = WMP_CONNECT_TIMEOUT,
        proxy_timeout_s: float = WMP_PROXY_TIMEOUT,
        send_timeout_s: float = WMP_SEND_TIMEOUT,
    ) -> None:
        self.gateway_id = gateway_id
        self.host = host
        self.port = port
        self.mac = mac
        self.use_proxy = use_proxy
        self.store = store
        self.resolver = resolver
        self.proxy_host = proxy_host
        self.proxy_port = proxy_port
        self.connect_timeout_s = connect_timeout_s
        self.proxy_timeout_s = proxy_timeout_s
        self.send_timeout_s = send_timeout_s
        self._connect_fn = connect_fn
        self._clock = clock

        self._sock: socket.socket | None = None
        self._pending = b""
        self.state = ConnectionState.DISCONNECTED
        self.using_proxy = False
        self.closing = False
        self.connected_at: float | None = None
        self.last_sent_at: float | None = None
        self.last_recv_at: float | None = None
        self.stats = ConnectionStats()

    def __repr__(self) -> str:
        via = " via proxy" if self.using_proxy else ""
        return f"<GatewayConnection {self.gateway_id} {self.host}:{self.port} {self.state.value}{via}>"

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._sock is not None

    def mark_closing(self) -> None:
        """Peer announced CLOSE; the next I/O error or EOF ends the session."""
        self.closing = True

    def is_stale(self, now: float, ping_interval: float, refresh_interval: float) -> bool:
        if not self.is_connected():
            return False
        last = self.last_recv_at or self.connected_at or now
        return now - last > liveness_timeout(ping_interval, refresh_interval)

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    def open(self) -> bool:
        """Connect if not connected. Returns True when connected afterwards."""
        if self.state == ConnectionState.CONNECTED:
            return True
        if self.state == ConnectionState.CONNECTING:
            logger.debug("WMP[%s]: connect already in progress", self.gateway_id)
            return False

        self.state = ConnectionState.CONNECTING
        try:
            sock = None
            via_proxy = False
            if self.use_proxy:
                try:
                    sock = self._open_via_proxy(self.host, self.port)
                    via_proxy = True
                except TransportError as exc:
                    logger.info(
                        "WMP[%s]: proxy unavailable (%s), connecting directly",
                        self.gateway_id,
                        exc,
                    )
            if sock is None:
                try:
                    sock = self._dial(self.host, self.port, self.connect_timeout_s)
                except TransportError as exc:
                    logger.warning(
                        "WMP[%s]: connect to %s:%s failed: %s",
                        self.gateway_id,
                        self.host,
                        self.port,
                        exc,
                    )
                    sock = self._rediscover()
            if sock is None:
                self.state = ConnectionState.DISCONNECTED
                return False
            self._attach(sock, via_proxy)
            return True
        except Exception:
            self.state = ConnectionState.DISCONNECTED
            raise

    def close(self, reason: str = "") -> None:
        sock = self._sock
        was_connected = self.state == ConnectionState.CONNECTED
        self._sock = None
        self._pending = b""
        self.state = ConnectionState.DISCONNECTED
        self.using_proxy = False
        self.closing = False
        self.connected_at = None
        if sock is not None:
            try:
                sock.close()
            except OSError as exc:
                logger.debug("WMP[%s]: close error: %s", self.gateway_id, exc)
        if was_connected:
            self.stats.disconnects += 1
            logger.info(
                "WMP[%s]: disconnected%s",
                self.gateway_id,
                f" ({reason})" if reason else "",
            )

    def _attach(self, sock: socket.socket, via_proxy: bool) -> None:
        self._sock = sock
        self.state = ConnectionState.CONNECTED
        self.using_proxy = via_proxy
        self.closing = False
        now = self._clock()
        self.connected_at = now
        self.last_recv_at = None
        self.stats.connects += 1
        if via_proxy:
            self.stats.proxy_connects += 1
        logger.info(
            "🔌 WMP[%s]: connected to %s:%s%s",
            self.gateway_id,
            self.host,
            self.port,
            " via proxy" if via_proxy else "",
        )

    def _dial(self, host: str, port: int, timeout: float) -> socket.socket:
        try:
            return self._connect_fn((host, port), timeout=timeout)
        except OSError as exc:
            self.stats.errors += 1
            raise TransportError(f"{host}:{port}: {exc}") from exc

    # ------------------------------------------------------------------
    # Relay proxy
    # ------------------------------------------------------------------

    def _open_via_proxy(self, host: str, port: int) -> socket.socket:
        sock = self._dial(self.proxy_host, self.proxy_port, self.proxy_timeout_s)
        try:
            leftover = b""
            banner, leftover = self._read_line(sock, leftover, self.proxy_timeout_s)
            if not is_proxy_banner(banner):
                raise ProxyHandshakeError(f"unexpected proxy banner {banner!r}")
            directive = proxy_conn_directive(
                host, port, self.gateway_id, int(RECV_MAX_DELAY * 1000)
            )
            sock.settimeout(self.proxy_timeout_s)
            sock.sendall(directive.encode("ascii"))
            reply, leftover = self._read_line(sock, leftover, self.proxy_timeout_s)
            if not is_proxy_conn_ok(reply):
                raise ProxyHandshakeError(f"proxy refused CONN: {reply!r}")
        except (OSError, ProxyHandshakeError) as exc:
            self.stats.errors += 1
            try:
                sock.close()
            except OSError:
                pass
            if isinstance(exc, ProxyHandshakeError):
                raise
            raise ProxyHandshakeError(str(exc)) from exc
        self._pending = leftover
        return sock

    @staticmethod
    def _read_line(sock: socket.socket, buf: bytes, timeout: float) -> tuple[str, bytes]:
        """Read one LF/CR terminated line; returns (line, bytes after it)."""
        deadline = time.monotonic() + timeout
        while True:
            for sep in (b"\n", b"\r"):
                idx = buf.find(sep)
                if idx >= 0:
                    line = buf[:idx].decode("ascii", errors="replace").strip()
                    rest = buf[idx + 1:].lstrip(b"\r\n")
                    return line, rest
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProxyHandshakeError("timed out waiting for proxy reply")
            sock.settimeout(remaining)
            try:
                chunk = sock.recv(RECV_CHUNK_SIZE)
            except socket.timeout as exc:
                raise ProxyHandshakeError("timed out waiting for proxy reply") from exc
            if not chunk:
                raise ProxyHandshakeError("proxy closed the connection")
            buf += chunk

    # ------------------------------------------------------------------
    # Rediscovery
    # ------------------------------------------------------------------

    def _rediscover(self) -> socket.socket | None:
        if not self.mac or self.resolver is None:
            return None
        try:
            candidates = self.resolver(self.mac)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("WMP[%s]: rediscovery failed: %s", self.gateway_id, exc)
            return None
        for ip in candidates:
            if ip == self.host:
                continue
            try:
                sock = self._dial(ip, self.port, self.connect_timeout_s)
            except TransportError as exc:
                logger.debug("WMP[%s]: candidate %s failed: %s", self.gateway_id, ip, exc)
                continue
            logger.info(
                "WMP[%s]: gateway %s moved %s -> %s",
                self.gateway_id,
                self.mac,
                self.host,
                ip,
            )
            self.host = ip
            self.stats.rediscoveries += 1
            if self.store is not None:
                self.store.set("IPAddress", ip)
            return sock
        logger.info("WMP[%s]: no reachable address for %s", self.gateway_id, self.mac)
        return None

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def send_line(self, line: str) -> None:
        """Send one command line.

        Raises:
            SendTimeout: nothing was written; the connection stays open.
            TransportError: not connected, the socket failed, or the line was
                only partly written (the connection is closed).
        """
        sock = self._sock
        if sock is None or self.state != ConnectionState.CONNECTED:
            raise TransportError("not connected")
        data = encode_line(line)
        sent = 0
        try:
            sock.settimeout(self.send_timeout_s)
            while sent < len(data):
                sent += sock.send(data[sent:])
        except socket.timeout as exc:
            self.stats.timeouts += 1
            if sent:
                # the gateway already holds a fragment of this line
                self.stats.errors += 1
                self.close(f"send of {line!r} stalled after {sent} bytes")
                raise TransportError(f"partial send of {line!r}") from exc
            raise SendTimeout(f"send of {line!r} timed out") from exc
        except OSError as exc:
            self.stats.errors += 1
            self.close(f"send failed: {exc}")
            raise TransportError(str(exc)) from exc
        self.last_sent_at = self._clock()
        self.stats.lines_sent += 1
        logger.debug("WMP[%s] -> %s", self.gateway_id, line)

    def poll(self) -> bytes:
        """Return whatever bytes are available now (possibly b'')."""
        sock = self._sock
        if sock is None:
            return b""
        if self._pending:
            data, self._pending = self._pending, b""
            self.last_recv_at = self._clock()
            return data
        try:
            readable, _, _ = select.select([sock], [], [], 0)
            if not readable:
                return b""
            data = sock.recv(RECV_CHUNK_SIZE)
        except (BlockingIOError, InterruptedError):
            return b""
        except OSError as exc:
            self.stats.errors += 1
            self.close(f"receive failed: {exc}")
            return b""
        if not data:
            self.close("closed by gateway" if self.closing else "EOF")
            return b""
        self.last_recv_at = self._clock()
        return data
