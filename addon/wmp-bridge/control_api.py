#!/usr/bin/env python3
"""
Minimal HTTP control API: gateway snapshots, commands and discovery.

Requests are served on a background thread; every call into the bridge is
marshalled onto the event loop by the bridge's ``control_api_*`` methods.
No authentication.
"""

from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any


class _Handler(BaseHTTPRequestHandler):  # pylint: disable=invalid-name
    """HTTP handler for the control API."""
    server_version = "WMPBridgeControlAPI/0.1"

    def _send_json(self, status: int, payload: Any) -> None:
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(raw)))
        self.send_header("X-Content-Type-Options", "nosniff")
        self.end_headers()
        self.wfile.write(raw)

    def _read_json(self) -> dict[str, Any] | None:
        length = int(self.headers.get("Content-Length", "0") or "0")
        body = self.rfile.read(length) if length > 0 else b""
        try:
            data = json.loads(body.decode("utf-8") if body else "{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def do_GET(self) -> None:  # pylint: disable=invalid-name
        bridge = self.server.bridge  # type: ignore[attr-defined]
        path = self.path.rstrip("/")
        if path == "/api/health":
            self._send_json(200, bridge.get_control_api_health())
            return
        if path == "/api/gateways":
            self._send_json(200, bridge.control_api_gateways())
            return
        self._send_json(404, {"error": "not_found"})

    def do_POST(self) -> None:  # pylint: disable=invalid-name
        bridge = self.server.bridge  # type: ignore[attr-defined]
        path = self.path.rstrip("/")

        if path == "/api/discover":
            res = bridge.control_api_discover()
            self._send_json(200 if res.get("ok") else 409, res)
            return

        if path != "/api/command":
            self._send_json(404, {"error": "not_found"})
            return

        data = self._read_json()
        if data is None:
            self._send_json(400, {"error": "invalid_json"})
            return

        gateway_id = data.get("gateway")
        action = data.get("action")
        if not gateway_id or not action:
            self._send_json(
                400,
                {"error": "missing_fields", "required": ["gateway", "action"]},
            )
            return

        res = bridge.control_api_command(
            gateway_id=str(gateway_id),
            unit_id=data.get("unit"),
            action=str(action),
            value=data.get("value"),
        )
        status = 200 if res.get("ok") else 409
        self._send_json(status, res)

    def log_message(self, _fmt: str, *args: Any) -> None:  # pylint: disable=arguments-differ
        """Silence the default stderr access log."""


class ControlAPIServer:
    """Thin wrapper around ThreadingHTTPServer with the control API handler."""

    def __init__(self, *, host: str, port: int, bridge: Any):
        self.host = host
        self.port = port
        self.bridge = bridge
        self._thread: threading.Thread | None = None
        self._httpd: ThreadingHTTPServer | None = None

    @property
    def server_address(self) -> tuple[str, int] | None:
        if self._httpd is None:
            return None
        return self._httpd.server_address[:2]  # type: ignore[return-value]

    def start(self) -> None:
        httpd = ThreadingHTTPServer((self.host, self.port), _Handler)
        httpd.bridge = self.bridge  # type: ignore[attr-defined]
        self._httpd = httpd

        t = threading.Thread(
            target=httpd.serve_forever,
            name="wmp-control-api",
            daemon=True)
        t.start()
        self._thread = t

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None
