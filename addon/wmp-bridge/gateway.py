#!/usr/bin/env python3
"""
One WMP gateway: its connection, pacer, dispatcher and unit table.

All state lives on the instance; the bridge keeps one WMPGateway per
provisioned gateway. Every method is called on the event loop thread.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import asdict
from typing import Any, Callable

from command_pacer import CommandPacer
from config import (
    CLOCK_SYNC_ENABLED,
    DEFAULT_PING_INTERVAL,
    DEFAULT_REFRESH_INTERVAL,
    FORCE_UNITS,
    WMP_PORT,
)
from connection import GatewayConnection
from dispatcher import Dispatcher
from errors import CommandValidationError
from models import HVACMode
from attribute_store import AttributeStore
from scheduler import Scheduler
from units import Unit, UnitRegistry
from wmp_frame import cmd_device_name, cmd_id

logger = logging.getLogger(__name__)

Listener = Callable[["WMPGateway", "Unit | None"], None]


def _parse_unit_list(value: str | None) -> list[int]:
    out: list[int] = []
    for part in (value or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            uid = int(part)
        except ValueError:
            logger.warning("Ignoring invalid unit id %r", part)
            continue
        if uid not in out:
            out.append(uid)
    return out


class WMPGateway:
    """Runtime object of one gateway."""

    def __init__(
        self,
        gateway_id: str,
        store: AttributeStore,
        scheduler: Scheduler,
        *,
        resolver: Callable[[str], list[str]] | None = None,
        connect_fn: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self.gateway_id = gateway_id
        self.store = store
        self._scheduler = scheduler
        self.run_stamp = 0
        self.running = False
        self.status = "Not started"
        self.failed = False
        self.identity: dict[str, Any] = {}
        self.info: dict[str, str] = {}
        self.last_command: str | None = None
        self.last_command_unit: int | None = None
        self.last_error: str | None = None
        self.last_ack_at: float | None = None
        self._listeners: list[Listener] = []

        self.units = UnitRegistry(temp_units=self.temp_units)
        for uid in _parse_unit_list(store.get("Units")):
            unit, _ = self.units.ensure(uid)
            self._restore_unit(unit)

        self.connection = GatewayConnection(
            gateway_id,
            store.get("IPAddress", "") or "",
            store.get_int("Port", WMP_PORT),
            mac=store.get("MACAddress"),
            use_proxy=store.get_bool("UseProxy", False),
            store=store,
            resolver=resolver,
            connect_fn=connect_fn,
            clock=scheduler.now,
        )
        self.dispatcher = Dispatcher(self)
        self.pacer = CommandPacer(self, scheduler)

    def __repr__(self) -> str:
        return f"<WMPGateway {self.gateway_id} {self.connection.host} {self.status}>"

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def ping_interval(self) -> int:
        return max(1, self.store.get_int("PingInterval", DEFAULT_PING_INTERVAL))

    @property
    def refresh_interval(self) -> int:
        return max(1, self.store.get_int("RefreshInterval", DEFAULT_REFRESH_INTERVAL))

    @property
    def clock_sync_enabled(self) -> bool:
        return self.store.get_bool("ClockSync", CLOCK_SYNC_ENABLED)

    @property
    def temp_units(self) -> str:
        forced = (self.store.get("ForceUnits") or FORCE_UNITS or "C").strip().upper()
        return "F" if forced.startswith("F") else "C"

    @property
    def name(self) -> str:
        return self.store.get("Name") or self.gateway_id

    def _restore_unit(self, unit: Unit) -> None:
        last_mode = self.store.get(f"LastMode.{unit.unit_id}")
        if last_mode:
            try:
                unit.last_mode = HVACMode.parse(last_mode)
            except ValueError:
                pass
        unit.last_fan_speed = self.store.get_int(f"LastFanSpeed.{unit.unit_id}", 0) or None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self.connection.host and not self.connection.mac:
            self.set_status("No address configured", failed=True)
            return
        self.run_stamp += 1
        self.running = True
        self.set_status("Connecting", failed=False)
        logger.info(
            "WMP[%s]: starting (run %s, ping %ss, refresh %ss)",
            self.gateway_id,
            self.run_stamp,
            self.ping_interval,
            self.refresh_interval,
        )
        self.pacer.start(self.run_stamp)

    def stop(self) -> None:
        self.run_stamp += 1
        self.running = False
        self.pacer.stop()
        self.connection.close("stopped")
        self._scheduler.close_owner(self.gateway_id)
        self.set_status("Stopped", failed=False)

    def restart(self) -> None:
        self.stop()
        self.start()

    # ------------------------------------------------------------------
    # Status and change notification
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self, unit: Unit | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, unit)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("WMP[%s]: listener failed", self.gateway_id)

    def set_status(self, status: str, *, failed: bool) -> None:
        if status == self.status and failed == self.failed:
            return
        self.status = status
        self.failed = failed
        self._notify(None)

    def refresh_status(self) -> None:
        if self.connection.is_connected():
            via = " (proxy)" if self.connection.using_proxy else ""
            self.set_status(f"Connected{via}", failed=False)
        elif self.running:
            self.set_status("Comm error", failed=True)

    def unit_changed(self, unit: Unit) -> None:
        self._notify(unit)

    def unit_added(self, unit: Unit) -> None:
        self._restore_unit(unit)
        self.store.set("Units", ",".join(str(uid) for uid in self.units.assigned_ids()))
        self._notify(unit)

    def unit_status(self, unit: Unit) -> str:
        return "Comm error" if self.failed else unit.display_status()

    def update_identity(self, payload: str, identity: dict[str, Any]) -> None:
        self.identity = identity
        self.store.set("IntesisID", payload)
        for attr, key in (
            ("Model", "model"),
            ("Firmware", "firmware"),
            ("Name", "name"),
            ("SignalDB", "rssi"),
        ):
            if identity.get(key):
                self.store.set(attr, identity[key])
        mac = identity.get("mac")
        if mac:
            self.store.set("MACAddress", mac)
            self.connection.mac = mac
        logger.info(
            "WMP[%s]: %s %s firmware %s, name %r",
            self.gateway_id,
            identity.get("model"),
            mac,
            identity.get("firmware"),
            identity.get("name"),
        )
        self._notify(None)

    # ------------------------------------------------------------------
    # Command submission
    # ------------------------------------------------------------------

    def _unit(self, unit_id: int) -> Unit:
        unit = self.units.get(int(unit_id))
        if unit is None or not unit.assigned:
            raise CommandValidationError(f"unknown unit {unit_id} on {self.gateway_id}")
        return unit

    def _submit(self, unit: Unit | None, lines: list[str]) -> bool:
        return self.pacer.submit(lines, unit.unit_id if unit else None)

    def set_mode(self, unit_id: int, mode: HVACMode | str) -> bool:
        unit = self._unit(unit_id)
        return self._submit(unit, unit.mode_commands(mode))

    def set_fan_mode(self, unit_id: int, fan_mode: Any) -> bool:
        unit = self._unit(unit_id)
        return self._submit(unit, unit.fan_mode_commands(fan_mode))

    def set_fan_speed(self, unit_id: int, speed: Any) -> bool:
        unit = self._unit(unit_id)
        return self._submit(unit, unit.fan_speed_commands(speed))

    def fan_speed_up(self, unit_id: int) -> bool:
        unit = self._unit(unit_id)
        return self._submit(unit, unit.fan_step_commands(+1))

    def fan_speed_down(self, unit_id: int) -> bool:
        unit = self._unit(unit_id)
        return self._submit(unit, unit.fan_step_commands(-1))

    def set_setpoint(self, unit_id: int, temperature: Any) -> bool:
        unit = self._unit(unit_id)
        lines = unit.setpoint_commands(temperature)
        ok = self._submit(unit, lines)
        if ok:
            unit.setpoint_pending = True
        return ok

    def set_vane(self, unit_id: int, axis: Any, position: Any) -> bool:
        unit = self._unit(unit_id)
        return self._submit(unit, unit.vane_commands(axis, position))

    def vane_step(self, unit_id: int, direction: str) -> bool:
        unit = self._unit(unit_id)
        steps = {
            "up": ("VANEUD", -1),
            "down": ("VANEUD", +1),
            "left": ("VANELR", -1),
            "right": ("VANELR", +1),
        }
        key = str(direction).strip().lower()
        if key not in steps:
            raise CommandValidationError(f"unknown vane direction {direction!r}")
        axis, delta = steps[key]
        return self._submit(unit, unit.vane_step_commands(axis, delta))

    def set_name(self, name: str) -> bool:
        name = str(name or "").strip()
        if not name or any(c in name for c in ",:\r\n") or not name.isascii():
            raise CommandValidationError(f"invalid device name {name!r}")
        return self._submit(None, [cmd_device_name(name), cmd_id()])

    def refresh(self, unit_id: int | None = None) -> bool:
        if unit_id is None:
            lines = [line for u in self.units if u.assigned for line in u.refresh_commands()]
            return self._submit(None, lines)
        unit = self._unit(unit_id)
        return self._submit(unit, unit.refresh_commands())

    ACTIONS: dict[str, str] = {
        "mode": "set_mode",
        "fan_mode": "set_fan_mode",
        "fan_speed": "set_fan_speed",
        "fan_speed_up": "fan_speed_up",
        "fan_speed_down": "fan_speed_down",
        "setpoint": "set_setpoint",
        "vane_ud": "set_vane",
        "vane_lr": "set_vane",
        "vane_step": "vane_step",
        "refresh": "refresh",
        "name": "set_name",
    }

    def execute(self, action: str, unit_id: int | None = None, value: Any = None) -> dict[str, Any]:
        """Run one named action and report the outcome as a result dict."""
        action = str(action).strip().lower()
        method_name = self.ACTIONS.get(action)
        if method_name is None:
            return {"ok": False, "error": f"unknown action {action!r}"}
        try:
            if action == "name":
                ok = self.set_name(value)
            elif action == "refresh":
                ok = self.refresh(None if unit_id is None else int(unit_id))
            elif unit_id is None:
                raise CommandValidationError(f"action {action!r} needs a unit")
            elif action in ("vane_ud", "vane_lr"):
                ok = self.set_vane(int(unit_id), action[-2:].upper(), value)
            elif action in ("fan_speed_up", "fan_speed_down"):
                ok = getattr(self, method_name)(int(unit_id))
            else:
                ok = getattr(self, method_name)(int(unit_id), value)
        except (CommandValidationError, ValueError) as exc:
            logger.info("WMP[%s]: %s rejected: %s", self.gateway_id, action, exc)
            return {"ok": False, "error": str(exc)}
        if not ok:
            return {"ok": False, "error": "gateway unreachable"}
        return {"ok": True}

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def as_dict(self) -> dict[str, Any]:
        conn = self.connection
        return {
            "id": self.gateway_id,
            "name": self.name,
            "host": conn.host,
            "port": conn.port,
            "mac": conn.mac,
            "state": conn.state.value,
            "connected": conn.is_connected(),
            "via_proxy": conn.using_proxy,
            "status": self.status,
            "failed": self.failed,
            "model": self.store.get("Model"),
            "firmware": self.store.get("Firmware"),
            "signal_db": self.store.get("SignalDB"),
            "last_error": self.last_error,
            "queued": len(self.pacer.queue),
            "stats": asdict(conn.stats),
            "units": [
                {**u.as_dict(), "status": self.unit_status(u)}
                for u in self.units
                if u.assigned
            ],
        }
