#!/usr/bin/env python3
"""
Per-unit state, Limits and outbound command validation.

Everything on a Unit is derived from inbound protocol messages (see
dispatcher.py); the command builders below validate a requested change
against the unit's current Limits and return the protocol lines to send.
A rejected command raises CommandValidationError and produces no lines.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterator

from config import ERRCODE_HISTORY
from errors import CommandValidationError
from models import FanMode, HVACMode, MODE_TO_VENDOR, VENDOR_TO_MODE, VaneAxis
from wmp_frame import cmd_get, cmd_set

logger = logging.getLogger(__name__)

# Temperatures travel in tenths of a degree Celsius. Anything outside this
# envelope (e.g. the 32768 "no sensor" sentinel) is not applied.
SANE_TENTHS_MIN = -400
SANE_TENTHS_MAX = 1000

SWEEP_VALUES = ("SWING", "AUTO")

# Hints for outer surfaces only; not used for validation.
DEFAULT_TEMP_RANGE = {"C": (16.0, 32.0), "F": (60.0, 90.0)}


def c_to_f(temp: float) -> float:
    return temp * 9.0 / 5.0 + 32.0


def f_to_c(temp: float) -> float:
    return (temp - 32.0) * 5.0 / 9.0


def _as_number(value: Any) -> float | None:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


# ============================================================================
# Limits
# ============================================================================

@dataclass
class Limits:
    """Legal values for one capability of one unit.

    ``values`` is the enumeration reported by the gateway (upper-cased);
    ``minimum``/``maximum`` are derived from its numeric members, already
    converted to the unit's display scale when a transform is supplied.
    """
    capability: str
    values: list[str]
    minimum: float | None = None
    maximum: float | None = None
    unit_scoped: bool = False

    @classmethod
    def from_values(
        cls, capability: str, values: list[str], transform=None, unit_scoped: bool = False
    ) -> Limits:
        values = [str(v).strip().upper() for v in values if str(v).strip()]
        numbers = []
        for v in values:
            num = _as_number(v)
            if num is not None:
                numbers.append(transform(num) if transform else num)
        return cls(
            capability=capability.upper(),
            values=values,
            minimum=min(numbers) if numbers else None,
            maximum=max(numbers) if numbers else None,
            unit_scoped=unit_scoped,
        )

    @property
    def is_range(self) -> bool:
        return self.minimum is not None

    def allows(self, value: Any) -> bool:
        num = _as_number(value)
        if num is not None and self.is_range:
            return self.minimum <= num <= self.maximum  # type: ignore[operator]
        return str(value).strip().upper() in self.values

    def as_dict(self) -> dict[str, Any]:
        return {"values": list(self.values), "min": self.minimum, "max": self.maximum}


# ============================================================================
# Unit
# ============================================================================

@dataclass
class Unit:
    """One air-handling unit behind a gateway."""
    unit_id: int
    temp_units: str = "C"
    assigned: bool = True
    onoff: str | None = None
    mode: HVACMode = HVACMode.OFF
    last_mode: HVACMode | None = None
    vendor_mode: str | None = None
    fan_mode: FanMode = FanMode.AUTO
    fan_status: str = "Off"
    fan_speed: str | int | None = None
    last_fan_speed: int | None = None
    vane_ud: str | None = None
    vane_lr: str | None = None
    ambient_temp: float | None = None
    setpoint: float | None = None
    setpoint_pending: bool = False
    err_status: str | None = None
    last_error: str | None = None
    err_codes: deque[str] = field(default_factory=lambda: deque(maxlen=ERRCODE_HISTORY))
    limits: dict[str, Limits] = field(default_factory=dict)
    allowed_modes: set[HVACMode] | None = None
    extra: dict[str, str] = field(default_factory=dict)
    last_refresh: float = 0.0
    updated_at: float | None = None

    # ------------------------------------------------------------------
    # Temperatures
    # ------------------------------------------------------------------

    def tenths_to_display(self, raw: Any) -> float | None:
        """Wire tenths of °C -> display units, or None outside the envelope."""
        num = _as_number(raw)
        if num is None or not SANE_TENTHS_MIN <= num <= SANE_TENTHS_MAX:
            return None
        temp = num / 10.0
        if self.temp_units == "F":
            temp = c_to_f(temp)
        return round(temp, 1)

    def display_to_tenths(self, temp: float) -> int:
        celsius = f_to_c(temp) if self.temp_units == "F" else temp
        return int(round(celsius * 10.0))

    def _setpoint_transform(self, raw: float) -> float:
        temp = raw / 10.0
        if self.temp_units == "F":
            temp = c_to_f(temp)
        return round(temp, 1)

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def set_limits(
        self, capability: str, values: list[str], unit_scoped: bool = False
    ) -> Limits:
        cap = capability.upper()
        transform = self._setpoint_transform if cap == "SETPTEMP" else None
        limits = Limits.from_values(cap, values, transform, unit_scoped)
        self.limits[cap] = limits
        if cap == "MODE":
            self.allowed_modes = {
                VENDOR_TO_MODE[v] for v in limits.values if v in VENDOR_TO_MODE
            }
            self.allowed_modes.add(HVACMode.OFF)
        return limits

    def check(self, capability: str, value: Any) -> None:
        limits = self.limits.get(capability.upper())
        if limits is None:
            return
        if not limits.allows(value):
            raise CommandValidationError(
                f"unit {self.unit_id}: {capability.upper()}={value} outside "
                f"limits {limits.as_dict()}"
            )

    def setpoint_range(self) -> tuple[float, float]:
        limits = self.limits.get("SETPTEMP")
        if limits is not None and limits.is_range:
            return limits.minimum, limits.maximum  # type: ignore[return-value]
        return DEFAULT_TEMP_RANGE.get(self.temp_units, DEFAULT_TEMP_RANGE["C"])

    # ------------------------------------------------------------------
    # Command builders (validated)
    # ------------------------------------------------------------------

    def mode_commands(self, mode: HVACMode | str) -> list[str]:
        if not isinstance(mode, HVACMode):
            try:
                mode = HVACMode.parse(mode)
            except ValueError as exc:
                raise CommandValidationError(str(exc)) from exc
        if mode == HVACMode.OFF:
            return [cmd_set(self.unit_id, "ONOFF", "OFF")]
        if self.allowed_modes is not None and mode not in self.allowed_modes:
            raise CommandValidationError(
                f"unit {self.unit_id}: mode {mode.value} not supported"
            )
        vendor = MODE_TO_VENDOR[mode]
        self.check("MODE", vendor)
        return [
            cmd_set(self.unit_id, "ONOFF", "ON"),
            cmd_set(self.unit_id, "MODE", vendor),
        ]

    def fan_speed_commands(self, speed: Any) -> list[str]:
        if speed is None or str(speed).strip().upper() in ("", "0", "AUTO"):
            value: str | int = "AUTO"
        else:
            num = _as_number(speed)
            if num is None or num != int(num) or num < 1:
                raise CommandValidationError(f"invalid fan speed {speed!r}")
            value = int(num)
        self.check("FANSP", value)
        return [cmd_set(self.unit_id, "FANSP", value)]

    def fan_mode_commands(self, fan_mode: FanMode | str) -> list[str]:
        if not isinstance(fan_mode, FanMode):
            try:
                fan_mode = FanMode(fan_mode)
            except ValueError as exc:
                raise CommandValidationError(f"fan mode {fan_mode!r} not supported") from exc
        if fan_mode == FanMode.AUTO:
            return self.fan_speed_commands("AUTO")
        speed = self.last_fan_speed
        if speed is None:
            limits = self.limits.get("FANSP")
            speed = int(limits.minimum) if limits and limits.is_range else 1
        return self.fan_speed_commands(speed)

    def fan_step_commands(self, delta: int) -> list[str]:
        if isinstance(self.fan_speed, int):
            current = self.fan_speed
        else:
            # From Auto: stepping up starts at 1, stepping down stays Auto.
            current = 0 if delta > 0 else 1
        return self.fan_speed_commands(max(0, current + delta))

    def setpoint_commands(self, temp: Any) -> list[str]:
        num = _as_number(temp)
        if num is None:
            raise CommandValidationError(f"invalid setpoint {temp!r}")
        self.check("SETPTEMP", num)
        return [
            cmd_set(self.unit_id, "SETPTEMP", self.display_to_tenths(num)),
            cmd_get(self.unit_id, "SETPTEMP"),
        ]

    def vane_commands(self, axis: VaneAxis | str, value: Any) -> list[str]:
        axis = _vane_axis(axis)
        text = str(value).strip().upper()
        if text in SWEEP_VALUES:
            out: str | int = text
        else:
            num = _as_number(text)
            if num is None or num != int(num) or num < 1:
                raise CommandValidationError(f"invalid vane position {value!r}")
            out = int(num)
        self.check(axis.value, out)
        return [cmd_set(self.unit_id, axis.value, out)]

    def vane_step_commands(self, axis: VaneAxis | str, delta: int) -> list[str]:
        """Move a vane one position; past either end, switch to sweep if supported."""
        axis = _vane_axis(axis)
        current_raw = self.vane_ud if axis == VaneAxis.UP_DOWN else self.vane_lr
        limits = self.limits.get(axis.value)
        low = int(limits.minimum) if limits and limits.is_range else 1
        high = int(limits.maximum) if limits and limits.is_range else None

        current = _as_number(current_raw)
        if current is None:
            target = low if delta > 0 else (high if high is not None else low)
        else:
            target = int(current) + delta

        if target < low or (high is not None and target > high):
            sweep = None
            if limits is not None:
                sweep = next((v for v in SWEEP_VALUES if v in limits.values), None)
            if sweep is None:
                raise CommandValidationError(
                    f"unit {self.unit_id}: {axis.value} already at end of travel"
                )
            return self.vane_commands(axis, sweep)
        return self.vane_commands(axis, target)

    def refresh_commands(self) -> list[str]:
        return [cmd_get(self.unit_id, "*")]

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def display_status(self) -> str:
        if self.mode == HVACMode.OFF:
            return "Off"
        if self.setpoint is None:
            return self.mode.value
        return f"{self.mode.value} {self.setpoint:.1f}°{self.temp_units}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "unit": self.unit_id,
            "assigned": self.assigned,
            "mode": self.mode.value,
            "last_mode": self.last_mode.value if self.last_mode else None,
            "onoff": self.onoff,
            "fan_mode": self.fan_mode.value,
            "fan_status": self.fan_status,
            "fan_speed": self.fan_speed,
            "vane_ud": self.vane_ud,
            "vane_lr": self.vane_lr,
            "ambient_temp": self.ambient_temp,
            "setpoint": self.setpoint,
            "setpoint_pending": self.setpoint_pending,
            "temp_units": self.temp_units,
            "err_status": self.err_status,
            "err_codes": list(self.err_codes),
            "last_error": self.last_error,
            "limits": {k: v.as_dict() for k, v in self.limits.items()},
            "status": self.display_status(),
        }

    def touch(self) -> None:
        self.updated_at = time.time()


def _vane_axis(axis: VaneAxis | str) -> VaneAxis:
    if isinstance(axis, VaneAxis):
        return axis
    key = str(axis).strip().upper()
    aliases = {
        "UD": VaneAxis.UP_DOWN,
        "VANEUD": VaneAxis.UP_DOWN,
        "UP_DOWN": VaneAxis.UP_DOWN,
        "LR": VaneAxis.LEFT_RIGHT,
        "VANELR": VaneAxis.LEFT_RIGHT,
        "LEFT_RIGHT": VaneAxis.LEFT_RIGHT,
    }
    if key not in aliases:
        raise CommandValidationError(f"unknown vane axis {axis!r}")
    return aliases[key]


# ============================================================================
# Registry
# ============================================================================

class UnitRegistry:
    """Unit table of one gateway. Units are never removed, only unassigned."""

    def __init__(self, temp_units: str = "C") -> None:
        self.temp_units = temp_units
        self._units: dict[int, Unit] = {}

    def __iter__(self) -> Iterator[Unit]:
        return iter(sorted(self._units.values(), key=lambda u: u.unit_id))

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def get(self, unit_id: int) -> Unit | None:
        return self._units.get(unit_id)

    def ensure(self, unit_id: int) -> tuple[Unit, bool]:
        """Return the unit, creating it when missing. Second item: created."""
        unit = self._units.get(unit_id)
        if unit is not None:
            if not unit.assigned:
                unit.assigned = True
            return unit, False
        unit = Unit(unit_id=unit_id, temp_units=self.temp_units)
        self._units[unit_id] = unit
        logger.info("UNITS: unit %s added", unit_id)
        return unit, True

    def unassign(self, unit_id: int) -> bool:
        unit = self._units.get(unit_id)
        if unit is None:
            return False
        unit.assigned = False
        return True

    def default_unit(self) -> Unit:
        """Target of unit-less CHN lines from single-unit gateways."""
        assigned = [u for u in self if u.assigned]
        if assigned:
            return assigned[0]
        return self.ensure(1)[0]

    def assigned_ids(self) -> list[int]:
        return [u.unit_id for u in self if u.assigned]
