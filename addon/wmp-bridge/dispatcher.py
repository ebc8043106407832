"""Inbound message dispatch: WMP lines -> gateway and unit state."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from config import AUTO_ADD_UNITS
from errors import ProtocolError
from models import FanMode, HVACMode, MessageType, VENDOR_TO_MODE, WMPMessage
from parser import WMPDataParser
from units import Limits, Unit

if TYPE_CHECKING:
    from gateway import WMPGateway

logger = logging.getLogger(__name__)


class Dispatcher:
    """Routes parsed messages to per-type handlers.

    Handlers only mutate gateway and unit state; they never touch the socket.
    """

    def __init__(self, gateway: WMPGateway, *, auto_add_units: bool = AUTO_ADD_UNITS) -> None:
        self._gw = gateway
        self.auto_add_units = auto_add_units
        self.dropped = 0
        self._handlers: dict[MessageType, Callable[[WMPMessage], None]] = {
            MessageType.ID: self._on_id,
            MessageType.INFO: self._on_info,
            MessageType.CHN: self._on_chn,
            MessageType.LIMITS: self._on_limits,
            MessageType.ACK: self._on_ack,
            MessageType.ERR: self._on_err,
            MessageType.PONG: self._on_pong,
            MessageType.CLOSE: self._on_close,
            MessageType.UNKNOWN: self._on_unknown,
        }
        missing = set(MessageType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"no handler for {sorted(m.name for m in missing)}")
        self._chn_handlers: dict[str, Callable[[Unit, str], None]] = {
            "ONOFF": self._chn_onoff,
            "MODE": self._chn_mode,
            "SETPTEMP": self._chn_setptemp,
            "AMBTEMP": self._chn_ambtemp,
            "FANSP": self._chn_fansp,
            "VANEUD": self._chn_vane_ud,
            "VANELR": self._chn_vane_lr,
            "ERRSTATUS": self._chn_errstatus,
            "ERRCODE": self._chn_errcode,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def dispatch_line(self, line: bytes | str) -> WMPMessage | None:
        try:
            message = WMPDataParser.parse_line(line)
        except ProtocolError as exc:
            self.dropped += 1
            logger.warning("WMP[%s]: malformed line dropped: %s", self._gw.gateway_id, exc)
            return None
        self.dispatch(message)
        return message

    def dispatch(self, message: WMPMessage) -> None:
        logger.debug("WMP[%s] <- %s", self._gw.gateway_id, message.raw)
        self._handlers[message.type](message)

    # ------------------------------------------------------------------
    # Unit resolution
    # ------------------------------------------------------------------

    def _resolve_unit(self, message: WMPMessage) -> Unit | None:
        units = self._gw.units
        if message.unit is None:
            return units.default_unit()
        unit = units.get(message.unit)
        if unit is not None:
            return unit
        if self.auto_add_units and message.type == MessageType.CHN:
            unit, _created = units.ensure(message.unit)
            self._gw.unit_added(unit)
            return unit
        self.dropped += 1
        logger.info(
            "WMP[%s]: message for unknown unit %s dropped: %s",
            self._gw.gateway_id,
            message.unit,
            message.raw,
        )
        return None

    # ------------------------------------------------------------------
    # Gateway-level handlers
    # ------------------------------------------------------------------

    def _on_id(self, message: WMPMessage) -> None:
        payload = ":".join(message.segments)
        identity = WMPDataParser.parse_identity(payload)
        self._gw.update_identity(payload, identity)

    def _on_info(self, message: WMPMessage) -> None:
        if message.function:
            self._gw.info[message.function] = message.value or ""

    def _on_ack(self, _message: WMPMessage) -> None:
        self._gw.last_ack_at = time.time()
        unit = self._commanded_unit()
        if unit is not None and unit.last_error is not None:
            unit.last_error = None
            self._gw.unit_changed(unit)

    def _on_err(self, message: WMPMessage) -> None:
        self._gw.last_error = self._gw.last_command
        unit = self._commanded_unit()
        if unit is not None:
            unit.last_error = self._gw.last_command
            unit.touch()
            self._gw.unit_changed(unit)
        logger.warning(
            "WMP[%s]: gateway returned %s after %r",
            self._gw.gateway_id,
            message.raw,
            self._gw.last_command,
        )

    def _commanded_unit(self) -> Unit | None:
        """Unit addressed by the last line the pacer sent, if any."""
        if self._gw.last_command_unit is None:
            return None
        return self._gw.units.get(self._gw.last_command_unit)

    def _on_pong(self, message: WMPMessage) -> None:
        rssi = message.segments[0].strip() if message.segments else ""
        if rssi:
            self._gw.store.set("SignalDB", rssi)

    def _on_close(self, _message: WMPMessage) -> None:
        logger.warning("WMP[%s]: gateway is closing the connection", self._gw.gateway_id)
        self._gw.connection.mark_closing()

    def _on_unknown(self, message: WMPMessage) -> None:
        self.dropped += 1
        logger.debug(
            "WMP[%s]: unrecognised message type %s dropped",
            self._gw.gateway_id,
            message.token,
        )

    # ------------------------------------------------------------------
    # LIMITS
    # ------------------------------------------------------------------

    def _on_limits(self, message: WMPMessage) -> None:
        capability = message.function or ""
        values = WMPDataParser.parse_value_list(message.value)
        units = self._gw.units
        if message.unit is not None:
            unit = self._resolve_unit(message)
            if unit is None:
                return
            unit.set_limits(capability, values, unit_scoped=True)
            unit.touch()
            self._gw.unit_changed(unit)
            return

        # Gateway-wide report: apply to units without their own report for
        # this capability and flag units whose limits differ.
        targets = [u for u in units if u.assigned] or [units.default_unit()]
        for unit in targets:
            current = unit.limits.get(capability)
            if current is not None and current.unit_scoped:
                if current.values != Limits.from_values(capability, values).values:
                    logger.warning(
                        "WMP[%s]: unit %s %s limits %s differ from gateway-wide %s, kept",
                        self._gw.gateway_id,
                        unit.unit_id,
                        capability,
                        current.values,
                        values,
                    )
                continue
            unit.set_limits(capability, values)
            unit.touch()
            self._gw.unit_changed(unit)

    # ------------------------------------------------------------------
    # CHN
    # ------------------------------------------------------------------

    def _on_chn(self, message: WMPMessage) -> None:
        unit = self._resolve_unit(message)
        if unit is None:
            return
        function = message.function or ""
        raw_value = (message.value or "").strip()
        value = raw_value.upper()
        handler = self._chn_handlers.get(function)
        if handler is None:
            unit.extra[function] = value
            logger.debug(
                "WMP[%s]: unhandled CHN function %s in %s",
                self._gw.gateway_id,
                function,
                message.raw,
            )
        else:
            if not value and function != "ERRSTATUS":
                logger.warning(
                    "WMP[%s]: CHN %s without value in %s",
                    self._gw.gateway_id,
                    function,
                    message.raw,
                )
                return
            # error status text is kept as the unit reported it
            handler(unit, raw_value if function == "ERRSTATUS" else value)
        unit.touch()
        self._gw.unit_changed(unit)

    def _chn_onoff(self, unit: Unit, value: str) -> None:
        if value == "OFF":
            # last_mode is untouched
            unit.onoff = "OFF"
            unit.mode = HVACMode.OFF
        elif value == "ON":
            unit.onoff = "ON"
            unit.mode = unit.last_mode or HVACMode.AUTO
            if unit.mode == HVACMode.FAN:
                unit.fan_status = "On"
        else:
            logger.warning("WMP: invalid ONOFF value %r for unit %s", value, unit.unit_id)

    def _chn_mode(self, unit: Unit, value: str) -> None:
        mode = VENDOR_TO_MODE.get(value)
        unit.vendor_mode = value
        if mode is None:
            logger.warning("WMP: invalid MODE %r for unit %s", value, unit.unit_id)
            return
        unit.last_mode = mode
        self._gw.store.set(f"LastMode.{unit.unit_id}", mode.value)
        if unit.mode == HVACMode.OFF:
            return
        unit.mode = mode
        if mode == HVACMode.FAN:
            unit.fan_mode = FanMode.ON
            unit.fan_status = "On"

    def _chn_setptemp(self, unit: Unit, value: str) -> None:
        temp = unit.tenths_to_display(value)
        unit.setpoint_pending = False
        if temp is None:
            logger.debug("WMP: setpoint %r for unit %s ignored", value, unit.unit_id)
            return
        unit.setpoint = temp

    def _chn_ambtemp(self, unit: Unit, value: str) -> None:
        temp = unit.tenths_to_display(value)
        if temp is None:
            logger.debug("WMP: ambient %r for unit %s ignored", value, unit.unit_id)
            return
        unit.ambient_temp = temp

    def _chn_fansp(self, unit: Unit, value: str) -> None:
        if value == "AUTO":
            unit.fan_speed = "AUTO"
            unit.fan_mode = FanMode.AUTO
            unit.fan_status = "Unknown"
            return
        try:
            speed = int(value)
        except ValueError:
            logger.warning("WMP: invalid FANSP %r for unit %s", value, unit.unit_id)
            return
        unit.fan_speed = speed
        unit.last_fan_speed = speed
        unit.fan_mode = FanMode.ON
        unit.fan_status = "On"
        self._gw.store.set(f"LastFanSpeed.{unit.unit_id}", speed)

    def _chn_vane_ud(self, unit: Unit, value: str) -> None:
        unit.vane_ud = value

    def _chn_vane_lr(self, unit: Unit, value: str) -> None:
        unit.vane_lr = value

    def _chn_errstatus(self, unit: Unit, value: str) -> None:
        unit.err_status = value

    def _chn_errcode(self, unit: Unit, value: str) -> None:
        unit.err_codes.append(value)
