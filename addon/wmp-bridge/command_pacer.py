"""Command pacer: master tick, outbound queue and receive polling per gateway."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable

from backoff import PollBackoff, ReconnectBackoff
from config import (
    CLOCK_SYNC_INTERVAL,
    MAX_SEND_ATTEMPTS,
    MAX_TICK_DELAY,
    MIN_TICK_DELAY,
    QUEUE_TICK_DELAY,
)
from errors import SendTimeout, TransportError
from models import QueuedCommand
from scheduler import Scheduler, Task
from wmp_frame import LineBuffer, cmd_datetime, cmd_id, cmd_info, cmd_limits, cmd_ping

if TYPE_CHECKING:
    from gateway import WMPGateway

logger = logging.getLogger(__name__)


class CommandPacer:
    """Serializes everything sent to one gateway.

    The master tick runs, in order: liveness watchdog, reconnect (when
    disconnected), refresh enqueue, one queued command, keep-alive ping,
    clock sync. It re-arms itself on every path.
    """

    def __init__(
        self,
        gateway: WMPGateway,
        scheduler: Scheduler,
        *,
        now_fn: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._gw = gateway
        self._scheduler = scheduler
        self._now_fn = now_fn
        self.queue: deque[QueuedCommand] = deque()
        self.line_buffer = LineBuffer()
        self.poll_backoff = PollBackoff()
        self.reconnect_backoff = ReconnectBackoff()
        self.last_ping_at = 0.0
        self.last_clock_sync_at = 0.0
        self.tick_task: Task | None = None
        self.recv_task: Task | None = None

    @property
    def _tick_id(self) -> str:
        return f"{self._gw.gateway_id}:tick"

    @property
    def _recv_id(self) -> str:
        return f"{self._gw.gateway_id}:recv"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, run_stamp: int) -> None:
        self.tick_task = self._scheduler.new_task(
            self._tick_id, self._gw.gateway_id, self._tick, run_stamp
        )
        self.tick_task.delay(0)

    def stop(self) -> None:
        self.fail_all("gateway stopped")
        for task in (self.tick_task, self.recv_task):
            if task is not None:
                task.close()
        self.tick_task = None
        self.recv_task = None

    def kick(self) -> None:
        """Run the tick as soon as possible."""
        if self.tick_task is not None:
            self.tick_task.delay(0)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        conn = self._gw.connection
        if conn.is_connected():
            return True
        ok = conn.open()
        if ok:
            self._on_connected()
        self._gw.refresh_status()
        return ok

    def _on_connected(self) -> None:
        self.reconnect_backoff.reset()
        self.line_buffer.clear()
        self.poll_backoff.reset()
        for unit in self._gw.units:
            unit.last_refresh = 0.0
        for line in (cmd_id(), cmd_info(), cmd_limits("*")):
            self.enqueue(line)
        self.recv_task = self._scheduler.new_task(
            self._recv_id, self._gw.gateway_id, self._receive, self._gw.run_stamp
        )
        self.recv_task.delay(0)

    def disconnect(self, reason: str) -> None:
        self._gw.connection.close(reason)
        self._connection_lost()

    def _connection_lost(self) -> None:
        if self.recv_task is not None:
            self.recv_task.close()
            self.recv_task = None
        self.line_buffer.clear()
        self.fail_all("connection lost")
        self._gw.refresh_status()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        line: str,
        unit: int | None = None,
        on_done: Callable[[bool], Any] | None = None,
    ) -> QueuedCommand:
        item = QueuedCommand(line=line, unit=unit, on_done=on_done)
        self.queue.append(item)
        return item

    def submit(self, lines: Iterable[str], unit: int | None = None) -> bool:
        """Queue validated command lines; one implicit reconnect when needed."""
        lines = list(lines)
        if not self._gw.connection.is_connected():
            logger.info("WMP[%s]: not connected, reconnecting for command", self._gw.gateway_id)
            if not self.connect():
                logger.warning(
                    "WMP[%s]: command %s failed, gateway unreachable",
                    self._gw.gateway_id,
                    lines,
                )
                return False
        for line in lines:
            self.enqueue(line, unit)
        self.kick()
        return True

    def fail_all(self, reason: str) -> None:
        if not self.queue:
            return
        logger.info(
            "WMP[%s]: dropping %s queued command(s): %s",
            self._gw.gateway_id,
            len(self.queue),
            reason,
        )
        while self.queue:
            self._finish(self.queue.popleft(), False)

    @staticmethod
    def _finish(item: QueuedCommand, ok: bool) -> None:
        if item.on_done is None:
            return
        try:
            item.on_done(ok)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("Command callback failed for %r", item.line)

    def _send(self, line: str, unit: int | None = None) -> bool:
        now = self._scheduler.now()
        try:
            self._gw.connection.send_line(line)
        except SendTimeout as exc:
            logger.warning("WMP[%s]: %s", self._gw.gateway_id, exc)
            return False
        except TransportError as exc:
            logger.warning("WMP[%s]: send failed: %s", self._gw.gateway_id, exc)
            self._connection_lost()
            return False
        self._gw.last_command = line
        self._gw.last_command_unit = unit
        # Any outbound traffic doubles as a keep-alive.
        self.last_ping_at = now
        return True

    def _send_next(self) -> None:
        item = self.queue[0]
        connection = self._gw.connection
        timeouts_before = connection.stats.timeouts
        if self._send(item.line, item.unit):
            self.queue.popleft()
            self._finish(item, True)
            return
        if not connection.is_connected():
            # _connection_lost already failed the queue
            return
        if connection.stats.timeouts > timeouts_before:
            item.attempts += 1
            if item.attempts < MAX_SEND_ATTEMPTS:
                return
        self.queue.popleft()
        logger.warning(
            "WMP[%s]: giving up on %r after %s attempt(s)",
            self._gw.gateway_id,
            item.line,
            item.attempts,
        )
        self._finish(item, False)

    # ------------------------------------------------------------------
    # Master tick
    # ------------------------------------------------------------------

    def _tick(self, task: Task, run_stamp: int) -> None:
        if run_stamp != self._gw.run_stamp:
            logger.debug(
                "WMP[%s]: stale tick (stamp %s, current %s)",
                self._gw.gateway_id,
                run_stamp,
                self._gw.run_stamp,
            )
            return
        delay = MIN_TICK_DELAY
        try:
            delay = self._run_tick()
        finally:
            if not task.closed:
                task.delay(delay)

    def _run_tick(self) -> float:
        gw = self._gw
        conn = gw.connection
        now = self._scheduler.now()
        ping_interval = gw.ping_interval
        refresh_interval = gw.refresh_interval

        if conn.is_stale(now, ping_interval, refresh_interval):
            logger.warning(
                "WMP[%s]: no data received for %.0fs, closing",
                gw.gateway_id,
                now - (conn.last_recv_at or conn.connected_at or now),
            )
            self.disconnect("receive timeout")
            return self._clamp(self.reconnect_backoff.record_failure(now))

        if not conn.is_connected():
            if not self.reconnect_backoff.ready(now):
                return self._clamp(self.reconnect_backoff.next_allowed - now)
            if not self.connect():
                delay = self.reconnect_backoff.record_failure(now)
                logger.info(
                    "WMP[%s]: reconnect failed, next attempt in %.0fs",
                    gw.gateway_id,
                    delay,
                )
                return self._clamp(delay)

        for unit in gw.units:
            if unit.assigned and now - unit.last_refresh >= refresh_interval:
                unit.last_refresh = now
                for line in unit.refresh_commands():
                    self.enqueue(line, unit.unit_id)

        if self.queue:
            self._send_next()
            if self.queue:
                return QUEUE_TICK_DELAY
        elif now - self.last_ping_at >= ping_interval:
            self._send(cmd_ping())
        elif gw.clock_sync_enabled and now - self.last_clock_sync_at >= CLOCK_SYNC_INTERVAL:
            if self._send(cmd_datetime(self._now_fn())):
                self.last_clock_sync_at = now

        return self._next_due(now, ping_interval, refresh_interval)

    def _next_due(self, now: float, ping_interval: float, refresh_interval: float) -> float:
        if self.queue:
            return QUEUE_TICK_DELAY
        due = [self.last_ping_at + ping_interval]
        refreshes = [u.last_refresh for u in self._gw.units if u.assigned]
        if refreshes:
            due.append(min(refreshes) + refresh_interval)
        if self._gw.clock_sync_enabled:
            due.append(self.last_clock_sync_at + CLOCK_SYNC_INTERVAL)
        return self._clamp(min(due) - now)

    @staticmethod
    def _clamp(delay: float) -> float:
        return max(MIN_TICK_DELAY, min(MAX_TICK_DELAY, delay))

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    def _receive(self, task: Task, run_stamp: int) -> None:
        if run_stamp != self._gw.run_stamp:
            return
        conn = self._gw.connection
        if not conn.is_connected():
            return
        data = conn.poll()
        if data:
            for line in self.line_buffer.feed(data):
                conn.stats.lines_received += 1
                self._gw.dispatcher.dispatch_line(line)
            delay = self.poll_backoff.on_data()
        else:
            delay = self.poll_backoff.on_idle()
        if conn.is_connected():
            task.delay(delay)
        else:
            self._connection_lost()
