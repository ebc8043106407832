# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring,protected-access
# pylint: disable=unused-argument,too-few-public-methods,no-member,use-implicit-booleaness-not-comparison,line-too-long
# pylint: disable=invalid-name,too-many-statements,too-many-instance-attributes,wrong-import-position,wrong-import-order
# pylint: disable=deprecated-module,too-many-locals,too-many-lines,attribute-defined-outside-init,unexpected-keyword-arg
# pylint: disable=duplicate-code
import socket
from datetime import datetime

import pytest

import connection
from config import MAX_SEND_ATTEMPTS
from helpers import FakeConnector, FakeSocket, connected_gateway, fake_select, make_gateway
from models import HVACMode

GW = ("192.168.1.50", 3310)


@pytest.fixture(autouse=True)
def _select(monkeypatch):
    monkeypatch.setattr(connection.select, "select", fake_select)


def _started(attrs=None, sock=None):
    sock = sock or FakeSocket()
    connector = FakeConnector({GW: [sock]})
    gateway, timer, clock = make_gateway(attrs, connector=connector)
    gateway.start()
    return gateway, sock, connector, timer, clock


def test_startup_sends_identity_info_limits_then_refresh():
    gateway, sock, _connector, timer, clock = _started()
    timer.run_for(2)
    assert sock.lines == ["ID", "INFO", "LIMITS:*", "GET,1:*"]
    assert gateway.status == "Connected"
    assert gateway.failed is False


def test_queue_drains_one_line_per_tick():
    gateway, sock, _connector, timer, clock = _started()
    timer.run_until(clock())
    assert sock.lines == ["ID"]
    timer.run_for(0.25)
    assert sock.lines == ["ID", "INFO"]


def test_keepalive_ping_and_periodic_refresh():
    gateway, sock, _connector, timer, clock = _started()
    start = clock()
    timer.run_until(start + 33)
    assert sock.lines[-1] == "PING"
    timer.run_until(start + 65)
    assert sock.lines[-1] == "GET,1:*"
    assert sock.lines.count("PING") == 1


def test_clock_sync_when_enabled():
    gateway, sock, _connector, timer, clock = _started({"ClockSync": "1"})
    gateway.pacer._now_fn = lambda: datetime(2024, 1, 2, 3, 4, 5)
    timer.run_for(3)
    assert "CFG:DATETIME,02/01/2024 03:04:05" in sock.lines


def test_receive_dispatches_lines():
    gateway, sock, _connector, timer, clock = _started()
    sock.chunks.append(b"CHN,1:ONOFF,ON\r\nCHN,1:MO")
    sock.chunks.append(b"DE,COOL\r\n")
    timer.run_for(1)
    assert gateway.units.get(1).mode == HVACMode.COOL
    assert gateway.connection.stats.lines_received == 2


def test_watchdog_closes_silent_connection():
    gateway, sock, connector, timer, clock = _started()
    start = clock()

    timer.run_until(start + 129)
    assert gateway.connection.is_connected()

    timer.run_until(start + 161)
    assert not gateway.connection.is_connected()
    assert sock.closed
    assert gateway.status == "Comm error"
    assert gateway.failed is True
    assert connector.calls == [GW]


def test_watchdog_then_reconnect_after_backoff():
    gateway, _sock, connector, timer, clock = _started()
    fresh = FakeSocket()
    start = clock()
    timer.run_until(start + 161)
    connector.results[GW] = [fresh]
    timer.run_until(start + 170)
    assert gateway.connection.is_connected()
    assert gateway.status == "Connected"
    assert fresh.lines[:3] == ["ID", "INFO", "LIMITS:*"]


def test_eof_marks_comm_error():
    gateway, sock, connector, timer, clock = _started()
    timer.run_for(2)
    sock.chunks.append(b"CLOSE\r\n")
    sock.chunks.append(b"")
    timer.run_for(3)
    assert not gateway.connection.is_connected()
    assert gateway.status == "Comm error"
    assert gateway.connection.stats.disconnects == 1
    assert connector.calls == [GW]


def test_command_when_unreachable_tries_one_reconnect_and_queues_nothing():
    connector = FakeConnector()
    gateway, timer, _clock = make_gateway(connector=connector)

    result = gateway.execute("mode", 1, "cool")

    assert result == {"ok": False, "error": "gateway unreachable"}
    assert connector.calls == [GW]
    assert not gateway.pacer.queue


def test_command_when_disconnected_reconnects_and_sends():
    sock = FakeSocket()
    connector = FakeConnector({GW: [sock]})
    gateway, timer, clock = make_gateway(connector=connector)
    gateway.start()

    result = gateway.execute("mode", 1, "heat")
    assert result == {"ok": True}
    timer.run_for(3)
    assert "SET,1:ONOFF,ON" in sock.lines
    assert "SET,1:MODE,HEAT" in sock.lines
    assert connector.calls == [GW]


def test_send_timeout_retries_then_gives_up(monkeypatch):
    gateway, sock, _timer, _clock = connected_gateway(monkeypatch)
    done = []
    gateway.pacer.enqueue("SET,1:MODE,COOL", 1, done.append)
    gateway.pacer.enqueue("PING")
    sock.send_exc = socket.timeout("timed out")

    for _ in range(MAX_SEND_ATTEMPTS - 1):
        gateway.pacer._send_next()
        assert len(gateway.pacer.queue) == 2
    gateway.pacer._send_next()

    assert done == [False]
    assert [c.line for c in gateway.pacer.queue] == ["PING"]
    assert gateway.connection.is_connected()


def test_partial_send_is_not_resent_on_same_connection(monkeypatch):
    gateway, sock, _timer, _clock = connected_gateway(monkeypatch)
    gateway.running = True
    done = []
    gateway.pacer.enqueue("SET,1:MODE,COOL", 1, done.append)
    sock.send_budget = 6

    gateway.pacer._send_next()

    assert done == [False]
    assert not gateway.pacer.queue
    assert b"".join(sock.sent) == b"SET,1:"
    assert not gateway.connection.is_connected()
    assert gateway.status == "Comm error"


def test_transport_error_fails_queue(monkeypatch):
    gateway, sock, _timer, _clock = connected_gateway(monkeypatch)
    gateway.running = True
    done = []
    gateway.pacer.enqueue("SET,1:MODE,COOL", 1, done.append)
    gateway.pacer.enqueue("SET,1:FANSP,2", 1, done.append)
    sock.send_exc = ConnectionResetError("reset")

    gateway.pacer._send_next()

    assert done == [False, False]
    assert not gateway.pacer.queue
    assert gateway.status == "Comm error"


def test_successful_send_completes_item(monkeypatch):
    gateway, sock, _timer, _clock = connected_gateway(monkeypatch)
    done = []
    gateway.pacer.enqueue("GET,1:*", 1, done.append)
    gateway.pacer._send_next()
    assert done == [True]
    assert gateway.last_command == "GET,1:*"
    assert gateway.last_command_unit == 1
    assert sock.lines == ["GET,1:*"]


def test_stale_tick_does_not_rearm():
    gateway, sock, _connector, timer, clock = _started()
    task = gateway.pacer.tick_task
    gateway.pacer._tick(task, gateway.run_stamp - 1)
    assert sock.sent == []
    assert task.when == clock()


def test_restart_invalidates_old_tasks():
    gateway, sock, _connector, timer, clock = _started()
    timer.run_for(1)
    old_tick = gateway.pacer.tick_task
    gateway.stop()
    assert old_tick.closed
    assert gateway.status == "Stopped"
    assert gateway.pacer.tick_task is None
    assert gateway._scheduler.tasks_for("gw1") == []


def test_reconnect_backoff_spaces_attempts():
    connector = FakeConnector()
    gateway, timer, clock = make_gateway(connector=connector)
    gateway.start()
    timer.run_until(clock())
    assert connector.calls == [GW]
    assert gateway.status == "Comm error"
    timer.run_for(4)
    assert len(connector.calls) == 1
    timer.run_for(1)
    assert len(connector.calls) == 2
