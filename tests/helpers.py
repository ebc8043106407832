"""Shared test helpers: fake clock/timer, fake sockets and a gateway factory."""

# pylint: disable=protected-access,too-few-public-methods

import socket
from collections import deque

from attribute_store import AttributeStore
from gateway import WMPGateway
from scheduler import Scheduler


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHandle:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeTimer:
    """Stands in for loop.call_later; time only moves in run_until()."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.handles = []

    def __call__(self, delay, callback):
        handle = FakeHandle(self.clock() + delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def live(self):
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def run_until(self, when: float) -> None:
        while True:
            due = [h for h in self.live if h.when <= when]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.clock.now = max(self.clock.now, handle.when)
            handle.fired = True
            handle.callback()
        self.clock.now = max(self.clock.now, when)

    def run_for(self, seconds: float) -> None:
        self.run_until(self.clock() + seconds)


def make_scheduler(start: float = 1000.0):
    clock = FakeClock(start)
    timer = FakeTimer(clock)
    return Scheduler(timer, clock), timer, clock


class FakeSocket:
    """TCP socket double. Queue b"" in ``chunks`` to simulate EOF."""

    def __init__(self, chunks=None, *, send_exc=None, send_budget=None):
        self.chunks = deque(chunks or [])
        self.sent = []
        self.send_exc = send_exc
        # bytes accepted before send() stalls; None is unlimited
        self.send_budget = send_budget
        self.closed = False
        self.timeout = None

    def settimeout(self, timeout):
        self.timeout = timeout

    def setblocking(self, flag):
        self.timeout = None if flag else 0.0

    def sendall(self, data):
        if self.send_exc is not None:
            raise self.send_exc
        self.sent.append(data)

    def send(self, data):
        if self.send_exc is not None:
            raise self.send_exc
        if self.send_budget is None:
            self.sent.append(bytes(data))
            return len(data)
        if self.send_budget == 0:
            raise socket.timeout("timed out")
        chunk = bytes(data[: self.send_budget])
        self.send_budget -= len(chunk)
        self.sent.append(chunk)
        return len(chunk)

    def recv(self, _size):
        if self.chunks:
            return self.chunks.popleft()
        raise socket.timeout("timed out")

    def readable(self):
        return bool(self.chunks)

    def close(self):
        self.closed = True

    @property
    def lines(self):
        return [d.decode("ascii").rstrip("\r\n") for d in self.sent]


class FakeConnector:
    """Replacement for socket.create_connection keyed by (host, port)."""

    def __init__(self, results=None):
        self.results = {k: list(v) for k, v in (results or {}).items()}
        self.calls = []

    def add(self, address, result):
        self.results.setdefault(address, []).append(result)

    def __call__(self, address, timeout=None):
        self.calls.append(address)
        queue = self.results.get(tuple(address))
        if not queue:
            raise ConnectionRefusedError(f"connection to {address} refused")
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, BaseException):
            raise result
        return result


def fake_select(rlist, wlist, xlist, timeout=None):
    return [s for s in rlist if s.readable()], [], []


def make_gateway(attrs=None, *, connector=None, resolver=None, start=1000.0):
    scheduler, timer, clock = make_scheduler(start)
    store = AttributeStore(
        {
            "IPAddress": "192.168.1.50",
            "Port": 3310,
            "Units": "1",
            "ClockSync": "0",
            **(attrs or {}),
        }
    )
    gateway = WMPGateway(
        "gw1",
        store,
        scheduler,
        resolver=resolver,
        connect_fn=connector or FakeConnector(),
    )
    return gateway, timer, clock


def connected_gateway(monkeypatch, attrs=None, chunks=None):
    """Gateway with an open FakeSocket and the startup queue drained."""
    import connection  # pylint: disable=import-outside-toplevel

    monkeypatch.setattr(connection.select, "select", fake_select)
    sock = FakeSocket(chunks)
    connector = FakeConnector({("192.168.1.50", 3310): [sock]})
    gateway, timer, clock = make_gateway(attrs, connector=connector)
    assert gateway.pacer.connect()
    gateway.pacer.queue.clear()
    return gateway, sock, timer, clock
