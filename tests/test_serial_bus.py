import logging
import queue
import threading
import time

import pytest

from solis_exporter.config import SerialConfig
from solis_exporter.modbus import (
    InvalidPacketError,
    ModbusExchange,
    ReceiveTimeoutError,
    modbus_crc,
)
from solis_exporter.serial_bus import InjectMessage, SerialBus, open_serial

REQ = bytes([0x01, 0x04, 0x80, 0xE8, 0x00, 0x01, 0x98, 0x3E])
REP = bytes([0x01, 0x04, 0x02, 0x31, 0x05, 0x6C, 0xA3])


class FakePort:
    def __init__(self):
        self.timeout = None
        self.written = bytearray()
        self.on_write = None
        self.blocking_read = threading.Event()
        self._buffer = bytearray()
        self._cond = threading.Condition()

    def feed(self, data):
        with self._cond:
            self._buffer += data
            self._cond.notify_all()

    def read(self, size=1):
        timeout = self.timeout
        if timeout is None:
            self.blocking_read.set()
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while len(self._buffer) < size:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            chunk = bytes(self._buffer[:size])
            del self._buffer[:size]
            return chunk

    def write(self, data):
        self.written += data
        if self.on_write is not None:
            self.on_write(bytes(data))
        return len(data)


def make_bus(port, dump=False):
    bus = SerialBus(SerialConfig(device="fake", dump=dump), port)
    bus.error_timeout = 0.05
    bus.busy_timeout = 0.2
    bus.response_timeout = 0.5
    bus.post_transmit_timeout = 0.05
    bus.post_broadcast_timeout = 0.05
    return bus


def start(bus, port):
    threading.Thread(target=bus.run, daemon=True).start()
    assert port.blocking_read.wait(2)


def test_sniffed_exchange_is_published():
    port = FakePort()
    bus = make_bus(port)
    sub = bus.subscribe(5)
    start(bus, port)
    port.feed(REQ + REP)
    m = sub.get(timeout=2)
    assert m.sniffed
    assert m.error is None
    assert m.request == REQ
    assert m.response == REP
    assert m.base == 0x80E8
    assert m.data == bytes([0x31, 0x05])


def test_corrupt_request_is_dropped_and_line_resynchronised():
    port = FakePort()
    bus = make_bus(port)
    sub = bus.subscribe(5)
    start(bus, port)
    port.blocking_read.clear()
    port.feed(REQ[:-1] + bytes([REQ[-1] ^ 0xFF]))
    assert port.blocking_read.wait(2)
    port.feed(REQ + REP)
    m = sub.get(timeout=2)
    assert m.request == REQ
    assert m.response == REP
    with pytest.raises(queue.Empty):
        sub.get(timeout=0.3)


def test_dump_logs_request_and_response(caplog):
    caplog.set_level(logging.INFO)
    port = FakePort()
    bus = make_bus(port, dump=True)
    sub = bus.subscribe(1)
    start(bus, port)
    port.feed(REQ + REP)
    sub.get(timeout=2)
    assert "->" + REQ.hex().upper() in caplog.text
    assert "-<" + REP.hex().upper() in caplog.text


def test_injected_request_receives_response():
    port = FakePort()
    port.on_write = lambda data: port.feed(REP)
    bus = make_bus(port)
    sub = bus.subscribe(5)
    start(bus, port)
    m = ModbusExchange()
    m.parse_request(REQ)
    msg = InjectMessage(modbus=m)
    bus.inject.put(msg)
    assert msg.done.wait(3)
    assert m.error is None
    assert bytes(port.written) == REQ
    assert m.response == REP
    assert m.data == bytes([0x31, 0x05])
    published = sub.get(timeout=2)
    assert published is m
    assert not published.sniffed


def test_injected_request_times_out_without_response():
    port = FakePort()
    bus = make_bus(port)
    bus.response_timeout = 0.1
    sub = bus.subscribe(5)
    start(bus, port)
    m = ModbusExchange()
    m.parse_request(REQ)
    msg = InjectMessage(modbus=m)
    bus.inject.put(msg)
    assert msg.done.wait(3)
    assert isinstance(m.error, ReceiveTimeoutError)
    assert sub.empty()


def test_broadcast_is_sent_without_waiting_for_response():
    port = FakePort()
    bus = make_bus(port)
    start(bus, port)
    body = bytes([0x00, 0x06, 0xA8, 0x66, 0x00, 0x01])
    request = body + modbus_crc(body)
    m = ModbusExchange()
    m.parse_request(request)
    msg = InjectMessage(modbus=m)
    bus.inject.put(msg)
    assert msg.done.wait(3)
    assert bytes(port.written) == request
    assert m.response == b""
    assert m.error is None


@pytest.mark.parametrize(
    "modbus", [None, ModbusExchange(error=InvalidPacketError())]
)
def test_invalid_injection_is_refused(modbus):
    port = FakePort()
    bus = make_bus(port)
    start(bus, port)
    msg = InjectMessage(modbus=modbus)
    bus.inject.put(msg)
    assert msg.done.wait(3)
    assert bytes(port.written) == b""


def test_open_serial_reports_missing_device(tmp_path):
    with pytest.raises(OSError) as excinfo:
        open_serial(SerialConfig(device=str(tmp_path / "missing-tty")))
    assert "missing-tty" in str(excinfo.value)