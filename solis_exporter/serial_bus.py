"""RS-485 bus handler: sniffs Modbus exchanges and injects requests when the line is idle."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import serial

from .config import SerialConfig
from .modbus import ModbusError, ModbusExchange, ReceiveTimeoutError

log = logging.getLogger(__name__)

ERROR_TIMEOUT = 1.5            # wait for an idle line at start or after an error
BUSY_TIMEOUT = 1.5             # quiet time after a sniffed exchange before transmitting
RESPONSE_TIMEOUT = 1.0         # longest time between request and response
POST_TRANSMIT_TIMEOUT = 0.3    # pause after an injected exchange before the next one
POST_BROADCAST_TIMEOUT = 0.5   # pause after transmitting a broadcast
INTER_BYTE_TIMEOUT = 0.05      # read timeout while the rest of a packet is arriving


@dataclass
class InjectMessage:
    """A decoded request to transmit; ``done`` is set once the exchange is over."""

    modbus: ModbusExchange | None
    done: threading.Event = field(default_factory=threading.Event)


class SerialBus:
    """Shares a serial line between passive sniffing and injected requests.

    ``port`` is a pyserial-like object with ``read``, ``write`` and a settable
    ``timeout`` (seconds, or None to wait forever).
    """

    error_timeout = ERROR_TIMEOUT
    busy_timeout = BUSY_TIMEOUT
    response_timeout = RESPONSE_TIMEOUT
    post_transmit_timeout = POST_TRANSMIT_TIMEOUT
    post_broadcast_timeout = POST_BROADCAST_TIMEOUT
    inter_byte_timeout = INTER_BYTE_TIMEOUT
    poll_interval = 0.02

    def __init__(self, config: SerialConfig, port: Any) -> None:
        self.config = config
        self.port = port
        self.inject: queue.Queue[InjectMessage] = queue.Queue()
        self._subscribers: list[queue.Queue[ModbusExchange]] = []
        # None signals "line busy"; an exchange signals a completed sniffed exchange.
        self._events: queue.Queue[ModbusExchange | None] = queue.Queue()
        self._response: queue.Queue[None] = queue.Queue(maxsize=1)
        self._msg: ModbusExchange | None = None
        self._msg_lock = threading.Lock()

    def subscribe(self, buflen: int) -> queue.Queue[ModbusExchange]:
        """Return a queue receiving completed exchanges; add subscribers before running."""
        subscription: queue.Queue[ModbusExchange] = queue.Queue(maxsize=max(buflen, 1))
        self._subscribers.append(subscription)
        return subscription

    def _publish(self, m: ModbusExchange) -> None:
        for subscription in self._subscribers:
            try:
                subscription.put_nowait(m)
            except queue.Full:
                pass

    # The exchange currently in progress, shared between the two threads.

    def _set_msg(self, m: ModbusExchange | None) -> None:
        with self._msg_lock:
            self._msg = m

    def _claim(self, m: ModbusExchange) -> bool:
        with self._msg_lock:
            if self._msg is not None:
                return False
            self._msg = m
            return True

    def _claim_or_current(self, m: ModbusExchange) -> tuple[bool, ModbusExchange]:
        with self._msg_lock:
            if self._msg is None:
                self._msg = m
                return True, m
            return False, self._msg

    def _release(self, m: ModbusExchange) -> None:
        with self._msg_lock:
            if self._msg is m:
                self._msg = None

    # Reader thread

    def _read_packet(self, m: ModbusExchange, first: bytes, is_request: bool) -> None:
        packet = bytearray(first)
        remaining = 4  # the shortest packet is 5 bytes including CRC
        parse = m.parse_request if is_request else m.parse_response
        try:
            while remaining > 0:
                while remaining > 0:
                    chunk = self.port.read(remaining)
                    if not chunk:
                        raise ReceiveTimeoutError()
                    packet += chunk
                    remaining -= len(chunk)
                remaining = parse(bytes(packet))
        except (ModbusError, OSError) as exc:
            m.error = exc

    def _discard_until_idle(self) -> None:
        # Block transmission while stale data is drained from the line.
        self._set_msg(ModbusExchange(sniffed=True))
        self.port.timeout = self.error_timeout
        while True:
            try:
                chunk = self.port.read(256)
            except OSError as exc:
                log.warning("!receive discard: %s", exc)
                time.sleep(1)
                break
            if not chunk:
                break
        self._set_msg(None)

    def _finish_sniffed(self, m: ModbusExchange) -> bool:
        if m.error is not None:
            log.warning("!request: %s", m.error)
            return False
        if self.config.dump:
            log.info("->%s", m.request.hex().upper())
        if m.station != 0:
            self.port.timeout = self.response_timeout
            try:
                first = self.port.read(1)
            except OSError as exc:
                log.warning("!response first byte: %s", exc)
                return False
            if not first:
                log.warning("!response: timeout")
                return False
            self.port.timeout = self.inter_byte_timeout
            self._read_packet(m, first, False)
            if m.error is not None:
                log.warning("!response: %s", m.error)
                return False
            if self.config.dump:
                log.info("-<%s", m.response.hex().upper())
        self._release(m)
        self._events.put(m)
        return True

    def _receive(self) -> bool:
        """Receive one packet; False means the line must be resynchronised."""
        self.port.timeout = None
        try:
            first = self.port.read(1)
        except OSError as exc:
            log.warning("!request first byte: %s", exc)
            return False
        if len(first) != 1:
            log.warning("!request first byte: %d bytes", len(first))
            return False

        # With no exchange in progress this is a sniffed request; otherwise it
        # is the response to an injected request.
        is_request, m = self._claim_or_current(ModbusExchange(sniffed=True))
        if is_request:
            self._events.put(None)
        self.port.timeout = self.inter_byte_timeout
        self._read_packet(m, first, is_request)
        if is_request:
            return self._finish_sniffed(m)

        if self.config.dump:
            log.info("=<%s", m.response.hex().upper())
        self._release(m)
        try:
            self._response.put_nowait(None)
        except queue.Full:
            pass
        return True

    def _serial_reader(self) -> None:
        while True:
            self._discard_until_idle()
            while self._receive():
                pass

    # Main loop

    def _write(self, data: bytes) -> None:
        sent = 0
        while sent < len(data):
            try:
                written = self.port.write(data[sent:])
            except OSError as exc:
                log.warning("Write: %s", exc)
                return
            if written is None:
                written = len(data) - sent
            if written < 1:
                log.warning("Write: nothing written")
                return
            sent += written

    def _transmit(self, item: InjectMessage) -> float | None:
        """Send an injected request; return the next quiet period, or None to stay idle."""
        m = item.modbus
        if m is None or m.error is not None:
            log.warning("Inject: invalid message")
            item.done.set()
            return None

        if m.station != 0:
            # From here the reader thread treats incoming data as the response to m.
            if not self._claim(m):
                log.warning("COLLISION: inject during receive?!")
                m.error = ReceiveTimeoutError()
                item.done.set()
                return self.busy_timeout
            try:
                self._response.get_nowait()
            except queue.Empty:
                pass

        self._write(m.request)
        if self.config.dump:
            log.info("=>%s", m.request.hex().upper())

        if m.station == 0:
            item.done.set()
            return self.post_broadcast_timeout
        try:
            self._response.get(timeout=self.response_timeout)
        except queue.Empty:
            log.warning("Inject: response timeout")
            m.error = ReceiveTimeoutError()
            item.done.set()
            return self.busy_timeout
        item.done.set()
        self._publish(m)
        return self.post_transmit_timeout

    def _wait_quiet(self, delay: float) -> bool:
        try:
            event = self._events.get(timeout=delay)
        except queue.Empty:
            return True
        if event is not None:
            self._publish(event)
        return False

    def _serve_injections(self) -> float:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                pass
            else:
                if event is not None:
                    self._publish(event)
                return self.busy_timeout
            try:
                item = self.inject.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            delay = self._transmit(item)
            if delay is not None:
                return delay

    def run(self) -> None:
        """Run the bus forever: sniff traffic and inject requests in quiet periods."""
        log.info("Starting serial port handler")
        threading.Thread(target=self._serial_reader, name="serial-reader", daemon=True).start()
        delay = self.busy_timeout
        while True:
            if self._wait_quiet(delay):
                delay = self._serve_injections()
            else:
                delay = self.busy_timeout


def open_serial(config: SerialConfig) -> SerialBus:
    """Open the configured device at 9600 baud, 8N1, and wrap it in a bus handler."""
    try:
        port = serial.Serial(
            config.device,
            baudrate=9600,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,  # although the Modbus spec asks for two
        )
    except (serial.SerialException, ValueError) as exc:
        raise serial.SerialException(f"{config.device}: device {exc}") from exc
    return SerialBus(config, port)