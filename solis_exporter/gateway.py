"""Modbus TCP gateway that injects requests onto the serial bus."""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Any

from .config import GatewayConfig, _parse_listen
from .modbus import ModbusError, ModbusExchange, modbus_crc
from .rules import check_rules
from .serial_bus import InjectMessage

log = logging.getLogger(__name__)


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


class Gateway:
    """Accepts Modbus TCP clients and relays permitted requests to the bus."""

    def __init__(self, config: GatewayConfig, inject: Any) -> None:
        config.listen = config.listen or "127.0.0.1:502"
        self.config = config
        self.inject = inject
        host, port = _parse_listen(config.listen)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        self.listener = socket.create_server((host, port), family=family)
        self.listener.settimeout(0.2)
        self._closed = threading.Event()

    def _exchange(self, body: bytes) -> bytes | None:
        """Relay one request PDU. Returns the reply PDU, b"" for a broadcast, None to hang up."""
        request = body + modbus_crc(body)
        m = ModbusExchange()
        try:
            remaining = m.parse_request(request)
        except ModbusError as exc:
            remaining, error = 0, exc
        else:
            error = None
        if remaining or error is not None:
            log.warning("Gateway: incomplete or invalid packet: %d: %s", remaining, error)
            return bytes([request[0], request[1] | 0x80, 1])
        if not check_rules(m, self.config.rules):
            log.warning("Gateway: Rejected by rules: reg %d, count %d, function %d",
                        m.base, m.count, m.function)
            return bytes([request[0], request[1] | 0x80, 2])

        message = InjectMessage(modbus=m)
        self.inject.put(message)
        message.done.wait()
        if m.station == 0:
            return b""  # broadcasts get no response
        if m.error is not None:
            log.warning("Error in exchange: %s", m.error)
            return None
        if len(m.response) < 5:
            log.warning("Too short response! %d", len(m.response))
            return None
        return m.response[:-2]

    def _serve_one(self, conn: socket.socket) -> bool:
        """Answer one request; False when the connection should close."""
        try:
            header = _recv_exact(conn, 6)
            if not header:
                return False
            if len(header) < 6:
                log.warning("Read request header: %d bytes", len(header))
                return False
            proto = int.from_bytes(header[2:4], "big")
            if proto != 0:
                log.warning("Proto: got %d", proto)
                return False
            length = int.from_bytes(header[4:6], "big")
            if not 2 <= length <= 256:
                log.warning("Len: got %d", length)
                return False
            body = _recv_exact(conn, length)
            if len(body) < length:
                log.warning("Read request body: %d bytes", len(body))
                return False
            reply = self._exchange(body)
            if reply:
                conn.sendall(header[:4] + len(reply).to_bytes(2, "big") + reply)
            return reply is not None
        except OSError as exc:
            log.warning("Connection: %s", exc)
            return False

    def handle_connection(self, conn: socket.socket) -> None:
        """Serve one client until it disconnects or misbehaves; closes the socket."""
        with conn:
            conn.settimeout(None)
            while self._serve_one(conn):
                pass

    def run(self) -> None:
        """Accept clients, each in its own thread, until closed."""
        log.info("Starting modbus TCP gateway on %s", self.config.listen)
        while not self._closed.is_set():
            try:
                conn, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._closed.is_set():
                    break
                log.warning("listener.accept: %s", exc)
                time.sleep(1)
                continue
            threading.Thread(target=self.handle_connection, args=(conn,), daemon=True).start()

    def close(self) -> None:
        """Stop accepting clients."""
        self._closed.set()
        self.listener.close()