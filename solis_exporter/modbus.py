"""Minimal Modbus RTU framing for sniffing and injecting request/response pairs."""

from __future__ import annotations

from dataclasses import dataclass


class ModbusError(Exception):
    """Base class for gross transmit or receive errors on the bus."""

    label = "decode_failed"
    default_message = "Modbus error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class InvalidPacketError(ModbusError):
    """The packet has an unknown or invalid format."""

    label = "decode_failed"
    default_message = "Invalid or unknown packet format"


class ReceiveTimeoutError(ModbusError):
    """Too few bytes arrived before the line went quiet."""

    label = "timeout"
    default_message = "Too few bytes received"


class CRCError(ModbusError):
    """The packet checksum did not match its contents."""

    label = "crc_failed"
    default_message = "CRC check failed"


class ResponseMismatchError(ModbusError):
    """The response does not belong to the request it follows."""

    label = "response_mismatch"
    default_message = "Response packet does not match request"


def error_label(error: BaseException) -> str:
    """Return the metric label for an error; unknown errors count as decode failures."""
    if isinstance(error, ModbusError):
        return error.label
    return InvalidPacketError.label


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ 0xA001 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def modbus_crc(pkt: bytes) -> bytes:
    """Compute the Modbus CRC-16 of ``pkt``, returned in wire order (low byte first)."""
    crc = 0xFFFF
    for byte in pkt:
        crc = (crc >> 8) ^ _CRC_TABLE[(crc ^ byte) & 0xFF]
    return crc.to_bytes(2, "little")


def _u16(pkt: bytes, offset: int) -> int:
    return int.from_bytes(pkt[offset:offset + 2], "big")


@dataclass
class ModbusExchange:
    """A Modbus request and its response, decoded as far as they have been parsed."""

    sniffed: bool = False
    error: BaseException | None = None
    exception: int = 0
    request: bytes = b""
    response: bytes = b""
    station: int = 0
    function: int = 0
    base: int = 0
    count: int = 0
    data: bytes | None = None

    def _fail(self, error: ModbusError) -> None:
        self.error = error
        raise error

    def _check_frame(self, pkt: bytes, expected: int) -> int:
        if len(pkt) < expected:
            return expected - len(pkt)
        if len(pkt) > expected:
            self._fail(InvalidPacketError())
        if pkt[-2:] != modbus_crc(pkt[:-2]):
            self._fail(CRCError())
        return 0

    def parse_request(self, pkt: bytes) -> int:
        """Parse a complete or partial request.

        Returns the number of further bytes needed (CRC included), or 0 once the
        packet is complete and decoded.  Raises a ModbusError, also stored in
        ``error``, when the stream is corrupt and must be resynchronised.
        """
        self.error = None
        pkt = bytes(pkt)
        length = len(pkt)
        if length < 2:
            return 5 - length
        function = pkt[1]
        if function & 0x80:
            self._fail(ResponseMismatchError())
        if function in (0x02, 0x03, 0x04, 0x06):
            expected = 8
        elif function == 0x10:
            if length < 7:
                return 9 - length
            expected = pkt[6] + 9
        else:
            self._fail(InvalidPacketError())
        remaining = self._check_frame(pkt, expected)
        if remaining:
            return remaining

        self.request = pkt
        self.station = pkt[0]
        self.function = function
        self.base = _u16(pkt, 2)
        if function in (0x02, 0x03, 0x04):
            self.count = _u16(pkt, 4)
        elif function == 0x06:
            self.count = 1
            self.data = pkt[4:6]
        else:
            self.count = _u16(pkt, 4)
            self.data = pkt[7:-2]
            if pkt[6] != len(self.data):
                self._fail(InvalidPacketError())
        return 0

    def parse_response(self, pkt: bytes) -> int:
        """Parse a complete or partial response in the context of the parsed request.

        Returns the number of further bytes needed, or 0 once the packet is
        complete and decoded.  Raises a ModbusError, also stored in ``error``,
        on a gross protocol violation.
        """
        self.error = None
        pkt = bytes(pkt)
        length = len(pkt)
        if length < 2:
            return 5
        if pkt[1] & 0x80:
            expected = 5
        elif self.function in (0x02, 0x03, 0x04):
            if length < 3:
                return 5
            expected = pkt[2] + 5
        elif self.function in (0x06, 0x10):
            expected = 8
        else:
            self._fail(InvalidPacketError())
        remaining = self._check_frame(pkt, expected)
        if remaining:
            return remaining

        self.response = pkt
        if pkt[0] != self.station:
            self._fail(ResponseMismatchError())
        if pkt[1] == self.function | 0x80:
            self.exception = pkt[2] & 0x7F
            return 0
        if pkt[1] != self.function:
            self._fail(ResponseMismatchError())

        if self.function in (0x02, 0x03, 0x04):
            self.data = pkt[3:-2]
            if pkt[2] != len(self.data):
                self._fail(InvalidPacketError())
        elif self.function == 0x06:
            if _u16(pkt, 2) != self.base:
                self._fail(ResponseMismatchError())
            self.count = 1
            self.data = pkt[4:6]
        else:
            if _u16(pkt, 2) != self.base:
                self._fail(ResponseMismatchError())
            self.count = _u16(pkt, 4)
        return 0