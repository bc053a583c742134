"""Protocol vocabulary for the UMH device: command/response codes, frames, status.

Payload shapes:

- ``SET_POINT`` (0x01, called *PointInfo* in older firmware documents):
  opaque application bytes, passed through unchanged.
- ``ENABLE_DISABLE`` (0x02): one byte, ``0x01`` enable / ``0x00`` disable.
- ``GET_STATUS`` (0x03): no payload.  Answered by ``RETURN_STATUS``.
- ``PING`` (0x04): one byte, echoed back by ``PING_ACK``.
- ``RETURN_STATUS`` (0x82): little-endian float32 voltage, float32 temperature.
- ``ERROR`` (0xFF): byte 0 is the device error code.
"""

from __future__ import annotations

import dataclasses
import enum
import struct
from typing import Optional, Union

from . import FRAME_HEADER, FRAME_TAIL

_STATUS_STRUCT = struct.Struct("<ff")


class CommandType(enum.IntEnum):
    """Host to device command codes."""
    SET_POINT = 0x01
    ENABLE_DISABLE = 0x02
    GET_STATUS = 0x03
    PING = 0x04


class ResponseType(enum.IntEnum):
    """Device to host response codes."""
    ACK = 0x80
    NACK = 0x81
    RETURN_STATUS = 0x82
    PING_ACK = 0x83
    ERROR = 0xFF


FrameType = Union[CommandType, ResponseType, int]


def frame_type_name(value: int) -> str:
    """Return a readable name for a frame type byte, e.g. ``"PING_ACK"``."""
    for enum_cls in (CommandType, ResponseType):
        try:
            return enum_cls(value).name
        except ValueError:
            continue
    return f"0x{value:02X}"


def checksum(frame_type: int, payload: bytes = b"") -> int:
    """8-bit wraparound sum over the type byte, the length byte and the payload."""
    return (frame_type + len(payload) + sum(payload)) & 0xFF


@dataclasses.dataclass(frozen=True)
class Frame:
    """One validated protocol message.

    Attributes:
        type: Command or response code (0-255).
        payload: Payload bytes (0-255 bytes).
    """
    type: int
    payload: bytes = b""

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def checksum(self) -> int:
        return checksum(self.type, self.payload)

    @property
    def type_name(self) -> str:
        return frame_type_name(self.type)

    def to_bytes(self) -> bytes:
        """Return the exact wire representation of this frame."""
        return (
            FRAME_HEADER
            + bytes((self.type, self.length))
            + bytes(self.payload)
            + bytes((self.checksum,))
            + FRAME_TAIL
        )

    def is_ping_ack_for(self, value: int) -> bool:
        """True if this frame is a ``PING_ACK`` echoing *value* as its first byte."""
        return (
            self.type == ResponseType.PING_ACK
            and len(self.payload) > 0
            and self.payload[0] == value
        )

    def __str__(self) -> str:
        return f"{self.type_name}[{self.length}]({self.payload.hex(' ')})"


@dataclasses.dataclass(frozen=True)
class DeviceStatus:
    """Last reported device status.

    Attributes:
        voltage: Supply voltage in volts.
        temperature: Device temperature in degrees Celsius.
    """
    voltage: float = 0.0
    temperature: float = 0.0

    @classmethod
    def from_payload(cls, payload: bytes) -> Optional[DeviceStatus]:
        """Decode a ``RETURN_STATUS`` payload; ``None`` if it is shorter than 8 bytes."""
        if len(payload) < _STATUS_STRUCT.size:
            return None
        voltage, temperature = _STATUS_STRUCT.unpack_from(payload, 0)
        return cls(voltage=voltage, temperature=temperature)

    def to_payload(self) -> bytes:
        return _STATUS_STRUCT.pack(self.voltage, self.temperature)


def enable_payload(enable: bool) -> bytes:
    return b"\x01" if enable else b"\x00"


def parse_hex_payload(text: str) -> bytes:
    """Parse ``"01 02 ff"`` / ``"0102ff"`` / ``"01:02:ff"`` into bytes.

    Raises:
        ValueError: If *text* is not valid hexadecimal.
    """
    cleaned = text.replace(":", "").replace(" ", "").replace("-", "")
    if cleaned.lower().startswith("0x"):
        cleaned = cleaned[2:]
    return bytes.fromhex(cleaned)
