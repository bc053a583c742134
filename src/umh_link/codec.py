"""Frame codec: encode commands into wire bytes, decode a byte stream into frames.

The decoder does **not** resynchronise.  A header mismatch consumes exactly
the two bytes that were read, and a checksum mismatch returns before the tail
is read, which leaves the two tail bytes in the stream for the next call.  A
corrupted frame therefore usually costs the frame after it as well.
"""

from __future__ import annotations

import logging
from typing import Optional

from typeguard import typechecked

from . import FRAME_HEADER, FRAME_TAIL, MAX_PAYLOAD_LENGTH
from .exceptions import InvalidPayloadError, ProtocolError, ProtocolErrorReason
from .protocol import Frame, checksum, frame_type_name
from .types import ReadExact

logger = logging.getLogger("umh_link.codec")

__all__ = ["checksum", "encode", "decode"]


@typechecked
def encode(frame_type: int, payload: bytes = b"") -> bytes:
    """Build the wire bytes for one frame.

    Args:
        frame_type: Command (or response) code, 0-255.
        payload: Payload bytes, at most 255.

    Returns:
        ``AA 55 | type | length | payload | checksum | 0D 0A``.

    Raises:
        InvalidPayloadError: If the payload is longer than 255 bytes or the
            type does not fit in one byte.
    """
    if not 0 <= frame_type <= 0xFF:
        raise InvalidPayloadError(
            f"Frame type {frame_type!r} does not fit in one byte (0-255)."
        )
    if len(payload) > MAX_PAYLOAD_LENGTH:
        raise InvalidPayloadError(
            f"Payload of {len(payload)} bytes for {frame_type_name(frame_type)} "
            f"exceeds the {MAX_PAYLOAD_LENGTH}-byte frame limit."
        )
    return Frame(int(frame_type), bytes(payload)).to_bytes()


def decode(read_exact: ReadExact, timeout_s: float) -> Optional[Frame]:
    """Read and validate one frame.

    Args:
        read_exact: ``read_exact(n, timeout_s)`` returning exactly *n* bytes,
            a shorter ``bytes`` when the timeout expired mid-read, or ``None``
            when nothing arrived at all.  Normally
            ``SerialTransport.read_exact``.
        timeout_s: Timeout applied to each individual read.

    Returns:
        The validated ``Frame``, or ``None`` when the header read timed out
        with fewer than two bytes (the normal idle state, not an error).  A
        lone header byte is consumed and dropped.

    Raises:
        ProtocolError: Header, checksum or tail mismatch, or the stream went
            quiet part-way through a frame.
        TransportError: Propagated unchanged from *read_exact*.
    """
    header = read_exact(2, timeout_s)
    if not header or len(header) < 2:
        if header:
            logger.debug("[CODEC-DECODE] Dropped lone header byte %s", header.hex())
        return None
    if header != FRAME_HEADER:
        raise ProtocolError(
            f"Expected header {FRAME_HEADER.hex(' ')}, got {header.hex(' ')}.",
            reason=ProtocolErrorReason.HEADER_MISMATCH, data=header,
        )

    consumed = bytearray(header)
    type_and_length = _read_body(read_exact, 2, timeout_s, consumed, "type/length")
    frame_type, length = type_and_length[0], type_and_length[1]
    payload = _read_body(read_exact, length, timeout_s, consumed, "payload")
    received_checksum = _read_body(read_exact, 1, timeout_s, consumed, "checksum")[0]

    expected = checksum(frame_type, payload)
    if received_checksum != expected:
        raise ProtocolError(
            f"Checksum mismatch on {frame_type_name(frame_type)} frame: "
            f"received 0x{received_checksum:02X}, computed 0x{expected:02X}.",
            reason=ProtocolErrorReason.CHECKSUM_MISMATCH, data=bytes(consumed),
        )

    tail = _read_body(read_exact, 2, timeout_s, consumed, "tail")
    if tail != FRAME_TAIL:
        raise ProtocolError(
            f"Expected tail {FRAME_TAIL.hex(' ')}, got {tail.hex(' ')}.",
            reason=ProtocolErrorReason.TAIL_MISMATCH, data=bytes(consumed),
        )

    frame = Frame(frame_type, payload)
    logger.debug("[CODEC-DECODE] %s", frame)
    return frame


def _read_body(
    read_exact: ReadExact,
    n: int,
    timeout_s: float,
    consumed: bytearray,
    part: str,
) -> bytes:
    """Read *n* bytes past the header; any shortfall means a truncated frame."""
    if n == 0:
        return b""
    data = read_exact(n, timeout_s) or b""
    consumed.extend(data)
    if len(data) < n:
        raise ProtocolError(
            f"Truncated frame: got {len(data)}/{n} {part} byte(s) "
            f"within {timeout_s:.3f}s.",
            reason=ProtocolErrorReason.TRUNCATED, data=bytes(consumed),
        )
    return data
