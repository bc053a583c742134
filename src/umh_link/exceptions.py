"""Custom exceptions for UMH serial operations."""

from __future__ import annotations

import enum


class UMHLinkError(Exception):
    """Common base exception for all umh_link errors."""
    pass


class ConfigError(UMHLinkError):
    """Exception for invalid configuration (e.g. an unsupported baud rate).

    Always raised before any I/O is attempted.
    """
    pass


class InvalidPayloadError(UMHLinkError):
    """Exception for frames that cannot be encoded (payload over 255 bytes)."""
    pass


class DeviceConnectionError(UMHLinkError):
    """Exception for a serial port that could not be opened."""
    pass


class ConnectionTimeoutError(DeviceConnectionError):
    """Exception for an open that did not complete within its timeout.

    Also raised when an open is abandoned because the caller cancelled it.
    """
    pass


class TransportError(UMHLinkError):
    """Base exception for read/write failures on an open transport.

    A plain ``TransportError`` is fatal: the transport that raised it has
    already been closed.
    """
    pass


class TransportTimeoutError(TransportError):
    """Exception for a write that did not complete within its timeout.

    The transport stays open; the caller may retry.
    """
    pass


class SessionClosedError(TransportError):
    """Exception for an operation attempted on a session that is not open."""
    pass


class ProtocolErrorReason(enum.Enum):
    """Why a received frame was rejected."""
    HEADER_MISMATCH = "header mismatch"
    CHECKSUM_MISMATCH = "checksum mismatch"
    TAIL_MISMATCH = "tail mismatch"
    TRUNCATED = "truncated frame"


class ProtocolError(UMHLinkError):
    """Exception for a malformed frame.

    Never fatal to a session: the frame is dropped and decoding resumes.

    Attributes:
        reason: The ``ProtocolErrorReason`` for the rejection.
        data: The raw bytes consumed while decoding the rejected frame.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: ProtocolErrorReason,
        data: bytes = b"",
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.data = data
