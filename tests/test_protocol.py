"""Protocol vocabulary: frame type names, frames, status payloads, hex parsing."""

from __future__ import annotations

import struct

import pytest

from umh_link.protocol import (
    CommandType,
    DeviceStatus,
    Frame,
    ResponseType,
    enable_payload,
    frame_type_name,
    parse_hex_payload,
)


class TestFrameTypes:

    def test_command_codes(self):
        # type: () -> None
        assert [int(c) for c in CommandType] == [0x01, 0x02, 0x03, 0x04]

    def test_response_codes(self):
        # type: () -> None
        assert [int(r) for r in ResponseType] == [0x80, 0x81, 0x82, 0x83, 0xFF]

    def test_names(self):
        # type: () -> None
        assert frame_type_name(0x83) == "PING_ACK"
        assert frame_type_name(0x03) == "GET_STATUS"
        assert frame_type_name(0x42) == "0x42"


class TestFrame:

    def test_str(self):
        # type: () -> None
        assert str(Frame(ResponseType.PING_ACK, b"\x2A")) == "PING_ACK[1](2a)"

    def test_is_ping_ack_for(self):
        # type: () -> None
        frame = Frame(ResponseType.PING_ACK, b"\x2A")
        assert frame.is_ping_ack_for(0x2A)
        assert not frame.is_ping_ack_for(0x2B)
        assert not Frame(ResponseType.PING_ACK).is_ping_ack_for(0x00)
        assert not Frame(ResponseType.ACK, b"\x2A").is_ping_ack_for(0x2A)

    def test_frozen(self):
        # type: () -> None
        frame = Frame(ResponseType.ACK)
        with pytest.raises(Exception):
            frame.type = 0x81  # type: ignore[misc]


class TestDeviceStatus:

    def test_decode_little_endian_floats(self):
        # type: () -> None
        status = DeviceStatus.from_payload(struct.pack("<ff", 3.30, 25.5))
        assert status is not None
        assert status.voltage == pytest.approx(3.30, abs=1e-6)
        assert status.temperature == 25.5

    def test_extra_bytes_ignored(self):
        # type: () -> None
        status = DeviceStatus.from_payload(struct.pack("<ff", 1.0, 2.0) + b"\xFF")
        assert status == DeviceStatus(1.0, 2.0)

    def test_short_payload(self):
        # type: () -> None
        assert DeviceStatus.from_payload(b"\x00" * 7) is None

    def test_default_is_zero(self):
        # type: () -> None
        assert DeviceStatus() == DeviceStatus(0.0, 0.0)

    def test_to_payload(self):
        # type: () -> None
        assert DeviceStatus(1.5, -4.0).to_payload() == struct.pack("<ff", 1.5, -4.0)


class TestPayloadHelpers:

    def test_enable_payload(self):
        # type: () -> None
        assert enable_payload(True) == b"\x01"
        assert enable_payload(False) == b"\x00"

    @pytest.mark.parametrize("text", ["01 02 ff", "0102FF", "01:02:ff", "0x0102ff", "01-02-ff"])
    def test_parse_hex(self, text):
        # type: (str) -> None
        assert parse_hex_payload(text) == b"\x01\x02\xff"

    def test_parse_hex_invalid(self):
        # type: () -> None
        with pytest.raises(ValueError):
            parse_hex_payload("zz")
