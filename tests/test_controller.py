"""
Device controller test suite.

Run with full visibility:
    pytest tests/test_controller.py -v -s
"""

from __future__ import annotations

import threading

import pytest
import serial

from umh_link.controller import DeviceController
from umh_link.exceptions import DeviceConnectionError, InvalidPayloadError
from umh_link.protocol import DeviceStatus, Frame, ResponseType
from umh_link.scanner import PortScanner

from serial_fakes import FakeSerialFactory, device, wait_for


def _report(label, detail=""):
    # type: (str, str) -> None
    if detail:
        print("  [{}] {}".format(label, detail))
    else:
        print("  [{}]".format(label))


@pytest.fixture()
def factory():
    return FakeSerialFactory(
        responders={"A": device(3.3, 25.5), "B": device(5.0, 40.0)},
        missing={"GONE"},
    )


@pytest.fixture()
def controller(factory):
    c = DeviceController(serial_factory=factory)
    yield c
    c.close()


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS - Commands and status
# ═══════════════════════════════════════════════════════════════════════════

class TestCommands:

    def test_send_without_session(self, controller):
        # type: (DeviceController) -> None
        _report("TEST", "No session: commands return False, nothing raised")
        assert not controller.is_connected
        assert controller.send_command(0x03) is False
        assert controller.request_status() is False
        assert controller.ping() is None
        _report("PASS", "All commands reported failure")

    def test_status_updates_last_status(self, controller):
        # type: (DeviceController) -> None
        _report("TEST", "GET_STATUS -> RETURN_STATUS -> last_status")
        received = threading.Event()
        statuses = []
        controller.status_received += statuses.append
        controller.status_received += lambda s: received.set()
        controller.connect("A")
        assert controller.last_status == DeviceStatus()
        assert controller.request_status()
        assert received.wait(1.0)
        assert controller.last_status.temperature == 25.5
        assert controller.last_status.voltage == pytest.approx(3.3, abs=1e-6)
        assert statuses == [controller.last_status]
        _report("PASS", str(controller.last_status))

    def test_set_enabled_wire_bytes(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        controller.connect("A")
        assert controller.set_enabled(True)
        assert factory.last("A").writes[-1] == bytes.fromhex("AA 55 02 01 01 04 0D 0A")
        assert controller.set_enabled(False)
        assert factory.last("A").writes[-1] == bytes.fromhex("AA 55 02 01 00 03 0D 0A")

    def test_set_point_payload_passed_through(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        controller.connect("A")
        assert controller.set_point(b"\x10\x20\x30")
        assert factory.last("A").writes[-1][4:7] == b"\x10\x20\x30"
        with pytest.raises(InvalidPayloadError):
            controller.set_point(b"\x00" * 256)

    def test_ping_echo(self, controller):
        # type: (DeviceController) -> None
        acks = []
        controller.frame_received += acks.append
        controller.connect("A")
        value = controller.ping(0x5A)
        assert value == 0x5A
        assert wait_for(lambda: any(f.is_ping_ack_for(0x5A) for f in acks))

    def test_error_frame(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        codes = []
        controller.error_received += codes.append
        controller.connect("A")
        factory.last("A").feed(Frame(ResponseType.ERROR, b"\x07").to_bytes())
        assert wait_for(lambda: codes == [7])
        assert controller.last_error_code == 7

    def test_short_status_ignored(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        frames = []
        controller.frame_received += frames.append
        controller.connect("A")
        factory.last("A").feed(Frame(ResponseType.RETURN_STATUS, b"\x00\x01").to_bytes())
        assert wait_for(lambda: len(frames) == 1)
        assert controller.last_status == DeviceStatus()

    def test_write_failure_returns_false(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        controller.connect("A")
        factory.last("A").write_exception = serial.SerialException("gone")
        assert controller.request_status() is False
        assert not controller.is_connected


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS - Session ownership
# ═══════════════════════════════════════════════════════════════════════════

class TestSessionOwnership:

    def test_connect_missing_port(self, controller):
        # type: (DeviceController) -> None
        with pytest.raises(DeviceConnectionError):
            controller.connect("GONE")
        assert controller.session is None

    def test_replacement_disposes_previous(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        _report("TEST", "connect(B) after connect(A) releases A")
        controller.connect("A")
        old = controller.session
        controller.connect("B")
        assert controller.port == "B"
        assert not old.is_open()
        assert factory.all_closed("A")
        _report("PASS", "A released, B active")

    def test_frames_from_replaced_session_ignored(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        _report("TEST", "Status from the old session must not update state")
        controller.connect("A")
        old = controller.session
        controller.connect("B")
        stale = Frame(ResponseType.RETURN_STATUS, DeviceStatus(9.9, 99.0).to_payload())
        controller._handle_frame(old, stale)
        assert controller.last_status == DeviceStatus()

        received = threading.Event()
        controller.status_received += lambda s: received.set()
        controller.request_status()
        assert received.wait(1.0)
        assert controller.last_status.voltage == 5.0
        _report("PASS", str(controller.last_status))

    def test_disconnected_event_on_io_failure(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        events = []
        controller.disconnected += lambda port, reason: events.append((port, reason))
        controller.connect("A")
        factory.last("A").fail_reads(serial.SerialException("device unplugged"))
        assert wait_for(lambda: len(events) == 1, timeout_s=2.0)
        assert events[0][0] == "A"
        assert events[0][1].startswith("read failed")
        assert controller.session is None

    def test_explicit_disconnect_is_silent(self, factory, controller):
        # type: (FakeSerialFactory, DeviceController) -> None
        events = []
        controller.disconnected += lambda port, reason: events.append(port)
        controller.connect("A")
        controller.disconnect()
        assert controller.session is None
        assert factory.all_closed("A")
        assert events == []

    def test_scan_and_connect(self):
        # type: () -> None
        factory = FakeSerialFactory(responders={"B": device()})
        scanner = PortScanner(ping_window_s=0.2, serial_factory=factory)
        with DeviceController(scanner=scanner, serial_factory=factory) as controller:
            assert controller.scan_and_connect(["A", "B"], context="test discovery")
            assert controller.port == "B"
            assert controller.is_connected
        assert factory.all_closed("B")

    def test_scan_and_connect_while_connected_keeps_session(self):
        # type: () -> None
        factory = FakeSerialFactory(responders={"A": device(), "B": device()})
        scanner = PortScanner(ping_window_s=0.2, serial_factory=factory)
        with DeviceController(scanner=scanner, serial_factory=factory) as controller:
            controller.connect("A")
            session = controller.session
            assert controller.scan_and_connect(["B"]) is True
            assert controller.session is session
            assert controller.port == "A"
            assert "B" not in factory.opened
        assert factory.all_closed("B")

    def test_scan_and_connect_nothing_found(self):
        # type: () -> None
        factory = FakeSerialFactory()
        scanner = PortScanner(ping_window_s=0.05, serial_factory=factory)
        controller = DeviceController(scanner=scanner, serial_factory=factory)
        assert controller.scan_and_connect(["A"]) is False
        assert controller.session is None
