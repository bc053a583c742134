"""Status poller and device context."""

from __future__ import annotations

import time

import pytest

from umh_link.context import DeviceContext
from umh_link.controller import DeviceController
from umh_link.events import EventSource
from umh_link.exceptions import ConfigError
from umh_link.poller import StatusPoller
from umh_link.scanner import PortScanner

from serial_fakes import FakeSerialFactory, device, wait_for


@pytest.fixture()
def factory():
    return FakeSerialFactory(responders={"A": device()})


class TestStatusPoller:

    def test_polls_while_connected(self, factory):
        # type: (FakeSerialFactory) -> None
        with DeviceController(serial_factory=factory) as controller:
            controller.connect("A")
            statuses = []
            controller.status_received += statuses.append
            poller = StatusPoller(controller, interval_s=0.05, initial_delay_s=0.0)
            with poller:
                assert poller.is_running
                assert wait_for(lambda: len(statuses) >= 3)
            assert not poller.is_running
            assert poller.requests_sent >= 3

    def test_idle_without_session(self, factory):
        # type: (FakeSerialFactory) -> None
        controller = DeviceController(serial_factory=factory)
        poller = StatusPoller(controller, interval_s=0.02, initial_delay_s=0.0)
        poller.start()
        time.sleep(0.1)
        poller.stop()
        assert poller.requests_sent == 0

    def test_stop_is_prompt_and_idempotent(self, factory):
        # type: (FakeSerialFactory) -> None
        poller = StatusPoller(DeviceController(serial_factory=factory), interval_s=10.0, initial_delay_s=10.0)
        poller.start()
        poller.stop(timeout_s=0.5)
        assert not poller.is_running
        poller.stop()

    @pytest.mark.parametrize("interval, delay", [(0.0, 1.0), (-1.0, 1.0), (1.0, -0.1)])
    def test_invalid_settings(self, factory, interval, delay):
        # type: (FakeSerialFactory, float, float) -> None
        with pytest.raises(ConfigError):
            StatusPoller(DeviceController(serial_factory=factory), interval_s=interval, initial_delay_s=delay)


class TestDeviceContext:

    def test_start_with_port(self, factory, monkeypatch):
        # type: (FakeSerialFactory, object) -> None
        monkeypatch.setattr("umh_link.context.SERIAL_PORT", "")
        with DeviceContext(poll_interval_s=0.05, poll_initial_delay_s=0.0, serial_factory=factory) as ctx:
            statuses = []
            ctx.controller.status_received += statuses.append
            assert ctx.start(port="A")
            assert wait_for(lambda: len(statuses) >= 1)
        assert not ctx.poller.is_running
        assert not ctx.controller.is_connected
        assert factory.all_closed("A")

    def test_start_scans_when_no_port(self, factory, monkeypatch):
        # type: (FakeSerialFactory, object) -> None
        monkeypatch.setattr("umh_link.context.SERIAL_PORT", "")
        scanner = PortScanner(ping_window_s=0.2, serial_factory=factory)
        with DeviceContext(scanner=scanner, serial_factory=factory) as ctx:
            assert ctx.start(candidates=["X", "A"])
            assert ctx.controller.port == "A"

    def test_start_uses_environment_port(self, factory, monkeypatch):
        # type: (FakeSerialFactory, object) -> None
        monkeypatch.setattr("umh_link.context.SERIAL_PORT", "A")
        with DeviceContext(serial_factory=factory) as ctx:
            assert ctx.start()
            assert ctx.controller.port == "A"

    def test_start_without_device(self, monkeypatch):
        # type: (object) -> None
        monkeypatch.setattr("umh_link.context.SERIAL_PORT", "")
        factory = FakeSerialFactory()
        scanner = PortScanner(ping_window_s=0.05, serial_factory=factory)
        with DeviceContext(scanner=scanner, serial_factory=factory) as ctx:
            assert ctx.start(candidates=["X"]) is False
            assert ctx.poller.is_running


class TestEventSource:

    def test_fire_and_remove(self):
        # type: () -> None
        calls = []
        source = EventSource("test")
        handler = calls.append
        source += handler
        source.fire(1)
        source -= handler
        source.fire(2)
        assert calls == [1]
        assert len(source) == 0

    def test_faulty_handler_does_not_stop_others(self):
        # type: () -> None
        calls = []

        def broken(value):
            raise ValueError("handler bug")

        source = EventSource("test")
        source += broken
        source += calls.append
        source.fire("x")
        assert calls == ["x"]
