"""Explicit, host-owned lifetime for the device controller and its status poller."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from typeguard import typechecked

from . import SERIAL_BAUD_RATE, SERIAL_PORT, STATUS_POLL_INITIAL_DELAY_S, STATUS_POLL_INTERVAL_S
from .controller import DeviceController
from .poller import StatusPoller
from .scanner import PortScanner
from .transport import SerialFactory

logger = logging.getLogger("umh_link.context")


@typechecked
class DeviceContext:
    """Everything an application needs to talk to one device.

    Constructed by the application at startup and closed at shutdown; there
    is no process-wide instance.

    Example::

        with DeviceContext() as device:
            device.start()
            device.controller.status_received += update_display
            run_application()
    """

    def __init__(
        self,
        baud_rate: int = SERIAL_BAUD_RATE,
        poll_interval_s: float = STATUS_POLL_INTERVAL_S,
        poll_initial_delay_s: float = STATUS_POLL_INITIAL_DELAY_S,
        scanner: Optional[PortScanner] = None,
        serial_factory: Optional[SerialFactory] = None,
    ) -> None:
        self.controller = DeviceController(
            baud_rate, scanner=scanner, serial_factory=serial_factory,
        )
        self.poller = StatusPoller(
            self.controller,
            interval_s=poll_interval_s,
            initial_delay_s=poll_initial_delay_s,
        )

    def start(
        self,
        port: Optional[str] = None,
        candidates: Optional[Iterable[str]] = None,
    ) -> bool:
        """Connect and start status polling.

        Connects directly to *port* (or ``UMH_PORT`` from the environment)
        when given, otherwise scans *candidates* (default: all OS ports).
        The poller starts either way and idles until a session is active.

        Returns:
            True if a session is active afterwards.

        Raises:
            DeviceConnectionError: If an explicit port cannot be opened.
        """
        port = port or SERIAL_PORT or None
        if port:
            self.controller.connect(port)
        else:
            self.controller.scan_and_connect(candidates, context="startup discovery")
        self.poller.start()
        connected = self.controller.is_connected
        logger.info(
            "[CONTEXT] Started (%s)",
            f"connected to {self.controller.port}" if connected else "no device",
        )
        return connected

    def close(self) -> None:
        """Stop polling and release the active session.  Idempotent."""
        self.poller.stop()
        self.controller.close()
        logger.info("[CONTEXT] Closed")

    def __enter__(self) -> DeviceContext:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
