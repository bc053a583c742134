"""Device controller: owner of the single active session and of the last device status."""

from __future__ import annotations

import logging
import random
import threading
from typing import Iterable, Optional

from typeguard import typechecked

from . import SERIAL_BAUD_RATE, SERIAL_OPEN_TIMEOUT_S, SERIAL_WRITE_TIMEOUT_S
from .events import EventSource
from .exceptions import TransportError
from .protocol import CommandType, DeviceStatus, Frame, ResponseType, enable_payload, frame_type_name
from .scanner import PortScanner, ScanResult
from .session import ConnectionSession, Subscription
from .transport import SerialFactory, validate_baud_rate

logger = logging.getLogger("umh_link.controller")


@typechecked
class DeviceController:
    """Issues commands to the device and tracks what it reports.

    At most one session is active at a time.  Replacing it (``adopt`` or
    ``connect``) disposes the previous session before the new one becomes
    active.  Frame handlers are bound to the session they were registered on,
    so a frame still being dispatched from an old session is ignored once
    that session has been replaced.

    There is no request identifier in the protocol: a response can only be
    matched to a request reliably while at most one request of a given type
    is outstanding.

    Notifications (``EventSource``, handlers run on the session's dispatcher
    thread):

    - ``frame_received(frame)`` - every frame from the active session.
    - ``status_received(status)`` - every valid ``RETURN_STATUS``.
    - ``error_received(code)`` - every ``ERROR`` frame with its error code.
    - ``disconnected(port, reason)`` - the active session closed on its own
      (I/O failure), not through ``disconnect()`` or replacement.

    Example::

        with DeviceController() as controller:
            if controller.scan_and_connect():
                controller.status_received += lambda s: print(s)
                controller.request_status()
    """

    def __init__(
        self,
        baud_rate: int = SERIAL_BAUD_RATE,
        scanner: Optional[PortScanner] = None,
        serial_factory: Optional[SerialFactory] = None,
    ) -> None:
        """Initialize the controller with no active session.

        Args:
            baud_rate: Default baud rate for ``connect()``.
            scanner: Scanner used by ``scan_and_connect()``.  Defaults to a
                ``PortScanner`` at *baud_rate*.
            serial_factory: Forwarded to sessions created by ``connect()``
                and to the default scanner.

        Raises:
            ConfigError: If the baud rate is invalid.
        """
        self.baud_rate = validate_baud_rate(baud_rate)
        self._serial_factory = serial_factory
        self.scanner = scanner or PortScanner(baud_rate, serial_factory=serial_factory)
        self._lock = threading.RLock()
        self._session: Optional[ConnectionSession] = None
        self._subscription: Optional[Subscription] = None
        self._scanning = threading.Lock()
        self._rng = random.Random()

        self.last_status = DeviceStatus()
        self.last_error_code: Optional[int] = None

        self.frame_received = EventSource("frame_received")
        self.status_received = EventSource("status_received")
        self.error_received = EventSource("error_received")
        self.disconnected = EventSource("disconnected")

    # ---- Session ownership ----

    @property
    def session(self) -> Optional[ConnectionSession]:
        return self._session

    @property
    def port(self) -> Optional[str]:
        session = self._session
        return session.port if session is not None else None

    @property
    def is_connected(self) -> bool:
        session = self._session
        return session is not None and session.is_open()

    def adopt(self, session: ConnectionSession) -> None:
        """Make an open *session* the active one, disposing the previous one."""
        with self._lock:
            if session is self._session:
                return
            self._release_locked("replaced")
            self._session = session
            self._subscription = session.subscribe(
                lambda frame: self._handle_frame(session, frame),
                lambda reason: self._handle_closed(session, reason),
            )
        logger.info("[CONTROLLER] Active session is now %s", session.port)

    def connect(
        self,
        port: str,
        baud_rate: Optional[int] = None,
        open_timeout_s: float = SERIAL_OPEN_TIMEOUT_S,
    ) -> None:
        """Open *port* directly (no ping) and make it the active session.

        Raises:
            ConfigError: If the baud rate is invalid.
            DeviceConnectionError: If the port cannot be opened in time.
        """
        session = ConnectionSession(
            port,
            baud_rate if baud_rate is not None else self.baud_rate,
            serial_factory=self._serial_factory,
        )
        session.open(open_timeout_s, context=f"connect {port}")
        self.adopt(session)

    def scan_and_connect(
        self,
        candidates: Optional[Iterable[str]] = None,
        context: str = "scan and connect",
    ) -> bool:
        """Run the scanner and adopt the winning session.

        Does nothing while a session is already connected; call
        ``disconnect()`` first to rescan.

        Returns:
            True if a device was found or one is already connected.  False if
            none answered, or if another scan is already running.
        """
        if self.is_connected:
            logger.info("[CONTROLLER] [%s] Already connected on %s, not scanning", context, self.port)
            return True
        if not self._scanning.acquire(blocking=False):
            logger.info("[CONTROLLER] [%s] Scan already in progress, skipping", context)
            return False
        try:
            result: ScanResult = self.scanner.scan(candidates, context=context)
        finally:
            self._scanning.release()
        if result.session is None:
            return False
        self.adopt(result.session)
        return True

    def disconnect(self) -> None:
        """Dispose the active session, if any."""
        with self._lock:
            self._release_locked("disconnected")

    close = disconnect

    def _release_locked(self, reason: str) -> None:
        old, self._session = self._session, None
        sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.cancel()
        if old is not None:
            old.dispose()
            logger.info("[CONTROLLER] Released session on %s (%s)", old.port, reason)

    # ---- Commands ----

    def send_command(
        self,
        command: int,
        payload: bytes = b"",
        timeout_s: float = SERIAL_WRITE_TIMEOUT_S,
    ) -> bool:
        """Encode and write one command frame on the active session.

        Returns:
            True if the frame was written.  This says nothing about whether
            the device accepted it; watch ``frame_received`` for ACK/NACK.

        Raises:
            InvalidPayloadError: If the payload is longer than 255 bytes.
        """
        session = self._session
        if session is None or not session.is_open():
            logger.warning(
                "[CONTROLLER] Cannot send %s: no active session",
                frame_type_name(command),
            )
            return False
        try:
            session.send_frame(command, payload, timeout_s)
        except TransportError as exc:
            logger.error(
                "[CONTROLLER] Sending %s on %s failed: %s",
                frame_type_name(command), session.port, exc,
            )
            return False
        return True

    def set_point(self, data: bytes, timeout_s: float = SERIAL_WRITE_TIMEOUT_S) -> bool:
        """Send ``SET_POINT`` with opaque application data."""
        return self.send_command(CommandType.SET_POINT, data, timeout_s)

    def set_enabled(self, enable: bool, timeout_s: float = SERIAL_WRITE_TIMEOUT_S) -> bool:
        """Send ``ENABLE_DISABLE`` (``0x01`` enable, ``0x00`` disable)."""
        return self.send_command(CommandType.ENABLE_DISABLE, enable_payload(enable), timeout_s)

    def request_status(self, timeout_s: float = SERIAL_WRITE_TIMEOUT_S) -> bool:
        """Send ``GET_STATUS``; the answer arrives via ``status_received``."""
        return self.send_command(CommandType.GET_STATUS, b"", timeout_s)

    def ping(self, value: Optional[int] = None, timeout_s: float = SERIAL_WRITE_TIMEOUT_S) -> Optional[int]:
        """Send ``PING`` with one payload byte.

        Returns:
            The byte sent (the device echoes it in ``PING_ACK``), or ``None``
            if the frame could not be written.
        """
        if value is None:
            value = self._rng.randrange(256)
        if self.send_command(CommandType.PING, bytes((value & 0xFF,)), timeout_s):
            return value & 0xFF
        return None

    # ---- Incoming frames ----

    def _handle_frame(self, session: ConnectionSession, frame: Frame) -> None:
        status: Optional[DeviceStatus] = None
        error_code: Optional[int] = None
        with self._lock:
            if session is not self._session:
                logger.debug(
                    "[CONTROLLER] Ignoring %s from replaced session on %s", frame, session.port,
                )
                return
            if frame.type == ResponseType.RETURN_STATUS:
                status = DeviceStatus.from_payload(frame.payload)
                if status is not None:
                    self.last_status = status
            elif frame.type == ResponseType.ERROR and frame.payload:
                error_code = frame.payload[0]
                self.last_error_code = error_code

        self.frame_received.fire(frame)

        if frame.type == ResponseType.ACK:
            logger.debug("[CONTROLLER] ACK from %s", session.port)
        elif frame.type == ResponseType.NACK:
            logger.warning("[CONTROLLER] NACK from %s", session.port)
        elif frame.type == ResponseType.PING_ACK:
            logger.debug("[CONTROLLER] PING_ACK from %s: %s", session.port, frame.payload.hex(" "))
        elif frame.type == ResponseType.RETURN_STATUS:
            if status is None:
                logger.warning(
                    "[CONTROLLER] RETURN_STATUS from %s has %d payload bytes, expected 8",
                    session.port, frame.length,
                )
                return
            logger.debug(
                "[CONTROLLER] Status from %s: voltage=%.2fV temperature=%.1fC",
                session.port, status.voltage, status.temperature,
            )
            self.status_received.fire(status)
        elif frame.type == ResponseType.ERROR:
            if error_code is None:
                logger.warning("[CONTROLLER] ERROR frame from %s without error code", session.port)
                return
            logger.error("[CONTROLLER] Device on %s reported error 0x%02X", session.port, error_code)
            self.error_received.fire(error_code)
        else:
            logger.debug("[CONTROLLER] Unhandled frame from %s: %s", session.port, frame)

    def _handle_closed(self, session: ConnectionSession, reason: str) -> None:
        with self._lock:
            if session is not self._session:
                return
            self._session = None
            self._subscription = None
        logger.warning("[CONTROLLER] Active session on %s closed: %s", session.port, reason)
        self.disconnected.fire(session.port, reason)

    # ---- Context manager ----

    def __enter__(self) -> DeviceController:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
