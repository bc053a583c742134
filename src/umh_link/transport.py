"""Serial transport with time-bounded open, read and write.

Wraps a pyserial port in the shape the frame codec and connection sessions
need:

- ``open()`` runs the (occasionally very slow) OS open on a helper thread and
  gives up after ``open_timeout_s``.  A handle that appears after the caller
  gave up is closed by the helper, so abandoned opens never leak.
- ``read_exact()`` returns exactly *n* bytes, a short read on timeout, or
  ``None`` when the line was silent.
- ``write()`` distinguishes a write timeout (transport stays open) from an
  I/O failure (transport is closed).

Cross-platform: works with COM ports on Windows, ``/dev/tty*`` paths on
Linux, and pyserial URL handlers such as ``loop://``.

Line settings are fixed at 8N1, no flow control.
"""

from __future__ import annotations

import dataclasses
import logging
import platform
import threading
import time
from typing import Any, Callable, List, Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    SCAN_POLL_INTERVAL_S,
    SERIAL_BAUD_RATE,
    SERIAL_BYTESIZE,
    SERIAL_OPEN_TIMEOUT_S,
    SERIAL_PARITY,
    SERIAL_STOPBITS,
    SERIAL_WRITE_TIMEOUT_S,
    SESSION_READ_TIMEOUT_S,
    VALID_BAUD_RATES,
)
from .exceptions import (
    ConfigError,
    ConnectionTimeoutError,
    DeviceConnectionError,
    TransportError,
    TransportTimeoutError,
)

logger = logging.getLogger("umh_link.transport")

_IS_WINDOWS = platform.system() == "Windows"

SerialFactory = Callable[..., Any]


def validate_baud_rate(baud_rate: int, port: str = "") -> int:
    """Return *baud_rate* if the device supports it.

    Raises:
        ConfigError: If *baud_rate* is not one of ``VALID_BAUD_RATES``.
    """
    if baud_rate not in VALID_BAUD_RATES:
        valid = ", ".join(str(b) for b in VALID_BAUD_RATES)
        where = f" for port {port}" if port else ""
        raise ConfigError(
            f"Invalid baud rate {baud_rate!r}{where}. "
            f"The device supports only: {valid}."
        )
    return baud_rate


@dataclasses.dataclass(frozen=True)
class PortInfo:
    """One serial port as reported by the operating system."""
    device: str
    description: str
    hwid: str


def list_ports() -> List[PortInfo]:
    """Return the serial ports visible to the operating system."""
    ports = []
    for p in serial.tools.list_ports.comports():
        info = PortInfo(
            device=p.device,
            description=p.description or "",
            hwid=p.hwid or "",
        )
        logger.debug("[SERIAL-LIST] Found port: %s (%s)", info.device, info.description)
        ports.append(info)
    return ports


@typechecked
class SerialTransport:
    """A byte-oriented serial connection with explicit per-operation timeouts.

    Example::

        transport = SerialTransport("/dev/ttyUSB0", baud_rate=115200)
        transport.open(context="manual connect")
        try:
            transport.write(codec.encode(CommandType.PING, b"\\x2a"), timeout_s=0.3)
            frame = codec.decode(transport.read_exact, timeout_s=0.2)
        finally:
            transport.close()
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        open_timeout_s: float = SERIAL_OPEN_TIMEOUT_S,
        serial_factory: Optional[SerialFactory] = None,
    ) -> None:
        """Initialize the transport.  Does not touch the port.

        Args:
            port: Port identifier, e.g. ``/dev/ttyUSB0``, ``COM3`` or a
                pyserial URL such as ``loop://``.
            baud_rate: One of 9600, 19200, 38400, 57600, 115200.
            open_timeout_s: Upper bound for ``open()`` in seconds.
            serial_factory: Callable building the pyserial object; receives the
                port as first argument plus keyword line settings.  Defaults
                to ``serial.serial_for_url``.

        Raises:
            ConfigError: If the baud rate or timeout is invalid.
        """
        self.port = port
        self.baud_rate = validate_baud_rate(baud_rate, port)
        if open_timeout_s <= 0:
            raise ConfigError(
                f"Invalid open_timeout_s {open_timeout_s!r} for port {port}. "
                f"Must be a positive number of seconds."
            )
        self.open_timeout_s = open_timeout_s
        self._serial_factory = serial_factory or serial.serial_for_url
        self._serial: Optional[Any] = None
        self._state_lock = threading.Lock()

        logger.debug(
            "[SERIAL-INIT] Configured %s: %d %d%s%d (open_timeout=%.3fs)",
            port, baud_rate, SERIAL_BYTESIZE, SERIAL_PARITY, SERIAL_STOPBITS,
            open_timeout_s,
        )

    # ---- Lifecycle ----

    def open(
        self,
        context: str,
        timeout_s: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Open the serial port within ``open_timeout_s``.

        Args:
            context: Description of the purpose, embedded into error messages.
            timeout_s: Overrides ``open_timeout_s`` for this call.
            cancel_event: When set while the open is pending, the attempt is
                abandoned immediately.

        Raises:
            ConnectionTimeoutError: If the open did not complete in time or was
                cancelled.  A handle that materialises later is closed by the
                helper thread.
            DeviceConnectionError: If the port cannot be opened.
        """
        if self.is_open():
            logger.debug("[SERIAL-OPEN] [%s] Port %s is already open, skipping", context, self.port)
            return

        open_timeout_s = self.open_timeout_s if timeout_s is None else timeout_s
        logger.debug(
            "[SERIAL-OPEN] [%s] Opening %s at %d baud (timeout=%.3fs) ...",
            context, self.port, self.baud_rate, open_timeout_s,
        )

        attempt = _OpenAttempt()
        helper = threading.Thread(
            target=self._open_worker,
            args=(attempt,),
            name=f"umh-open-{self.port}",
            daemon=True,
        )
        start = time.monotonic()
        deadline = start + open_timeout_s
        helper.start()

        while not attempt.done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0 or (cancel_event is not None and cancel_event.is_set()):
                break
            attempt.done.wait(min(SCAN_POLL_INTERVAL_S, remaining))

        with attempt.lock:
            if attempt.handle is None and attempt.error is None:
                attempt.abandoned = True
                cancelled = cancel_event is not None and cancel_event.is_set()
                why = "cancelled" if cancelled else f"timed out after {open_timeout_s:.3f}s"
                msg = f"[{context}] Opening serial port {self.port} {why}."
                logger.debug("[SERIAL-OPEN] ABANDONED: %s", msg)
                raise ConnectionTimeoutError(msg)
            handle, error = attempt.handle, attempt.error

        if error is not None:
            msg = (
                f"[{context}] Failed to open serial port {self.port} at "
                f"{self.baud_rate} baud: {error}. {self._platform_hint()}"
            )
            logger.debug("[SERIAL-OPEN] FAILED: %s", msg)
            raise DeviceConnectionError(msg) from error

        with self._state_lock:
            self._serial = handle
        logger.info(
            "[SERIAL-OPEN] [%s] Opened %s in %.3fs",
            context, self.port, time.monotonic() - start,
        )

    def _open_worker(self, attempt: _OpenAttempt) -> None:
        try:
            handle = self._serial_factory(
                self.port,
                baudrate=self.baud_rate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=SESSION_READ_TIMEOUT_S,
                write_timeout=SERIAL_WRITE_TIMEOUT_S,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            with attempt.lock:
                attempt.error = exc
            attempt.done.set()
            return

        with attempt.lock:
            if attempt.abandoned:
                late = True
            else:
                attempt.handle = handle
                late = False
        attempt.done.set()

        if late:
            logger.debug("[SERIAL-OPEN] Releasing late handle for abandoned open of %s", self.port)
            _close_quietly(handle, self.port)

    def is_open(self) -> bool:
        """Check whether the serial port is currently open."""
        ser = self._serial
        return ser is not None and bool(ser.is_open)

    def close(self) -> None:
        """Close the serial port.  Idempotent; safe if never opened."""
        with self._state_lock:
            ser, self._serial = self._serial, None
        if ser is None:
            logger.debug("[SERIAL-CLOSE] close() called on already-closed port %s", self.port)
            return
        _close_quietly(ser, self.port)
        logger.info("[SERIAL-CLOSE] Closed %s", self.port)

    # ---- I/O ----

    def write(self, data: bytes, timeout_s: float = SERIAL_WRITE_TIMEOUT_S) -> int:
        """Write all of *data* within *timeout_s*.

        Does not serialise concurrent callers; ``ConnectionSession`` does.

        Returns:
            Number of bytes written (always ``len(data)``).

        Raises:
            TransportTimeoutError: The write did not complete in time.  The
                transport stays open.
            TransportError: The port is not open, or an I/O failure occurred
                (the transport is closed).
        """
        ser = self._require_open("write")
        try:
            if ser.write_timeout != timeout_s:
                ser.write_timeout = timeout_s
            n = ser.write(data)
            if n is not None and n != len(data):
                raise TransportTimeoutError(
                    f"Short write on {self.port}: wrote {n}/{len(data)} bytes "
                    f"within {timeout_s:.3f}s."
                )
            ser.flush()
        except serial.SerialTimeoutException as exc:
            msg = f"Write of {len(data)} bytes to {self.port} timed out after {timeout_s:.3f}s."
            logger.warning("[SERIAL-WRITE] TIMEOUT: %s", msg)
            raise TransportTimeoutError(msg) from exc
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"Failed to write to serial port {self.port}: {exc}. "
                f"The device may have been disconnected."
            )
            logger.error("[SERIAL-WRITE] ERROR: %s", msg)
            self.close()
            raise TransportError(msg) from exc

        logger.debug("[SERIAL-WRITE] Wrote %d bytes to %s: %s", len(data), self.port, data.hex(" "))
        return len(data)

    def read_exact(self, n: int, timeout_s: float = SESSION_READ_TIMEOUT_S) -> Optional[bytes]:
        """Read exactly *n* bytes, waiting at most *timeout_s*.

        Returns:
            *n* bytes; fewer bytes if the timeout expired part-way; ``None``
            if nothing at all arrived.

        Raises:
            TransportError: The port is not open, or an I/O failure occurred
                (the transport is closed).
        """
        ser = self._require_open("read")
        try:
            if ser.timeout != timeout_s:
                ser.timeout = timeout_s
            data = ser.read(n)
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"Serial read error on {self.port}: {exc}. "
                f"The device may have been disconnected."
            )
            logger.error("[SERIAL-READ] ERROR: %s", msg)
            self.close()
            raise TransportError(msg) from exc

        if not data:
            return None
        return bytes(data)

    def reset_input_buffer(self) -> None:
        """Discard anything waiting in the OS receive buffer."""
        ser = self._require_open("reset input buffer")
        try:
            ser.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            self.close()
            raise TransportError(f"Error flushing serial port {self.port}: {exc}.") from exc

    # ---- Helpers ----

    def _require_open(self, operation: str) -> Any:
        ser = self._serial
        if ser is None or not ser.is_open:
            raise TransportError(
                f"Cannot {operation} on serial port {self.port}: port is not open."
            )
        return ser

    def _platform_hint(self) -> str:
        """Return a platform-specific troubleshooting hint."""
        if _IS_WINDOWS:
            return (
                "On Windows: verify the COM port number in Device Manager "
                "(Ports -> COM & LPT) and that no other application has the port open."
            )
        return (
            "On Linux: verify the device path exists and that your user is in "
            "the 'dialout' group."
        )

    # ---- Context manager ----

    def __enter__(self) -> SerialTransport:
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open() else "closed"
        return f"SerialTransport({self.port!r}, {self.baud_rate}, {state})"


class _OpenAttempt:
    """State shared between ``open()`` and its helper thread."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.done = threading.Event()
        self.handle: Optional[Any] = None
        self.error: Optional[BaseException] = None
        self.abandoned = False


def _close_quietly(ser: Any, port: str) -> None:
    try:
        ser.close()
    except (serial.SerialException, OSError) as exc:
        logger.warning("[SERIAL-CLOSE] Error closing port %s: %s", port, exc)
