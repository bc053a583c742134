"""Connection session: one open transport, a reader thread and ordered frame delivery.

A session moves through ``NEW -> OPENING -> OPEN -> CLOSED`` exactly once.
``CLOSED`` is terminal; reconnecting means constructing a new session.

Threads per open session:

1. **Reader** - loops ``codec.decode()`` over the transport with a short
   per-iteration timeout.  Silence (``None``) loops straight back; malformed
   frames are counted and dropped; a fatal I/O error closes the session.
2. **Dispatcher** - drains a bounded queue and calls subscribers in the order
   frames were decoded.  The reader never blocks on the queue: when it is
   full the newest frame is dropped and counted, so a stalled subscriber
   cannot starve ingestion.

Writes go through ``send_frame()`` under a lock, so two threads sending at
once produce two intact frames back to back on the wire.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from typing import List, Optional

from typeguard import typechecked

from . import (
    SERIAL_BAUD_RATE,
    SERIAL_OPEN_TIMEOUT_S,
    SERIAL_WRITE_TIMEOUT_S,
    SESSION_QUEUE_SIZE,
    SESSION_READ_TIMEOUT_S,
)
from .codec import decode, encode
from .exceptions import (
    DeviceConnectionError,
    ProtocolError,
    SessionClosedError,
    TransportError,
    TransportTimeoutError,
)
from .protocol import Frame, frame_type_name
from .transport import SerialFactory, SerialTransport
from .types import ClosedCallback, FrameCallback

logger = logging.getLogger("umh_link.session")

_CLOSED = object()  # dispatcher sentinel


class SessionState(enum.Enum):
    NEW = "new"
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


class Subscription:
    """Handle returned by ``ConnectionSession.subscribe()``."""

    def __init__(
        self,
        session: ConnectionSession,
        on_frame: FrameCallback,
        on_closed: Optional[ClosedCallback],
    ) -> None:
        self._session = session
        self.on_frame = on_frame
        self.on_closed = on_closed
        self.active = True

    def cancel(self) -> None:
        """Stop receiving frames.  Idempotent."""
        if self.active:
            self.active = False
            self._session._unsubscribe(self)

    def _deliver_frame(self, frame: Frame) -> None:
        if not self.active:
            return
        try:
            self.on_frame(frame)
        except Exception as exc:
            logger.warning(
                "[SESSION-DISPATCH] on_frame callback raised %s: %s "
                "(callback errors are swallowed to protect the dispatcher)",
                type(exc).__name__, exc,
            )

    def _deliver_closed(self, reason: str) -> None:
        if not self.active or self.on_closed is None:
            return
        try:
            self.on_closed(reason)
        except Exception as exc:
            logger.warning(
                "[SESSION-DISPATCH] on_closed callback raised %s: %s",
                type(exc).__name__, exc,
            )


@typechecked
class ConnectionSession:
    """Owns one ``SerialTransport`` and turns its byte stream into frames.

    Example::

        session = ConnectionSession("/dev/ttyUSB0")
        session.subscribe(lambda frame: print(frame))
        session.open(context="manual connect")
        session.send_frame(CommandType.GET_STATUS)
        ...
        session.dispose()
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        read_timeout_s: float = SESSION_READ_TIMEOUT_S,
        queue_size: int = SESSION_QUEUE_SIZE,
        serial_factory: Optional[SerialFactory] = None,
    ) -> None:
        """Initialize the session.  Does not open the port.

        Args:
            port: Port identifier passed to the transport.
            baud_rate: One of the device's supported baud rates.
            read_timeout_s: Per-read timeout of the decode loop.  Also bounds
                how long ``dispose()`` waits for the reader to notice.
            queue_size: Frames buffered between reader and subscribers.
            serial_factory: Forwarded to ``SerialTransport``.

        Raises:
            ConfigError: If the baud rate is invalid.
        """
        self.port = port
        self.read_timeout_s = read_timeout_s
        self._transport = SerialTransport(port, baud_rate, serial_factory=serial_factory)
        self._state = SessionState.NEW
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = threading.Event()
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, queue_size))
        self._subscriptions: List[Subscription] = []
        self._subs_lock = threading.Lock()
        # Set under _subs_lock once the final subscriber snapshot has been taken.
        self._closed_notified = False
        self._reader: Optional[threading.Thread] = None
        self._dispatcher: Optional[threading.Thread] = None
        self.close_reason: Optional[str] = None
        self.frames_received = 0
        self.protocol_errors = 0
        self.frames_dropped = 0

    # ---- State ----

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def baud_rate(self) -> int:
        return self._transport.baud_rate

    def is_open(self) -> bool:
        return self._state is SessionState.OPEN

    def wait_closed(self, timeout_s: Optional[float] = None) -> bool:
        """Block until the session is closed and ``on_closed`` callbacks ran."""
        return self._closed.wait(timeout_s)

    # ---- Subscribers ----

    def subscribe(
        self,
        on_frame: FrameCallback,
        on_closed: Optional[ClosedCallback] = None,
    ) -> Subscription:
        """Register callbacks invoked on the dispatcher thread.

        Args:
            on_frame: Called with each decoded ``Frame``, in arrival order.
            on_closed: Called once with the close reason when the session
                reaches ``CLOSED``.  Called immediately if it already has.
        """
        sub = Subscription(self, on_frame, on_closed)
        with self._subs_lock:
            self._subscriptions.append(sub)
            deliver_now = self._closed_notified
        if deliver_now:
            sub._deliver_closed(self.close_reason or "closed")
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._subs_lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _snapshot(self) -> List[Subscription]:
        with self._subs_lock:
            return list(self._subscriptions)

    def _notify_closed(self, reason: str) -> None:
        """Run every ``on_closed`` exactly once, then release ``wait_closed()``."""
        with self._subs_lock:
            self._closed_notified = True
            subs = list(self._subscriptions)
        for sub in subs:
            sub._deliver_closed(reason)
        self._closed.set()

    # ---- Lifecycle ----

    def open(
        self,
        open_timeout_s: float = SERIAL_OPEN_TIMEOUT_S,
        context: str = "",
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Open the transport and start the reader and dispatcher threads.

        Raises:
            SessionClosedError: If the session was already opened or disposed.
            DeviceConnectionError: If the port could not be opened (the
                session is then ``CLOSED``).
            ConnectionTimeoutError: If the open timed out or was cancelled.
        """
        context = context or f"session {self.port}"
        with self._state_lock:
            if self._state is not SessionState.NEW:
                raise SessionClosedError(
                    f"[{context}] Session on {self.port} is {self._state.value}; "
                    f"sessions are not reusable, construct a new one."
                )
            self._state = SessionState.OPENING

        try:
            self._transport.open(context, timeout_s=open_timeout_s, cancel_event=cancel_event)
        except DeviceConnectionError as exc:
            self._shutdown(f"open failed: {exc}")
            raise

        with self._state_lock:
            disposed_while_opening = self._state is not SessionState.OPENING
            if not disposed_while_opening:
                self._state = SessionState.OPEN
        if disposed_while_opening:
            self._transport.close()
            raise SessionClosedError(
                f"[{context}] Session on {self.port} was disposed while opening."
            )

        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name=f"umh-dispatch-{self.port}", daemon=True,
        )
        self._reader = threading.Thread(
            target=self._read_loop, name=f"umh-reader-{self.port}", daemon=True,
        )
        self._dispatcher.start()
        self._reader.start()
        logger.info("[SESSION-OPEN] [%s] Session open on %s", context, self.port)

    def dispose(self) -> None:
        """Close the session.  Idempotent."""
        self._shutdown("disposed")

    close = dispose

    def _shutdown(self, reason: str) -> None:
        with self._state_lock:
            if self._state is SessionState.CLOSED:
                return
            was_open = self._state is SessionState.OPEN
            self._state = SessionState.CLOSED
            self.close_reason = reason
        self._stop.set()

        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=max(1.0, 10 * self.read_timeout_s))
            if reader.is_alive():
                logger.warning("[SESSION-CLOSE] Reader on %s did not stop in time", self.port)

        self._transport.close()

        if self._dispatcher is not None:
            self._post(_CLOSED, force=True)
        else:
            self._notify_closed(reason)

        log = logger.info if was_open else logger.debug
        log("[SESSION-CLOSE] Session on %s closed (%s)", self.port, reason)

    # ---- Writing ----

    def send_frame(
        self,
        frame_type: int,
        payload: bytes = b"",
        timeout_s: float = SERIAL_WRITE_TIMEOUT_S,
    ) -> int:
        """Encode and write one frame.  Safe to call from any thread.

        Returns:
            Number of bytes written.

        Raises:
            InvalidPayloadError: If the frame cannot be encoded.
            SessionClosedError: If the session is not open.
            TransportTimeoutError: If the write lock or the write itself timed
                out.  The session stays open.
            TransportError: On an I/O failure.  The session is closed.
        """
        data = encode(frame_type, payload)
        if not self.is_open():
            raise SessionClosedError(
                f"Cannot send {frame_type_name(frame_type)} on {self.port}: "
                f"session is {self._state.value}."
            )
        if not self._write_lock.acquire(timeout=timeout_s):
            raise TransportTimeoutError(
                f"Timed out after {timeout_s:.3f}s waiting for another writer on {self.port}."
            )
        try:
            if not self.is_open():
                raise SessionClosedError(
                    f"Cannot send {frame_type_name(frame_type)} on {self.port}: "
                    f"session closed while waiting to write."
                )
            n = self._transport.write(data, timeout_s)
        except (TransportTimeoutError, SessionClosedError):
            raise
        except TransportError as exc:
            self._shutdown(f"write failed: {exc}")
            raise
        finally:
            self._write_lock.release()

        logger.debug(
            "[SESSION-WRITE] Sent %s (%d bytes) on %s",
            frame_type_name(frame_type), n, self.port,
        )
        return n

    # ---- Threads ----

    def _read_loop(self) -> None:
        reason = None
        while not self._stop.is_set():
            try:
                frame = decode(self._transport.read_exact, self.read_timeout_s)
            except ProtocolError as exc:
                self.protocol_errors += 1
                logger.warning(
                    "[SESSION-READ] Dropped malformed frame on %s (%s): %s",
                    self.port, exc.reason.value, exc,
                )
                continue
            except TransportError as exc:
                if not self._stop.is_set():
                    reason = f"read failed: {exc}"
                    logger.error("[SESSION-READ] Fatal I/O error on %s: %s", self.port, exc)
                break

            if frame is None:
                continue
            self.frames_received += 1
            self._post(frame)

        if reason is not None:
            self._shutdown(reason)

    def _post(self, item: object, force: bool = False) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                if not force:
                    self.frames_dropped += 1
                    logger.warning(
                        "[SESSION-DISPATCH] Queue full on %s, dropped %s "
                        "(subscribers are not keeping up)",
                        self.port, item,
                    )
                    return
            # Make room for the close sentinel by discarding the oldest frame.
            try:
                self._queue.get_nowait()
                self.frames_dropped += 1
            except queue.Empty:
                pass

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                break
            for sub in self._snapshot():
                sub._deliver_frame(item)
        self._notify_closed(self.close_reason or "closed")

    # ---- Context manager ----

    def __enter__(self) -> ConnectionSession:
        if self._state is SessionState.NEW:
            self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.dispose()

    def __repr__(self) -> str:
        return f"ConnectionSession({self.port!r}, {self._state.value})"
