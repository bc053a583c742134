"""Device discovery: race a ping probe on every candidate port, keep the first echo.

Each candidate gets its own trial ``ConnectionSession`` on its own thread:

1. **Open** with a short timeout.  Most ports are not the device, so an open
   failure simply eliminates the candidate.
2. **Ping** with one random payload byte.
3. **Wait** up to ``ping_window_s`` for a ``PING_ACK`` echoing that byte.

The first probe to see its echo claims the win; every other probe notices
the shared cancellation event within one poll interval (including while its
open is still pending), disposes its session and returns.  ``scan()`` joins
all probes before returning, so no trial handle outlives the call.

Finding nothing is a normal outcome, not an error.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import random
import threading
import time
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from typeguard import typechecked

from . import (
    SCAN_EXCLUDE_SUBSTRINGS,
    SCAN_OPEN_TIMEOUT_S,
    SCAN_PING_WINDOW_S,
    SCAN_POLL_INTERVAL_S,
    SERIAL_BAUD_RATE,
    SESSION_READ_TIMEOUT_S,
)
from .exceptions import ConfigError, DeviceConnectionError, TransportError
from .protocol import CommandType, Frame, ResponseType
from .session import ConnectionSession
from .transport import PortInfo, SerialFactory, list_ports, validate_baud_rate
from .types import ProbeCallback

logger = logging.getLogger("umh_link.scanner")


class ProbeOutcome(enum.Enum):
    ACCEPTED = "accepted"
    OPEN_FAILED = "open failed"
    SEND_FAILED = "send failed"
    NO_RESPONSE = "no response"
    WRONG_ECHO = "wrong echo"
    CANCELLED = "cancelled"


@dataclasses.dataclass(frozen=True)
class ProbeResult:
    """Outcome of probing one candidate port."""
    port: str
    outcome: ProbeOutcome
    detail: str = ""
    elapsed_seconds: float = 0.0


@dataclasses.dataclass(frozen=True)
class ScanResult:
    """Outcome of a full scan.

    Attributes:
        port: The winning port, or ``None`` if no device answered.
        session: The winner's open session, now owned by the caller.
        probes: One ``ProbeResult`` per candidate, in completion order.
        elapsed_seconds: Wall-clock duration of the scan.
    """
    port: Optional[str]
    session: Optional[ConnectionSession]
    probes: Tuple[ProbeResult, ...]
    elapsed_seconds: float

    @property
    def found(self) -> bool:
        return self.session is not None


def candidate_ports(
    ports: Optional[Iterable[str]] = None,
    exclude: Sequence[str] = SCAN_EXCLUDE_SUBSTRINGS,
) -> List[str]:
    """Return the port identifiers worth probing.

    Args:
        ports: Explicit identifiers.  ``None`` enumerates the OS serial ports.
        exclude: Case-insensitive substrings; a port whose identifier (or OS
            description) contains any of them is skipped.  Bluetooth serial
            ports are excluded by default since opening them can stall for
            seconds.
    """
    if ports is None:
        infos = list_ports()
    else:
        infos = [PortInfo(device=p, description="", hwid="") for p in ports]

    needles = [s.lower() for s in exclude if s]
    selected: List[str] = []
    for info in infos:
        haystack = f"{info.device} {info.description}".lower()
        if any(n in haystack for n in needles):
            logger.debug("[SCAN] Excluding %s (%s)", info.device, info.description)
            continue
        if info.device not in selected:
            selected.append(info.device)
    return selected


class _Race:
    """First-match-wins arbitration shared by all probes of one scan."""

    def __init__(self) -> None:
        self.cancel = threading.Event()
        self._lock = threading.Lock()
        self.winner: Optional[ConnectionSession] = None

    def claim(self, session: ConnectionSession) -> bool:
        with self._lock:
            if self.winner is not None:
                return False
            self.winner = session
            self.cancel.set()
            return True


@typechecked
class PortScanner:
    """Finds the one serial port the device is attached to.

    Example::

        scanner = PortScanner(baud_rate=115200)
        result = scanner.scan(context="startup discovery")
        if result.found:
            controller.adopt(result.session)
    """

    def __init__(
        self,
        baud_rate: int = SERIAL_BAUD_RATE,
        open_timeout_s: float = SCAN_OPEN_TIMEOUT_S,
        ping_window_s: float = SCAN_PING_WINDOW_S,
        read_timeout_s: float = SESSION_READ_TIMEOUT_S,
        exclude: Sequence[str] = SCAN_EXCLUDE_SUBSTRINGS,
        serial_factory: Optional[SerialFactory] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize the scanner.

        Args:
            baud_rate: Baud rate every trial session opens with.
            open_timeout_s: Per-candidate open timeout.
            ping_window_s: How long each candidate gets to echo the ping.
            read_timeout_s: Decode-loop read timeout of trial sessions.
            exclude: Substrings of port identifiers never probed.
            serial_factory: Forwarded to every trial session's transport.
            rng: Source of ping payload bytes.

        Raises:
            ConfigError: If the baud rate or a timeout is invalid.
        """
        self.baud_rate = validate_baud_rate(baud_rate)
        if open_timeout_s <= 0 or ping_window_s <= 0:
            raise ConfigError(
                f"Scan timeouts must be positive "
                f"(open_timeout_s={open_timeout_s!r}, ping_window_s={ping_window_s!r})."
            )
        self.open_timeout_s = open_timeout_s
        self.ping_window_s = ping_window_s
        self.read_timeout_s = read_timeout_s
        self.exclude = tuple(exclude)
        self._serial_factory = serial_factory
        self._rng = rng or random.Random()

    def scan(
        self,
        candidates: Optional[Iterable[str]] = None,
        context: str = "port scan",
        on_probe_done: Optional[ProbeCallback] = None,
    ) -> ScanResult:
        """Probe every candidate concurrently and return the first responder.

        Args:
            candidates: Port identifiers to try.  ``None`` enumerates the OS
                serial ports.  The exclusion list applies either way.
            context: Description of the purpose, embedded into log messages.
            on_probe_done: Called (on the probe's thread) with each
                ``ProbeResult`` as soon as that probe concludes.

        Returns:
            A ``ScanResult``; ``result.session`` is open and owned by the
            caller when ``result.found``.
        """
        start = time.monotonic()
        ports = candidate_ports(candidates, self.exclude)
        if not ports:
            logger.warning("[SCAN] [%s] No candidate serial ports to probe", context)
            return ScanResult(port=None, session=None, probes=(), elapsed_seconds=0.0)

        logger.info(
            "[SCAN] [%s] Probing %d port(s) at %d baud: %s",
            context, len(ports), self.baud_rate, ", ".join(ports),
        )

        race = _Race()
        results: List[ProbeResult] = []
        results_lock = threading.Lock()

        def run(port: str) -> None:
            try:
                result = self._probe(port, race, context)
            except Exception as exc:
                logger.error(
                    "[SCAN] [%s] Probe of %s failed unexpectedly: %s: %s",
                    context, port, type(exc).__name__, exc,
                )
                result = ProbeResult(port, ProbeOutcome.OPEN_FAILED, f"{type(exc).__name__}: {exc}")
            with results_lock:
                results.append(result)
            if on_probe_done is not None:
                try:
                    on_probe_done(result)
                except Exception as cb_exc:
                    logger.warning(
                        "[SCAN] on_probe_done callback raised %s: %s",
                        type(cb_exc).__name__, cb_exc,
                    )

        threads = [
            threading.Thread(target=run, args=(port,), name=f"umh-probe-{port}", daemon=True)
            for port in ports
        ]
        for t in threads:
            t.start()

        # Worst case for one probe: open + ping write + echo window.
        deadline = time.monotonic() + self.open_timeout_s + 2 * self.ping_window_s + 1.0
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))
            if t.is_alive():
                logger.warning("[SCAN] [%s] Probe thread %s did not finish in time", context, t.name)

        elapsed = time.monotonic() - start
        winner = race.winner
        with results_lock:
            probes = tuple(results)

        if winner is None:
            logger.info(
                "[SCAN] [%s] No device found on %d port(s) in %.3fs",
                context, len(ports), elapsed,
            )
            return ScanResult(port=None, session=None, probes=probes, elapsed_seconds=elapsed)

        logger.info("[SCAN] [%s] Device found on %s in %.3fs", context, winner.port, elapsed)
        return ScanResult(port=winner.port, session=winner, probes=probes, elapsed_seconds=elapsed)

    def _probe(self, port: str, race: _Race, context: str) -> ProbeResult:
        start = time.monotonic()
        probe_ctx = f"{context}/{port}"

        def done(outcome: ProbeOutcome, detail: str = "") -> ProbeResult:
            logger.debug("[SCAN] [%s] %s %s", probe_ctx, outcome.value, detail)
            return ProbeResult(port, outcome, detail, time.monotonic() - start)

        if race.cancel.is_set():
            return done(ProbeOutcome.CANCELLED)

        session = ConnectionSession(
            port,
            self.baud_rate,
            read_timeout_s=self.read_timeout_s,
            serial_factory=self._serial_factory,
        )
        try:
            session.open(self.open_timeout_s, context=probe_ctx, cancel_event=race.cancel)
        except DeviceConnectionError as exc:
            if race.cancel.is_set():
                return done(ProbeOutcome.CANCELLED)
            return done(ProbeOutcome.OPEN_FAILED, str(exc))

        try:
            return self._ping(session, race, done)
        except Exception:
            if race.winner is not session:
                session.dispose()
            raise

    def _ping(self, session: ConnectionSession, race: _Race, done: Callable) -> ProbeResult:
        value = self._rng.randrange(256)
        echoed = threading.Event()
        wrong_echoes: List[Frame] = []

        def on_frame(frame: Frame) -> None:
            if frame.is_ping_ack_for(value):
                echoed.set()
            elif frame.type == ResponseType.PING_ACK:
                wrong_echoes.append(frame)

        subscription = session.subscribe(on_frame)
        try:
            session.send_frame(CommandType.PING, bytes((value,)), timeout_s=self.ping_window_s)
        except TransportError as exc:
            session.dispose()
            return done(ProbeOutcome.SEND_FAILED, str(exc))

        deadline = time.monotonic() + self.ping_window_s
        while not echoed.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0 or race.cancel.is_set():
                break
            echoed.wait(min(SCAN_POLL_INTERVAL_S, remaining))

        if echoed.is_set() and race.claim(session):
            subscription.cancel()
            return done(ProbeOutcome.ACCEPTED, f"echoed 0x{value:02X}")

        session.dispose()
        if race.cancel.is_set():
            return done(ProbeOutcome.CANCELLED)
        if wrong_echoes:
            return done(
                ProbeOutcome.WRONG_ECHO,
                f"sent 0x{value:02X}, got {wrong_echoes[0]}",
            )
        return done(ProbeOutcome.NO_RESPONSE)
