"""Periodic ``GET_STATUS`` requests on a monotonic timer."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from typeguard import typechecked

from . import STATUS_POLL_INITIAL_DELAY_S, STATUS_POLL_INTERVAL_S
from .controller import DeviceController
from .exceptions import ConfigError

logger = logging.getLogger("umh_link.poller")


@typechecked
class StatusPoller:
    """Asks the device for its status every ``interval_s`` while connected.

    The timer waits on a ``threading.Event``, so ``stop()`` takes effect
    immediately rather than after the current interval.  Ticks are skipped
    (not queued) while the controller has no active session.
    """

    def __init__(
        self,
        controller: DeviceController,
        interval_s: float = STATUS_POLL_INTERVAL_S,
        initial_delay_s: float = STATUS_POLL_INITIAL_DELAY_S,
    ) -> None:
        if interval_s <= 0:
            raise ConfigError(f"Invalid poll interval {interval_s!r}: must be positive.")
        if initial_delay_s < 0:
            raise ConfigError(f"Invalid initial delay {initial_delay_s!r}: must not be negative.")
        self.controller = controller
        self.interval_s = interval_s
        self.initial_delay_s = initial_delay_s
        self.requests_sent = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start polling.  No-op if already running."""
        if self.is_running:
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="umh-status-poller", daemon=True)
        self._thread.start()
        logger.info(
            "[POLLER] Started (interval=%.3fs, initial_delay=%.3fs)",
            self.interval_s, self.initial_delay_s,
        )

    def stop(self, timeout_s: float = 1.0) -> None:
        """Stop polling and wait for the timer thread.  Idempotent."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout_s)
            logger.info("[POLLER] Stopped after %d request(s)", self.requests_sent)

    def _run(self) -> None:
        stop = self._stop
        if stop.wait(self.initial_delay_s):
            return
        while True:
            if self.controller.is_connected:
                if self.controller.request_status():
                    self.requests_sent += 1
            else:
                logger.debug("[POLLER] No active session, skipping tick")
            if stop.wait(self.interval_s):
                return

    def __enter__(self) -> StatusPoller:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.stop()
