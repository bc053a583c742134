"""Minimal observer registry used for frame, status and lifecycle notifications."""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger("umh_link.events")


class EventSource(object):
    """A thread-safe list of handlers fired with the same arguments.

    Handlers are called on the firing thread.  A handler that raises is
    logged and skipped so one faulty observer cannot break the others (or
    the thread that fired the event).
    """

    def __init__(self, name: str = "event"):
        self.name = name
        self._handlers = []
        self._lock = threading.Lock()

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def __len__(self):
        return len(self._handlers)

    def add(self, handler):
        with self._lock:
            self._handlers.append(handler)
        return self

    def remove(self, handler):
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)
        return self

    def clear(self):
        with self._lock:
            self._handlers = []

    def handlers(self):
        with self._lock:
            return tuple(self._handlers)

    def fire(self, *args, **kwargs):
        for handler in self.handlers():
            try:
                handler(*args, **kwargs)
            except Exception as exc:
                logger.warning(
                    "[EVENTS] %s handler %r raised %s: %s "
                    "(handler errors are swallowed to protect the caller)",
                    self.name, handler, type(exc).__name__, exc,
                )
