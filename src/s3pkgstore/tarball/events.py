from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from s3pkgstore.errors import StorageError

logger = logging.getLogger(__name__)

OPEN = "open"
CONTENT_LENGTH = "content-length"
SUCCESS = "success"
ERROR = "error"
END = "end"

EventHandler = Callable[..., None]


class EventStream:
    """Lifecycle events shared by the upload and download streams.

    Every lifecycle event fires at most once and is replayed to handlers that
    subscribe after it fired. Once a terminal event fired, later terminal
    events are dropped. Handlers run on whichever thread emits the event.
    """

    LIFECYCLE_EVENTS: frozenset[str] = frozenset({OPEN, CONTENT_LENGTH, SUCCESS, ERROR, END})
    TERMINAL_EVENTS: frozenset[str] = frozenset({SUCCESS, END, ERROR})

    def __init__(self, *, cancel_event: threading.Event | None = None) -> None:
        self.cancel_event = cancel_event or threading.Event()
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._emitted: dict[str, tuple[Any, ...]] = {}
        self._registry_lock = threading.Lock()
        self._done = threading.Event()
        self._terminal_fired = False
        self.error: StorageError | None = None

    @property
    def aborted(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def on(self, event: str, handler: EventHandler) -> EventStream:
        with self._registry_lock:
            self._handlers[event].append(handler)
            replay = self._emitted.get(event)
        if replay is not None:
            self._call(event, handler, replay)
        return self

    def emitted(self, event: str) -> bool:
        return event in self._emitted

    def emit(self, event: str, *args: Any) -> bool:
        with self._registry_lock:
            if event in self.LIFECYCLE_EVENTS:
                if event in self._emitted:
                    return False
                if event in self.TERMINAL_EVENTS:
                    if self._terminal_fired:
                        return False
                    self._terminal_fired = True
                self._emitted[event] = args
            if event == ERROR and args and isinstance(args[0], StorageError):
                self.error = args[0]
            handlers = list(self._handlers.get(event, ()))

        for handler in handlers:
            self._call(event, handler, args)

        if event in self.TERMINAL_EVENTS:
            self._done.set()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until a terminal event fired; False on timeout."""
        return self._done.wait(timeout)

    @staticmethod
    def _call(event: str, handler: EventHandler, args: tuple[Any, ...]) -> None:
        try:
            handler(*args)
        except Exception:
            logger.exception("stream handler failed event=%s", event)
