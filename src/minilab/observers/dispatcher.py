# src/minilab/observers/dispatcher.py
from __future__ import annotations

import logging
import threading
from typing import List, Optional, Protocol

from .events import BaseEvent

log = logging.getLogger("minilab")


class Observer(Protocol):
    def notify(self, event: BaseEvent) -> None: ...


class EventBus:
    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers = observers or []
        # reentrant: a signal handler may cancel, and so emit, mid-emit
        self._lock = threading.RLock()

    def subscribe(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        # workers emit concurrently; observers see one event at a time
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception:
                    # observers must not break provisioning
                    log.debug("observer %r failed on %s", ob, type(event).__name__, exc_info=True)
