# src/nodefleet/observers/dispatcher.py
from __future__ import annotations

import logging
import threading
from typing import List

from .events import BaseEvent

log = logging.getLogger("nodefleet")


class EventBus:
    """
    Fans events out to observers. Safe to call from per-host workers:
    one event is delivered to every observer before the next one starts.
    """

    def __init__(self, observers: List = None):
        self._observers = observers or []
        self._lock = threading.Lock()

    def emit(self, event: BaseEvent) -> None:
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception as exc:
                    # observers must not break provisioning
                    log.debug("observer %s failed on %s: %s", type(ob).__name__, type(event).__name__, exc)
