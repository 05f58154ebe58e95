"""Lifecycle events and a synchronous publish/subscribe bus."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketStatusChanged:
    ticket_id: str
    status: str


@dataclass(frozen=True)
class JobProgress:
    ticket_id: str
    phase: str
    percent: int


@dataclass(frozen=True)
class LogLine:
    ticket_id: str
    line: str
    timestamp: str


@dataclass(frozen=True)
class JobCompleted:
    ticket_id: str


@dataclass(frozen=True)
class JobFailed:
    ticket_id: str
    error: str


Event = TicketStatusChanged | JobProgress | LogLine | JobCompleted | JobFailed
Listener = Callable[[Event], None]


class EventBus:
    """Delivers each event to every subscriber, in subscription order.

    ``publish`` runs listeners on the caller's thread before returning. A
    listener that raises is logged and does not stop delivery to the rest.
    """

    def __init__(self):
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, fn: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(fn)

        def unsubscribe():
            with self._lock:
                if fn in self._listeners:
                    self._listeners.remove(fn)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(event)
            except Exception:
                logger.exception("Event listener failed on %s", type(event).__name__)

