"""
Event fan-in / fan-out.

Adapters (through the registry) publish tagged events; every subscriber owns
an unbounded queue so publishing never blocks the producing thread. Events of
one session keep the order in which they were published.
"""

import queue
import threading
from typing import Any, Iterator, List, Optional

from shellmux.models import EventKind, SessionEvent

_CLOSED = object()


class Subscription:
    def __init__(self, mux: "EventMultiplexer", session_id: Optional[str] = None):
        self._mux = mux
        self.session_id = session_id
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self.closed = False

    def wants(self, event: SessionEvent) -> bool:
        return self.session_id is None or self.session_id == event.session_id

    def _deliver(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def get(self, timeout: Optional[float] = None) -> Optional[SessionEvent]:
        """Next event, or None on timeout or once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def drain(self) -> List[SessionEvent]:
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self.closed = True
                return events
            events.append(item)

    def __iter__(self) -> Iterator[SessionEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        self._mux.unsubscribe(self)


class EventMultiplexer:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []
        self._closed = False

    def subscribe(self, session_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, session_id)
        with self._lock:
            if self._closed:
                subscription._deliver(_CLOSED)
            else:
                self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
                subscription._deliver(_CLOSED)

    def publish(self, session_id: str, kind: EventKind, **payload: Any) -> SessionEvent:
        event = SessionEvent(session_id=session_id, kind=kind, payload=payload)
        with self._lock:
            for subscription in self._subscribers:
                if subscription.wants(event):
                    subscription._deliver(event)
        return event

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription._deliver(_CLOSED)
