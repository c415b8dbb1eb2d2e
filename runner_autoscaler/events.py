"""
Event stream for operators and external collaborators.
"""

import threading
import logging
from collections import deque, Counter
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Any

from .models import Event, EventType

logger = logging.getLogger(__name__)

EventListener = Callable[[Event], None]


class EventBus:
    """Fan-out of events to subscribers with a bounded history"""

    def __init__(self, history_size: int = 1000):
        self._lock = threading.RLock()
        self._history: deque = deque(maxlen=history_size)
        self._subscribers: List[tuple] = []
        self._counts: Counter = Counter()

    def subscribe(self, listener: EventListener,
                  event_types: Optional[Set[EventType]] = None) -> None:
        """Register a listener, optionally for a subset of event types"""
        with self._lock:
            self._subscribers.append((listener, frozenset(event_types) if event_types else None))

    def unsubscribe(self, listener: EventListener) -> bool:
        with self._lock:
            before = len(self._subscribers)
            self._subscribers = [(l, t) for l, t in self._subscribers if l is not listener]
            return len(self._subscribers) != before

    def emit(self, event_type: EventType, repository: str, timestamp: datetime,
             payload: Optional[Dict[str, Any]] = None) -> Event:
        event = Event(type=event_type, repository=repository,
                      timestamp=timestamp, payload=payload or {})
        self.publish(event)
        return event

    def publish(self, event: Event) -> None:
        with self._lock:
            self._history.append(event)
            self._counts[event.type] += 1
            subscribers = list(self._subscribers)

        logger.debug(f"Event {event.type.value} for {event.repository}: {event.payload}")

        for listener, types in subscribers:
            if types is not None and event.type not in types:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in event listener: {e}")

    def get_history(self, repository: Optional[str] = None,
                    event_type: Optional[EventType] = None) -> List[Event]:
        with self._lock:
            events = list(self._history)

        if repository is not None:
            events = [e for e in events if e.repository == repository]
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events

    def get_counts(self) -> Dict[str, int]:
        """Total events published per type, including those evicted from history"""
        with self._lock:
            return {event_type.value: count for event_type, count in self._counts.items()}
