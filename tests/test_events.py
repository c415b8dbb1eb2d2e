"""
Tests for the event bus.
"""

from datetime import datetime, timezone

from runner_autoscaler.events import EventBus
from runner_autoscaler.models import EventType

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestEventBus:
    """Test event fan-out and history"""

    def setup_method(self):
        """Setup test fixtures"""
        self.bus = EventBus(history_size=3)

    def test_subscribers_receive_events(self):
        """Test emitted events reach all subscribers"""
        received = []
        self.bus.subscribe(received.append)

        event = self.bus.emit(EventType.SCALING_UP, "org/app", NOW, {"count": 2})

        assert received == [event]
        assert event.to_dict()["type"] == "scaling:up"
        assert event.payload == {"count": 2}

    def test_type_filter(self):
        """Test subscribers can filter by type"""
        received = []
        self.bus.subscribe(received.append, {EventType.RUNNER_FAILED})

        self.bus.emit(EventType.RUNNER_CREATED, "org/app", NOW)
        self.bus.emit(EventType.RUNNER_FAILED, "org/app", NOW)

        assert [e.type for e in received] == [EventType.RUNNER_FAILED]

    def test_unsubscribe(self):
        """Test removed listeners stop receiving events"""
        received = []

        def listener(event):
            received.append(event)

        self.bus.subscribe(listener)

        assert self.bus.unsubscribe(listener) is True
        assert self.bus.unsubscribe(listener) is False

        self.bus.emit(EventType.SCALING_UP, "org/app", NOW)
        assert received == []

    def test_listener_errors_are_contained(self):
        """Test one failing listener does not block others"""
        received = []

        def failing(event):
            raise RuntimeError("listener failed")

        self.bus.subscribe(failing)
        self.bus.subscribe(received.append)

        self.bus.emit(EventType.RUNNER_REMOVED, "org/app", NOW)

        assert len(received) == 1

    def test_history_bounded_counts_not(self):
        """Test history evicts while counts keep totals"""
        for _ in range(5):
            self.bus.emit(EventType.SCALING_DOWN, "org/app", NOW)
        self.bus.emit(EventType.SCALING_UP, "org/other", NOW)

        assert len(self.bus.get_history()) == 3
        assert len(self.bus.get_history(repository="org/other")) == 1
        assert len(self.bus.get_history(event_type=EventType.SCALING_DOWN)) == 2
        assert self.bus.get_counts() == {"scaling:down": 5, "scaling:up": 1}
