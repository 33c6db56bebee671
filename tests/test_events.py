"""
Test at-least-once event delivery.
"""
from poloc.core.coordination import ALL_EVENTS, EventBus, EventType, VirtualClock


class FlakySubscriber:
    def __init__(self, failures=1):
        self.failures = failures
        self.received = []

    def __call__(self, event):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("consumer offline")
        self.received.append(event)


class TestEventBus:
    def test_publish_delivers_to_type_and_wildcard(self):
        bus = EventBus()
        typed, everything = [], []
        bus.subscribe(EventType.VOTE_SUBMITTED, typed.append)
        bus.subscribe(ALL_EVENTS, everything.append)

        bus.publish(EventType.VOTE_SUBMITTED, "c1", {"participant_id": "p1"})
        bus.publish(EventType.CHALLENGE_STARTED, "c1")

        assert [e.event_type for e in typed] == [EventType.VOTE_SUBMITTED]
        assert [e.event_type for e in everything] == [EventType.VOTE_SUBMITTED, EventType.CHALLENGE_STARTED]
        assert typed[0].payload == {"participant_id": "p1"}

    def test_timestamp_comes_from_clock(self):
        bus = EventBus(clock=VirtualClock(1234.0))
        event = bus.publish(EventType.CHALLENGE_STARTED, "c1")
        assert event.timestamp == 1234.0

    def test_failed_delivery_is_retried_with_same_event(self):
        bus = EventBus()
        subscriber = FlakySubscriber(failures=1)
        bus.subscribe(EventType.CHALLENGE_FINALIZED, subscriber)

        event = bus.publish(EventType.CHALLENGE_FINALIZED, "c1", {"passed": True})
        assert subscriber.received == []
        assert bus.pending_count == 1

        assert bus.redeliver() == 1
        assert bus.pending_count == 0
        assert subscriber.received[0].event_id == event.event_id

    def test_subscriber_failure_does_not_block_others(self):
        bus = EventBus()
        healthy = []
        bus.subscribe(ALL_EVENTS, FlakySubscriber(failures=5))
        bus.subscribe(ALL_EVENTS, healthy.append)
        bus.publish(EventType.PHASE_TRANSITION, "c1")
        assert len(healthy) == 1

    def test_unsubscribe_drops_pending_deliveries(self):
        bus = EventBus()
        subscriber = FlakySubscriber(failures=1)
        bus.subscribe(EventType.VOTE_SUBMITTED, subscriber)
        bus.publish(EventType.VOTE_SUBMITTED, "c1")

        bus.unsubscribe(EventType.VOTE_SUBMITTED, subscriber)
        assert bus.pending_count == 0
        bus.publish(EventType.VOTE_SUBMITTED, "c1")
        assert subscriber.received == []

    def test_history_filters(self):
        bus = EventBus(history_size=3)
        for i in range(4):
            bus.publish(EventType.VOTE_SUBMITTED, f"c{i % 2}")
        bus.publish(EventType.CHALLENGE_EXPIRED, "c0")

        assert len(bus.history()) == 3
        assert [e.event_type for e in bus.history("c0")] == [EventType.VOTE_SUBMITTED, EventType.CHALLENGE_EXPIRED]
        assert len(bus.history(event_type=EventType.CHALLENGE_EXPIRED)) == 1

    def test_permanently_failing_subscriber_is_given_up(self):
        bus = EventBus(max_attempts=3)
        bus.subscribe(EventType.VOTE_SUBMITTED, FlakySubscriber(failures=100))
        bus.publish(EventType.VOTE_SUBMITTED, "c1")

        assert bus.pending_count == 1
        assert bus.redeliver() == 0
        assert bus.pending_count == 1
        assert bus.redeliver() == 0
        assert bus.pending_count == 0
        assert bus.dropped_count == 1

        # Nothing is left to retry
        assert bus.redeliver() == 0
        assert bus.dropped_count == 1

    def test_redelivery_queue_is_bounded(self):
        bus = EventBus(max_pending=5)
        bus.subscribe(ALL_EVENTS, FlakySubscriber(failures=100))
        for i in range(8):
            bus.publish(EventType.PHASE_TRANSITION, f"c{i}")

        assert bus.pending_count == 5
        assert bus.dropped_count == 3
        for _ in range(4):
            bus.redeliver()
            assert bus.pending_count == 5
        assert bus.dropped_count == 3

    def test_full_queue_evicts_oldest_delivery(self):
        bus = EventBus(max_pending=2)
        subscriber = FlakySubscriber(failures=3)
        bus.subscribe(ALL_EVENTS, subscriber)
        published = [bus.publish(EventType.PHASE_TRANSITION, f"c{i}") for i in range(3)]

        assert bus.dropped_count == 1
        assert bus.redeliver() == 2
        assert [e.event_id for e in subscriber.received] == [e.event_id for e in published[1:]]
