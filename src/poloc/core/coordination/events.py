"""
Event publication.

Delivery is at-least-once: a subscriber that raises keeps the event in a
redelivery queue until a later redeliver() call succeeds, so consumers must
be idempotent (event_id is stable across redeliveries). The coordinator
never depends on a subscriber being present.

The queue is bounded twice over: a delivery is given up after max_attempts
failures, and when more than max_pending deliveries are queued the oldest is
dropped. Both are logged and counted in dropped_count.
"""

import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from poloc.core.protocol.constants import EVENT_HISTORY_SIZE, EVENT_MAX_ATTEMPTS, EVENT_MAX_PENDING
from poloc.schemas import ChallengeEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[ChallengeEvent], None]

ALL_EVENTS = "*"


class EventType:
    CHALLENGE_STARTED = "challengeStarted"
    CHALLENGER_REGISTERED = "challengerRegistered"
    PING_RESULTS_RECEIVED = "pingResultsReceived"
    VOTE_SUBMITTED = "voteSubmitted"
    PHASE_TRANSITION = "phaseTransition"
    CHALLENGE_FINALIZED = "challengeFinalized"
    REWARDS_DISTRIBUTED = "rewardsDistributed"
    PARTICIPANT_SLASHED = "participantSlashed"
    CHALLENGE_EXPIRED = "challengeExpired"


class PendingDelivery:
    __slots__ = ("callback", "event", "attempts")

    def __init__(self, callback: Subscriber, event: ChallengeEvent, attempts: int):
        self.callback = callback
        self.event = event
        self.attempts = attempts


class EventBus:
    def __init__(
        self,
        clock=None,
        history_size: int = EVENT_HISTORY_SIZE,
        max_pending: int = EVENT_MAX_PENDING,
        max_attempts: int = EVENT_MAX_ATTEMPTS,
    ):
        self.clock = clock
        self.max_pending = max_pending
        self.max_attempts = max_attempts
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._pending: Deque[PendingDelivery] = deque()
        self._history: Deque[ChallengeEvent] = deque(maxlen=history_size)
        self._dropped = 0
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, callback: Subscriber):
        """Register a callback for one event type, or ALL_EVENTS."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: str, callback: Subscriber):
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)
            self._pending = deque(p for p in self._pending if p.callback is not callback)

    def publish(self, event_type: str, challenge_id: str, payload: Optional[dict] = None) -> ChallengeEvent:
        kwargs = {}
        if self.clock is not None:
            kwargs["timestamp"] = self.clock.now()
        event = ChallengeEvent(event_type=event_type, challenge_id=challenge_id, payload=payload or {}, **kwargs)

        with self._lock:
            self._history.append(event)
            targets = list(self._subscribers.get(event_type, [])) + list(self._subscribers.get(ALL_EVENTS, []))

        for callback in targets:
            self._deliver(callback, event)
        return event

    def _deliver(self, callback: Subscriber, event: ChallengeEvent, attempts: int = 0) -> bool:
        try:
            callback(event)
            return True
        except Exception as e:
            attempts += 1
            logger.error(f"Subscriber failed on {event.event_type} ({event.event_id[:8]}, attempt {attempts}): {e}")
            if attempts >= self.max_attempts:
                self._drop(event, f"gave up after {attempts} attempts")
                return False
            with self._lock:
                self._pending.append(PendingDelivery(callback, event, attempts))
                overflow = len(self._pending) - self.max_pending
                evicted = [self._pending.popleft() for _ in range(max(overflow, 0))]
            for pending in evicted:
                self._drop(pending.event, "redelivery queue full")
            return False

    def _drop(self, event: ChallengeEvent, reason: str):
        with self._lock:
            self._dropped += 1
        logger.warning(f"Dropped {event.event_type} ({event.event_id[:8]}) for {event.challenge_id[:8]}: {reason}")

    def redeliver(self) -> int:
        """Retry every queued delivery once. Returns how many succeeded."""
        with self._lock:
            batch = list(self._pending)
            self._pending.clear()
        return sum(1 for p in batch if self._deliver(p.callback, p.event, p.attempts))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def history(self, challenge_id: Optional[str] = None, event_type: Optional[str] = None) -> List[ChallengeEvent]:
        with self._lock:
            events = list(self._history)
        return [
            e for e in events
            if (challenge_id is None or e.challenge_id == challenge_id)
            and (event_type is None or e.event_type == event_type)
        ]
