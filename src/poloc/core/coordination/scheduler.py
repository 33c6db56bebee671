"""
Timer-driven phase transitions.

Every timed transition is an explicit (challenge_id, target_phase, due_time)
entry in one priority queue. A single loop pops the entries that are due and
hands them to the transition handler; handlers are idempotent, so a stale or
duplicate entry is harmless. Time comes from an injectable Clock, which lets
tests drive the whole lifecycle with a VirtualClock instead of sleeping.
"""

import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from poloc.core.coordination.state import ChallengePhase
from poloc.core.protocol.constants import FINALIZE_RETRY_S

logger = logging.getLogger(__name__)

TransitionHandler = Callable[[str, ChallengePhase], None]


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        ...


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class VirtualClock(Clock):
    """Manually advanced clock for deterministic tests and simulations."""

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: float):
        with self._lock:
            if timestamp < self._now:
                raise ValueError("Cannot move a clock backwards")
            self._now = float(timestamp)


@dataclass(order=True)
class ScheduleEntry:
    due_time: float
    sequence: int
    challenge_id: str = field(compare=False)
    target: ChallengePhase = field(compare=False)
    attempts: int = field(default=0, compare=False)

    def to_dict(self) -> dict:
        return {
            "challenge_id": self.challenge_id,
            "target": self.target.value,
            "due_time": self.due_time,
            "attempts": self.attempts,
        }


class PhaseScheduler:
    """
    Priority queue of pending phase transitions plus the loop that runs them.

    A handler that raises for a finalization entry gets the entry requeued
    after retry_delay; failures of other transitions are logged and dropped
    since the next operation on the challenge re-evaluates its phase anyway.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        handler: Optional[TransitionHandler] = None,
        retry_delay: float = FINALIZE_RETRY_S,
        max_attempts: int = 10,
    ):
        self.clock = clock or SystemClock()
        self.handler = handler
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts

        self._queue: List[ScheduleEntry] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def set_handler(self, handler: TransitionHandler):
        self.handler = handler

    def schedule(self, challenge_id: str, target: ChallengePhase, due_time: float, attempts: int = 0) -> ScheduleEntry:
        entry = ScheduleEntry(due_time, next(self._counter), challenge_id, target, attempts)
        with self._lock:
            heapq.heappush(self._queue, entry)
        logger.debug(f"Scheduled {challenge_id[:8]} -> {target.value} at {due_time:.1f}")
        return entry

    def cancel(self, challenge_id: str) -> int:
        """Drop every pending entry of a challenge. Returns how many were removed."""
        with self._lock:
            before = len(self._queue)
            self._queue = [e for e in self._queue if e.challenge_id != challenge_id]
            heapq.heapify(self._queue)
            return before - len(self._queue)

    def pending(self, challenge_id: Optional[str] = None) -> List[ScheduleEntry]:
        with self._lock:
            entries = sorted(self._queue)
        if challenge_id is None:
            return entries
        return [e for e in entries if e.challenge_id == challenge_id]

    def next_due(self) -> Optional[float]:
        with self._lock:
            return self._queue[0].due_time if self._queue else None

    def run_due(self, now: Optional[float] = None) -> List[ScheduleEntry]:
        """Run every entry due at `now` (default: clock time), in due order."""
        if self.handler is None:
            raise RuntimeError("PhaseScheduler has no transition handler")
        now = self.clock.now() if now is None else now
        executed = []
        while True:
            with self._lock:
                if not self._queue or self._queue[0].due_time > now:
                    break
                entry = heapq.heappop(self._queue)
            self._run_entry(entry, now)
            executed.append(entry)
        return executed

    def _run_entry(self, entry: ScheduleEntry, now: float):
        try:
            self.handler(entry.challenge_id, entry.target)
        except Exception as e:
            attempts = entry.attempts + 1
            if entry.target == ChallengePhase.FINALIZED and attempts < self.max_attempts:
                logger.warning(
                    f"Transition {entry.challenge_id[:8]} -> {entry.target.value} failed "
                    f"(attempt {attempts}): {e}; retrying in {self.retry_delay:.0f}s"
                )
                self.schedule(entry.challenge_id, entry.target, now + self.retry_delay, attempts)
            else:
                logger.error(f"Transition {entry.challenge_id[:8]} -> {entry.target.value} failed: {e}")

    # ==================== BACKGROUND LOOP ====================

    def run_forever(self, poll_interval: float = 1.0):
        logger.info("Phase scheduler started")
        while not self._stop.is_set():
            self.run_due()
            self._stop.wait(poll_interval)
        logger.info("Phase scheduler stopped")

    def start(self, poll_interval: float = 1.0):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever, args=(poll_interval,), daemon=True, name="poloc-scheduler"
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
