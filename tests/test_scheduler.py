"""
Test the timer queue behind phase transitions.
"""
import pytest

from poloc.core.coordination import ChallengePhase, PhaseScheduler, VirtualClock


class Recorder:
    def __init__(self, fail_times=0):
        self.calls = []
        self.fail_times = fail_times

    def __call__(self, challenge_id, target):
        self.calls.append((challenge_id, target))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("ledger timeout")


class TestVirtualClock:
    def test_advance_and_set(self):
        clock = VirtualClock(100.0)
        assert clock.advance(5) == 105.0
        clock.set(200.0)
        assert clock.now() == 200.0

    def test_cannot_go_backwards(self):
        clock = VirtualClock(100.0)
        with pytest.raises(ValueError):
            clock.advance(-1)
        with pytest.raises(ValueError):
            clock.set(50.0)


class TestPhaseScheduler:
    def test_runs_due_entries_in_order(self):
        clock = VirtualClock(0.0)
        handler = Recorder()
        scheduler = PhaseScheduler(clock, handler)
        scheduler.schedule("c1", ChallengePhase.VOTING, 20.0)
        scheduler.schedule("c1", ChallengePhase.PINGING, 10.0)
        scheduler.schedule("c2", ChallengePhase.PINGING, 10.0)
        scheduler.schedule("c1", ChallengePhase.FINALIZED, 30.0)

        clock.set(20.0)
        executed = scheduler.run_due()

        # Ties keep insertion order
        assert handler.calls == [
            ("c1", ChallengePhase.PINGING),
            ("c2", ChallengePhase.PINGING),
            ("c1", ChallengePhase.VOTING),
        ]
        assert len(executed) == 3
        assert scheduler.next_due() == 30.0

    def test_nothing_due(self):
        scheduler = PhaseScheduler(VirtualClock(0.0), Recorder())
        scheduler.schedule("c1", ChallengePhase.PINGING, 10.0)
        assert scheduler.run_due() == []
        assert len(scheduler.pending()) == 1

    def test_failed_finalize_is_requeued(self):
        clock = VirtualClock(0.0)
        handler = Recorder(fail_times=1)
        scheduler = PhaseScheduler(clock, handler, retry_delay=30.0)
        scheduler.schedule("c1", ChallengePhase.FINALIZED, 0.0)

        scheduler.run_due()
        retry = scheduler.pending("c1")
        assert len(retry) == 1
        assert retry[0].due_time == 30.0
        assert retry[0].attempts == 1

        clock.advance(30.0)
        scheduler.run_due()
        assert len(handler.calls) == 2
        assert scheduler.pending() == []

    def test_retries_stop_at_max_attempts(self):
        clock = VirtualClock(0.0)
        scheduler = PhaseScheduler(clock, Recorder(fail_times=100), retry_delay=1.0, max_attempts=3)
        scheduler.schedule("c1", ChallengePhase.FINALIZED, 0.0)
        for _ in range(5):
            scheduler.run_due()
            clock.advance(1.0)
        assert scheduler.pending() == []

    def test_other_failures_are_dropped(self):
        scheduler = PhaseScheduler(VirtualClock(0.0), Recorder(fail_times=1))
        scheduler.schedule("c1", ChallengePhase.PINGING, 0.0)
        scheduler.run_due()
        assert scheduler.pending() == []

    def test_cancel(self):
        scheduler = PhaseScheduler(VirtualClock(0.0), Recorder())
        scheduler.schedule("c1", ChallengePhase.PINGING, 10.0)
        scheduler.schedule("c1", ChallengePhase.VOTING, 20.0)
        scheduler.schedule("c2", ChallengePhase.PINGING, 10.0)
        assert scheduler.cancel("c1") == 2
        assert [e.challenge_id for e in scheduler.pending()] == ["c2"]

    def test_requires_handler(self):
        scheduler = PhaseScheduler(VirtualClock(0.0))
        with pytest.raises(RuntimeError):
            scheduler.run_due()

    def test_entry_to_dict(self):
        entry = PhaseScheduler(VirtualClock(0.0)).schedule("c1", ChallengePhase.VOTING, 5.0)
        assert entry.to_dict() == {"challenge_id": "c1", "target": "voting", "due_time": 5.0, "attempts": 0}
