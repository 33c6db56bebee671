"""
Challenge Manager - creates challenges and routes operations to them.

One ChallengeCoordinator exists per live challenge. The manager:
- validates and initializes new challenges (ledger first, then local state)
- schedules each challenge's timed transitions on the PhaseScheduler
- acts as the scheduler's transition handler
- rebuilds coordinators from the repository after a restart (recover)
"""

import uuid
import logging
import threading
from typing import Dict, List, Optional

from poloc.collaborators.ledger import LedgerClient
from poloc.core.coordination.coordinator import ChallengeCoordinator, coerce_location
from poloc.core.coordination.events import EventBus, EventType
from poloc.core.coordination.measurement import ProbeSession
from poloc.core.coordination.repository import ChallengeRepository, InMemoryChallengeRepository
from poloc.core.coordination.scheduler import Clock, PhaseScheduler, SystemClock
from poloc.core.coordination.state import ChallengePhase, ChallengeState
from poloc.core.errors import ChallengeNotFound, CollaboratorError, ErrorCode, ValidationError
from poloc.core.filtering import FilterPipeline
from poloc.core.mapping import DelayMapper
from poloc.core.protocol.config import VerifierConfig
from poloc.core.protocol.constants import DEFAULT_REWARD_POOL, MAX_CHALLENGE_DURATION_S

logger = logging.getLogger(__name__)

TIMED_PHASES = (
    ChallengePhase.PINGING,
    ChallengePhase.VOTING,
    ChallengePhase.FINALIZED,
    ChallengePhase.EXPIRED,
)


class ChallengeManager:
    def __init__(
        self,
        ledger: LedgerClient,
        repository: Optional[ChallengeRepository] = None,
        events: Optional[EventBus] = None,
        mapper: Optional[DelayMapper] = None,
        clock: Optional[Clock] = None,
        config: Optional[VerifierConfig] = None,
        scheduler: Optional[PhaseScheduler] = None,
        probe_session: Optional[ProbeSession] = None,
    ):
        self.config = config or VerifierConfig()
        self.clock = clock or SystemClock()
        self.ledger = ledger
        self.repository = repository or InMemoryChallengeRepository()
        self.events = events or EventBus(clock=self.clock)
        self.mapper = mapper or DelayMapper(self.config.calibration_trim_beta, self.config.min_calibration_points)
        self.pipeline = FilterPipeline.from_config(self.config)
        self.scheduler = scheduler
        if self.scheduler is not None:
            self.scheduler.set_handler(self.apply_transition)
        self.probe_session = probe_session

        self._coordinators: Dict[str, ChallengeCoordinator] = {}
        self._lock = threading.Lock()

    def _coordinator_for(self, state: ChallengeState) -> ChallengeCoordinator:
        return ChallengeCoordinator(
            state,
            repository=self.repository,
            ledger=self.ledger,
            events=self.events,
            mapper=self.mapper,
            clock=self.clock,
            config=self.config,
            pipeline=self.pipeline,
            scheduler=self.scheduler,
            probe_session=self.probe_session,
        )

    def _schedule(self, state: ChallengeState):
        if self.scheduler is None:
            return
        for phase in TIMED_PHASES:
            if phase.order > state.phase.order:
                self.scheduler.schedule(state.challenge_id, phase, state.due_time(phase))

    # ==================== CREATION ====================

    def initialize_challenge(
        self,
        claimed_location,
        duration_s: Optional[float] = None,
        reward_pool: int = DEFAULT_REWARD_POOL,
        authority_key: str = "",
        challenge_id: Optional[str] = None,
    ) -> ChallengeCoordinator:
        """
        Open a new challenge for a claimed location.

        Raises:
            ValidationError: bad coordinates, duration or reward pool
            CollaboratorError: the ledger refused; nothing is created locally
        """
        location = coerce_location(claimed_location)
        duration_s = self.config.challenge_duration_s if duration_s is None else duration_s
        if not 0 < duration_s <= MAX_CHALLENGE_DURATION_S:
            raise ValidationError(
                f"duration_s must be in (0, {MAX_CHALLENGE_DURATION_S}], got {duration_s}",
                ErrorCode.INVALID_DURATION,
            )
        if reward_pool <= 0:
            raise ValidationError(f"reward_pool must be positive, got {reward_pool}", ErrorCode.INVALID_REWARD_POOL)

        challenge_id = challenge_id or uuid.uuid4().hex
        if challenge_id in self._coordinators or self.repository.exists(challenge_id):
            raise ValidationError(f"Challenge {challenge_id} already exists", ErrorCode.DUPLICATE_CHALLENGE)

        try:
            self.ledger.initialize_challenge(challenge_id, location, duration_s, int(reward_pool), authority_key)
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError("ledger", "initialize_challenge", str(e), ErrorCode.LEDGER_UNAVAILABLE) from e

        now = self.clock.now()
        deadline = now + duration_s
        voting_deadline = deadline + self.config.voting_window_s
        state = ChallengeState(
            challenge_id=challenge_id,
            claimed_location=location,
            reward_pool=int(reward_pool),
            authority_key=authority_key,
            created_at=now,
            registration_deadline=now + min(self.config.registration_window_s, duration_s),
            deadline=deadline,
            voting_deadline=voting_deadline,
            expires_at=deadline + self.config.expiry_grace_s,
            updated_at=now,
        )
        self.repository.save(state)
        coordinator = self._coordinator_for(state)
        with self._lock:
            self._coordinators[challenge_id] = coordinator
        self._schedule(state)

        logger.info(
            f"Challenge {challenge_id[:8]} started at ({location.latitude:.4f}, {location.longitude:.4f}), "
            f"duration={duration_s}s, pool={reward_pool}"
        )
        self.events.publish(EventType.CHALLENGE_STARTED, challenge_id, {
            "claimed_location": location.to_dict(),
            "reward_pool": int(reward_pool),
            "registration_deadline": state.registration_deadline,
            "deadline": state.deadline,
            "voting_deadline": state.voting_deadline,
            "expires_at": state.expires_at,
        })
        return coordinator

    # ==================== LOOKUP ====================

    def get(self, challenge_id: str) -> ChallengeCoordinator:
        with self._lock:
            coordinator = self._coordinators.get(challenge_id)
            if coordinator is not None:
                return coordinator
            state = self.repository.get(challenge_id)
            if state is None:
                raise ChallengeNotFound(challenge_id)
            coordinator = self._coordinator_for(state)
            self._coordinators[challenge_id] = coordinator
            return coordinator

    def active_challenges(self) -> List[ChallengeCoordinator]:
        with self._lock:
            coordinators = list(self._coordinators.values())
        return [c for c in coordinators if not c.phase.is_terminal]

    # ==================== TIMERS ====================

    def apply_transition(self, challenge_id: str, target: ChallengePhase):
        """Scheduler handler. Safe to call for stale or repeated entries."""
        try:
            coordinator = self.get(challenge_id)
        except ChallengeNotFound:
            logger.debug(f"Dropping transition for unknown challenge {challenge_id[:8]}")
            return
        coordinator.advance_to(target)

    def tick(self) -> int:
        """
        Apply everything that is due now. Runs the scheduler when there is
        one, otherwise syncs every active challenge directly.
        """
        if self.scheduler is not None:
            executed = self.scheduler.run_due()
        else:
            executed = [
                coordinator.challenge_id
                for coordinator in self.active_challenges()
                if self._sync_unscheduled(coordinator)
            ]
        self.events.redeliver()
        return len(executed)

    def _sync_unscheduled(self, coordinator: ChallengeCoordinator) -> bool:
        """Timed transitions plus a due finalization. Returns True if the phase moved."""
        before = coordinator.phase
        coordinator.sync_phase()
        if coordinator.finalization_due():
            try:
                coordinator.advance_to(ChallengePhase.FINALIZED)
            except CollaboratorError as e:
                logger.warning(f"Finalization of {coordinator.challenge_id[:8]} failed: {e}; retrying on next tick")
        return coordinator.phase != before

    def recover(self) -> int:
        """
        Reload every non-terminal challenge from the repository and put its
        pending transitions back on the scheduler. Without a scheduler,
        overdue transitions are applied immediately. Returns how many were
        recovered.
        """
        recovered = 0
        for state in self.repository.list_active():
            with self._lock:
                if state.challenge_id in self._coordinators:
                    continue
                coordinator = self._coordinators[state.challenge_id] = self._coordinator_for(state)
            if self.scheduler is not None:
                self._schedule(state)
            else:
                self._sync_unscheduled(coordinator)
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} active challenges")
        return recovered

    # ==================== STATS ====================

    def get_stats(self) -> dict:
        with self._lock:
            coordinators = list(self._coordinators.values())
        phases: Dict[str, int] = {}
        for c in coordinators:
            phases[c.phase.value] = phases.get(c.phase.value, 0) + 1
        return {
            "challenges": len(coordinators),
            "phases": phases,
            "pending_transitions": len(self.scheduler.pending()) if self.scheduler else 0,
            "pending_events": self.events.pending_count,
            "dropped_events": self.events.dropped_count,
            "calibrated_participants": len(self.mapper.participants()),
        }
