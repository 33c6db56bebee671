"""
Challenge Coordinator

A per-challenge finite-state machine driving registration, measurement
collection, voting and finalization.

PHASES:
=======
    staking -> pinging -> voting -> finalized
                                 -> insufficient_participants
    (any non-terminal phase) -> expired

- staking -> pinging:   registration window closes
- pinging -> voting:    challenge deadline passes
- voting -> finalized:  voting window elapses, or every participant voted
- -> expired:           deadline + grace passes without a finalization

Timed transitions are applied lazily by every operation (sync_phase) and
eagerly by the PhaseScheduler; both paths are idempotent.

FINALIZATION FLOW:
==================
1. Quorum check (participant count >= quorum), else insufficient_participants
2. Map each report's min delay to a distance (speed-of-light fallback
   flagged low-confidence)
3. Filter pipeline: ratio / beta-cut prefilters, robust PCA Byzantine set
4. Geometry: R* over the surviving, non-Byzantine reports
5. Decision: accept iff 0 <= R* <= threshold
6. Ledger finalize, then commit locally and publish
7. Reward honest voters, slash Byzantine stakers, archive

FAILURE SEMANTICS:
==================
- Validation / phase errors are raised before anything is mutated.
- Ledger calls happen before the matching local mutation; a
  CollaboratorError leaves the challenge exactly as it was.
- Geometry or decomposition failures fall back to the mean uncertainty of
  valid votes (flagged); finalization still proceeds.
- finalize() on a finalized challenge returns the stored result and resumes
  any slashing or reward distribution that did not complete.
"""

import math
import logging
import threading
from typing import Dict, List, Optional, Sequence

from poloc.collaborators.ledger import LedgerClient
from poloc.core.coordination.events import EventBus, EventType
from poloc.core.coordination.measurement import MeasurementSummary, ProbeSession
from poloc.core.coordination.repository import ChallengeRepository
from poloc.core.coordination.scheduler import Clock, PhaseScheduler
from poloc.core.coordination.state import (
    ChallengePhase,
    ChallengeResult,
    ChallengeState,
    MeasurementReport,
    Participant,
    ParticipantStatus,
    Vote,
)
from poloc.core.errors import (
    CollaboratorError,
    ConvergenceFailure,
    ErrorCode,
    InsufficientData,
    PhaseViolation,
    ValidationError,
)
from poloc.core.filtering import FilterCandidate, FilterPipeline, PipelineResult
from poloc.core.geometry import GeoPoint, build_report, distance, estimate_uncertainty, is_location_valid
from poloc.core.mapping import DelayMapper, DistanceEstimate
from poloc.core.protocol.config import VerifierConfig
from poloc.core.protocol.constants import (
    FALLBACK_NO_VOTES_R_STAR,
    MAX_RTT_MS,
    MAX_UNCERTAINTY_M,
    reward_per_participant,
)

logger = logging.getLogger(__name__)

# Internal failures that degrade finalization to the fallback estimate
ESTIMATION_ERRORS = (InsufficientData, ConvergenceFailure, ArithmeticError, ValueError, RuntimeError)


def coerce_location(location) -> GeoPoint:
    """Accept a GeoPoint, a (lat, lon) pair or a {latitude, longitude} dict."""
    if isinstance(location, GeoPoint):
        return location
    if isinstance(location, dict):
        return GeoPoint.from_dict(location)
    try:
        lat, lon = location
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid location: {location!r}", ErrorCode.INVALID_COORDINATES) from e
    return GeoPoint(lat, lon)


class ChallengeCoordinator:
    """Owns one ChallengeState and every operation on it."""

    def __init__(
        self,
        state: ChallengeState,
        *,
        repository: ChallengeRepository,
        ledger: LedgerClient,
        events: EventBus,
        mapper: DelayMapper,
        clock: Clock,
        config: Optional[VerifierConfig] = None,
        pipeline: Optional[FilterPipeline] = None,
        scheduler: Optional[PhaseScheduler] = None,
        probe_session: Optional[ProbeSession] = None,
    ):
        self.state = state
        self.repository = repository
        self.ledger = ledger
        self.events = events
        self.mapper = mapper
        self.clock = clock
        self.config = config or VerifierConfig()
        self.pipeline = pipeline or FilterPipeline.from_config(self.config)
        self.scheduler = scheduler
        self.probe_session = probe_session

        self._lock = threading.RLock()

    @property
    def challenge_id(self) -> str:
        return self.state.challenge_id

    @property
    def phase(self) -> ChallengePhase:
        return self.state.phase

    @property
    def result(self) -> Optional[ChallengeResult]:
        return self.state.result

    # ==================== INTERNALS ====================

    def _persist(self):
        self.state.updated_at = self.clock.now()
        self.repository.save(self.state)

    def _publish(self, event_type: str, payload: Optional[dict] = None):
        self.events.publish(event_type, self.challenge_id, payload or {})

    def _call_ledger(self, operation: str, *args):
        try:
            return getattr(self.ledger, operation)(self.challenge_id, *args)
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError("ledger", operation, str(e), ErrorCode.LEDGER_UNAVAILABLE) from e

    def _require_phase(self, operation: str, phase: ChallengePhase):
        if self.state.phase != phase:
            raise PhaseViolation(operation, self.state.phase.value, phase.value)

    def _require_participant(self, participant_id: str) -> Participant:
        participant = self.state.participants.get(participant_id)
        if participant is None:
            raise ValidationError(
                f"Participant {participant_id} is not registered in challenge {self.challenge_id}",
                ErrorCode.NOT_REGISTERED,
            )
        return participant

    def _transition(self, target: ChallengePhase, reason: str):
        previous = self.state.phase
        self.state.phase = target
        self.state.phase_history.append({
            "from": previous.value,
            "to": target.value,
            "at": self.clock.now(),
            "reason": reason,
        })
        self._persist()
        logger.info(f"Challenge {self.challenge_id[:8]}: {previous.value} -> {target.value} ({reason})")
        self._publish(EventType.PHASE_TRANSITION, {"from": previous.value, "to": target.value, "reason": reason})

    # ==================== PHASE MANAGEMENT ====================

    def sync_phase(self) -> ChallengePhase:
        """Apply every timed transition that is already due. Idempotent."""
        with self._lock:
            now = self.clock.now()
            st = self.state
            if st.phase == ChallengePhase.STAKING and now >= st.registration_deadline:
                self._transition(ChallengePhase.PINGING, "registration closed")
            if st.phase == ChallengePhase.PINGING and now >= st.deadline:
                self._transition(ChallengePhase.VOTING, "challenge deadline reached")
            if not st.phase.is_terminal and now >= st.expires_at:
                self.expire()
            return st.phase

    def finalization_due(self) -> bool:
        """True once a voting challenge may be finalized: window closed, or everyone voted."""
        with self._lock:
            st = self.state
            if st.phase != ChallengePhase.VOTING:
                return False
            if self.clock.now() >= st.voting_deadline:
                return True
            return self.config.finalize_when_all_voted and st.all_voted()

    def advance_to(self, target: ChallengePhase):
        """
        Move forward to `target`. Re-applying a transition the challenge has
        already made (or passed) is a no-op, except that a repeated
        finalization resumes any settlement left unfinished.
        """
        with self._lock:
            self.sync_phase()
            current = self.state.phase
            if current == target == ChallengePhase.FINALIZED:
                self.finalize()
                return current
            if current == target or current.order >= target.order:
                return current
            if target == ChallengePhase.EXPIRED:
                self.expire()
                return self.state.phase
            if current == ChallengePhase.STAKING:
                self._transition(ChallengePhase.PINGING, "advanced")
            if target.order >= ChallengePhase.VOTING.order and self.state.phase == ChallengePhase.PINGING:
                self._transition(ChallengePhase.VOTING, "advanced")
            if target.is_terminal:
                self.finalize()
            return self.state.phase

    # ==================== REGISTRATION ====================

    def register_participant(self, participant_id: str, identity: str, location, stake_amount: int) -> Participant:
        with self._lock:
            self.sync_phase()
            self._require_phase("register_participant", ChallengePhase.STAKING)
            location = coerce_location(location)
            st = self.state

            if not participant_id:
                raise ValidationError("participant_id is required")
            if participant_id in st.participants:
                raise ValidationError(
                    f"Participant {participant_id} already registered",
                    ErrorCode.DUPLICATE_REGISTRATION,
                )
            if stake_amount < self.config.min_stake:
                raise ValidationError(
                    f"Stake {stake_amount} below minimum {self.config.min_stake}",
                    ErrorCode.INSUFFICIENT_STAKE,
                )
            if st.participant_count >= self.config.max_participants:
                raise ValidationError(
                    f"Challenge already has {self.config.max_participants} participants",
                    ErrorCode.MAX_PARTICIPANTS_REACHED,
                )

            self._call_ledger("stake", participant_id, int(stake_amount))

            participant = Participant(
                participant_id=participant_id,
                identity=identity,
                location=location,
                stake_amount=int(stake_amount),
                registered_at=self.clock.now(),
            )
            st.participants[participant_id] = participant
            self._persist()
            logger.info(f"Challenge {self.challenge_id[:8]}: registered {participant_id[:16]} (stake={stake_amount})")
            self._publish(EventType.CHALLENGER_REGISTERED, {
                "participant_id": participant_id,
                "location": location.to_dict(),
                "stake_amount": int(stake_amount),
                "participant_count": st.participant_count,
            })
            return participant

    # ==================== MEASUREMENT ====================

    def submit_measurement(
        self,
        participant_id: str,
        min_delay_ms: float,
        avg_delay_ms: Optional[float] = None,
        samples: Sequence[Optional[float]] = (),
    ) -> MeasurementReport:
        with self._lock:
            self.sync_phase()
            self._require_phase("submit_measurement", ChallengePhase.PINGING)
            participant = self._require_participant(participant_id)

            if participant_id in self.state.reports:
                raise ValidationError(
                    f"Participant {participant_id} already submitted a measurement",
                    ErrorCode.DUPLICATE_MEASUREMENT,
                )
            if not isinstance(min_delay_ms, (int, float)) or not math.isfinite(min_delay_ms) \
                    or not 0 < min_delay_ms <= MAX_RTT_MS:
                raise ValidationError(
                    f"min_delay_ms must be in (0, {MAX_RTT_MS}], got {min_delay_ms}",
                    ErrorCode.INVALID_MEASUREMENT,
                )
            samples = tuple(None if s is None else float(s) for s in samples)
            if avg_delay_ms is None:
                observed = [s for s in samples if s is not None and s > 0]
                avg_delay_ms = sum(observed) / len(observed) if observed else float(min_delay_ms)
            if avg_delay_ms < min_delay_ms:
                raise ValidationError(
                    f"avg_delay_ms {avg_delay_ms} below min_delay_ms {min_delay_ms}",
                    ErrorCode.INVALID_MEASUREMENT,
                )

            report = MeasurementReport(
                participant_id=participant_id,
                challenge_id=self.challenge_id,
                min_delay_ms=float(min_delay_ms),
                avg_delay_ms=float(avg_delay_ms),
                samples=samples,
                created_at=self.clock.now(),
            )
            self.state.reports[participant_id] = report
            participant.status = ParticipantStatus.PINGED
            self._persist()
            self._publish(EventType.PING_RESULTS_RECEIVED, {
                "participant_id": participant_id,
                "min_delay_ms": report.min_delay_ms,
                "avg_delay_ms": report.avg_delay_ms,
                "sample_count": len(samples),
            })
            return report

    def collect_measurement(self, participant_id: str, target_address: str,
                            session: Optional[ProbeSession] = None) -> MeasurementReport:
        """Probe the target through the transport, then submit the result."""
        session = session or self.probe_session
        if session is None:
            raise ValidationError("No probe session configured for this coordinator")
        with self._lock:
            self.sync_phase()
            self._require_phase("collect_measurement", ChallengePhase.PINGING)
            self._require_participant(participant_id)

        # Probing is slow; run it without holding the challenge lock
        summary: MeasurementSummary = session.run(participant_id, target_address)
        return self.submit_measurement(
            participant_id,
            summary.min_rtt_ms,
            summary.avg_rtt_ms,
            summary.samples,
        )

    # ==================== VOTING ====================

    def submit_vote(self, participant_id: str, is_valid: bool, uncertainty_m: float,
                    timestamp: Optional[float] = None) -> Vote:
        with self._lock:
            self.sync_phase()
            self._require_phase("submit_vote", ChallengePhase.VOTING)
            participant = self._require_participant(participant_id)
            st = self.state

            report = st.reports.get(participant_id)
            if report is None:
                raise ValidationError(
                    f"Participant {participant_id} has no measurement in this challenge",
                    ErrorCode.MISSING_MEASUREMENT,
                )
            if participant_id in st.votes:
                raise ValidationError(f"Participant {participant_id} already voted", ErrorCode.DUPLICATE_VOTE)
            if not isinstance(uncertainty_m, (int, float)) or not math.isfinite(uncertainty_m) \
                    or not 0 <= uncertainty_m <= MAX_UNCERTAINTY_M:
                raise ValidationError(
                    f"uncertainty_m must be in [0, {MAX_UNCERTAINTY_M}], got {uncertainty_m}",
                    ErrorCode.INVALID_UNCERTAINTY,
                )

            self._call_ledger("record_vote", participant_id, bool(is_valid), float(uncertainty_m),
                              report.min_delay_ms)

            vote = Vote(
                participant_id=participant_id,
                challenge_id=self.challenge_id,
                is_valid=bool(is_valid),
                uncertainty_m=float(uncertainty_m),
                min_rtt_ms=report.min_delay_ms,
                timestamp=self.clock.now() if timestamp is None else timestamp,
            )
            st.votes[participant_id] = vote
            participant.status = ParticipantStatus.VOTED
            self._persist()
            self._publish(EventType.VOTE_SUBMITTED, {
                "participant_id": participant_id,
                "is_valid": vote.is_valid,
                "uncertainty_m": vote.uncertainty_m,
                "votes": len(st.votes),
                "participants": st.participant_count,
            })

            if self.config.finalize_when_all_voted and st.all_voted() and self.scheduler is not None:
                self.scheduler.schedule(self.challenge_id, ChallengePhase.FINALIZED, self.clock.now())
            return vote

    # ==================== FINALIZATION ====================

    def finalize(self) -> ChallengeResult:
        with self._lock:
            self.sync_phase()
            st = self.state

            if st.phase.is_terminal:
                if st.phase == ChallengePhase.FINALIZED:
                    self._complete_settlement()
                return st.result

            self._require_phase("finalize", ChallengePhase.VOTING)
            now = self.clock.now()
            if now < st.voting_deadline and not st.all_voted():
                raise PhaseViolation(
                    "finalize", st.phase.value,
                    code=ErrorCode.VOTING_STILL_OPEN,
                )

            if st.participant_count < self.config.quorum:
                result = ChallengeResult(
                    passed=False,
                    reason="insufficient_participants",
                    threshold=self.config.r_star_threshold_m,
                    participant_count=st.participant_count,
                    valid_votes=sum(1 for v in st.votes.values() if v.is_valid),
                    total_votes=len(st.votes),
                    finalized_at=now,
                )
                target = ChallengePhase.INSUFFICIENT_PARTICIPANTS
            else:
                result = self._evaluate(now)
                target = ChallengePhase.FINALIZED

            self._call_ledger("finalize", result.decision())

            st.result = result
            self._transition(target, result.reason)
            logger.info(
                f"Challenge {self.challenge_id[:8]} finalized: passed={result.passed}, "
                f"R*={result.r_star}, votes={result.valid_votes}/{result.total_votes}, "
                f"byzantine={len(result.byzantine)}"
            )
            self._publish(EventType.CHALLENGE_FINALIZED, result.to_dict())

            if target == ChallengePhase.FINALIZED:
                if result.passed and self.config.calibrate_on_accept:
                    self._learn_calibration(result)
                self._complete_settlement()
            return result

    def _evaluate(self, now: float) -> ChallengeResult:
        st = self.state
        cfg = self.config
        valid_votes = [v for v in st.votes.values() if v.is_valid]
        result = ChallengeResult(
            passed=False,
            reason="rejected",
            threshold=cfg.r_star_threshold_m,
            participant_count=st.participant_count,
            valid_votes=len(valid_votes),
            total_votes=len(st.votes),
            finalized_at=now,
        )

        estimates: Dict[str, DistanceEstimate] = {}
        pipeline_result: Optional[PipelineResult] = None
        try:
            if not st.reports:
                raise InsufficientData("No measurement reports to evaluate", ErrorCode.EMPTY_MEASUREMENTS)

            candidates = []
            for pid, report in st.reports.items():
                estimate = self.mapper.estimate(pid, report.min_delay_ms)
                estimates[pid] = estimate
                candidates.append(FilterCandidate(
                    participant_id=pid,
                    delay_ms=report.min_delay_ms,
                    distance_m=estimate.distance_m,
                    quality_score=report.quality_score,
                    samples=list(report.samples) or [report.min_delay_ms],
                ))

            pipeline_result = self.pipeline.run(candidates)

            geometry_reports = []
            for candidate in pipeline_result.kept:
                pid = candidate.participant_id
                vote = st.votes.get(pid)
                geometry_reports.append(build_report(
                    st.claimed_location,
                    pid,
                    st.participants[pid].location,
                    estimates[pid].distance_m,
                    is_valid=vote.is_valid if vote else None,
                    low_confidence=estimates[pid].low_confidence,
                ))
            uncertainty = estimate_uncertainty(geometry_reports, cfg.sector_resolution_deg, cfg.quantile_beta)
            result.r_star = uncertainty.r_star
            result.details["sectors"] = uncertainty.to_dict()["sectors"]
        except ESTIMATION_ERRORS as e:
            logger.error(f"Challenge {self.challenge_id[:8]}: estimation failed ({e}); using vote fallback")
            result.fallback = True
            result.r_star = self._fallback_r_star(valid_votes)
            result.details["fallback_reason"] = str(e)

        if pipeline_result is not None:
            result.byzantine = list(pipeline_result.byzantine)
            result.outliers = list(pipeline_result.outliers)
            result.details["pipeline"] = [s.to_dict() for s in pipeline_result.stages]
            if pipeline_result.report is not None:
                result.rank = pipeline_result.report.rank
                result.converged = pipeline_result.report.converged
                result.iterations = pipeline_result.report.iterations
                result.details["scores"] = dict(pipeline_result.report.scores)
        result.low_confidence = sorted(pid for pid, e in estimates.items() if e.low_confidence)

        result.passed = is_location_valid(result.r_star, cfg.r_star_threshold_m)
        result.reason = "accepted" if result.passed else "rejected"

        # Honest voters: not Byzantine and voted with the outcome
        byzantine = set(result.byzantine)
        result.reward_recipients = sorted(
            pid for pid, v in st.votes.items()
            if pid not in byzantine and v.is_valid == result.passed
        )
        return result

    @staticmethod
    def _fallback_r_star(valid_votes: List[Vote]) -> float:
        if not valid_votes:
            return FALLBACK_NO_VOTES_R_STAR
        return sum(v.uncertainty_m for v in valid_votes) / len(valid_votes)

    def _learn_calibration(self, result: ChallengeResult):
        byzantine = set(result.byzantine) | set(result.outliers)
        st = self.state
        for pid, report in st.reports.items():
            if pid in byzantine:
                continue
            true_distance = distance(st.claimed_location, st.participants[pid].location)
            self.mapper.add_calibration_point(pid, report.min_delay_ms, true_distance)

    # ==================== SETTLEMENT ====================

    def _complete_settlement(self):
        result = self.state.result
        if result.passed and not result.rewards_distributed and result.reward_recipients:
            self.distribute_rewards()
        if self.config.slash_byzantine and set(result.byzantine) - set(result.slashed):
            self.slash_byzantine()
        if not self.state.archived:
            self.state.archived = True
            self._persist()

    def slash_byzantine(self) -> List[str]:
        """Slash every Byzantine staker not slashed yet. Returns newly slashed IDs."""
        with self._lock:
            st = self.state
            if st.phase != ChallengePhase.FINALIZED:
                raise PhaseViolation("slash_byzantine", st.phase.value, ChallengePhase.FINALIZED.value)
            slashed = []
            for pid in st.result.byzantine:
                if pid in st.result.slashed:
                    continue
                self._call_ledger("slash", pid)
                st.result.slashed.append(pid)
                slashed.append(pid)
                self._persist()
                logger.warning(f"Challenge {self.challenge_id[:8]}: slashed {pid[:16]}")
                self._publish(EventType.PARTICIPANT_SLASHED, {
                    "participant_id": pid,
                    "stake_amount": st.participants[pid].stake_amount if pid in st.participants else None,
                })
            return slashed

    def distribute_rewards(self) -> ChallengeResult:
        """Pay honest voters of an accepted challenge, then archive it. Idempotent."""
        with self._lock:
            st = self.state
            if st.phase != ChallengePhase.FINALIZED:
                raise PhaseViolation("distribute_rewards", st.phase.value, ChallengePhase.FINALIZED.value)
            result = st.result
            if not result.passed:
                raise ValidationError("Rewards are only distributed for accepted challenges")
            if result.rewards_distributed:
                return result
            if not result.reward_recipients:
                raise ValidationError("No honest voters to reward")

            self._call_ledger("distribute_rewards", list(result.reward_recipients))

            result.rewards_distributed = True
            result.reward_per_participant = reward_per_participant(st.reward_pool, len(result.reward_recipients))
            st.archived = True
            self._persist()
            logger.info(
                f"Challenge {self.challenge_id[:8]}: rewarded {len(result.reward_recipients)} participants "
                f"({result.reward_per_participant} each)"
            )
            self._publish(EventType.REWARDS_DISTRIBUTED, {
                "recipients": list(result.reward_recipients),
                "reward_per_participant": result.reward_per_participant,
            })
            return result

    def expire(self) -> ChallengeResult:
        """Terminate a challenge that was never finalized. No-op once terminal."""
        with self._lock:
            st = self.state
            if st.phase.is_terminal:
                return st.result
            st.result = ChallengeResult(
                passed=False,
                reason="expired",
                threshold=self.config.r_star_threshold_m,
                participant_count=st.participant_count,
                valid_votes=sum(1 for v in st.votes.values() if v.is_valid),
                total_votes=len(st.votes),
                finalized_at=self.clock.now(),
            )
            self._transition(ChallengePhase.EXPIRED, "expired")
            self._publish(EventType.CHALLENGE_EXPIRED, {"phase_before": st.phase_history[-1]["from"]})
            return st.result

    # ==================== STATUS ====================

    def status(self) -> dict:
        with self._lock:
            st = self.state
            return {
                "challenge_id": st.challenge_id,
                "phase": st.phase.value,
                "claimed_location": st.claimed_location.to_dict(),
                "participants": st.participant_count,
                "measurements": len(st.reports),
                "votes": len(st.votes),
                "registration_deadline": st.registration_deadline,
                "deadline": st.deadline,
                "voting_deadline": st.voting_deadline,
                "expires_at": st.expires_at,
                "archived": st.archived,
                "result": st.result.to_dict() if st.result else None,
            }
