"""
Challenge aggregate: phases, participants, reports, votes and results.

ChallengeState is the aggregate root. It owns every Participant, report and
Vote of one challenge for its whole lifetime and round-trips through
to_dict()/from_dict() for persistence.
"""

import math
import statistics
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from poloc.core.geometry import GeoPoint


class ChallengePhase(Enum):
    """Lifecycle phase of a challenge."""
    STAKING = "staking"                                      # Registration open
    PINGING = "pinging"                                      # Measurements being collected
    VOTING = "voting"                                        # Votes being collected
    FINALIZED = "finalized"                                  # Decision reached
    INSUFFICIENT_PARTICIPANTS = "insufficient_participants"  # Quorum not met
    EXPIRED = "expired"                                      # Never finalized in time

    @property
    def is_terminal(self) -> bool:
        return self in (
            ChallengePhase.FINALIZED,
            ChallengePhase.INSUFFICIENT_PARTICIPANTS,
            ChallengePhase.EXPIRED,
        )

    @property
    def order(self) -> int:
        return _PHASE_ORDER[self]


_PHASE_ORDER = {
    ChallengePhase.STAKING: 0,
    ChallengePhase.PINGING: 1,
    ChallengePhase.VOTING: 2,
    ChallengePhase.FINALIZED: 3,
    ChallengePhase.INSUFFICIENT_PARTICIPANTS: 3,
    ChallengePhase.EXPIRED: 3,
}


class ParticipantStatus(Enum):
    REGISTERED = "registered"
    PINGED = "pinged"
    VOTED = "voted"


@dataclass
class Participant:
    participant_id: str
    identity: str
    location: GeoPoint
    stake_amount: int
    status: ParticipantStatus = ParticipantStatus.REGISTERED
    registered_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "identity": self.identity,
            "location": self.location.to_dict(),
            "stake_amount": self.stake_amount,
            "status": self.status.value,
            "registered_at": self.registered_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        return cls(
            participant_id=data["participant_id"],
            identity=data.get("identity", ""),
            location=GeoPoint.from_dict(data["location"]),
            stake_amount=int(data["stake_amount"]),
            status=ParticipantStatus(data.get("status", "registered")),
            registered_at=float(data.get("registered_at", 0.0)),
        )


@dataclass(frozen=True)
class MeasurementReport:
    """Probe results of one participant for one challenge. Immutable."""
    participant_id: str
    challenge_id: str
    min_delay_ms: float
    avg_delay_ms: float
    samples: Tuple[Optional[float], ...] = ()
    created_at: float = field(default_factory=time.time)

    @property
    def observed_samples(self) -> List[float]:
        return [s for s in self.samples if s is not None and math.isfinite(s) and s > 0]

    @property
    def quality_score(self) -> float:
        """Jitter of the series (std / mean); lower is better."""
        observed = self.observed_samples
        if len(observed) < 2:
            return 0.0 if observed else math.inf
        mean = statistics.fmean(observed)
        return statistics.pstdev(observed) / mean if mean > 0 else math.inf

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "challenge_id": self.challenge_id,
            "min_delay_ms": self.min_delay_ms,
            "avg_delay_ms": self.avg_delay_ms,
            "samples": list(self.samples),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MeasurementReport":
        return cls(
            participant_id=data["participant_id"],
            challenge_id=data["challenge_id"],
            min_delay_ms=float(data["min_delay_ms"]),
            avg_delay_ms=float(data["avg_delay_ms"]),
            samples=tuple(data.get("samples", ())),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass(frozen=True)
class Vote:
    participant_id: str
    challenge_id: str
    is_valid: bool
    uncertainty_m: float
    min_rtt_ms: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "challenge_id": self.challenge_id,
            "is_valid": self.is_valid,
            "uncertainty_m": self.uncertainty_m,
            "min_rtt_ms": self.min_rtt_ms,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Vote":
        return cls(
            participant_id=data["participant_id"],
            challenge_id=data["challenge_id"],
            is_valid=bool(data["is_valid"]),
            uncertainty_m=float(data["uncertainty_m"]),
            min_rtt_ms=float(data["min_rtt_ms"]),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass
class ChallengeResult:
    passed: bool
    reason: str
    r_star: Optional[float] = None
    threshold: float = 0.0
    participant_count: int = 0
    valid_votes: int = 0
    total_votes: int = 0
    rank: Optional[int] = None
    byzantine: List[str] = field(default_factory=list)
    outliers: List[str] = field(default_factory=list)
    low_confidence: List[str] = field(default_factory=list)
    reward_recipients: List[str] = field(default_factory=list)
    fallback: bool = False
    converged: Optional[bool] = None
    iterations: int = 0
    finalized_at: float = 0.0
    rewards_distributed: bool = False
    reward_per_participant: int = 0
    slashed: List[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    def decision(self) -> dict:
        """Payload handed to the ledger's finalize call."""
        r_star = self.r_star if self.r_star is not None and math.isfinite(self.r_star) else None
        return {
            "passed": self.passed,
            "reason": self.reason,
            "r_star": r_star,
            "threshold": self.threshold,
            "valid_votes": self.valid_votes,
            "total_votes": self.total_votes,
            "byzantine": list(self.byzantine),
        }

    def to_dict(self) -> dict:
        r_star = self.r_star
        if r_star is not None and math.isinf(r_star):
            r_star = "inf"
        return {
            "passed": self.passed,
            "reason": self.reason,
            "r_star": r_star,
            "threshold": self.threshold,
            "participant_count": self.participant_count,
            "valid_votes": self.valid_votes,
            "total_votes": self.total_votes,
            "rank": self.rank,
            "byzantine": list(self.byzantine),
            "outliers": list(self.outliers),
            "low_confidence": list(self.low_confidence),
            "reward_recipients": list(self.reward_recipients),
            "fallback": self.fallback,
            "converged": self.converged,
            "iterations": self.iterations,
            "finalized_at": self.finalized_at,
            "rewards_distributed": self.rewards_distributed,
            "reward_per_participant": self.reward_per_participant,
            "slashed": list(self.slashed),
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChallengeResult":
        data = dict(data)
        if data.get("r_star") == "inf":
            data["r_star"] = math.inf
        return cls(**data)


@dataclass
class ChallengeState:
    challenge_id: str
    claimed_location: GeoPoint
    reward_pool: int
    authority_key: str
    created_at: float
    registration_deadline: float
    deadline: float
    voting_deadline: float
    expires_at: float
    phase: ChallengePhase = ChallengePhase.STAKING
    participants: Dict[str, Participant] = field(default_factory=dict)
    reports: Dict[str, MeasurementReport] = field(default_factory=dict)
    votes: Dict[str, Vote] = field(default_factory=dict)
    result: Optional[ChallengeResult] = None
    archived: bool = False
    phase_history: List[dict] = field(default_factory=list)
    updated_at: float = 0.0

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def all_voted(self) -> bool:
        return bool(self.participants) and all(pid in self.votes for pid in self.participants)

    def due_time(self, phase: ChallengePhase) -> Optional[float]:
        """When the timer-driven transition into `phase` falls due."""
        return {
            ChallengePhase.PINGING: self.registration_deadline,
            ChallengePhase.VOTING: self.deadline,
            ChallengePhase.FINALIZED: self.voting_deadline,
            ChallengePhase.EXPIRED: self.expires_at,
        }.get(phase)

    def to_dict(self) -> dict:
        return {
            "challenge_id": self.challenge_id,
            "claimed_location": self.claimed_location.to_dict(),
            "reward_pool": self.reward_pool,
            "authority_key": self.authority_key,
            "created_at": self.created_at,
            "registration_deadline": self.registration_deadline,
            "deadline": self.deadline,
            "voting_deadline": self.voting_deadline,
            "expires_at": self.expires_at,
            "phase": self.phase.value,
            "participants": {pid: p.to_dict() for pid, p in self.participants.items()},
            "reports": {pid: r.to_dict() for pid, r in self.reports.items()},
            "votes": {pid: v.to_dict() for pid, v in self.votes.items()},
            "result": self.result.to_dict() if self.result else None,
            "archived": self.archived,
            "phase_history": list(self.phase_history),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChallengeState":
        return cls(
            challenge_id=data["challenge_id"],
            claimed_location=GeoPoint.from_dict(data["claimed_location"]),
            reward_pool=int(data["reward_pool"]),
            authority_key=data.get("authority_key", ""),
            created_at=float(data["created_at"]),
            registration_deadline=float(data["registration_deadline"]),
            deadline=float(data["deadline"]),
            voting_deadline=float(data["voting_deadline"]),
            expires_at=float(data["expires_at"]),
            phase=ChallengePhase(data["phase"]),
            participants={pid: Participant.from_dict(p) for pid, p in data.get("participants", {}).items()},
            reports={pid: MeasurementReport.from_dict(r) for pid, r in data.get("reports", {}).items()},
            votes={pid: Vote.from_dict(v) for pid, v in data.get("votes", {}).items()},
            result=ChallengeResult.from_dict(data["result"]) if data.get("result") else None,
            archived=bool(data.get("archived", False)),
            phase_history=list(data.get("phase_history", [])),
            updated_at=float(data.get("updated_at", 0.0)),
        )
