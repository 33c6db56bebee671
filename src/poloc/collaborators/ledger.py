"""
Ledger collaborator interface and an in-process reference ledger.

The ledger holds stakes, pays rewards and executes slashes. The coordinator
treats every call as at-most-once: any failure is raised as a
CollaboratorError and the coordinator leaves its own state untouched.

InMemoryLedger enforces the same rules as the on-chain program:
- challenge duration in (0, 86400] seconds, reward pool > 0
- stake >= minimum, one stake per participant, at most 20 participants
- only staked participants vote, once each, while the challenge is active
- rewards split equally (integer division) among recipients, once
- a stake is slashed at most once, only after finalization
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from poloc.core.errors import CollaboratorError, ErrorCode
from poloc.core.geometry import GeoPoint
from poloc.core.protocol.constants import (
    MAX_CHALLENGE_DURATION_S,
    MAX_PARTICIPANTS,
    MIN_STAKE,
    reward_per_participant,
)

logger = logging.getLogger(__name__)


class LedgerClient(ABC):
    @abstractmethod
    def initialize_challenge(self, challenge_id: str, claimed_location: GeoPoint, duration_s: float,
                             reward_pool: int, authority_key: str) -> dict:
        ...

    @abstractmethod
    def stake(self, challenge_id: str, participant_id: str, amount: int) -> dict:
        ...

    @abstractmethod
    def record_vote(self, challenge_id: str, participant_id: str, is_valid: bool,
                    uncertainty_m: float, min_delay_ms: float) -> dict:
        ...

    @abstractmethod
    def finalize(self, challenge_id: str, decision: dict) -> dict:
        ...

    @abstractmethod
    def distribute_rewards(self, challenge_id: str, recipients: Optional[List[str]] = None) -> dict:
        ...

    @abstractmethod
    def slash(self, challenge_id: str, participant_id: str) -> dict:
        ...


@dataclass
class LedgerStake:
    participant_id: str
    amount: int
    voted: bool = False
    slashed: bool = False


@dataclass
class LedgerChallenge:
    challenge_id: str
    claimed_location: GeoPoint
    duration_s: float
    reward_pool: int
    authority_key: str
    status: str = "active"
    stakes: Dict[str, LedgerStake] = field(default_factory=dict)
    decision: Optional[dict] = None
    rewards_distributed: bool = False
    payouts: Dict[str, int] = field(default_factory=dict)


class InMemoryLedger(LedgerClient):
    def __init__(self, min_stake: int = MIN_STAKE, max_participants: int = MAX_PARTICIPANTS):
        self.min_stake = min_stake
        self.max_participants = max_participants
        self._challenges: Dict[str, LedgerChallenge] = {}
        self._lock = threading.Lock()

    def _reject(self, operation: str, reason: str, challenge_id: str):
        raise CollaboratorError("ledger", operation, reason, ErrorCode.LEDGER_REJECTED,
                                {"challenge_id": challenge_id, "error": reason})

    def _challenge(self, operation: str, challenge_id: str) -> LedgerChallenge:
        challenge = self._challenges.get(challenge_id)
        if challenge is None:
            self._reject(operation, "ChallengeNotFound", challenge_id)
        return challenge

    def initialize_challenge(self, challenge_id, claimed_location, duration_s, reward_pool, authority_key):
        with self._lock:
            if challenge_id in self._challenges:
                self._reject("initialize_challenge", "InvalidParameters", challenge_id)
            if not 0 < duration_s <= MAX_CHALLENGE_DURATION_S or reward_pool <= 0:
                self._reject("initialize_challenge", "InvalidParameters", challenge_id)
            self._challenges[challenge_id] = LedgerChallenge(
                challenge_id, claimed_location, duration_s, int(reward_pool), authority_key
            )
        logger.info(f"[LEDGER] Challenge {challenge_id[:8]} initialized (pool={reward_pool})")
        return {"challenge_id": challenge_id}

    def stake(self, challenge_id, participant_id, amount):
        with self._lock:
            challenge = self._challenge("stake", challenge_id)
            if challenge.status != "active":
                self._reject("stake", "Expired", challenge_id)
            if amount < self.min_stake:
                self._reject("stake", "InsufficientStake", challenge_id)
            if participant_id in challenge.stakes:
                self._reject("stake", "DuplicateStake", challenge_id)
            if len(challenge.stakes) >= self.max_participants:
                self._reject("stake", "MaxParticipantsReached", challenge_id)
            challenge.stakes[participant_id] = LedgerStake(participant_id, int(amount))
        return {"participant_id": participant_id, "amount": amount}

    def record_vote(self, challenge_id, participant_id, is_valid, uncertainty_m, min_delay_ms):
        with self._lock:
            challenge = self._challenge("record_vote", challenge_id)
            stake = challenge.stakes.get(participant_id)
            if stake is None:
                self._reject("record_vote", "NotStaked", challenge_id)
            if challenge.status != "active":
                self._reject("record_vote", "WrongPhase", challenge_id)
            if stake.voted:
                self._reject("record_vote", "AlreadyVoted", challenge_id)
            stake.voted = True
        return {"participant_id": participant_id, "is_valid": is_valid}

    def finalize(self, challenge_id, decision):
        with self._lock:
            challenge = self._challenge("finalize", challenge_id)
            if challenge.status != "active":
                self._reject("finalize", "ChallengeNotActive", challenge_id)
            challenge.status = "finalized" if decision.get("reason") != "insufficient_participants" \
                else "insufficient_participants"
            challenge.decision = dict(decision)
        logger.info(f"[LEDGER] Challenge {challenge_id[:8]} finalized: passed={decision.get('passed')}")
        return {"status": challenge.status}

    def distribute_rewards(self, challenge_id, recipients=None):
        with self._lock:
            challenge = self._challenge("distribute_rewards", challenge_id)
            if challenge.status != "finalized":
                self._reject("distribute_rewards", "ChallengeNotFinalized", challenge_id)
            if not (challenge.decision or {}).get("passed"):
                self._reject("distribute_rewards", "ChallengeFailed", challenge_id)
            if challenge.rewards_distributed:
                self._reject("distribute_rewards", "RewardsAlreadyDistributed", challenge_id)
            if recipients is None:
                recipients = [pid for pid, s in challenge.stakes.items() if s.voted and not s.slashed]
            if not recipients:
                self._reject("distribute_rewards", "NoValidVotes", challenge_id)
            share = reward_per_participant(challenge.reward_pool, len(recipients))
            for pid in recipients:
                challenge.payouts[pid] = challenge.payouts.get(pid, 0) + share
            challenge.rewards_distributed = True
        logger.info(f"[LEDGER] Distributed {share} to {len(recipients)} participants of {challenge_id[:8]}")
        return {"reward_per_participant": share, "recipients": list(recipients)}

    def slash(self, challenge_id, participant_id):
        with self._lock:
            challenge = self._challenge("slash", challenge_id)
            if challenge.status != "finalized":
                self._reject("slash", "ChallengeNotFinalized", challenge_id)
            stake = challenge.stakes.get(participant_id)
            if stake is None:
                self._reject("slash", "NotStaked", challenge_id)
            if stake.slashed:
                self._reject("slash", "AlreadySlashed", challenge_id)
            stake.slashed = True
        logger.info(f"[LEDGER] Slashed {participant_id[:16]} in {challenge_id[:8]} ({stake.amount})")
        return {"participant_id": participant_id, "forfeited": stake.amount}

    # ==================== INSPECTION ====================

    def get_challenge(self, challenge_id: str) -> Optional[LedgerChallenge]:
        with self._lock:
            return self._challenges.get(challenge_id)

    def payout(self, challenge_id: str, participant_id: str) -> int:
        challenge = self.get_challenge(challenge_id)
        return challenge.payouts.get(participant_id, 0) if challenge else 0
