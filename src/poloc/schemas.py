"""
Wire schemas: published events and ledger request/response bodies.
"""

import uuid
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChallengeEvent(BaseModel):
    """Envelope of every event published by the coordinator."""
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_type: str
    challenge_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)

    class Config:
        from_attributes = True


class LocationSchema(BaseModel):
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class InitializeChallengeRequest(BaseModel):
    challenge_id: str
    claimed_location: LocationSchema
    duration_s: float = Field(gt=0)
    reward_pool: int = Field(gt=0)
    authority_key: str


class StakeRequest(BaseModel):
    participant_id: str
    amount: int = Field(gt=0)


class VoteRequest(BaseModel):
    participant_id: str
    is_valid: bool
    uncertainty_m: float = Field(ge=0)
    min_delay_ms: float = Field(gt=0)


class FinalizeRequest(BaseModel):
    passed: bool
    reason: str
    r_star: Optional[float] = None   # None when R* is infinite or not computed
    threshold: float
    valid_votes: int = 0
    total_votes: int = 0
    byzantine: List[str] = Field(default_factory=list)


class DistributeRewardsRequest(BaseModel):
    recipients: List[str]


class SlashRequest(BaseModel):
    participant_id: str


class LedgerResponse(BaseModel):
    """Body returned by the ledger service for every call."""
    ok: bool = True
    error: Optional[str] = None      # InsufficientStake, DuplicateStake, NotStaked, ...
    data: Dict[str, Any] = Field(default_factory=dict)
