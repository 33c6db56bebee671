"""
Challenge Coordination Module

Lifecycle of a location-verification challenge: registration, probing,
voting, finalization and settlement, driven by explicit timers.
"""

from poloc.core.coordination.state import (
    ChallengePhase,
    ParticipantStatus,
    Participant,
    MeasurementReport,
    Vote,
    ChallengeResult,
    ChallengeState,
)
from poloc.core.coordination.events import EventBus, EventType, ALL_EVENTS
from poloc.core.coordination.scheduler import (
    Clock,
    SystemClock,
    VirtualClock,
    ScheduleEntry,
    PhaseScheduler,
)
from poloc.core.coordination.repository import ChallengeRepository, InMemoryChallengeRepository
from poloc.core.coordination.measurement import MeasurementSummary, ProbeSession, make_nonce
from poloc.core.coordination.coordinator import ChallengeCoordinator
from poloc.core.coordination.manager import ChallengeManager

__all__ = [
    "ChallengePhase",
    "ParticipantStatus",
    "Participant",
    "MeasurementReport",
    "Vote",
    "ChallengeResult",
    "ChallengeState",
    "EventBus",
    "EventType",
    "ALL_EVENTS",
    "Clock",
    "SystemClock",
    "VirtualClock",
    "ScheduleEntry",
    "PhaseScheduler",
    "ChallengeRepository",
    "InMemoryChallengeRepository",
    "MeasurementSummary",
    "ProbeSession",
    "make_nonce",
    "ChallengeCoordinator",
    "ChallengeManager",
]
