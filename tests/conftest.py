"""
Shared pytest fixtures for test suite.

Provides:
- Virtual clock, in-memory ledger and repository
- Calibrated delay mapper and participant placement around a claim
- Challenge manager factory wired with a scheduler
- Synthetic low-rank delay series
"""

import os
import sys
import math
from typing import Dict, List, Optional

import pytest
import torch

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from poloc.collaborators.ledger import InMemoryLedger
from poloc.core.coordination import (
    ChallengeManager,
    EventBus,
    InMemoryChallengeRepository,
    PhaseScheduler,
    VirtualClock,
)
from poloc.core.geometry import GeoPoint, destination_point
from poloc.core.mapping import DelayMapper
from poloc.core.protocol.config import VerifierConfig


# =============================================================================
# CONSTANTS
# =============================================================================

CLAIM = GeoPoint(40.7128, -74.0060)

# Linear 1 ms <-> 1 km calibration shared by every simulated participant
CALIBRATION_POINTS = [(0.5, 500.0), (1.0, 1000.0), (2.0, 2000.0), (4.0, 4000.0)]

START_TIME = 1_700_000_000.0


# =============================================================================
# HELPERS
# =============================================================================

def place_participants(count: int, radius_m: float = 1000.0, claim: GeoPoint = CLAIM) -> Dict[str, GeoPoint]:
    """Participants evenly spread on a ring around the claim."""
    return {
        f"participant-{i}": destination_point(claim, 2 * math.pi * i / count, radius_m)
        for i in range(count)
    }


def rank_one_series(
    bases: List[float],
    columns: int = 24,
    jitter: Optional[List[float]] = None,
) -> List[List[float]]:
    """Delay series base_i * jitter_j (an exactly rank-1 matrix)."""
    if jitter is None:
        jitter = [1.0 + 0.05 * math.sin(j) for j in range(columns)]
    return [[b * j for j in jitter] for b in bases]


def corrupted_row(columns: int = 24, scale: float = 400.0, seed: int = 7) -> List[float]:
    generator = torch.Generator().manual_seed(seed)
    return (torch.rand(columns, generator=generator, dtype=torch.float64) * scale + 1.0).tolist()


def calibrate(mapper: DelayMapper, participant_ids, points=CALIBRATION_POINTS):
    for pid in participant_ids:
        mapper.add_calibration_points(pid, points)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return VirtualClock(START_TIME)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def repository():
    return InMemoryChallengeRepository()


@pytest.fixture
def config():
    return VerifierConfig()


@pytest.fixture
def mapper():
    return DelayMapper()


@pytest.fixture
def manager_factory(clock, ledger, repository, mapper):
    """Factory for managers sharing the clock, ledger, repository and mapper."""

    def create_manager(config: Optional[VerifierConfig] = None, ledger_override=None,
                       with_scheduler: bool = True) -> ChallengeManager:
        config = config or VerifierConfig()
        scheduler = PhaseScheduler(clock, retry_delay=config.finalize_retry_s) if with_scheduler else None
        return ChallengeManager(
            ledger_override or ledger,
            repository=repository,
            events=EventBus(clock=clock),
            mapper=mapper,
            clock=clock,
            config=config,
            scheduler=scheduler,
        )

    return create_manager


@pytest.fixture
def manager(manager_factory):
    return manager_factory()


@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "poloc_test.db")


@pytest.fixture
def temp_dir(tmp_path):
    return str(tmp_path)


# =============================================================================
# SCENARIO DRIVER
# =============================================================================

def run_to_voting(manager: ChallengeManager, clock: VirtualClock, locations: Dict[str, GeoPoint],
                  delays: Dict[str, float], series: Optional[Dict[str, List[float]]] = None,
                  stake: int = 1_000_000, calibrated: bool = True):
    """
    Create a challenge, register every participant, submit their
    measurements and move the clock into the voting phase.
    """
    if calibrated:
        calibrate(manager.mapper, locations)
    coordinator = manager.initialize_challenge(CLAIM, duration_s=300, reward_pool=9_000_000)
    for pid, location in locations.items():
        coordinator.register_participant(pid, f"identity-{pid}", location, stake)

    clock.advance(manager.config.registration_window_s)
    manager.tick()
    for pid in locations:
        samples = series[pid] if series else [delays[pid]] * 10
        coordinator.submit_measurement(pid, delays[pid], samples=samples)

    clock.set(coordinator.state.deadline)
    manager.tick()
    return coordinator
