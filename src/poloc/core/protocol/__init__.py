"""
Protocol constants and runtime configuration.
"""

from poloc.core.protocol.constants import (
    EARTH_RADIUS_M,
    SPEED_OF_LIGHT_M_S,
    R_STAR_THRESHOLD_M,
    QUORUM,
    MIN_STAKE,
    speed_of_light_distance,
    default_lambda,
    is_valid_stake_amount,
    reward_per_participant,
)
from poloc.core.protocol.config import VerifierConfig

__all__ = [
    "EARTH_RADIUS_M",
    "SPEED_OF_LIGHT_M_S",
    "R_STAR_THRESHOLD_M",
    "QUORUM",
    "MIN_STAKE",
    "speed_of_light_distance",
    "default_lambda",
    "is_valid_stake_amount",
    "reward_per_participant",
    "VerifierConfig",
]
