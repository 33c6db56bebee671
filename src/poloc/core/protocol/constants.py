"""
POLOC Protocol Constants - Centralized Configuration

This module defines ALL tunable constants of the verification engine.
Values are documented here and should be referenced from here, not
hardcoded elsewhere. Runtime overrides go through VerifierConfig.

=============================================================================
DESIGN PRINCIPLES
=============================================================================

1. PHYSICS FIRST: No delay can imply a distance beyond what light covers
   in half the round trip. The speed-of-light bound is the fallback of
   last resort.

2. ROBUST AGGREGATION: Every aggregate (calibration fit, per-sector
   radius, Byzantine score) tolerates a fraction of lying reporters.

3. DIRECTIONAL COVERAGE: Challengers are grouped by bearing so a cluster
   of honest observers on one side cannot mask a liar on the other.

4. STAKE BEFORE VOICE: Only staked challengers may measure or vote, and
   Byzantine stakers stay slash-eligible whatever the outcome.

=============================================================================
"""

import math

# =============================================================================
# PHYSICAL CONSTANTS
# =============================================================================

EARTH_RADIUS_M = 6_371_000.0          # Mean Earth radius (haversine)
SPEED_OF_LIGHT_M_S = 299_792_458.0    # Vacuum speed of light

# =============================================================================
# GEOMETRY / UNCERTAINTY ESTIMATION
# =============================================================================
# Participants are bucketed into angular sectors around the claimed point.
# Each sector reports the beta-quantile of its residuals and R* is the worst
# sector. Both knobs are tunable, not protocol-fixed.

SECTOR_RESOLUTION_DEG = 10.0          # Sector width in degrees
QUANTILE_BETA = 0.5                   # Per-sector quantile (0.5 = median)
R_STAR_THRESHOLD_M = 1000.0           # Accept iff 0 <= R* <= threshold

# =============================================================================
# DELAY -> DISTANCE MAPPING
# =============================================================================

CALIBRATION_TRIM_BETA = 0.1           # Fraction of extreme ratios dropped before fitting
MIN_CALIBRATION_POINTS = 3            # Below this the mapper raises InsufficientData

# =============================================================================
# ROBUST PCA (LOW-RANK + SPARSE DECOMPOSITION)
# =============================================================================

RPCA_TOLERANCE = 1e-6                 # Relative residual / change stopping criterion
RPCA_MAX_ITERATIONS = 100             # Iteration cap (non-convergence is flagged)
RPCA_RHO = 1.5                        # Geometric growth of the penalty mu
RPCA_MU_SCALE = 1.25                  # mu_0 = RPCA_MU_SCALE / ||M||_2
RPCA_MU_MAX_FACTOR = 1e7              # mu is capped at mu_0 * factor
RPCA_LAMBDA_SCALE = 1.0               # lambda = scale / sqrt(max(m, n)); the delay matrix is divided
                                      # by its median first, and scales of 0.05-0.1 push honest
                                      # rows into S on that unit-free matrix
RPCA_RANK_EPSILON = 1e-6              # Singular values above this count toward rank

BYZANTINE_SCORE_THRESHOLD = 0.3       # Mean |S| per row (normalized units)
MIN_MATRIX_ROWS = 2                   # Participants needed for decomposition
MIN_MATRIX_COLUMNS = 2                # Rounds needed for decomposition

# Decomposition strategy selection
EXACT_SVD_MAX_DIM = 64                # min(m, n) above this uses truncated SVD
TRUNCATED_SVD_RANK = 10               # Retained rank for the truncated strategy
TRUNCATED_SVD_OVERSAMPLE = 5          # Extra columns in the power-iteration sketch
TRUNCATED_SVD_POWER_ITERATIONS = 8    # Subspace power iterations
TRUNCATED_SVD_SEED = 1234             # Sketch seed (decomposition is deterministic)

# =============================================================================
# PREFILTERS
# =============================================================================

RATIO_FILTER_BETA = 0.15              # Fraction of extreme distance/delay ratios trimmed
RATIO_FILTER_BINS = 10                # Distance bins for the per-bin ratio filter
BETA_CUT_FRACTION = 0.6               # Keep the best 60% by quality score
DEFAULT_PIPELINE = ("ratio", "beta_cut", "decomposition")
PIPELINE_STAGES = ("ratio", "binned_ratio", "beta_cut", "decomposition")

# =============================================================================
# CHALLENGE LIFECYCLE
# =============================================================================

CHALLENGE_DURATION_S = 300.0          # Default staking + pinging span
MAX_CHALLENGE_DURATION_S = 86_400.0   # Hard cap (24h)
REGISTRATION_WINDOW_S = 30.0          # staking -> pinging after this long
VOTING_WINDOW_S = 60.0                # voting -> finalized after this long
EXPIRY_GRACE_S = 3_600.0              # Non-finalized challenges expire after deadline + grace
FINALIZE_RETRY_S = 30.0               # Delay before the scheduler retries a failed finalize

QUORUM = 3                            # Minimum participants for a decision
MAX_PARTICIPANTS = 20                 # Registration cap per challenge
MIN_STAKE = 1_000_000                 # Minimum stake (base units)
DEFAULT_REWARD_POOL = 10_000_000      # Default reward pool (base units)
MAX_UNCERTAINTY_M = 50_000.0          # Largest uncertainty a vote may carry
MAX_RTT_MS = 1_000.0                  # Largest plausible min RTT in a report

FALLBACK_NO_VOTES_R_STAR = 999_999.0  # Fallback R* when no valid vote exists

# =============================================================================
# MEASUREMENT PROBING
# =============================================================================

PROBES_PER_ROUND = 20
MEASUREMENT_ROUNDS = 5
PROBE_INTERVAL_S = 0.05
PROBE_TIMEOUT_S = 3.0
NONCE_BYTES = 16

# =============================================================================
# EVENTS
# =============================================================================

EVENT_HISTORY_SIZE = 1_000            # Events kept for history() queries
EVENT_MAX_PENDING = 1_000             # Queued redeliveries before the oldest is dropped
EVENT_MAX_ATTEMPTS = 10               # Deliveries per (subscriber, event) before giving up


def speed_of_light_distance(rtt_ms: float) -> float:
    """
    Upper bound on one-way distance implied by a round-trip time.

    Light covers at most c * rtt / 2 in a round trip of rtt.

    Args:
        rtt_ms: Round-trip time in milliseconds

    Returns:
        Distance in meters (0 for non-positive delays)
    """
    if rtt_ms <= 0:
        return 0.0
    return SPEED_OF_LIGHT_M_S * (rtt_ms / 1000.0) / 2.0


def default_lambda(rows: int, cols: int, scale: float = RPCA_LAMBDA_SCALE) -> float:
    """
    Sparsity weight for robust PCA: scale / sqrt(max(m, n)).

    Examples:
        - 8 x 24 matrix, scale 1.0 -> 0.204
        - 20 x 100 matrix, scale 1.0 -> 0.1
    """
    return scale / math.sqrt(max(rows, cols, 1))


def is_valid_stake_amount(amount: float, min_stake: float = MIN_STAKE) -> bool:
    """Check a stake meets the per-challenge minimum."""
    return amount >= min_stake


def reward_per_participant(reward_pool: int, honest_count: int) -> int:
    """
    Equal split of the reward pool among honest voters (integer base units).

    The remainder stays in the pool, matching the ledger program.
    """
    if honest_count <= 0:
        return 0
    return int(reward_pool) // honest_count
