"""
Runtime configuration for the verification engine.

Defaults come from poloc.core.protocol.constants; any field can be
overridden from the environment with a POLOC_ prefix, e.g.
POLOC_QUORUM=5 or POLOC_PIPELINE=ratio,decomposition.
"""

import os
import logging
from dataclasses import dataclass, field, fields, asdict
from typing import Tuple

from poloc.core.errors import ValidationError
from poloc.core.protocol import constants as C

logger = logging.getLogger(__name__)

ENV_PREFIX = "POLOC_"


@dataclass
class VerifierConfig:
    # Geometry
    sector_resolution_deg: float = C.SECTOR_RESOLUTION_DEG
    quantile_beta: float = C.QUANTILE_BETA
    r_star_threshold_m: float = C.R_STAR_THRESHOLD_M

    # Mapping
    calibration_trim_beta: float = C.CALIBRATION_TRIM_BETA
    min_calibration_points: int = C.MIN_CALIBRATION_POINTS
    calibrate_on_accept: bool = False

    # Robust PCA
    rpca_tolerance: float = C.RPCA_TOLERANCE
    rpca_max_iterations: int = C.RPCA_MAX_ITERATIONS
    rpca_rho: float = C.RPCA_RHO
    rpca_lambda_scale: float = C.RPCA_LAMBDA_SCALE
    byzantine_threshold: float = C.BYZANTINE_SCORE_THRESHOLD
    exact_svd_max_dim: int = C.EXACT_SVD_MAX_DIM

    # Prefilters
    ratio_filter_beta: float = C.RATIO_FILTER_BETA
    ratio_filter_bins: int = C.RATIO_FILTER_BINS
    beta_cut_fraction: float = C.BETA_CUT_FRACTION
    pipeline: Tuple[str, ...] = field(default_factory=lambda: tuple(C.DEFAULT_PIPELINE))

    # Lifecycle
    challenge_duration_s: float = C.CHALLENGE_DURATION_S
    registration_window_s: float = C.REGISTRATION_WINDOW_S
    voting_window_s: float = C.VOTING_WINDOW_S
    expiry_grace_s: float = C.EXPIRY_GRACE_S
    finalize_retry_s: float = C.FINALIZE_RETRY_S
    quorum: int = C.QUORUM
    max_participants: int = C.MAX_PARTICIPANTS
    min_stake: int = C.MIN_STAKE
    slash_byzantine: bool = True
    finalize_when_all_voted: bool = True

    # Probing
    probes_per_round: int = C.PROBES_PER_ROUND
    measurement_rounds: int = C.MEASUREMENT_ROUNDS
    probe_interval_s: float = C.PROBE_INTERVAL_S
    probe_timeout_s: float = C.PROBE_TIMEOUT_S

    def __post_init__(self):
        self.pipeline = tuple(self.pipeline)
        self.validate()

    def validate(self):
        for name in ("quantile_beta", "calibration_trim_beta", "ratio_filter_beta"):
            value = getattr(self, name)
            if not 0.0 <= value < 1.0:
                raise ValidationError(f"{name} must be in [0, 1), got {value}")
        if not 0.0 < self.beta_cut_fraction <= 1.0:
            raise ValidationError(f"beta_cut_fraction must be in (0, 1], got {self.beta_cut_fraction}")
        if self.sector_resolution_deg <= 0 or self.sector_resolution_deg > 360:
            raise ValidationError(f"sector_resolution_deg must be in (0, 360], got {self.sector_resolution_deg}")
        if self.quorum < 1:
            raise ValidationError(f"quorum must be >= 1, got {self.quorum}")
        if self.max_participants < self.quorum:
            raise ValidationError("max_participants must be >= quorum")
        if self.rpca_rho <= 1.0:
            raise ValidationError(f"rpca_rho must be > 1, got {self.rpca_rho}")
        if not 0 < self.challenge_duration_s <= C.MAX_CHALLENGE_DURATION_S:
            raise ValidationError(f"challenge_duration_s must be in (0, {C.MAX_CHALLENGE_DURATION_S}]")
        for name in ("registration_window_s", "voting_window_s", "expiry_grace_s"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.expiry_grace_s <= self.voting_window_s:
            raise ValidationError("expiry_grace_s must exceed voting_window_s")
        unknown = [stage for stage in self.pipeline if stage not in C.PIPELINE_STAGES]
        if unknown:
            raise ValidationError(f"Unknown pipeline stages: {unknown}", details={"allowed": list(C.PIPELINE_STAGES)})

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "VerifierConfig":
        """Build a config from POLOC_* environment variables plus explicit overrides."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, raw, f.default)
        values.update(overrides)
        config = cls(**values)
        if values:
            logger.debug(f"Config overrides: {sorted(values)}")
        return config

    def to_dict(self) -> dict:
        data = asdict(self)
        data["pipeline"] = list(self.pipeline)
        return data


def _coerce(name: str, raw: str, default):
    if name == "pipeline":
        return tuple(stage.strip() for stage in raw.split(",") if stage.strip())
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        return float(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
