"""
Direction-aware uncertainty estimation (R*).

ESTIMATION FLOW:
================
1. Each participant report yields a residual R_i comparing the delay-derived
   distance estimate d_hat with the true geodesic distance d from the
   claimed point, seen from bearing alpha.
2. Reports are bucketed into angular sectors around the claimed point.
3. Each non-empty sector contributes the beta-quantile of its residuals.
4. R* is the worst (largest) sector value; with no sectors R* is +inf.
5. The claim is accepted iff 0 <= R* <= threshold.

RESIDUAL:
=========
Locally the participant sits d * sin(alpha) east and d * cos(alpha) north of
the claim. A circle of radius d_hat around the participant crosses the
claim's meridian sqrt(d_hat^2 - d^2 * sin^2(alpha)) away from the foot of the
perpendicular, while the claim itself is d * |cos(alpha)| from that foot.
The residual is the gap between the two:

    R_i = | sqrt(max(d_hat^2 - d^2 * sin^2(alpha), 0)) - d * |cos(alpha)| |

An exact report (d_hat == d) gives 0; any other report gives a positive value
in meters, so R* >= 0 always.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from poloc.core.geometry.sphere import GeoPoint, distance, bearing, TWO_PI
from poloc.core.protocol.constants import (
    SECTOR_RESOLUTION_DEG,
    QUANTILE_BETA,
    R_STAR_THRESHOLD_M,
)

logger = logging.getLogger(__name__)


@dataclass
class GeometryReport:
    """One participant's contribution to the uncertainty estimate."""
    participant_id: str
    location: GeoPoint
    estimated_distance_m: float   # d_hat: from the participant's delay mapping
    true_distance_m: float        # d: geodesic distance claim -> participant
    bearing_rad: float            # alpha: bearing claim -> participant
    is_valid: Optional[bool] = None
    low_confidence: bool = False

    @property
    def residual(self) -> float:
        return compute_residual(self.estimated_distance_m, self.true_distance_m, self.bearing_rad)

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "location": self.location.to_dict(),
            "estimated_distance_m": self.estimated_distance_m,
            "true_distance_m": self.true_distance_m,
            "bearing_deg": math.degrees(self.bearing_rad),
            "residual_m": self.residual,
            "is_valid": self.is_valid,
            "low_confidence": self.low_confidence,
        }


@dataclass
class SectorEstimate:
    index: int
    start_deg: float
    residuals: List[float]
    value: float

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "start_deg": self.start_deg,
            "count": len(self.residuals),
            "value": self.value,
        }


@dataclass
class UncertaintyEstimate:
    r_star: float
    sectors: Dict[int, SectorEstimate] = field(default_factory=dict)
    report_count: int = 0

    @property
    def worst_sector(self) -> Optional[SectorEstimate]:
        if not self.sectors:
            return None
        return max(self.sectors.values(), key=lambda s: s.value)

    def to_dict(self) -> dict:
        return {
            "r_star": self.r_star,
            "report_count": self.report_count,
            "sectors": [s.to_dict() for s in sorted(self.sectors.values(), key=lambda s: s.index)],
        }


def build_report(
    claim: GeoPoint,
    participant_id: str,
    location: GeoPoint,
    estimated_distance_m: float,
    is_valid: Optional[bool] = None,
    low_confidence: bool = False,
) -> GeometryReport:
    """Compute true distance and bearing from the claim and wrap them in a report."""
    return GeometryReport(
        participant_id=participant_id,
        location=location,
        estimated_distance_m=float(estimated_distance_m),
        true_distance_m=distance(claim, location),
        bearing_rad=bearing(claim, location),
        is_valid=is_valid,
        low_confidence=low_confidence,
    )


def compute_residual(estimated_distance_m: float, true_distance_m: float, alpha: float) -> float:
    """Direction-aware consistency residual in meters (see module docstring)."""
    sin_a = math.sin(alpha)
    cos_a = math.cos(alpha)
    d = true_distance_m
    radicand = estimated_distance_m ** 2 - (d * sin_a) ** 2
    return abs(math.sqrt(max(radicand, 0.0)) - d * abs(cos_a))


def sector_index(bearing_rad: float, resolution_deg: float = SECTOR_RESOLUTION_DEG) -> int:
    resolution = math.radians(resolution_deg)
    count = max(1, int(math.ceil(TWO_PI / resolution - 1e-9)))
    return min(int(math.floor((bearing_rad % TWO_PI) / resolution)), count - 1)


def group_by_sector(
    reports: Iterable[GeometryReport],
    resolution_deg: float = SECTOR_RESOLUTION_DEG,
) -> Dict[int, List[GeometryReport]]:
    """Bucket reports by the angular sector of their bearing from the claim."""
    sectors: Dict[int, List[GeometryReport]] = {}
    for report in reports:
        sectors.setdefault(sector_index(report.bearing_rad, resolution_deg), []).append(report)
    return sectors


def beta_quantile(values: Sequence[float], beta: float = QUANTILE_BETA) -> float:
    """
    Beta-quantile of values: ascending order, index floor(beta * n) clamped
    to the last element.

    Raises:
        ValueError: if values is empty
    """
    if not values:
        raise ValueError("beta_quantile of an empty sequence")
    ordered = sorted(values)
    index = min(int(math.floor(beta * len(ordered))), len(ordered) - 1)
    return ordered[max(index, 0)]


def estimate_uncertainty(
    reports: Sequence[GeometryReport],
    resolution_deg: float = SECTOR_RESOLUTION_DEG,
    beta: float = QUANTILE_BETA,
) -> UncertaintyEstimate:
    """Aggregate participant reports into R* (max over per-sector quantiles)."""
    grouped = group_by_sector(reports, resolution_deg)
    sectors: Dict[int, SectorEstimate] = {}
    for index, members in grouped.items():
        residuals = [r.residual for r in members]
        sectors[index] = SectorEstimate(
            index=index,
            start_deg=index * resolution_deg,
            residuals=residuals,
            value=beta_quantile(residuals, beta),
        )

    r_star = max((s.value for s in sectors.values()), default=math.inf)
    logger.debug(f"R*={r_star:.2f}m from {len(reports)} reports in {len(sectors)} sectors")
    return UncertaintyEstimate(r_star=r_star, sectors=sectors, report_count=len(reports))


def is_location_valid(r_star: float, threshold: float = R_STAR_THRESHOLD_M) -> bool:
    """Decision rule: accept iff 0 <= R* <= threshold."""
    if math.isnan(r_star):
        return False
    return 0.0 <= r_star <= threshold
