"""
Geometry Module

Spherical primitives (distance, bearing) and the per-direction robust
uncertainty estimator that turns participant reports into R*.
"""

from poloc.core.geometry.sphere import (
    GeoPoint,
    distance,
    bearing,
    destination_point,
    generate_test_points,
)
from poloc.core.geometry.uncertainty import (
    GeometryReport,
    SectorEstimate,
    UncertaintyEstimate,
    build_report,
    compute_residual,
    sector_index,
    group_by_sector,
    beta_quantile,
    estimate_uncertainty,
    is_location_valid,
)

__all__ = [
    "GeoPoint",
    "distance",
    "bearing",
    "destination_point",
    "generate_test_points",
    "GeometryReport",
    "SectorEstimate",
    "UncertaintyEstimate",
    "build_report",
    "compute_residual",
    "sector_index",
    "group_by_sector",
    "beta_quantile",
    "estimate_uncertainty",
    "is_location_valid",
]
