"""
Delay-Distance Mapper

Each participant owns a calibrated function F_i turning a measured round-trip
delay (ms) into an estimated distance (m). The function is fit from that
participant's accumulated calibration pairs (delay, true distance).

FITTING:
========
1. Robust trim: drop a beta-fraction (default 10%) of calibration points with
   the most extreme distance/delay ratio, split across both tails.
2. Monotone envelope: sort the remaining points by delay and keep an upper
   envelope whose segment slopes (meters gained per extra ms) never increase.
   A preceding point is popped whenever the new segment would be steeper
   than the one before it.
3. Trailing points that would make the function decrease are dropped, so the
   mapping is non-decreasing in delay.

QUERY:
======
- delay <= 0                -> 0
- below the first point     -> first point's distance
- inside a segment          -> linear interpolation
- beyond the last point     -> extrapolate with the final segment's slope

Envelopes are rebuilt wholesale whenever a participant's calibration set
changes. Writes are serialized per participant and the finished envelope is
published by a single reference swap, so readers never see a partial build.
"""

import json
import math
import logging
import threading
from bisect import bisect_right
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from poloc.core.errors import InsufficientData, ValidationError, ErrorCode
from poloc.core.protocol.constants import (
    CALIBRATION_TRIM_BETA,
    MIN_CALIBRATION_POINTS,
    speed_of_light_distance,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationSample:
    """A (delay, true distance) pair observed by one participant."""
    participant_id: str
    delay_ms: float
    true_distance_m: float

    @property
    def ratio(self) -> float:
        return self.true_distance_m / self.delay_ms

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "delay_ms": self.delay_ms,
            "true_distance_m": self.true_distance_m,
        }


@dataclass(frozen=True)
class DistanceEstimate:
    """Result of mapping a delay to a distance."""
    participant_id: str
    delay_ms: float
    distance_m: float
    low_confidence: bool = False
    source: str = "envelope"      # "envelope" | "speed_of_light"

    def to_dict(self) -> dict:
        return {
            "participant_id": self.participant_id,
            "delay_ms": self.delay_ms,
            "distance_m": self.distance_m,
            "low_confidence": self.low_confidence,
            "source": self.source,
        }


def trim_by_ratio(samples: Sequence[CalibrationSample], beta: float) -> List[CalibrationSample]:
    """Drop floor(beta * n) samples with extreme distance/delay ratio, half from each tail."""
    ordered = sorted(samples, key=lambda s: s.ratio)
    remove = int(math.floor(beta * len(ordered)))
    if remove <= 0:
        return ordered
    low = remove // 2
    high = remove - low
    return ordered[low:len(ordered) - high]


class MonotoneEnvelope:
    """Immutable piecewise-linear delay -> distance function."""

    def __init__(self, points: Sequence[Tuple[float, float]]):
        if not points:
            raise InsufficientData("Envelope needs at least one point")
        self._points: Tuple[Tuple[float, float], ...] = tuple(points)
        self._delays: Tuple[float, ...] = tuple(p[0] for p in self._points)

    @classmethod
    def fit(cls, samples: Sequence[CalibrationSample], trim_beta: float = CALIBRATION_TRIM_BETA) -> "MonotoneEnvelope":
        kept = trim_by_ratio(samples, trim_beta)

        # Same delay: keep the farthest distance
        by_delay: Dict[float, float] = {}
        for s in kept:
            by_delay[s.delay_ms] = max(by_delay.get(s.delay_ms, 0.0), s.true_distance_m)

        hull: List[Tuple[float, float]] = []
        for point in sorted(by_delay.items()):
            while len(hull) >= 2 and _slope(hull[-1], point) > _slope(hull[-2], hull[-1]):
                hull.pop()
            hull.append(point)

        # Concave hull may turn downward at the tail; cut it at the peak
        peak = max(range(len(hull)), key=lambda i: (hull[i][1], -i))
        return cls(hull[:peak + 1])

    @property
    def points(self) -> Tuple[Tuple[float, float], ...]:
        return self._points

    def slopes(self) -> List[float]:
        """Segment slopes in m/ms, in delay order."""
        return [_slope(a, b) for a, b in zip(self._points, self._points[1:])]

    def query(self, delay_ms: float) -> float:
        if delay_ms <= 0:
            return 0.0
        points = self._points
        if len(points) == 1 or delay_ms <= points[0][0]:
            return points[0][1]
        if delay_ms >= points[-1][0]:
            slope = _slope(points[-2], points[-1])
            return points[-1][1] + slope * (delay_ms - points[-1][0])

        i = bisect_right(self._delays, delay_ms) - 1
        (d0, x0), (d1, x1) = points[i], points[i + 1]
        t = (delay_ms - d0) / (d1 - d0)
        return x0 + t * (x1 - x0)

    def to_dict(self) -> dict:
        return {"points": [list(p) for p in self._points], "slopes": self.slopes()}


def _slope(a: Tuple[float, float], b: Tuple[float, float]) -> float:
    return (b[1] - a[1]) / (b[0] - a[0])


class DelayMapper:
    """
    Per-participant delay -> distance mappings.

    Shared across challenges; the only mutable state the coordinators share.
    """

    def __init__(
        self,
        trim_beta: float = CALIBRATION_TRIM_BETA,
        min_points: int = MIN_CALIBRATION_POINTS,
    ):
        self.trim_beta = trim_beta
        self.min_points = min_points

        self._samples: Dict[str, List[CalibrationSample]] = {}
        self._envelopes: Dict[str, MonotoneEnvelope] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, participant_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(participant_id)
            if lock is None:
                lock = self._locks[participant_id] = threading.Lock()
            return lock

    # ==================== CALIBRATION ====================

    def add_calibration_point(self, participant_id: str, delay_ms: float, distance_m: float) -> CalibrationSample:
        """Append one calibration pair and rebuild the participant's envelope."""
        return self.add_calibration_points(participant_id, [(delay_ms, distance_m)])[0]

    def add_calibration_points(
        self,
        participant_id: str,
        pairs: Iterable[Tuple[float, float]],
    ) -> List[CalibrationSample]:
        """Append several calibration pairs with a single rebuild."""
        new_samples = [self._make_sample(participant_id, delay, dist) for delay, dist in pairs]
        if not new_samples:
            return []
        with self._lock_for(participant_id):
            samples = self._samples.setdefault(participant_id, [])
            samples.extend(new_samples)
            self._rebuild(participant_id, samples)
        return new_samples

    @staticmethod
    def _make_sample(participant_id: str, delay_ms: float, distance_m: float) -> CalibrationSample:
        delay_ms = float(delay_ms)
        distance_m = float(distance_m)
        if not math.isfinite(delay_ms) or delay_ms <= 0:
            raise ValidationError(f"Calibration delay must be positive, got {delay_ms}", ErrorCode.INVALID_MEASUREMENT)
        if not math.isfinite(distance_m) or distance_m < 0:
            raise ValidationError(f"Calibration distance must be >= 0, got {distance_m}", ErrorCode.INVALID_MEASUREMENT)
        return CalibrationSample(participant_id, delay_ms, distance_m)

    def _rebuild(self, participant_id: str, samples: List[CalibrationSample]):
        # Caller holds the participant lock
        if len(samples) < self.min_points:
            self._envelopes.pop(participant_id, None)
            return
        envelope = MonotoneEnvelope.fit(samples, self.trim_beta)
        self._envelopes[participant_id] = envelope
        logger.debug(
            f"Rebuilt mapping for {participant_id[:16]}: "
            f"{len(samples)} samples -> {len(envelope.points)} envelope points"
        )

    def clear(self, participant_id: str):
        with self._lock_for(participant_id):
            self._samples.pop(participant_id, None)
            self._envelopes.pop(participant_id, None)

    # ==================== QUERIES ====================

    def calibration_samples(self, participant_id: str) -> List[CalibrationSample]:
        with self._lock_for(participant_id):
            return list(self._samples.get(participant_id, []))

    def has_mapping(self, participant_id: str) -> bool:
        return participant_id in self._envelopes

    def get_envelope(self, participant_id: str) -> MonotoneEnvelope:
        envelope = self._envelopes.get(participant_id)
        if envelope is None:
            count = len(self._samples.get(participant_id, []))
            raise InsufficientData(
                f"Participant {participant_id} has {count} calibration points, need {self.min_points}",
                ErrorCode.INSUFFICIENT_CALIBRATION,
                {"participant_id": participant_id, "count": count},
            )
        return envelope

    def map_delay(self, participant_id: str, delay_ms: float) -> float:
        """
        Map a delay to a distance with the participant's envelope.

        Raises:
            InsufficientData: fewer than min_points calibration samples
        """
        return self.get_envelope(participant_id).query(delay_ms)

    def estimate(self, participant_id: str, delay_ms: float) -> DistanceEstimate:
        """Map a delay, falling back to the speed-of-light bound (flagged low-confidence)."""
        try:
            return DistanceEstimate(participant_id, delay_ms, self.map_delay(participant_id, delay_ms))
        except InsufficientData:
            logger.info(f"No calibrated mapping for {participant_id[:16]}, using speed-of-light bound")
            return self.speed_of_light_estimate(participant_id, delay_ms)

    @staticmethod
    def speed_of_light_estimate(participant_id: str, delay_ms: float) -> DistanceEstimate:
        """Physical upper bound c * rtt / 2, always low-confidence."""
        return DistanceEstimate(
            participant_id,
            delay_ms,
            speed_of_light_distance(delay_ms),
            low_confidence=True,
            source="speed_of_light",
        )

    def mapping_quality(self, participant_id: str) -> dict:
        """Fit error of the envelope against the participant's own calibration set."""
        envelope = self.get_envelope(participant_id)
        samples = self.calibration_samples(participant_id)
        errors = [abs(envelope.query(s.delay_ms) - s.true_distance_m) for s in samples]
        return {
            "participant_id": participant_id,
            "count": len(errors),
            "avg_error_m": sum(errors) / len(errors),
            "max_error_m": max(errors),
            "rmse_m": math.sqrt(sum(e * e for e in errors) / len(errors)),
            "envelope_points": len(envelope.points),
        }

    def participants(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._samples)

    def get_stats(self) -> dict:
        return {
            "participants": len(self._samples),
            "calibrated": len(self._envelopes),
            "total_samples": sum(len(s) for s in self._samples.values()),
            "trim_beta": self.trim_beta,
            "min_points": self.min_points,
        }

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict:
        return {
            "version": 1,
            "trim_beta": self.trim_beta,
            "min_points": self.min_points,
            "participants": {
                pid: [[s.delay_ms, s.true_distance_m] for s in self.calibration_samples(pid)]
                for pid in self.participants()
            },
        }

    def save(self, path: str):
        """Write all calibration sets to a JSON file."""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Saved calibration for {len(self._samples)} participants to {path}")

    def load(self, path: str) -> int:
        """
        Load calibration sets from a JSON file, replacing the sets of the
        participants it contains. Envelopes are rebuilt from the samples.

        Returns:
            Number of participants loaded
        """
        with open(path) as f:
            data = json.load(f)
        participants = data.get("participants", {})
        for pid, pairs in participants.items():
            samples = [self._make_sample(pid, delay, dist) for delay, dist in pairs]
            with self._lock_for(pid):
                self._samples[pid] = samples
                self._rebuild(pid, samples)
        logger.info(f"Loaded calibration for {len(participants)} participants from {path}")
        return len(participants)
