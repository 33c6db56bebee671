"""
Probe-based measurement collection.

A session sends `rounds x probes_per_round` independent probes through the
transport. Each probe carries a fresh random nonce and the sequence number
round * probes_per_round + i; a response counts only if it echoes both.
Mismatched, stale or malformed responses are discarded, timeouts count as failed
probes, and nothing is retried. Failed probes stay in the series as None so
the delay matrix keeps one column per probe.
"""

import math
import secrets
import statistics
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from poloc.collaborators.transport import MeasurementTransport
from poloc.core.errors import CollaboratorError, InsufficientData, ErrorCode, ValidationError
from poloc.core.geometry import GeoPoint
from poloc.core.protocol.constants import (
    PROBES_PER_ROUND,
    MEASUREMENT_ROUNDS,
    PROBE_INTERVAL_S,
    PROBE_TIMEOUT_S,
    NONCE_BYTES,
)

logger = logging.getLogger(__name__)


def make_nonce() -> str:
    return secrets.token_hex(NONCE_BYTES)


@dataclass
class MeasurementSummary:
    participant_id: str
    target_address: str
    samples: List[Optional[float]] = field(default_factory=list)
    sent: int = 0
    timeouts: int = 0
    discarded: int = 0
    responded_location: Optional[GeoPoint] = None

    @property
    def rtts(self) -> List[float]:
        return [s for s in self.samples if s is not None]

    @property
    def received(self) -> int:
        return len(self.rtts)

    @property
    def success_rate(self) -> float:
        return self.received / self.sent if self.sent else 0.0

    @property
    def min_rtt_ms(self) -> float:
        return round(min(self.rtts), 2)

    @property
    def avg_rtt_ms(self) -> float:
        return round(statistics.fmean(self.rtts), 2)

    @property
    def median_rtt_ms(self) -> float:
        return round(statistics.median(self.rtts), 2)

    @property
    def std_rtt_ms(self) -> float:
        return round(statistics.pstdev(self.rtts), 2)

    def to_dict(self) -> dict:
        stats = {}
        if self.rtts:
            stats = {
                "min_rtt_ms": self.min_rtt_ms,
                "avg_rtt_ms": self.avg_rtt_ms,
                "median_rtt_ms": self.median_rtt_ms,
                "std_rtt_ms": self.std_rtt_ms,
            }
        return {
            "participant_id": self.participant_id,
            "target_address": self.target_address,
            "sent": self.sent,
            "received": self.received,
            "timeouts": self.timeouts,
            "discarded": self.discarded,
            "success_rate": self.success_rate,
            **stats,
        }


class ProbeSession:
    def __init__(
        self,
        transport: MeasurementTransport,
        probes_per_round: int = PROBES_PER_ROUND,
        rounds: int = MEASUREMENT_ROUNDS,
        interval_s: float = PROBE_INTERVAL_S,
        timeout_s: float = PROBE_TIMEOUT_S,
        sleep: Callable[[float], None] = time.sleep,
        nonce_factory: Callable[[], str] = make_nonce,
    ):
        self.transport = transport
        self.probes_per_round = probes_per_round
        self.rounds = rounds
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.sleep = sleep
        self.nonce_factory = nonce_factory

    @classmethod
    def from_config(cls, transport: MeasurementTransport, config, **kwargs) -> "ProbeSession":
        return cls(
            transport,
            probes_per_round=config.probes_per_round,
            rounds=config.measurement_rounds,
            interval_s=config.probe_interval_s,
            timeout_s=config.probe_timeout_s,
            **kwargs,
        )

    def run(self, participant_id: str, target_address: str) -> MeasurementSummary:
        """
        Probe the target and summarize the round trips.

        Raises:
            InsufficientData: no probe produced a matching response
            CollaboratorError: the transport failed outright
        """
        summary = MeasurementSummary(participant_id, target_address)
        total = self.rounds * self.probes_per_round

        for round_index in range(self.rounds):
            for i in range(self.probes_per_round):
                sequence = round_index * self.probes_per_round + i
                summary.samples.append(self._probe(summary, sequence))
                if sequence < total - 1 and self.interval_s > 0:
                    self.sleep(self.interval_s)

        if not summary.rtts:
            raise InsufficientData(
                f"No successful probes from {participant_id[:16]} to {target_address}",
                ErrorCode.EMPTY_MEASUREMENTS,
                summary.to_dict(),
            )

        logger.info(
            f"Probed {target_address} for {participant_id[:16]}: "
            f"{summary.received}/{summary.sent} ok, min={summary.min_rtt_ms}ms, avg={summary.avg_rtt_ms}ms"
        )
        return summary

    def _probe(self, summary: MeasurementSummary, sequence: int) -> Optional[float]:
        nonce = self.nonce_factory()
        summary.sent += 1
        try:
            response = self.transport.send_probe(
                summary.participant_id, summary.target_address, nonce, sequence, self.timeout_s
            )
        except TimeoutError:
            response = None
        except ValidationError as e:
            summary.discarded += 1
            logger.debug(f"Discarded malformed probe response (seq {sequence}): {e}")
            return None
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError("transport", "send_probe", str(e), ErrorCode.TRANSPORT_FAILED) from e

        if response is None:
            summary.timeouts += 1
            return None
        if response.nonce != nonce or response.sequence != sequence:
            summary.discarded += 1
            logger.debug(f"Discarded mismatched probe response (seq {response.sequence}, expected {sequence})")
            return None
        rtt = response.rtt_ms
        if not math.isfinite(rtt) or rtt <= 0 or rtt > self.timeout_s * 1000.0:
            summary.discarded += 1
            return None
        if response.responded_location is not None:
            summary.responded_location = response.responded_location
        return float(rtt)
