"""
Measurement transport collaborator.

The transport owns sockets, packet formats and clocks; the core only asks it
to send one probe and reports back what came home. A probe is identified by
its nonce and sequence number, and the response must echo both.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import requests

from poloc.core.errors import CollaboratorError, ErrorCode, ValidationError
from poloc.core.geometry import GeoPoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeResponse:
    nonce: str
    sequence: int
    rtt_ms: float
    responded_location: Optional[GeoPoint] = None


class MeasurementTransport(ABC):
    @abstractmethod
    def send_probe(self, participant_id: str, target_address: str, nonce: str,
                   sequence: int, timeout_s: float) -> Optional[ProbeResponse]:
        """
        Send one probe and wait for its echo.

        Returns:
            The response, or None when the probe timed out

        Raises:
            ValidationError: the echo could not be parsed (the probe is discarded)
            CollaboratorError: the transport itself failed
        """


class HttpProbeTransport(MeasurementTransport):
    """
    Probes an HTTP echo endpoint: POST {target}/probe with the nonce and
    sequence, expecting them echoed back (plus an optional location).
    RTT is measured around the request with a monotonic clock.
    """

    def __init__(self, session: Optional[requests.Session] = None, path: str = "/probe"):
        self.session = session or requests.Session()
        self.path = path

    def send_probe(self, participant_id, target_address, nonce, sequence, timeout_s):
        url = f"{target_address.rstrip('/')}{self.path}"
        body = {"participant_id": participant_id, "nonce": nonce, "sequence": sequence}
        start = time.perf_counter()
        try:
            resp = self.session.post(url, json=body, timeout=timeout_s)
        except requests.exceptions.Timeout:
            return None
        except requests.exceptions.RequestException as e:
            raise CollaboratorError("transport", "send_probe", str(e), ErrorCode.TRANSPORT_FAILED) from e
        rtt_ms = (time.perf_counter() - start) * 1000.0

        if resp.status_code != 200:
            raise CollaboratorError("transport", "send_probe", f"HTTP {resp.status_code}", ErrorCode.TRANSPORT_FAILED)
        try:
            data = resp.json()
            location = data.get("location")
            return ProbeResponse(
                nonce=str(data["nonce"]),
                sequence=int(data["sequence"]),
                rtt_ms=rtt_ms,
                responded_location=GeoPoint.from_dict(location) if location else None,
            )
        except (ValueError, KeyError, TypeError, AttributeError, ValidationError) as e:
            raise ValidationError(f"Malformed probe echo: {e}", ErrorCode.INVALID_MEASUREMENT) from e
