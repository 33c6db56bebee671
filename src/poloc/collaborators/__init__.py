"""
External collaborators: the ledger and the measurement transport.
"""

from poloc.collaborators.ledger import LedgerClient, InMemoryLedger
from poloc.collaborators.http_ledger import HttpLedgerClient
from poloc.collaborators.transport import MeasurementTransport, ProbeResponse, HttpProbeTransport

__all__ = [
    "LedgerClient",
    "InMemoryLedger",
    "HttpLedgerClient",
    "MeasurementTransport",
    "ProbeResponse",
    "HttpProbeTransport",
]
