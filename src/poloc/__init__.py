"""
POLOC - Proof-of-Location verification engine.

Turns round-trip delay measurements from independent, possibly dishonest
challengers into a robust uncertainty radius (R*) for a claimed location,
flags Byzantine reporters and drives the challenge lifecycle against an
external ledger.
"""

from poloc.version import __version__

__all__ = ["__version__"]
