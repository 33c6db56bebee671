"""
POLOC Error Handling

Every failure the verification engine can surface to a caller is one of the
exception classes below. Each carries a numeric ErrorCode so that collaborator
layers (ledger adapters, APIs) can map them without string matching.

ERROR CLASSES:
==============
- ValidationError     malformed input, rejected before any state is touched
- PhaseViolation      operation attempted outside its challenge phase
- InsufficientData    not enough samples to compute a result; callers degrade
- ConvergenceFailure  matrix completion hit its iteration cap
- CollaboratorError   ledger / transport call failed; surfaced to the caller
"""

from enum import IntEnum
from typing import Any, Optional


class ErrorCode(IntEnum):
    """Engine error codes."""

    # 1xxx - General
    UNKNOWN_ERROR = 1000
    INVALID_PARAMETER = 1001
    INTERNAL_ERROR = 1002

    # 2xxx - Input validation
    INVALID_COORDINATES = 2001
    INVALID_DURATION = 2002
    INVALID_REWARD_POOL = 2003
    INSUFFICIENT_STAKE = 2004
    DUPLICATE_REGISTRATION = 2005
    MAX_PARTICIPANTS_REACHED = 2006
    NOT_REGISTERED = 2007
    DUPLICATE_MEASUREMENT = 2008
    DUPLICATE_VOTE = 2009
    MISSING_MEASUREMENT = 2010
    INVALID_MEASUREMENT = 2011
    INVALID_UNCERTAINTY = 2012
    CHALLENGE_NOT_FOUND = 2013
    DUPLICATE_CHALLENGE = 2014

    # 3xxx - Lifecycle
    WRONG_PHASE = 3001
    VOTING_STILL_OPEN = 3002
    CHALLENGE_TERMINATED = 3003

    # 4xxx - Estimation
    INSUFFICIENT_CALIBRATION = 4001
    EMPTY_MEASUREMENTS = 4002
    MATRIX_TOO_SMALL = 4003
    NOT_CONVERGED = 4004

    # 5xxx - Collaborators
    LEDGER_REJECTED = 5001
    LEDGER_UNAVAILABLE = 5002
    TRANSPORT_FAILED = 5003


class PolocError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Any] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "name": self.code.name,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PolocError):
    """Input rejected synchronously; no state was mutated."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_PARAMETER, details: Optional[Any] = None):
        super().__init__(code, message, details)


class ChallengeNotFound(ValidationError):
    def __init__(self, challenge_id: str):
        super().__init__(
            f"Challenge {challenge_id} not found",
            ErrorCode.CHALLENGE_NOT_FOUND,
            {"challenge_id": challenge_id},
        )


class PhaseViolation(PolocError):
    """Operation attempted outside its valid phase; no state was mutated."""

    def __init__(self, operation: str, phase: str, expected: Any = None,
                 code: ErrorCode = ErrorCode.WRONG_PHASE):
        self.operation = operation
        self.phase = phase
        if expected is None:
            message = f"{operation} not allowed in phase '{phase}'"
        else:
            message = f"{operation} requires phase '{expected}', challenge is in '{phase}'"
        super().__init__(code, message, {"operation": operation, "phase": phase})


class InsufficientData(PolocError):
    """Too few samples to compute a result. Callers fall back and continue."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INSUFFICIENT_CALIBRATION,
                 details: Optional[Any] = None):
        super().__init__(code, message, details)


class ConvergenceFailure(PolocError):
    """Iterative solver stopped at its cap. The best-effort result is attached."""

    def __init__(self, iterations: int, residual: float, result: Any = None):
        self.iterations = iterations
        self.residual = residual
        self.result = result
        super().__init__(
            ErrorCode.NOT_CONVERGED,
            f"Decomposition did not converge after {iterations} iterations (residual={residual:.3e})",
            {"iterations": iterations, "residual": residual},
        )


class CollaboratorError(PolocError):
    """A ledger or transport call failed. Retrying is the caller's responsibility."""

    def __init__(self, collaborator: str, operation: str, reason: str,
                 code: ErrorCode = ErrorCode.LEDGER_REJECTED, details: Optional[Any] = None):
        self.collaborator = collaborator
        self.operation = operation
        self.reason = reason
        super().__init__(code, f"{collaborator}.{operation} failed: {reason}", details)
