# quorum/errors.py
"""
Error taxonomy for the analysis run engine.

InvalidArgument and NotFound go straight back to the caller. InvariantViolation
signals a bug (an attempted transition out of a terminal status).
SideEffectFailure never fails a run; it is recorded as a warning.
"""


class QuorumError(Exception):
    """Base class for all analysis engine errors."""
    pass


class InvalidArgument(QuorumError):
    pass


class NotFound(QuorumError):
    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key!r} not found")
        self.kind = kind
        self.key = key


class InvariantViolation(QuorumError):
    pass


class SideEffectFailure(QuorumError):
    """Publishing a completed run's summary to the thread store failed."""
    pass


class BackendError(QuorumError):
    """The discussion backend answered with an error payload or status."""
    pass
