"""Error taxonomy for matching operations.

Every error carries the HTTP status and a short machine-readable code; the app
registers one handler for the base class. An incomplete match is not an error
and never raises.
"""

from __future__ import annotations


class MatchingError(Exception):
    status_code = 400
    code = "matching_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(MatchingError):
    """Formation or scoring parameters are invalid."""

    status_code = 400
    code = "configuration_error"


class NotFoundError(MatchingError):
    """Participant, group or snapshot is missing or not eligible."""

    status_code = 404
    code = "not_found"


class InvariantViolation(MatchingError):
    """The operation would break a membership or locking invariant."""

    status_code = 409
    code = "invariant_violation"


class ConcurrencyConflict(MatchingError):
    """Another commit or override holds the event lock. Safe to retry."""

    status_code = 409
    code = "concurrency_conflict"


class MatchingTimeout(MatchingError):
    status_code = 504
    code = "matching_timeout"
