"""Exception hierarchy for the dispatch engine.

Rejected mutations carry the current, unchanged ride in ``ride`` so callers
can reconcile their view without a second fetch.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ride import Ride


class DispatchError(Exception):
    """Base exception for all dispatch errors."""

    code = "dispatch_error"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        ride: "Ride | None" = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.ride = ride


class TransientError(DispatchError):
    """Errors that may succeed on retry."""

    code = "transient_error"


class PersistenceError(TransientError):
    """The persistence store failed or timed out."""

    code = "persistence_error"


class PermanentError(DispatchError):
    """Errors that will not succeed on retry without a change of input or state."""

    code = "permanent_error"


class ValidationError(PermanentError):
    """Malformed input, rejected before any mutation."""

    code = "validation_error"


class InvalidVehicleTypeError(ValidationError):
    code = "invalid_vehicle_type"


class NotFoundError(PermanentError):
    """Unknown ride or driver."""

    code = "not_found"


class ConflictError(PermanentError):
    """Someone else got there first: ride taken, or an active ride already exists."""

    code = "conflict"


class InvalidTransitionError(PermanentError):
    """Status precondition failed; refetch before retrying."""

    code = "invalid_transition"


class OtpMismatchError(PermanentError):
    """Supplied pickup code does not match the one issued at request time."""

    code = "otp_mismatch"


class AuthorizationError(PermanentError):
    """Caller is not the assigned driver or the ride's customer."""

    code = "forbidden"


class ConfigurationError(PermanentError):
    """Missing or invalid configuration."""

    code = "configuration_error"
