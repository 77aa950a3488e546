"""Error taxonomy for the scheduling engine.

Every error carries a machine ``code``, a human ``message`` and a ``details``
dict with enough structure (statuses, resource, window) for the caller to
render a precise message. The route layer maps ``http_status`` onto the
response.
"""

from typing import Any


class SchedulingError(Exception):
    """Base class for every rule violation the engine reports."""

    http_status = 400
    default_code = 'SCHEDULING_ERROR'

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {'code': self.code, 'message': self.message, 'details': self.details}


class ValidationError(SchedulingError):
    default_code = 'VALIDATION_ERROR'


class NotFound(SchedulingError):
    http_status = 404
    default_code = 'NOT_FOUND'


class NoAvailability(SchedulingError):
    http_status = 404
    default_code = 'NO_AVAILABILITY'


class InvalidTransition(SchedulingError):
    http_status = 409
    default_code = 'INVALID_TRANSITION'


class NoOpTransition(SchedulingError):
    http_status = 409
    default_code = 'NO_OP_TRANSITION'


class InvalidDelayTime(SchedulingError):
    default_code = 'INVALID_DELAY_TIME'


class SlotConflict(SchedulingError):
    http_status = 409
    default_code = 'SLOT_CONFLICT'


class UpstreamUnavailable(SchedulingError):
    http_status = 503
    default_code = 'UPSTREAM_UNAVAILABLE'


class ResolutionCancelled(SchedulingError):
    http_status = 503
    default_code = 'RESOLUTION_CANCELLED'


class PartialSideEffectFailure(SchedulingError):
    """The primary write committed but a follow-up write did not.

    Never rolled back automatically; surfaced for operator follow-up.
    """

    http_status = 500
    default_code = 'PARTIAL_SIDE_EFFECT_FAILURE'


class LifecycleInvariantError(SchedulingError):
    http_status = 500
    default_code = 'LIFECYCLE_INVARIANT_BROKEN'
