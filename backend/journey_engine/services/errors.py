class JourneyError(Exception):
    """Base class for errors the management API turns into HTTP responses."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(JourneyError):
    status_code = 400


class NotFoundError(JourneyError):
    status_code = 404


class ConflictError(JourneyError):
    status_code = 409


class JourneyInactive(ConflictError):
    pass


class AlreadyEnrolled(ConflictError):
    pass


class HasActiveEnrollments(ConflictError):
    pass


class ExecutionFailure(Exception):
    """A step action failed. Handled by the retry policy, never returned to API callers."""

    def __init__(self, message: str, retryable: bool = True, result: dict = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.result = result or {}


class TerminalEnrollmentFailure(Exception):
    """Retries are exhausted under the fail_enrollment policy; surfaced only as the enrollment's failed status."""

    def __init__(self, lead_journey_id: str, reason: str):
        super().__init__(f"Enrollment {lead_journey_id} failed: {reason}")
        self.lead_journey_id = lead_journey_id
        self.reason = reason
