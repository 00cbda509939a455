class ApiError(Exception):
    """Domain error carried up to the JSON error handler."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message, status_code=None, code=None, reason=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.reason = reason
        self.extra = None


class ValidationError(ApiError):
    status_code = 400
    code = "validation_error"


class NotFoundError(ApiError):
    status_code = 404
    code = "not_found"


class ForbiddenError(ApiError):
    status_code = 403
    code = "forbidden"


class WorkflowError(ApiError):
    """Raised when attendance/result ordering rules reject an operation.

    ``reason`` is one of the machine readable gate codes
    (``ATTENDANCE_NOT_MARKED``, ``STUDENT_NOT_IN_ATTENDANCE``, ``STUDENT_ABSENT``).
    """

    status_code = 400
    code = "workflow_violation"

    def __init__(self, message, reason):
        super().__init__(message, reason=reason)


def parse_id(value, field):
    """Coerce a numeric id from a query string or JSON body."""
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
