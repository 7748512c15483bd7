class ReviewFlowError(Exception):
    """Base class for typed domain failures surfaced to callers."""

    status_code = 400
    code = "bad_request"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


# Validation errors: caller's fault, no retry, no state mutation.


class InvalidRatingError(ReviewFlowError):
    """Rating must be an integer between 1 and 5."""

    status_code = 422
    code = "invalid_rating"


class InvalidRecipientError(ReviewFlowError):
    """Recipient address is missing or malformed for the channel."""

    status_code = 422
    code = "invalid_recipient"


# Policy errors: expected business-rule violations.


class OptedOutError(ReviewFlowError):
    """Customer has opted out of this channel."""

    status_code = 409
    code = "opted_out"


class AlreadyUsedError(ReviewFlowError):
    """Feedback gate was already used by this customer."""

    status_code = 409
    code = "already_used"


class AlreadyRunningError(ReviewFlowError):
    """An active campaign execution already exists for this review request."""

    status_code = 409
    code = "already_running"


class NoDefaultSequenceError(ReviewFlowError):
    """No default campaign sequence is configured."""

    status_code = 404
    code = "no_default_sequence"


class NotFoundError(ReviewFlowError):
    """Resource not found."""

    status_code = 404
    code = "not_found"


class DispatchError(ReviewFlowError):
    """Channel provider failed to accept the message."""

    status_code = 502
    code = "dispatch_failed"

    def __init__(self, reason: str, *, provider: str | None = None, error_code: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.provider = provider
        self.error_code = error_code or "provider_error"


class InvalidSequenceError(ReviewFlowError):
    """Campaign sequence definition is invalid."""

    status_code = 422
    code = "invalid_sequence"
