class TutorError(Exception):
    """Base class for errors surfaced to the learner-facing layer."""

    status_code = 500
    user_message = "Something went wrong. Let's try that again!"


class NotFoundError(TutorError):
    """A skill or session id does not exist."""

    status_code = 404
    user_message = "We couldn't find that. It may have been removed."


class UnauthorizedError(TutorError):
    """The session belongs to another learner."""

    status_code = 403
    user_message = "This session belongs to someone else."


class InvalidStateError(TutorError):
    """The operation is not allowed in the session's current state."""

    status_code = 409
    user_message = "That step isn't available right now."


class LLMTimeoutError(TutorError):
    status_code = 504
    user_message = "The tutor is taking too long to think. Please try again."


class UpstreamError(TutorError):
    """The persistence store or language model failed."""

    status_code = 502
    user_message = "The tutor is having trouble right now. Please try again in a moment."


class ValidationFailureError(TutorError):
    status_code = 422
    user_message = "Let's look at this a different way."
