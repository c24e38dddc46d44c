"""Project error hierarchy.

Every error carries the HTTP status it maps to and a message that is safe to
show to the end user. ``details`` holds diagnostic text for logs and for the
optional ``details`` field of error payloads.
"""

from __future__ import annotations


class TutorChatError(Exception):
    """Base error."""

    status_code = 500
    default_message = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, details: str | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(TutorChatError):
    """Malformed or empty input; rejected before any upstream contact."""

    status_code = 400
    default_message = "The request is invalid."


class PayloadTooLargeError(ValidationError):
    status_code = 413
    default_message = "The request body is too large."


class AuthError(TutorChatError):
    """Missing, invalid or expired credential."""

    status_code = 401
    default_message = "A valid access token is required."


class NotFoundError(TutorChatError):
    status_code = 404
    default_message = "User not found."


class EligibilityError(TutorChatError):
    """Caller may not use chat right now.

    ``kind`` is ``forbidden`` for membership problems (missing, expired, no
    chat feature) and ``payment_required`` for an exhausted credit balance.
    """

    FORBIDDEN = "forbidden"
    PAYMENT_REQUIRED = "payment_required"

    _STATUS_BY_KIND = {FORBIDDEN: 403, PAYMENT_REQUIRED: 402}

    def __init__(self, message: str, *, kind: str = FORBIDDEN, details: str | None = None) -> None:
        if kind not in self._STATUS_BY_KIND:
            raise ValueError(f"unknown eligibility kind: {kind}")
        self.kind = kind
        self.status_code = self._STATUS_BY_KIND[kind]
        super().__init__(message, details=details)


class UpstreamError(TutorChatError):
    """Any failure talking to the generative-text provider."""

    status_code = 502
    default_message = "The AI service failed to respond."


class UpstreamHTTPError(UpstreamError):
    def __init__(self, status_code: int, detail: str) -> None:
        self.upstream_status = status_code
        super().__init__(f"upstream_http_error:{status_code}:{detail}", details=detail)


class EmptyStreamError(UpstreamError):
    """The provider closed a stream without producing any text."""

    default_message = "empty_stream: the provider returned no text"


class UpstreamFatalError(UpstreamError):
    """Non-retryable failure, or retryable failures after both attempt budgets."""


class ChannelClosedError(TutorChatError):
    """The outward event channel is gone (client disconnected or already closed)."""

    default_message = "event channel closed"
