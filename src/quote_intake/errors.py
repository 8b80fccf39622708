"""
Exception types for quote-intake.

Synchronous-path errors (validation, abuse, tokens, missing requests) are
raised to the HTTP layer. Provider errors are caught by their consumers,
which always have a fallback or an explicit "unavailable" answer.
"""

from typing import Any


class IntakeError(Exception):
    """Base class for quote-intake errors."""


class ValidationError(IntakeError):
    """Missing or malformed submission fields."""

    def __init__(self, field_errors: dict[str, str]):
        self.field_errors = field_errors
        super().__init__(
            "Invalid submission: " + ", ".join(f"{k} ({v})" for k, v in field_errors.items())
        )


class AbuseRejection(IntakeError):
    """A submission failed the abuse guard.

    ``outcome.reason`` is for logs and status codes only; clients get
    ``public_message``.
    """

    public_message = "Your request could not be accepted. Please try again later."

    def __init__(self, outcome: Any):
        self.outcome = outcome
        super().__init__(f"Submission rejected: {outcome.reason}")


class RequestNotFound(IntakeError):
    """No quote request with the given id."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Quote request not found: {request_id}")


class ProviderError(IntakeError):
    """An external provider (AI, vector index, captcha, e-mail) failed."""


class ProviderUnavailable(ProviderError):
    """An external provider is not configured."""


class TokenError(IntakeError):
    """Base class for verification token failures."""

    code = "token_error"


class TokenNotFound(TokenError):
    """The token was never issued, or has been purged."""

    code = "not_found"


class TokenExpired(TokenError):
    """The token exists but its lifetime has passed; a resend is needed."""

    code = "expired"


class TokenAlreadyConsumed(TokenError):
    """The token was already used once."""

    code = "already_consumed"
