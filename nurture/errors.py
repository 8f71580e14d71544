"""Exception hierarchy for the automation engine."""

from __future__ import annotations


class NurtureError(Exception):
    """Base class for engine errors."""


class ConfigurationError(NurtureError):
    """A node cannot run with its current configuration."""


class ConditionLookupError(NurtureError):
    """A condition could not read the data it depends on."""


class WebhookError(NurtureError):
    """An outbound webhook call failed or returned a non-2xx status."""


class MailDeliveryError(NurtureError):
    """The mail transport rejected or failed to deliver a message."""


class CreditError(NurtureError):
    """The credit ledger could not be reached."""


class RequestError(NurtureError):
    """Error returned to a caller of the service entrypoint."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadRequest(RequestError):
    status_code = 400


class Unauthorized(RequestError):
    status_code = 401


class NotFound(RequestError):
    status_code = 404


class Conflict(RequestError):
    status_code = 409


def error_message(error: BaseException) -> str:
    """Return a readable message for ``error``."""
    text = str(error)
    return text or error.__class__.__name__
