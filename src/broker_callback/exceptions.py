"""
Exception classes for the broker OAuth callback receiver.

This module defines the exception hierarchy for callback processing.
Client-input errors carry the stable public message returned to the
caller; everything else is treated as an internal fault.
"""


class BrokerCallbackError(Exception):
    """Base exception for all broker callback errors."""

    pass


class ConfigurationError(BrokerCallbackError):
    """Callback receiver configuration error (missing or invalid value)."""

    pass


class CallbackRejectedError(BrokerCallbackError):
    """
    Client-input error reported directly to the caller.

    Attributes:
        reason: Machine-readable rejection reason
        http_status: HTTP status code to respond with
        message: Public error text placed in the response body
    """

    reason = "rejected"
    http_status = 400
    message = "Bad request"

    def __init__(self, message=None):
        super().__init__(message or self.message)


class MethodNotAllowedError(CallbackRejectedError):
    """Request used an HTTP method other than GET."""

    reason = "method_not_allowed"
    http_status = 405
    message = "Method not allowed. Only GET requests are accepted."


class MissingTokenError(CallbackRejectedError):
    """Request did not carry a non-empty tokenId parameter."""

    reason = "missing_token"
    http_status = 400
    message = "Missing tokenId parameter"


class InternalFaultError(BrokerCallbackError):
    """Unexpected failure inside the callback pipeline."""

    http_status = 500
    message = "Internal server error"


class AuditEmissionError(BrokerCallbackError):
    """Audit sink failed to persist a record."""

    pass
