"""Exception taxonomy mapped to HTTP responses at the handler boundary."""


class PaymentsError(Exception):
    """Base class for errors raised by the payments handlers."""

    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentsError):
    """Missing or invalid request fields."""

    status = 400


class AuthenticationError(PaymentsError):
    """Webhook signature or timestamp check failed."""

    status = 400


class MalformedPayloadError(PaymentsError):
    """Verified webhook body that does not decode into a known event shape."""

    status = 400


class UpstreamError(PaymentsError):
    """Stripe call failed or returned an unusable result."""

    status = 500
