"""Domain errors raised by the payment and subscription services.

Routers do not catch these; ``app.main`` turns them into ``{"detail": ...}``
responses using ``status_code``. Internal ``error_code`` values stay in the
payment record and logs and are never sent to the client.
"""


class PaymentError(Exception):
    status_code = 400

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class PaymentValidationError(PaymentError):
    status_code = 400


class PaymentNotFoundError(PaymentError):
    status_code = 404


class PaymentSecurityError(PaymentError):
    status_code = 400


class PaymentGatewayError(PaymentError):
    status_code = 502


class PaymentGatewayUnavailable(PaymentError):
    """Gateway unreachable, timed out or not configured. Safe to retry."""
    status_code = 503


class SubscriptionStateError(PaymentError):
    status_code = 409
