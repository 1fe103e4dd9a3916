"""Error taxonomy for the payment layer.

Adapters raise these; the API layer maps each one to an HTTP status in
``paybridge.main``.
"""


class PaymentError(Exception):
    """Base exception for payment adapter and reconciliation errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(PaymentError):
    """Raised when a credential or a plan price mapping is missing."""

    status_code = 500


class SignatureInvalidError(PaymentError):
    """Raised when a webhook signature fails verification."""

    status_code = 400


class ProviderError(PaymentError):
    """Raised when a vendor SDK/API call fails (network, auth, rejection)."""

    status_code = 502


class NotFoundError(PaymentError):
    """Raised when a subscription, customer or portal does not exist."""

    status_code = 404
